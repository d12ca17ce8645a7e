"""
Menu trees.

Items under the same (menu, parent) form a sibling list ordered by
`sort_order`. Every write that changes a sibling list keeps the numbers
dense (0..n-1) and runs inside one transaction with the menu row locked, so
two concurrent moves never interleave half-applied shifts.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from common.exceptions import BusinessRuleError, TreeDepthError
from common.trees import check_parent_assignment, max_tree_depth

from .models import Menu, MenuItem, Page
from .utils import unique_slug

logger = logging.getLogger(__name__)

ITEM_FIELDS = ("title", "url", "target", "icon", "css_class", "is_active", "require_auth", "permissions")
BULK_ACTIONS = ("activate", "deactivate", "delete")
EXPORT_VERSION = "1.0"


def _lock_menu(menu_id) -> None:
    Menu.objects.select_for_update().filter(pk=menu_id).first()


def _siblings(menu_id, parent_id):
    return MenuItem.objects.filter(menu_id=menu_id, parent_id=parent_id)


def renumber(menu_id, parent_id, ordered: Optional[List[MenuItem]] = None) -> None:
    items = ordered if ordered is not None else list(_siblings(menu_id, parent_id).order_by("sort_order", "created_at"))
    for index, item in enumerate(items):
        if item.sort_order != index:
            MenuItem.objects.filter(pk=item.pk).update(sort_order=index)
            item.sort_order = index


def _resolve_parent(menu_id, parent_id) -> Optional[MenuItem]:
    if parent_id in (None, ""):
        return None
    try:
        parent = MenuItem.objects.filter(pk=parent_id).first()
    except (ValueError, DjangoValidationError):
        parent = None
    if parent is None or parent.menu_id != menu_id:
        raise BusinessRuleError("Invalid parent menu item.", field="parent")
    return parent


def _check_target(data: Dict[str, Any], item: Optional[MenuItem] = None) -> None:
    url = data.get("url", item.url if item else "")
    page = data.get("page", item.page if item else None)
    if not url and page is None:
        raise BusinessRuleError("Either URL or page must be specified.", field="url")
    if page is not None and item is not None and page.tenant_id != item.tenant_id:
        raise BusinessRuleError("Page belongs to another tenant.", field="page")


# ---- item writes ------------------------------------------------------------

def create_item(menu: Menu, data: Dict[str, Any]) -> MenuItem:
    """Append a new item to its sibling list (or insert it at `sort_order`)."""
    _check_target(data)
    parent = data.get("parent")
    parent = _resolve_parent(menu.pk, getattr(parent, "pk", parent))
    if parent is not None:
        check_parent_assignment(MenuItem(menu=menu), parent.pk, label="menu item")

    with transaction.atomic():
        _lock_menu(menu.pk)
        siblings = _siblings(menu.pk, getattr(parent, "pk", None))
        count = siblings.count()
        position = data.get("sort_order")
        position = count if position is None else max(0, min(int(position), count))
        if position < count:
            siblings.filter(sort_order__gte=position).update(sort_order=F("sort_order") + 1)
        item = MenuItem.objects.create(
            tenant=menu.tenant, menu=menu, parent=parent, page=data.get("page"), sort_order=position,
            **{k: data[k] for k in ITEM_FIELDS if k in data},
        )
    logger.info("menu item %s added to menu %s at %s", item.pk, menu.slug, position)
    return item


def update_item(item: MenuItem, data: Dict[str, Any]) -> MenuItem:
    """Plain field updates; a changed parent goes through `move_item` at the end of the new list."""
    _check_target(data, item)
    new_parent_id = item.parent_id
    if "parent" in data:
        new_parent_id = getattr(data["parent"], "pk", data["parent"]) or None
        parent = _resolve_parent(item.menu_id, new_parent_id)
        if parent is not None:
            check_parent_assignment(item, parent.pk, label="menu item")

    with transaction.atomic():
        for key in ITEM_FIELDS:
            if key in data:
                setattr(item, key, data[key])
        if "page" in data:
            item.page = data["page"]
        item.save()
        if str(new_parent_id or "") != str(item.parent_id or ""):
            move_item(item, new_parent_id, _siblings(item.menu_id, new_parent_id).count())
    return item


def move_item(item: MenuItem, parent_id, sort_order: int) -> MenuItem:
    """
    Put `item` under `parent_id` at position `sort_order`. Within one list the
    items between the old and new slot shift by one; across lists the old
    list closes its gap and the new list opens one.
    """
    if sort_order is None or int(sort_order) < 0:
        raise BusinessRuleError("Sort order must be zero or greater.", field="sort_order")
    parent = _resolve_parent(item.menu_id, parent_id)
    new_parent_id = getattr(parent, "pk", None)
    if parent is not None:
        check_parent_assignment(item, new_parent_id, label="menu item")

    with transaction.atomic():
        _lock_menu(item.menu_id)
        item.refresh_from_db(fields=["parent", "sort_order"])
        old_parent_id, old_position = item.parent_id, item.sort_order
        target = _siblings(item.menu_id, new_parent_id).exclude(pk=item.pk)
        position = min(int(sort_order), target.count())

        if old_parent_id == new_parent_id:
            if position > old_position:
                target.filter(sort_order__gt=old_position, sort_order__lte=position).update(
                    sort_order=F("sort_order") - 1)
            elif position < old_position:
                target.filter(sort_order__gte=position, sort_order__lt=old_position).update(
                    sort_order=F("sort_order") + 1)
        else:
            _siblings(item.menu_id, old_parent_id).exclude(pk=item.pk).filter(
                sort_order__gt=old_position).update(sort_order=F("sort_order") - 1)
            target.filter(sort_order__gte=position).update(sort_order=F("sort_order") + 1)

        item.parent_id = new_parent_id
        item.sort_order = position
        item.save(update_fields=["parent", "sort_order", "updated_at"])
    logger.info("menu item %s moved to parent=%s position=%s", item.pk, new_parent_id, position)
    return item


def reorder_items(menu: Menu, entries: List[Dict[str, Any]]) -> Tuple[int, List[Any]]:
    """
    Apply `[{id, parent_id, sort_order}, ...]`. Entries naming an unknown
    item, a parent outside the menu or a parent that would close a cycle are
    skipped; the rest are applied together.
    """
    applied, skipped = 0, []
    moved = set()
    with transaction.atomic():
        _lock_menu(menu.pk)
        touched = set()
        for entry in entries:
            entry_id = entry.get("id") if isinstance(entry, dict) else None
            try:
                item = MenuItem.objects.filter(pk=entry_id, menu=menu).first() if entry_id else None
                sort_order = int(entry.get("sort_order"))
            except (TypeError, ValueError, DjangoValidationError):
                item, sort_order = None, -1
            if item is None or sort_order < 0:
                skipped.append(entry_id)
                continue
            parent_id = entry.get("parent_id") or None
            try:
                parent = _resolve_parent(menu.pk, parent_id)
                check_parent_assignment(item, getattr(parent, "pk", None), label="menu item")
            except BusinessRuleError:
                skipped.append(entry_id)
                continue
            touched.add(item.parent_id)
            item.parent_id = getattr(parent, "pk", None)
            item.sort_order = sort_order
            item.save(update_fields=["parent", "sort_order", "updated_at"])
            touched.add(item.parent_id)
            moved.add(item.pk)
            applied += 1
        for parent_id in touched:
            # on equal numbers the entries just applied go first
            listed = sorted(_siblings(menu.pk, parent_id).order_by("sort_order", "created_at"),
                            key=lambda i: (i.sort_order, i.pk not in moved))
            renumber(menu.pk, parent_id, listed)
    if skipped:
        logger.info("menu %s reorder skipped %d entries", menu.slug, len(skipped))
    return applied, skipped


def delete_item(item: MenuItem) -> None:
    """Children take the deleted item's slot in its parent's list."""
    with transaction.atomic():
        _lock_menu(item.menu_id)
        ordered: List[MenuItem] = []
        children = list(item.children.order_by("sort_order", "created_at"))
        for sibling in _siblings(item.menu_id, item.parent_id).order_by("sort_order", "created_at"):
            if sibling.pk == item.pk:
                ordered.extend(children)
            else:
                ordered.append(sibling)
        item.children.update(parent_id=item.parent_id)
        item.delete()
        renumber(item.menu_id, item.parent_id, ordered)


def bulk_items(items: List[MenuItem], action: str) -> int:
    if action not in BULK_ACTIONS:
        raise BusinessRuleError("Invalid bulk action.", field="action")
    if action in ("activate", "deactivate"):
        MenuItem.objects.filter(pk__in=[i.pk for i in items]).update(is_active=(action == "activate"))
        return len(items)
    processed = 0
    for item in items:
        fresh = MenuItem.objects.filter(pk=item.pk).first()
        if fresh is not None:
            delete_item(fresh)
            processed += 1
    return processed


# ---- reading ----------------------------------------------------------------

def _visible(item: MenuItem, user, roles) -> bool:
    if not item.is_active:
        return False
    authenticated = bool(user and user.is_authenticated)
    if item.require_auth and not authenticated:
        return False
    wanted = (item.permissions or {}).get("roles") or []
    if wanted:
        if not authenticated:
            return False
        if not set(wanted) & roles:
            return False
    return True


def menu_structure(menu: Menu, user=None) -> List[Dict[str, Any]]:
    """Nested active items the given user may see; a hidden item hides its subtree."""
    roles = set(user.role_names()) if user is not None and user.is_authenticated else set()
    by_parent: Dict[Any, List[MenuItem]] = {}
    for item in menu.items.select_related("page").order_by("sort_order", "created_at"):
        by_parent.setdefault(item.parent_id, []).append(item)

    def build(parent_id, depth):
        nodes = []
        if depth > max_tree_depth():
            return nodes
        for item in by_parent.get(parent_id, []):
            if not _visible(item, user, roles):
                continue
            nodes.append({
                "id": str(item.pk),
                "title": item.title,
                "url": item.href,
                "target": item.target,
                "icon": item.icon,
                "css_class": item.css_class,
                "children": build(item.pk, depth + 1),
            })
        return nodes

    return build(None, 1)


def active_menu_for_location(tenant, location: str) -> Optional[Menu]:
    return Menu.objects.filter(tenant=tenant, location=location, is_active=True).order_by("created_at").first()


# ---- export / import / duplicate -------------------------------------------

def export_menu(menu: Menu) -> Dict[str, Any]:
    by_parent: Dict[Any, List[MenuItem]] = {}
    for item in menu.items.select_related("page").order_by("sort_order", "created_at"):
        by_parent.setdefault(item.parent_id, []).append(item)

    def dump(parent_id):
        return [
            {
                "title": i.title, "url": i.url, "page_slug": i.page.slug if i.page_id else None,
                "target": i.target, "icon": i.icon, "css_class": i.css_class, "is_active": i.is_active,
                "require_auth": i.require_auth, "permissions": i.permissions, "children": dump(i.pk),
            }
            for i in by_parent.get(parent_id, [])
        ]

    return {
        "name": menu.name,
        "location": menu.location,
        "description": menu.description,
        "items": dump(None),
        "version": EXPORT_VERSION,
        "exported_at": timezone.now().isoformat(),
    }


def _import_items(menu: Menu, nodes, parent: Optional[MenuItem], depth: int, limit: int) -> int:
    if nodes and depth > limit:
        raise TreeDepthError(f"Hierarchy is deeper than {limit} levels.", field="items")
    created = 0
    for position, node in enumerate(nodes or []):
        if not isinstance(node, dict) or not node.get("title"):
            raise BusinessRuleError("Every menu item needs a title.", field="items")
        page = None
        if node.get("page_slug"):
            page = Page.objects.filter(tenant=menu.tenant, slug=node["page_slug"]).first()
        url = node.get("url") or ""
        if not url and page is None:
            url = f"/{node['page_slug']}" if node.get("page_slug") else "#"
        item = MenuItem.objects.create(
            tenant=menu.tenant, menu=menu, parent=parent, page=page, url=url, sort_order=position,
            **{k: node[k] for k in ("title", "target", "icon", "css_class", "is_active", "require_auth",
                                    "permissions") if k in node},
        )
        created += 1 + _import_items(menu, node.get("children"), item, depth + 1, limit)
    return created


def import_menu(tenant, data: Dict[str, Any], *, name: Optional[str] = None) -> Menu:
    if not isinstance(data, dict) or not (name or data.get("name")) or not isinstance(data.get("items", []), list):
        raise BusinessRuleError("Invalid menu file format.", field="file")
    menu_name = name or data["name"]
    with transaction.atomic():
        menu = Menu.objects.create(
            tenant=tenant, name=menu_name, slug=unique_slug(Menu, tenant, menu_name),
            location=data.get("location") or "", description=data.get("description") or "",
            is_active=bool(data.get("is_active", True)),
        )
        count = _import_items(menu, data.get("items"), None, 1, max_tree_depth())
    logger.info("imported menu %s with %d items", menu.slug, count)
    return menu


def duplicate_menu(menu: Menu, name: Optional[str] = None) -> Menu:
    data = export_menu(menu)
    data["is_active"] = False
    return import_menu(menu.tenant, data, name=name or f"{menu.name} (Copy)")
