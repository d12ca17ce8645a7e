# backend/common/trees.py
"""
Guard for self-referencing parent/child models (menu items, media folders, pages).

Before a node gets a new parent we walk the ancestor chain of that parent.
The walk fails when it reaches the node itself or revisits an id, and it is
bounded by CMS_TREE_MAX_DEPTH so corrupted data can never spin forever.
The subtree hanging under the node is measured as well: moving a branch must
keep every chain within the bound, not just the moved node.
"""
from __future__ import annotations

from typing import Any, List, Optional

from django.conf import settings
from django.db import models

from .exceptions import TreeCycleError, TreeDepthError


def max_tree_depth() -> int:
    return int(getattr(settings, "CMS_TREE_MAX_DEPTH", 10))


def _parent_id(model, pk, parent_field: str):
    return (
        model._default_manager.filter(pk=pk)
        .values_list(f"{parent_field}_id", flat=True)
        .first()
    )


def ancestor_ids(model, start_id, *, parent_field: str = "parent",
                 max_depth: Optional[int] = None) -> List[Any]:
    """
    Ids from `start_id` up to the root, `start_id` first.
    Raises TreeCycleError on a revisit and TreeDepthError past the bound.
    """
    limit = max_depth or max_tree_depth()
    chain: List[Any] = []
    seen = set()
    current = start_id
    while current is not None:
        if str(current) in seen:
            raise TreeCycleError("Existing hierarchy contains a circular reference.", field=parent_field)
        seen.add(str(current))
        chain.append(current)
        if len(chain) > limit:
            raise TreeDepthError(f"Hierarchy is deeper than {limit} levels.", field=parent_field)
        current = _parent_id(model, current, parent_field)
    return chain


def subtree_height(node: models.Model, *, parent_field: str = "parent",
                   max_depth: Optional[int] = None) -> int:
    """Levels in the subtree rooted at `node` (a leaf has height 1)."""
    if node.pk is None:
        return 1
    limit = max_depth or max_tree_depth()
    model = type(node)
    height = 1
    frontier = [node.pk]
    seen = {node.pk}
    while frontier and height <= limit:
        children = list(
            model._default_manager.filter(**{f"{parent_field}_id__in": frontier})
            .values_list("pk", flat=True)
        )
        children = [c for c in children if c not in seen]
        if not children:
            break
        seen.update(children)
        frontier = children
        height += 1
    return height


def check_parent_assignment(node: models.Model, new_parent_id, *, parent_field: str = "parent",
                            label: str = "item", max_depth: Optional[int] = None) -> None:
    """
    Refuse `new_parent_id` for `node` if it would close a cycle or push any
    chain under `node` past the depth bound. A None parent is always fine.
    """
    if new_parent_id is None:
        return
    limit = max_depth or max_tree_depth()
    model = type(node)

    if node.pk is not None and str(new_parent_id) == str(node.pk):
        raise TreeCycleError(f"The {label} cannot be its own parent.", field=parent_field)

    seen = set()
    current = new_parent_id
    depth = 0
    while current is not None:
        if node.pk is not None and str(current) == str(node.pk):
            raise TreeCycleError(f"Cannot move {label} under its own descendant.", field=parent_field)
        if str(current) in seen:
            raise TreeCycleError("Existing hierarchy contains a circular reference.", field=parent_field)
        seen.add(str(current))
        depth += 1
        if depth > limit:
            raise TreeDepthError(f"Hierarchy is deeper than {limit} levels.", field=parent_field)
        current = _parent_id(model, current, parent_field)

    if depth + subtree_height(node, parent_field=parent_field, max_depth=limit) > limit:
        raise TreeDepthError(f"Moving this {label} would exceed {limit} levels.", field=parent_field)
