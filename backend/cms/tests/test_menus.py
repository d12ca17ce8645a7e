import pytest
from django.contrib.auth.models import Group

from cms import menus
from cms.models import Menu, MenuItem, Page
from common.exceptions import BusinessRuleError, TreeCycleError, TreeDepthError

pytestmark = pytest.mark.django_db


@pytest.fixture
def menu(tenant):
    return Menu.objects.create(tenant=tenant, name="Main", slug="main", location="header")


def add(menu, title, parent=None, **extra):
    return menus.create_item(menu, {"title": title, "url": f"/{title.lower()}", "parent": parent, **extra})


def order(menu, parent=None):
    return list(MenuItem.objects.filter(menu=menu, parent=parent).order_by("sort_order")
                .values_list("title", "sort_order"))


def test_items_append_and_insert_keep_dense_order(menu):
    add(menu, "Home")
    add(menu, "Blog")
    add(menu, "About", sort_order=1)
    add(menu, "Shop", sort_order=99)
    assert order(menu) == [("Home", 0), ("About", 1), ("Blog", 2), ("Shop", 3)]


def test_item_needs_url_or_page(menu, tenant):
    with pytest.raises(BusinessRuleError) as exc:
        menus.create_item(menu, {"title": "Nowhere"})
    assert exc.value.message == "Either URL or page must be specified."

    page = Page.objects.create(tenant=tenant, title="Pricing", slug="pricing")
    item = menus.create_item(menu, {"title": "Pricing", "page": page})
    assert item.href == "/pricing"


def test_parent_from_another_menu_is_rejected(menu, tenant):
    other = Menu.objects.create(tenant=tenant, name="Footer", slug="footer")
    foreign = add(other, "Legal")
    with pytest.raises(BusinessRuleError) as exc:
        add(menu, "Terms", parent=foreign)
    assert exc.value.message == "Invalid parent menu item."


def test_move_within_same_list_shifts_neighbours(menu):
    a, b, c, d = (add(menu, t) for t in ("A", "B", "C", "D"))
    menus.move_item(a, None, 2)
    assert order(menu) == [("B", 0), ("C", 1), ("A", 2), ("D", 3)]
    menus.move_item(d, None, 0)
    assert order(menu) == [("D", 0), ("B", 1), ("C", 2), ("A", 3)]


def test_move_across_lists_closes_and_opens_gaps(menu):
    a, b, c = (add(menu, t) for t in ("A", "B", "C"))
    add(menu, "X", parent=c)
    menus.move_item(a, c.pk, 0)
    assert order(menu) == [("B", 0), ("C", 1)]
    assert order(menu, c) == [("A", 0), ("X", 1)]


def test_move_position_is_clamped_and_negative_refused(menu):
    a, b = add(menu, "A"), add(menu, "B")
    menus.move_item(a, None, 50)
    assert order(menu) == [("B", 0), ("A", 1)]
    with pytest.raises(BusinessRuleError):
        menus.move_item(a, None, -1)


def test_move_under_own_descendant_is_a_cycle(menu):
    top = add(menu, "Top")
    child = add(menu, "Child", parent=top)
    grandchild = add(menu, "Grandchild", parent=child)
    with pytest.raises(TreeCycleError):
        menus.move_item(top, grandchild.pk, 0)
    with pytest.raises(TreeCycleError):
        menus.move_item(top, top.pk, 0)
    top.refresh_from_db()
    assert top.parent_id is None


def test_depth_bound_applies_to_new_and_moved_items(menu, settings):
    settings.CMS_TREE_MAX_DEPTH = 3
    a = add(menu, "A")
    b = add(menu, "B", parent=a)
    c = add(menu, "C", parent=b)
    with pytest.raises(TreeDepthError):
        add(menu, "D", parent=c)

    # moving a two-level branch under `b` would make a chain of four
    other = add(menu, "Other")
    add(menu, "Leaf", parent=other)
    with pytest.raises(TreeDepthError):
        menus.move_item(other, b.pk, 0)


def test_update_with_new_parent_moves_to_end(menu):
    a, b = add(menu, "A"), add(menu, "B")
    add(menu, "B1", parent=b)
    menus.update_item(a, {"title": "A!", "parent": b})
    a.refresh_from_db()
    assert a.title == "A!"
    assert order(menu) == [("B", 0)]
    assert order(menu, b) == [("B1", 0), ("A!", 1)]


def test_reorder_applies_valid_entries_and_skips_the_rest(menu, tenant):
    a, b, c = (add(menu, t) for t in ("A", "B", "C"))
    other_menu = Menu.objects.create(tenant=tenant, name="Other", slug="other")
    stranger = add(other_menu, "Stranger")

    applied, skipped = menus.reorder_items(menu, [
        {"id": str(c.pk), "parent_id": None, "sort_order": 0},
        {"id": str(a.pk), "parent_id": str(c.pk), "sort_order": 0},
        {"id": str(stranger.pk), "parent_id": None, "sort_order": 1},
        {"id": str(b.pk), "parent_id": str(stranger.pk), "sort_order": 0},
        {"id": str(b.pk), "sort_order": -3},
    ])
    assert applied == 2
    assert len(skipped) == 3
    assert order(menu) == [("C", 0), ("B", 1)]
    assert order(menu, c) == [("A", 0)]


def test_delete_splices_children_into_parent_list(menu):
    a, b, c = (add(menu, t) for t in ("A", "B", "C"))
    add(menu, "B1", parent=b)
    add(menu, "B2", parent=b)
    menus.delete_item(b)
    assert order(menu) == [("A", 0), ("B1", 1), ("B2", 2), ("C", 3)]


def test_bulk_items(menu):
    a, b = add(menu, "A"), add(menu, "B")
    assert menus.bulk_items([a, b], "deactivate") == 2
    assert not MenuItem.objects.filter(is_active=True).exists()
    with pytest.raises(BusinessRuleError):
        menus.bulk_items([a], "explode")


def test_structure_filters_inactive_auth_and_roles(menu, staff_user, portal_user):
    add(menu, "Public")
    hidden = add(menu, "Hidden", is_active=False)
    add(menu, "Under hidden", parent=hidden)
    add(menu, "Members", require_auth=True)
    add(menu, "Editors", permissions={"roles": ["editor"]})

    assert [n["title"] for n in menus.menu_structure(menu)] == ["Public"]
    assert [n["title"] for n in menus.menu_structure(menu, portal_user)] == ["Public", "Members"]

    staff_user.groups.add(Group.objects.create(name="editor"))
    tree = menus.menu_structure(menu, staff_user)
    assert [n["title"] for n in tree] == ["Public", "Members", "Editors"]
    assert tree[0] == {"id": tree[0]["id"], "title": "Public", "url": "/public", "target": "_self",
                       "icon": "", "css_class": "", "children": []}


def test_export_import_and_duplicate(menu, tenant):
    page = Page.objects.create(tenant=tenant, title="Docs", slug="docs")
    parent = add(menu, "Resources")
    menus.create_item(menu, {"title": "Docs", "page": page, "parent": parent})

    data = menus.export_menu(menu)
    assert data["version"] == "1.0"
    assert data["items"][0]["children"][0]["page_slug"] == "docs"

    imported = menus.import_menu(tenant, data)
    assert imported.slug == "main-1"
    child = MenuItem.objects.get(menu=imported, title="Docs")
    assert child.page == page and child.parent.title == "Resources"

    copy = menus.duplicate_menu(menu)
    assert copy.name == "Main (Copy)"
    assert copy.is_active is False
    assert copy.items.count() == 2


def test_import_rejects_bad_files(tenant, settings):
    with pytest.raises(BusinessRuleError) as exc:
        menus.import_menu(tenant, {"items": []})
    assert exc.value.message == "Invalid menu file format."

    with pytest.raises(BusinessRuleError):
        menus.import_menu(tenant, {"name": "Broken", "items": [{"url": "/x"}]})
    assert not Menu.objects.filter(name="Broken").exists()

    settings.CMS_TREE_MAX_DEPTH = 2
    deep = {"name": "Deep", "items": [{"title": "1", "children": [{"title": "2", "children": [{"title": "3"}]}]}]}
    with pytest.raises(TreeDepthError):
        menus.import_menu(tenant, deep)
