import pytest
from django.core.files.uploadedfile import SimpleUploadedFile
from rest_framework.test import APIClient

from cms import menus, redirects, services
from cms.models import Media, Menu, MenuItem, Page, Redirect

pytestmark = pytest.mark.django_db

BASE = "/api/v1/cms"


@pytest.fixture
def published(tenant):
    return services.create_page(tenant, {"title": "About", "status": "published", "content": "<p>Hi</p>"})


@pytest.fixture
def draft(tenant):
    return services.create_page(tenant, {"title": "Secret plans"})


@pytest.fixture
def menu(tenant):
    return Menu.objects.create(tenant=tenant, name="Main", slug="main", location="header")


# ---- pages ------------------------------------------------------------------

def test_staff_create_page(staff_client, tenant, staff_user):
    resp = staff_client.post(f"{BASE}/pages/", {"title": "Contact us", "status": "published"}, format="json")
    assert resp.status_code == 201, resp.json()
    body = resp.json()
    assert body["slug"] == "contact-us" and body["url"] == "/contact-us"
    assert body["author"]["email"] == staff_user.email
    page = Page.objects.get()
    assert page.tenant == tenant and page.published_at is not None


def test_scheduled_page_needs_time(staff_client):
    resp = staff_client.post(f"{BASE}/pages/", {"title": "Later", "status": "scheduled"}, format="json")
    assert resp.status_code == 400
    assert "scheduled_at" in resp.json()["errors"]


def test_public_sees_only_published_and_views_are_counted(public_client, published, draft):
    resp = public_client.get(f"{BASE}/pages/")
    assert resp.status_code == 200
    assert [p["title"] for p in resp.json()["results"]] == ["About"]
    assert "content" not in resp.json()["results"][0]

    assert public_client.get(f"{BASE}/pages/{draft.pk}/").status_code == 404
    assert public_client.get(f"{BASE}/pages/{published.pk}/").json()["content"] == "<p>Hi</p>"
    published.refresh_from_db()
    assert published.view_count == 1


def test_public_cannot_write_or_analyse(public_client, published):
    assert public_client.post(f"{BASE}/pages/", {"title": "x"}, format="json").status_code in (401, 403)
    assert public_client.get(f"{BASE}/pages/{published.pk}/seo-analysis/").status_code in (401, 403)


def test_pages_of_other_tenants_are_invisible(staff_client, other_tenant):
    foreign = services.create_page(other_tenant, {"title": "Theirs"})
    assert staff_client.get(f"{BASE}/pages/{foreign.pk}/").status_code == 404


def test_publish_actions(staff_client, draft, published):
    resp = staff_client.post(f"{BASE}/pages/{draft.pk}/publish/")
    assert resp.status_code == 200
    assert resp.json()["page"]["status"] == "published"

    resp = staff_client.post(f"{BASE}/pages/{published.pk}/publish/")
    assert resp.status_code == 422
    body = resp.json()
    assert body["success"] is False
    assert body["message"] == "Page is already published."

    resp = staff_client.post(f"{BASE}/pages/{published.pk}/schedule/", {"scheduled_at": "2000-01-01T00:00:00Z"},
                             format="json")
    assert resp.status_code == 422
    assert "scheduled_at" in resp.json()["errors"]


def test_duplicate_and_seo(staff_client, published):
    resp = staff_client.post(f"{BASE}/pages/{published.pk}/duplicate/", {}, format="json")
    assert resp.status_code == 201
    assert resp.json()["page"]["title"] == "About (Copy)"

    seo = staff_client.get(f"{BASE}/pages/{published.pk}/seo-analysis/").json()
    assert "Missing meta title" in seo["issues"]


def test_bulk_publish_skips_foreign_and_malformed_ids(staff_client, draft, other_tenant):
    foreign = services.create_page(other_tenant, {"title": "Theirs"})
    resp = staff_client.post(f"{BASE}/pages/bulk/",
                             {"ids": [str(draft.pk), str(foreign.pk), "junk"], "action": "publish"}, format="json")
    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 1 and body["skipped"] == 2
    assert body["message"] == "Successfully processed 1 pages."
    foreign.refresh_from_db()
    assert foreign.status == "draft"


# ---- templates --------------------------------------------------------------

def test_template_in_use_returns_422(staff_client, tenant):
    template = services.create_template(tenant, {"name": "Blog"})
    services.create_page(tenant, {"title": "Post", "template": template})
    resp = staff_client.delete(f"{BASE}/templates/{template.pk}/")
    assert resp.status_code == 422
    assert resp.json()["errors"] == {"template": ["Cannot delete template that is in use by pages."]}


def test_template_import_inline_and_set_default(staff_client):
    resp = staff_client.post(f"{BASE}/templates/import/",
                             {"data": {"name": "Landing", "content": "<main></main>"}}, format="json")
    assert resp.status_code == 201, resp.json()
    template_id = resp.json()["template"]["id"]

    resp = staff_client.post(f"{BASE}/templates/{template_id}/set-default/")
    assert resp.json()["template"]["is_default"] is True

    export = staff_client.get(f"{BASE}/templates/{template_id}/export/")
    assert export["Content-Disposition"] == 'attachment; filename="landing.json"'
    assert export.json()["name"] == "Landing"


# ---- media ------------------------------------------------------------------

def test_upload_media(staff_client, tenant):
    files = [SimpleUploadedFile("a.png", b"png", content_type="image/png"),
             SimpleUploadedFile("b.pdf", b"pdf", content_type="application/pdf")]
    resp = staff_client.post(f"{BASE}/media/", {"files": files, "alt_text": "Alt"}, format="multipart")
    assert resp.status_code == 201, resp.json()
    assert len(resp.json()["media"]) == 2
    assert Media.objects.filter(tenant=tenant, alt_text="Alt").count() == 2


def test_upload_of_disallowed_type_is_refused(staff_client):
    bad = SimpleUploadedFile("x.exe", b"MZ", content_type="application/x-msdownload")
    resp = staff_client.post(f"{BASE}/media/", {"files": [bad]}, format="multipart")
    assert resp.status_code == 422
    assert "files" in resp.json()["errors"]


def test_media_bulk_move(staff_client, tenant):
    from cms import media
    folder = media.create_folder(tenant, {"name": "Photos"})
    item = media.upload_media(tenant, [SimpleUploadedFile("a.png", b"png", content_type="image/png")])[0]
    resp = staff_client.post(f"{BASE}/media/bulk/", {"ids": [str(item.pk)], "action": "move",
                                                     "params": {"folder_id": str(folder.pk)}}, format="json")
    assert resp.status_code == 200
    item.refresh_from_db()
    assert item.folder == folder


# ---- menus ------------------------------------------------------------------

def test_menu_item_lifecycle(staff_client, menu):
    ids = []
    for title in ("Home", "Blog", "About"):
        resp = staff_client.post(f"{BASE}/menu-items/", {"menu": str(menu.pk), "title": title,
                                                          "url": f"/{title.lower()}"}, format="json")
        assert resp.status_code == 201, resp.json()
        ids.append(resp.json()["item"]["id"])

    resp = staff_client.post(f"{BASE}/menu-items/{ids[2]}/move/", {"parent_id": ids[0], "sort_order": 0},
                             format="json")
    assert resp.status_code == 200
    assert resp.json()["item"]["parent"] == ids[0]

    resp = staff_client.post(f"{BASE}/menu-items/{ids[0]}/move/", {"parent_id": ids[2], "sort_order": 0},
                             format="json")
    assert resp.status_code == 422
    assert resp.json()["success"] is False

    resp = staff_client.post(f"{BASE}/menu-items/reorder/", {"menu": str(menu.pk), "items": [
        {"id": ids[1], "parent_id": None, "sort_order": 0},
        {"id": "not-an-id", "sort_order": 1},
    ]}, format="json")
    assert resp.json()["processed"] == 1 and resp.json()["skipped"] == 1
    assert list(MenuItem.objects.filter(parent=None).order_by("sort_order").values_list("title", flat=True)) == [
        "Blog", "Home"]


def test_menu_item_requires_same_tenant_menu(staff_client, other_tenant):
    foreign = Menu.objects.create(tenant=other_tenant, name="Theirs", slug="theirs")
    resp = staff_client.post(f"{BASE}/menu-items/", {"menu": str(foreign.pk), "title": "x", "url": "/x"},
                             format="json")
    assert resp.status_code == 400
    assert "menu" in resp.json()["errors"]


def test_public_structure_and_location(public_client, menu):
    menus.create_item(menu, {"title": "Home", "url": "/"})
    menus.create_item(menu, {"title": "Account", "url": "/account", "require_auth": True})

    resp = public_client.get(f"{BASE}/menus/{menu.pk}/structure/")
    assert resp.status_code == 200
    assert [n["title"] for n in resp.json()["items"]] == ["Home"]

    resp = public_client.get(f"{BASE}/menus/location/header/")
    assert resp.json()["menu"]["slug"] == "main"
    assert public_client.get(f"{BASE}/menus/location/footer/").status_code == 404


def test_menu_create_export_import(staff_client, menu):
    menus.create_item(menu, {"title": "Home", "url": "/"})
    resp = staff_client.post(f"{BASE}/menus/", {"name": "Main"}, format="json")
    assert resp.status_code == 201
    assert resp.json()["slug"] == "main-1"

    exported = staff_client.get(f"{BASE}/menus/{menu.pk}/export/").json()
    resp = staff_client.post(f"{BASE}/menus/import/", {"data": exported}, format="json")
    assert resp.status_code == 201
    assert resp.json()["menu"]["item_count"] == 1


# ---- redirects --------------------------------------------------------------

def test_redirect_create_and_loop_refusal(staff_client):
    resp = staff_client.post(f"{BASE}/redirects/", {"from_url": "old/", "to_url": "/new"}, format="json")
    assert resp.status_code == 201, resp.json()
    assert resp.json()["from_url"] == "/old"

    resp = staff_client.post(f"{BASE}/redirects/", {"from_url": "/new", "to_url": "/old"}, format="json")
    assert resp.status_code == 422
    assert resp.json()["message"] == "This redirect would create a loop."


def test_redirect_test_endpoint(staff_client, tenant):
    redirects.save_redirect(tenant, {"from_url": "/a", "to_url": "/b"})
    redirects.save_redirect(tenant, {"from_url": "/b", "to_url": "/c"})
    body = staff_client.post(f"{BASE}/redirects/test/", {"url": "/a"}, format="json").json()
    assert body["found"] is True
    assert body["chain"] == ["/a", "/b", "/c"]
    assert body["redirect"]["to_url"] == "/b"


def test_redirect_csv_import_export(staff_client, tenant):
    csv_file = SimpleUploadedFile("r.csv", b"From,To\n/a,/b\n/a,/c\n", content_type="text/csv")
    resp = staff_client.post(f"{BASE}/redirects/import/", {"file": csv_file}, format="multipart")
    assert resp.status_code == 200
    body = resp.json()
    assert body["imported"] == 1 and body["errors"][0]["line"] == 3

    resp = staff_client.get(f"{BASE}/redirects/export/")
    assert resp["Content-Type"] == "text/csv"
    content = b"".join(resp.streaming_content).decode()
    assert content.splitlines()[1].startswith("/a,/b,301")


def test_redirect_bulk_and_statistics(staff_client, tenant):
    r = redirects.save_redirect(tenant, {"from_url": "/a", "to_url": "/b"})
    resp = staff_client.post(f"{BASE}/redirects/bulk/", {"ids": [str(r.pk)], "action": "deactivate"},
                             format="json")
    assert resp.json()["message"] == "Successfully processed 1 redirects."
    assert not Redirect.objects.get().is_active
    assert staff_client.get(f"{BASE}/redirects/statistics/").json()["inactive"] == 1


# ---- sitemap / analytics ----------------------------------------------------

def test_sitemap_endpoints(staff_client, published):
    assert staff_client.get(f"{BASE}/sitemap/download/").status_code == 404
    assert staff_client.get(f"{BASE}/sitemap/").json()["exists"] is False

    resp = staff_client.post(f"{BASE}/sitemap/generate/")
    assert resp.json()["page_count"] == 1

    status = staff_client.get(f"{BASE}/sitemap/").json()
    assert status["exists"] is True and status["page_count"] == 1
    assert staff_client.get(f"{BASE}/sitemap/validate/").json()["valid"] is True
    download = staff_client.get(f"{BASE}/sitemap/download/")
    assert download.status_code == 200 and download["Content-Type"] == "application/xml"


def test_sitemap_endpoints_need_staff(public_client):
    assert public_client.post(f"{BASE}/sitemap/generate/").status_code in (401, 403)


def test_analytics(staff_client, published, draft):
    body = staff_client.get(f"{BASE}/analytics/", {"days": 7}).json()
    assert body["period_days"] == 7
    assert body["pages"]["total"] == 2
    assert body["pages"]["by_status"]["published"] == 1

    resp = staff_client.get(f"{BASE}/analytics/", {"format": "csv"})
    assert resp.status_code == 200
    lines = resp.content.decode().splitlines()
    assert lines[0] == "title,slug,status,views,published_at,updated_at"
    assert len(lines) == 3


@pytest.mark.parametrize("method,path", [
    ("get", "/sitemap/"),
    ("post", "/sitemap/generate/"),
    ("get", "/sitemap/validate/"),
    ("post", "/sitemap/submit/"),
    ("get", "/sitemap/download/"),
    ("get", "/analytics/"),
    ("get", "/analytics/?format=csv"),
    ("get", "/templates/"),
])
def test_unknown_tenant_is_forbidden(staff_user, method, path):
    client = APIClient()
    client.force_authenticate(staff_user)
    client.credentials(HTTP_X_TENANT_ID="no-such-tenant")
    resp = getattr(client, method)(f"{BASE}{path}")
    assert resp.status_code == 403
    if "format=csv" not in path:
        assert resp.json()["message"] == "Missing tenant context"
