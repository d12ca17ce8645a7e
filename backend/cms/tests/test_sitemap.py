from datetime import timedelta
from unittest import mock
from xml.etree import ElementTree as ET

import pytest
import requests
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.utils import timezone

from cms import services, sitemap
from cms.models import Page
from cms.tasks import regenerate_sitemaps

pytestmark = pytest.mark.django_db

NS = {"sm": sitemap.SITEMAP_NS}


@pytest.fixture(autouse=True)
def _static_routes(settings):
    settings.SITE_BASE_URL = "https://acme.test"
    settings.CMS_SITEMAP_STATIC_ROUTES = [{"path": "/contact", "changefreq": "monthly", "priority": "0.7"}]


def locs(xml):
    return [el.text for el in ET.fromstring(xml).findall("sm:url/sm:loc", NS)]


def test_build_lists_root_published_pages_and_static_routes(tenant, other_tenant):
    services.create_page(tenant, {"title": "Pricing", "status": "published"})
    services.create_page(tenant, {"title": "Home", "status": "published"})
    services.create_page(tenant, {"title": "Draft", "status": "draft"})
    services.create_page(tenant, {"title": "Contact", "status": "published"})
    services.create_page(other_tenant, {"title": "Theirs", "status": "published"})

    urls = locs(sitemap.build_sitemap(tenant))
    assert urls[0] == "https://acme.test/"
    assert sorted(urls) == ["https://acme.test/", "https://acme.test/contact", "https://acme.test/pricing"]


def test_priority_and_change_frequency(tenant):
    now = timezone.now()
    p = Page(tenant=tenant, slug="guide", view_count=600, updated_at=now - timedelta(days=3))
    assert sitemap.page_priority(p) == "0.8"
    assert sitemap.change_frequency(p, now) == "weekly"
    p.is_homepage = True
    assert sitemap.page_priority(p) == "1.0"
    p.updated_at = now - timedelta(days=90)
    assert sitemap.change_frequency(p, now) == "yearly"


def test_generate_stores_and_validates(tenant):
    services.create_page(tenant, {"title": "Blog", "status": "published"})
    result = sitemap.generate_sitemap(tenant)
    assert result["success"] is True
    assert result["message"] == "Sitemap generated successfully with 1 pages."
    assert result["url"] == "https://acme.test/sitemap.xml?tenant=acme"
    assert default_storage.exists("cms/sitemaps/acme/sitemap.xml")

    check = sitemap.validate_sitemap(tenant)
    assert check["valid"] is True
    assert check["message"] == "Sitemap is valid."
    assert check["stats"]["url_count"] == 3
    assert check["errors"] == [] and check["warnings"] == []


def test_validate_missing_and_broken(tenant):
    assert sitemap.validate_sitemap(tenant) == {"valid": False, "message": "Sitemap does not exist."}
    default_storage.save(sitemap.storage_path(tenant), ContentFile(b"<urlset><url>"))
    result = sitemap.validate_sitemap(tenant)
    assert result["valid"] is False
    assert result["message"].startswith("Sitemap validation failed:")


def test_validate_warns_near_url_limit(tenant, monkeypatch):
    monkeypatch.setattr(sitemap, "MAX_URLS", 5)
    for i in range(3):
        services.create_page(tenant, {"title": f"Page {i}", "status": "published"})
    sitemap.generate_sitemap(tenant)
    result = sitemap.validate_sitemap(tenant)
    assert result["valid"] is True
    assert result["warnings"] == ["Approaching URL limit (5/5)"]

    services.create_page(tenant, {"title": "One more", "status": "published"})
    sitemap.generate_sitemap(tenant)
    assert sitemap.validate_sitemap(tenant)["errors"] == ["Too many URLs (6/5)"]


def test_site_tenant_gets_plain_url(tenant, settings):
    settings.CMS_SITE_TENANT = "acme"
    assert sitemap.public_sitemap_url(tenant) == "https://acme.test/sitemap.xml"


def test_submit_pings_every_engine_and_soft_fails(tenant, settings):
    settings.CMS_SITEMAP_PING_URLS = {"google": "https://g.test/ping", "bing": "https://b.test/ping"}

    def fake_get(url, params=None, timeout=None):
        if url.startswith("https://b."):
            raise requests.ConnectionError("unreachable")
        return mock.Mock(status_code=200)

    with mock.patch("cms.sitemap.requests.get", side_effect=fake_get) as get:
        result = sitemap.submit_sitemap(tenant)

    assert result["success"] is True
    assert result["results"]["google"] == {"success": True, "http_code": 200, "message": "Successfully submitted"}
    assert result["results"]["bing"]["success"] is False
    assert result["results"]["bing"]["message"].startswith("Request error:")
    get.assert_any_call("https://g.test/ping", params={"sitemap": result["url"]}, timeout=sitemap.PING_TIMEOUT)


def test_daily_task_regenerates_tenants_with_published_pages(tenant, other_tenant):
    services.create_page(tenant, {"title": "Live", "status": "published"})
    services.create_page(other_tenant, {"title": "Draft"})
    assert regenerate_sitemaps.delay().get() == {"generated": 1, "failed": 0}
    assert default_storage.exists(sitemap.storage_path(tenant))
    assert not default_storage.exists(sitemap.storage_path(other_tenant))


def test_public_sitemap_view(client, tenant, settings):
    services.create_page(tenant, {"title": "Team", "status": "published"})
    assert client.get("/sitemap.xml").status_code == 404

    resp = client.get("/sitemap.xml", {"tenant": "acme"})
    assert resp.status_code == 200
    assert resp["Content-Type"] == "application/xml"
    assert resp["Cache-Control"] == "public, max-age=3600"
    assert "https://acme.test/team" in locs(resp.content)

    settings.CMS_SITE_TENANT = "acme"
    assert client.get("/sitemap.xml").status_code == 200
