"""
XML sitemap per tenant: built from published pages plus the configured
static routes, kept in default storage, validated against the sitemaps.org
limits and announced to search engines.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode
from xml.etree import ElementTree as ET

import requests
from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.utils import timezone

from .models import Page

logger = logging.getLogger(__name__)

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"
MAX_URLS = 50000
MAX_SIZE_MB = 50
WARN_RATIO = 0.8
PING_TIMEOUT = 10


def storage_path(tenant) -> str:
    return f"cms/sitemaps/{tenant.slug}/sitemap.xml"


def absolute_url(path: str) -> str:
    base = getattr(settings, "SITE_BASE_URL", "http://localhost:8000").rstrip("/")
    return base + (path if path.startswith("/") else "/" + path)


def public_sitemap_url(tenant) -> str:
    site = getattr(settings, "CMS_SITE_TENANT", "")
    if site and site in (tenant.slug, str(tenant.pk)):
        return absolute_url("/sitemap.xml")
    return absolute_url("/sitemap.xml?" + urlencode({"tenant": tenant.slug}))


def change_frequency(page: Page, now=None) -> str:
    days = ((now or timezone.now()) - page.updated_at).days
    if days <= 1:
        return "daily"
    if days <= 7:
        return "weekly"
    if days <= 30:
        return "monthly"
    return "yearly"


def page_priority(page: Page) -> str:
    if page.is_homepage or page.slug == "home":
        return "1.0"
    if page.view_count > 1000:
        return "0.9"
    if page.view_count > 500:
        return "0.8"
    if page.view_count > 100:
        return "0.7"
    return "0.6"


def _add_url(root, loc: str, lastmod, changefreq: str, priority: str) -> None:
    url = ET.SubElement(root, "url")
    ET.SubElement(url, "loc").text = absolute_url(loc)
    ET.SubElement(url, "lastmod").text = lastmod.isoformat() if hasattr(lastmod, "isoformat") else str(lastmod)
    ET.SubElement(url, "changefreq").text = changefreq
    ET.SubElement(url, "priority").text = priority


def build_sitemap(tenant) -> bytes:
    now = timezone.now()
    root = ET.Element("urlset", xmlns=SITEMAP_NS)
    _add_url(root, "/", now, "daily", "1.0")
    seen = {"/"}
    pages = Page.objects.filter(tenant=tenant, status="published").order_by("-updated_at")
    for page in pages.only("slug", "is_homepage", "view_count", "updated_at"):
        if page.path in seen:
            continue
        seen.add(page.path)
        _add_url(root, page.path, page.updated_at, change_frequency(page, now), page_priority(page))
    for route in getattr(settings, "CMS_SITEMAP_STATIC_ROUTES", []):
        path = route.get("path") or route.get("url")
        if not path or path in seen:
            continue
        seen.add(path)
        _add_url(root, path, route.get("lastmod") or now, route.get("changefreq", "monthly"),
                 route.get("priority", "0.5"))
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def generate_sitemap(tenant) -> Dict[str, Any]:
    xml = build_sitemap(tenant)
    path = storage_path(tenant)
    if default_storage.exists(path):
        default_storage.delete(path)
    default_storage.save(path, ContentFile(xml))
    page_count = Page.objects.filter(tenant=tenant, status="published").count()
    logger.info("sitemap for %s regenerated (%d pages, %d bytes)", tenant.slug, page_count, len(xml))
    return {
        "success": True,
        "message": f"Sitemap generated successfully with {page_count} pages.",
        "url": public_sitemap_url(tenant),
        "page_count": page_count,
        "generated_at": timezone.now().isoformat(),
    }


def read_sitemap(tenant) -> Optional[bytes]:
    path = storage_path(tenant)
    if not default_storage.exists(path):
        return None
    with default_storage.open(path, "rb") as fh:
        return fh.read()


def load_sitemap(tenant) -> bytes:
    """Stored sitemap, generated on first use."""
    xml = read_sitemap(tenant)
    if xml is None:
        generate_sitemap(tenant)
        xml = read_sitemap(tenant) or build_sitemap(tenant)
    return xml


def last_generated(tenant):
    path = storage_path(tenant)
    if not default_storage.exists(path):
        return None
    try:
        return default_storage.get_modified_time(path)
    except NotImplementedError:
        return None


def validate_sitemap(tenant) -> Dict[str, Any]:
    xml = read_sitemap(tenant)
    if xml is None:
        return {"valid": False, "message": "Sitemap does not exist."}
    try:
        root = ET.fromstring(xml)
    except ET.ParseError as exc:
        return {"valid": False, "message": f"Sitemap validation failed: {exc}"}

    url_count = len(root.findall(f"{{{SITEMAP_NS}}}url"))
    size = len(xml)
    size_mb = round(size / 1024 / 1024, 2)
    errors: List[str] = []
    warnings: List[str] = []
    if url_count > MAX_URLS:
        errors.append(f"Too many URLs ({url_count}/{MAX_URLS})")
    elif url_count > MAX_URLS * WARN_RATIO:
        warnings.append(f"Approaching URL limit ({url_count}/{MAX_URLS})")
    if size_mb > MAX_SIZE_MB:
        errors.append(f"File too large ({size_mb}MB/{MAX_SIZE_MB}MB)")
    elif size_mb > MAX_SIZE_MB * WARN_RATIO:
        warnings.append(f"Approaching size limit ({size_mb}MB/{MAX_SIZE_MB}MB)")

    return {
        "valid": not errors,
        "message": "Sitemap is valid." if not errors else "Sitemap exceeds the sitemap limits.",
        "stats": {"url_count": url_count, "file_size": size, "file_size_mb": size_mb},
        "errors": errors,
        "warnings": warnings,
    }


def ping_search_engine(endpoint: str, sitemap_url: str) -> Dict[str, Any]:
    try:
        resp = requests.get(endpoint, params={"sitemap": sitemap_url}, timeout=PING_TIMEOUT)
    except requests.RequestException as exc:
        logger.warning("sitemap ping to %s failed: %s", endpoint, exc)
        return {"success": False, "message": f"Request error: {exc}"}
    ok = resp.status_code == 200
    return {
        "success": ok,
        "http_code": resp.status_code,
        "message": "Successfully submitted" if ok else "Submission failed",
    }


def submit_sitemap(tenant) -> Dict[str, Any]:
    url = public_sitemap_url(tenant)
    results = {
        name: ping_search_engine(endpoint, url)
        for name, endpoint in getattr(settings, "CMS_SITEMAP_PING_URLS", {}).items()
    }
    return {"success": True, "message": "Sitemap submitted to search engines.", "url": url, "results": results}
