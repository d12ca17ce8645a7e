"""
Pages and templates: slugs, publishing workflow, duplication, SEO analysis,
template defaults and import/export.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import F
from django.utils import timezone
from django.utils.html import strip_tags

from common.exceptions import BusinessRuleError, ResourceInUseError
from common.trees import check_parent_assignment

from .models import MenuItem, Page, Template
from .utils import unique_slug

logger = logging.getLogger(__name__)

PAGE_FIELDS = (
    "title", "content", "excerpt", "meta_title", "meta_description", "meta_keywords", "canonical_url",
    "og_image", "language", "template", "parent",
)
PAGE_BULK_ACTIONS = ("publish", "unpublish", "archive", "delete")
TEMPLATE_FIELDS = ("name", "description", "content", "fields", "settings", "category", "is_active")
TEMPLATE_EXPORT_VERSION = "1.0"


def _refresh_sitemap(tenant) -> None:
    from .tasks import regenerate_sitemap

    transaction.on_commit(lambda: regenerate_sitemap.delay(str(tenant.pk)))


def _check_page_parent(page: Page, parent) -> None:
    if parent is None:
        return
    if parent.tenant_id != page.tenant_id:
        raise BusinessRuleError("Parent page belongs to another tenant.", field="parent")
    check_parent_assignment(page, parent.pk, label="page")


def _clear_other_homepages(page: Page) -> None:
    Page.objects.filter(tenant_id=page.tenant_id, is_homepage=True).exclude(pk=page.pk).update(is_homepage=False)


# ---- pages ------------------------------------------------------------------

def create_page(tenant, data: Dict[str, Any], *, author=None) -> Page:
    page = Page(tenant=tenant, author=author)
    for key in PAGE_FIELDS:
        if key in data:
            setattr(page, key, data[key])
    page.slug = unique_slug(Page, tenant, data.get("slug") or data.get("title", ""))
    page.is_homepage = bool(data.get("is_homepage", False))
    _check_page_parent(page, data.get("parent"))

    status = data.get("status", "draft")
    with transaction.atomic():
        if status == "scheduled":
            page.save()
            schedule_page(page, data.get("scheduled_at"))
        else:
            page.status = status
            if status == "published":
                page.published_at = data.get("published_at") or timezone.now()
            page.save()
        if page.is_homepage:
            _clear_other_homepages(page)
    if page.status == "published":
        _refresh_sitemap(tenant)
    logger.info("page %s created (%s) for %s", page.slug, page.status, tenant.slug)
    return page


def update_page(page: Page, data: Dict[str, Any]) -> Page:
    if "parent" in data and data["parent"] != page.parent:
        _check_page_parent(page, data["parent"])

    if data.get("slug") and data["slug"] != page.slug:
        page.slug = unique_slug(Page, page.tenant, data["slug"], exclude_pk=page.pk)
    elif "title" in data and data["title"] != page.title and not data.get("slug"):
        page.slug = unique_slug(Page, page.tenant, data["title"], exclude_pk=page.pk)

    was_published = page.status == "published"
    for key in PAGE_FIELDS:
        if key in data:
            setattr(page, key, data[key])
    if "is_homepage" in data:
        page.is_homepage = bool(data["is_homepage"])

    with transaction.atomic():
        status = data.get("status")
        if not status or status == page.status:
            page.save()
        elif status == "published":
            publish_page(page)
        elif status == "archived":
            archive_page(page)
        elif status == "scheduled":
            schedule_page(page, data.get("scheduled_at"))
        else:
            page.status = status
            page.scheduled_at = None
            page.save()
        if page.is_homepage:
            _clear_other_homepages(page)
    if was_published or page.status == "published":
        _refresh_sitemap(page.tenant)
    return page


def publish_page(page: Page) -> Page:
    if page.status == "published":
        raise BusinessRuleError("Page is already published.", field="status")
    page.status = "published"
    page.published_at = page.published_at or timezone.now()
    page.scheduled_at = None
    page.save()
    _refresh_sitemap(page.tenant)
    logger.info("page %s published", page.slug)
    return page


def unpublish_page(page: Page) -> Page:
    if page.status != "published":
        raise BusinessRuleError("Page is not published.", field="status")
    page.status = "draft"
    page.save()
    _refresh_sitemap(page.tenant)
    return page


def schedule_page(page: Page, when) -> Page:
    if when is None or when <= timezone.now():
        raise BusinessRuleError("Scheduled time must be in the future.", field="scheduled_at")
    was_published = page.status == "published"
    page.status = "scheduled"
    page.scheduled_at = when
    page.save()
    if was_published:
        _refresh_sitemap(page.tenant)
    return page


def archive_page(page: Page) -> Page:
    was_published = page.status == "published"
    page.status = "archived"
    page.scheduled_at = None
    page.save()
    if was_published:
        _refresh_sitemap(page.tenant)
    return page


def delete_page(page: Page) -> None:
    """
    Child pages go with their parent. Menu items pointing at any removed page
    keep its old path as their URL and are switched off.
    """
    tenant, was_published = page.tenant, page.status == "published"
    removed, frontier = [page.pk], [page.pk]
    while frontier:
        frontier = list(Page.objects.filter(parent_id__in=frontier).values_list("pk", flat=True))
        removed.extend(frontier)
    with transaction.atomic():
        for item in MenuItem.objects.filter(page_id__in=removed).select_related("page"):
            item.url = item.url or item.page.path
            item.is_active = False
            item.save(update_fields=["url", "is_active", "updated_at"])
        page.delete()
    if was_published:
        _refresh_sitemap(tenant)


def duplicate_page(page: Page, *, author=None, title: Optional[str] = None) -> Page:
    copy = Page(
        tenant=page.tenant, author=author or page.author,
        title=title or f"{page.title} (Copy)",
        slug=unique_slug(Page, page.tenant, f"{page.slug}-copy"),
        status="draft", is_homepage=False,
        **{k: getattr(page, k) for k in PAGE_FIELDS if k != "title"},
    )
    copy.save()
    return copy


def record_view(page: Page) -> None:
    now = timezone.now()
    Page.objects.filter(pk=page.pk).update(view_count=F("view_count") + 1, last_viewed_at=now)
    page.view_count += 1
    page.last_viewed_at = now


def publish_scheduled_pages(now=None) -> int:
    now = now or timezone.now()
    due = Page.objects.filter(status="scheduled", scheduled_at__lte=now).select_related("tenant")
    processed = 0
    tenants = {}
    for page in due:
        page.status = "published"
        page.published_at = page.scheduled_at
        page.scheduled_at = None
        page.save(update_fields=["status", "published_at", "scheduled_at", "updated_at"])
        tenants[page.tenant_id] = page.tenant
        processed += 1
    for tenant in tenants.values():
        _refresh_sitemap(tenant)
    if processed:
        logger.info("published %d scheduled pages", processed)
    return processed


def bulk_pages(pages: List[Page], action: str) -> int:
    if action not in PAGE_BULK_ACTIONS:
        raise BusinessRuleError("Invalid bulk action.", field="action")
    processed = 0
    for page in pages:
        try:
            with transaction.atomic():
                if action == "publish":
                    publish_page(page)
                elif action == "unpublish":
                    unpublish_page(page)
                elif action == "archive":
                    archive_page(page)
                elif Page.objects.filter(pk=page.pk).exists():
                    delete_page(page)
                else:
                    continue
            processed += 1
        except BusinessRuleError as exc:
            logger.info("bulk %s skipped page %s: %s", action, page.pk, exc.message)
    return processed


_IMG = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_ALT = re.compile(r"\balt\s*=\s*([\"'])\s*\S", re.IGNORECASE)
_LINK = re.compile(r"<a\b", re.IGNORECASE)
_H1 = re.compile(r"<h1\b", re.IGNORECASE)


def seo_analysis(page: Page) -> Dict[str, Any]:
    """Score 0-100 with issues to fix and softer recommendations."""
    issues: List[str] = []
    tips: List[str] = []
    score = 0

    title = page.meta_title.strip()
    if not title:
        issues.append("Missing meta title")
        tips.append("Add a meta title (50-60 characters)")
    elif len(title) < 30:
        issues.append("Meta title too short")
        tips.append("Increase meta title length (50-60 characters)")
    elif len(title) > 60:
        issues.append("Meta title too long")
        tips.append("Reduce meta title length (50-60 characters)")
    else:
        score += 20

    desc = page.meta_description.strip()
    if not desc:
        issues.append("Missing meta description")
        tips.append("Add a meta description (150-160 characters)")
    elif len(desc) < 120:
        issues.append("Meta description too short")
        tips.append("Increase meta description length (150-160 characters)")
    elif len(desc) > 160:
        issues.append("Meta description too long")
        tips.append("Reduce meta description length (150-160 characters)")
    else:
        score += 20

    words = len(strip_tags(page.content).split())
    if words < 300:
        issues.append("Content too short")
        tips.append("Add more content (minimum 300 words)")
    else:
        score += 20

    if len(page.slug) > 75:
        issues.append("URL slug too long")
        tips.append("Shorten URL slug")
    else:
        score += 10

    if page.meta_keywords.strip():
        score += 10
    else:
        tips.append("Consider adding meta keywords")

    h1_count = len(_H1.findall(page.content))
    if h1_count > 1:
        issues.append("More than one H1 heading")
        tips.append("Use a single H1 heading per page")

    images = _IMG.findall(page.content)
    missing_alt = sum(1 for tag in images if not _ALT.search(tag))
    if not images:
        tips.append("Consider adding images to improve engagement")
    elif missing_alt:
        issues.append(f"{missing_alt} image(s) without alt text")
        tips.append("Describe every image with alt text")
    else:
        score += 10

    if _LINK.search(page.content):
        score += 10
    else:
        tips.append("Consider adding internal links")

    return {
        "score": score,
        "word_count": words,
        "headings": {"h1": h1_count},
        "images": {"count": len(images), "missing_alt": missing_alt},
        "issues": issues,
        "recommendations": tips,
    }


# ---- templates --------------------------------------------------------------

def create_template(tenant, data: Dict[str, Any], *, user=None) -> Template:
    template = Template(tenant=tenant, created_by=user)
    for key in TEMPLATE_FIELDS:
        if key in data:
            setattr(template, key, data[key])
    template.slug = unique_slug(Template, tenant, data.get("slug") or data.get("name", ""))
    with transaction.atomic():
        template.save()
        if data.get("is_default"):
            set_default_template(template)
    return template


def update_template(template: Template, data: Dict[str, Any]) -> Template:
    for key in TEMPLATE_FIELDS:
        if key in data:
            setattr(template, key, data[key])
    if data.get("slug") and data["slug"] != template.slug:
        template.slug = unique_slug(Template, template.tenant, data["slug"], exclude_pk=template.pk)
    if template.is_default and not template.is_active:
        raise BusinessRuleError("The default template cannot be deactivated.", field="is_active")
    template.save()
    return template


def set_default_template(template: Template) -> Template:
    if not template.is_active:
        raise BusinessRuleError("Inactive templates cannot be the default.", field="is_default")
    with transaction.atomic():
        Template.objects.filter(tenant_id=template.tenant_id, is_default=True).exclude(pk=template.pk).update(
            is_default=False)
        template.is_default = True
        template.save(update_fields=["is_default", "updated_at"])
    return template


def duplicate_template(template: Template, *, name: Optional[str] = None, user=None) -> Template:
    data = {k: getattr(template, k) for k in TEMPLATE_FIELDS}
    data["name"] = name or f"{template.name} (Copy)"
    return create_template(template.tenant, data, user=user)


def export_template(template: Template) -> Dict[str, Any]:
    data = {k: getattr(template, k) for k in ("name", "description", "content", "fields", "settings", "category")}
    data.update(version=TEMPLATE_EXPORT_VERSION, exported_at=timezone.now().isoformat())
    return data


def import_template(tenant, data: Dict[str, Any], *, user=None) -> Template:
    if not isinstance(data, dict) or not data.get("name") or "content" not in data:
        raise BusinessRuleError("Invalid template file format.", field="file")
    return create_template(tenant, {
        "name": data["name"],
        "description": data.get("description") or "",
        "content": data["content"] or "",
        "fields": data.get("fields") or [],
        "settings": data.get("settings") or {},
        "category": data.get("category") or "custom",
        "is_active": True,
    }, user=user)


def template_usage(template: Template) -> Dict[str, Any]:
    pages = template.pages.all()
    return {
        "pages": pages.count(),
        "published_pages": pages.filter(status="published").count(),
        "recent_pages": list(pages.order_by("-updated_at").values("id", "title", "slug", "status")[:10]),
    }


def delete_template(template: Template) -> None:
    if template.pages.exists():
        raise ResourceInUseError("Cannot delete template that is in use by pages.", field="template")
    template.delete()
