from datetime import timedelta

from django.db.models import Count, Sum
from django.db.models.functions import TruncDate
from django.utils import timezone

from .media import media_stats
from .models import PAGE_STATUS, Menu, MenuItem, Page
from .redirects import redirect_stats


def content_overview(tenant, days: int = 30) -> dict:
    """Dashboard numbers for the CMS of one tenant over the last `days` days."""
    since = timezone.now() - timedelta(days=days)
    pages = Page.objects.filter(tenant=tenant)

    by_status = {key: 0 for key, _ in PAGE_STATUS}
    for row in pages.values("status").annotate(n=Count("id")).order_by("status"):
        by_status[row["status"]] = row["n"]

    created = {
        row["day"].isoformat(): row["n"]
        for row in pages.filter(created_at__gte=since).annotate(day=TruncDate("created_at"))
        .values("day").annotate(n=Count("id")).order_by("day")
    }
    published = {
        row["day"].isoformat(): row["n"]
        for row in pages.filter(published_at__gte=since).annotate(day=TruncDate("published_at"))
        .values("day").annotate(n=Count("id")).order_by("day")
    }

    return {
        "period_days": days,
        "pages": {
            "total": pages.count(),
            "by_status": by_status,
            "total_views": pages.aggregate(s=Sum("view_count"))["s"] or 0,
            "created_in_period": sum(created.values()),
            "published_in_period": sum(published.values()),
            "top_pages": list(pages.filter(status="published").order_by("-view_count")
                              .values("id", "title", "slug", "view_count")[:10]),
            "without_meta": pages.filter(meta_description="").count(),
        },
        "daily": {"created": created, "published": published},
        "media": media_stats(tenant),
        "menus": {
            "total": Menu.objects.filter(tenant=tenant).count(),
            "active": Menu.objects.filter(tenant=tenant, is_active=True).count(),
            "items": MenuItem.objects.filter(tenant=tenant).count(),
        },
        "redirects": {k: v for k, v in redirect_stats(tenant).items()
                      if k in ("total", "active", "inactive", "used", "unused", "total_hits")},
    }


def pages_csv_rows(tenant):
    yield ["title", "slug", "status", "views", "published_at", "updated_at"]
    for page in Page.objects.filter(tenant=tenant).order_by("title").iterator(chunk_size=1000):
        yield [page.title, page.slug, page.status, page.view_count,
               page.published_at.isoformat() if page.published_at else "", page.updated_at.isoformat()]
