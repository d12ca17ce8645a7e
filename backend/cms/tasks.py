import logging

from celery import shared_task

from platformapp.models import Tenant

from .models import Page

logger = logging.getLogger(__name__)


@shared_task
def publish_scheduled_pages():
    from .services import publish_scheduled_pages as publish

    return publish()


@shared_task
def regenerate_sitemap(tenant_id: str):
    from .sitemap import generate_sitemap

    tenant = Tenant.objects.filter(pk=tenant_id).first()
    if tenant is None:
        return None
    return generate_sitemap(tenant)["page_count"]


@shared_task
def regenerate_sitemaps():
    """Daily rebuild for every tenant that has published pages."""
    from .sitemap import generate_sitemap

    done = failed = 0
    tenant_ids = Page.objects.filter(status="published").values_list("tenant_id", flat=True).order_by().distinct()
    for tenant in Tenant.objects.filter(pk__in=list(tenant_ids)):
        try:
            generate_sitemap(tenant)
            done += 1
        except Exception:
            failed += 1
            logger.exception("sitemap regeneration failed for %s", tenant.slug)
    return {"generated": done, "failed": failed}
