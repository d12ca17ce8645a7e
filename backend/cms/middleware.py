import logging

from django.conf import settings
from django.http import HttpResponseRedirect

from common.mixins import lookup_tenant

from .redirects import record_hit, resolve

logger = logging.getLogger(__name__)


class RedirectMiddleware:
    """
    Answers 404s of the public site with the matching active CMS redirect.
    The site tenant comes from CMS_SITE_TENANT (slug or id); without one the
    middleware stays out of the way. API paths are never redirected.
    """
    skip_prefixes = ("/api/", "/admin/", "/static/")

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        response = self.get_response(request)
        if response.status_code != 404 or request.method not in ("GET", "HEAD"):
            return response
        if request.path.startswith(self.skip_prefixes):
            return response
        tenant = lookup_tenant(getattr(settings, "CMS_SITE_TENANT", ""))
        if tenant is None:
            return response

        url = request.get_full_path()
        found = resolve(tenant, url) or (resolve(tenant, request.path) if url != request.path else None)
        if found is None:
            return response
        redirect, target = found
        record_hit(redirect)
        logger.info("redirect %s -> %s (%s)", request.path, target, redirect.status_code)
        resp = HttpResponseRedirect(target)
        resp.status_code = redirect.status_code
        return resp
