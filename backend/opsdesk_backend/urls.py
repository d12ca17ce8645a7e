# File: backend/opsdesk_backend/urls.py
from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path
from django.views.generic import RedirectView
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerSplitView
from rest_framework.renderers import StaticHTMLRenderer, TemplateHTMLRenderer
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView, TokenVerifyView

from cms.views import sitemap_xml


def root(_r):
    return JsonResponse({
        "service": "opsdesk-backend",
        "docs": "/api/docs",
        "health": "/api/v1/core/healthz/",
    })


urlpatterns = [
    path("admin", RedirectView.as_view(url="/admin/", permanent=False)),
    path("admin/", admin.site.urls),

    # API docs
    path("api/schema/", SpectacularAPIView.as_view(), name="schema"),
    path("api/docs/", SpectacularSwaggerSplitView.as_view(
        url_name="schema",
        renderer_classes=[TemplateHTMLRenderer, StaticHTMLRenderer]
    ), name="swagger-ui"),

    # Feature routers
    path("api/v1/core/", include("core.urls")),
    path("api/v1/platform/", include("platformapp.urls")),
    path("api/v1/identity/", include("identity.urls")),
    path("api/v1/crm/", include("crm.urls")),
    path("api/v1/notifications/", include("notificationsapp.urls")),
    path("api/v1/support/", include("support.urls")),
    path("api/v1/cms/", include("cms.urls")),

    # SimpleJWT
    path("api/token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("api/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("api/token/verify/", TokenVerifyView.as_view(), name="token_verify"),

    path("sitemap.xml", sitemap_xml, name="sitemap-xml"),
    path("", root),
]
