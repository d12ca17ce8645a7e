from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import (
    CMSAnalyticsView, MediaFolderViewSet, MediaViewSet, MenuItemViewSet, MenuViewSet, PageViewSet,
    RedirectViewSet, SitemapDownloadView, SitemapGenerateView, SitemapStatusView, SitemapSubmitView,
    SitemapValidateView, TemplateViewSet,
)

router = DefaultRouter()
router.register(r"pages", PageViewSet, basename="cms-page")
router.register(r"templates", TemplateViewSet, basename="cms-template")
router.register(r"media-folders", MediaFolderViewSet, basename="cms-media-folder")
router.register(r"media", MediaViewSet, basename="cms-media")
router.register(r"menus", MenuViewSet, basename="cms-menu")
router.register(r"menu-items", MenuItemViewSet, basename="cms-menu-item")
router.register(r"redirects", RedirectViewSet, basename="cms-redirect")

urlpatterns = [
    path("sitemap/", SitemapStatusView.as_view(), name="cms-sitemap"),
    path("sitemap/generate/", SitemapGenerateView.as_view(), name="cms-sitemap-generate"),
    path("sitemap/validate/", SitemapValidateView.as_view(), name="cms-sitemap-validate"),
    path("sitemap/submit/", SitemapSubmitView.as_view(), name="cms-sitemap-submit"),
    path("sitemap/download/", SitemapDownloadView.as_view(), name="cms-sitemap-download"),
    path("analytics/", CMSAnalyticsView.as_view(), name="cms-analytics"),
    path("", include(router.urls)),
]
