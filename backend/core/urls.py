from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import healthz, VersionView, DeepHealthView, SettingViewSet

router = DefaultRouter()
router.register(r'settings', SettingViewSet, basename="core-setting")

urlpatterns = [
    path('healthz/', healthz, name="core-healthz"),
    path('version/', VersionView.as_view(), name="core-version"),
    path('deep-health/', DeepHealthView.as_view(), name="core-deep-health"),
    path('', include(router.urls)),
]
