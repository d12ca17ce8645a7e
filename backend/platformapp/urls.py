from django.urls import path, include
from rest_framework.routers import DefaultRouter
from .views import AuditLogViewSet, TenantResolveView

router = DefaultRouter()
router.register(r'auditlog', AuditLogViewSet, basename="auditlog")

urlpatterns = [
    path('tenant/resolve/', TenantResolveView.as_view(), name='tenant-resolve'),
    path('', include(router.urls)),
]
