from rest_framework.permissions import AllowAny
from rest_framework.views import APIView
from rest_framework.response import Response

from common.mixins import TenantScopedModelViewSet
from common.permissions import StaffTenantOnly
from .models import Tenant, AuditLog
from .serializers import TenantSerializer, AuditLogSerializer


class TenantResolveView(APIView):
    """Public: resolve tenant id by slug (UI bootstrapping by domain/slug)."""
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request):
        slug = (request.query_params.get("slug") or "").strip()
        if not slug:
            return Response({"success": False, "message": "slug required", "errors": {"slug": ["This field is required."]}}, status=400)
        t = Tenant.objects.filter(slug=slug, status="active").first()
        if t is None:
            return Response({"success": False, "message": "Not found.", "errors": {}}, status=404)
        return Response(TenantSerializer(t).data)


class AuditLogViewSet(TenantScopedModelViewSet):
    queryset = AuditLog.objects.all()
    serializer_class = AuditLogSerializer
    permission_classes = [StaffTenantOnly]
    search_fields = ("action", "entity", "entity_id")
    http_method_names = ["get", "head", "options"]
