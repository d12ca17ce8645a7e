from django.conf import settings
from django.http import JsonResponse
from django.utils import timezone

from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import AllowAny

from common.mixins import AuditedActionsMixin, TenantScopedModelViewSet
from common.permissions import StaffTenantOnly
from .health import run_checks
from .models import Setting
from .serializers import SettingSerializer


def healthz(_request):
    return JsonResponse({"ok": True})


class VersionView(APIView):
    permission_classes = [AllowAny]

    def get(self, _):
        return Response({
            "ok": True,
            "version": str(getattr(settings, "SPECTACULAR_SETTINGS", {}).get("VERSION", "dev")),
            "debug": bool(settings.DEBUG),
            "time": timezone.now().isoformat(),
        })


class DeepHealthView(APIView):
    """
    GET /api/v1/core/deep-health/?db=1&cache=1&celery=1
    Component statuses; every check is opt-in.
    """
    permission_classes = [AllowAny]

    def get(self, request):
        names = [n for n in ("db", "cache", "celery") if request.query_params.get(n) == "1"]
        out = run_checks(names)
        body = {"ok": out["ok"], "time": timezone.now().isoformat()}
        body.update(out["checks"])
        return Response(body, status=200 if out["ok"] else 503)


class SettingViewSet(AuditedActionsMixin, TenantScopedModelViewSet):
    """Tenant-level runtime settings (SLA business hours, warning threshold...)."""
    queryset = Setting.objects.all()
    serializer_class = SettingSerializer
    permission_classes = [StaffTenantOnly]
    search_fields = ("key", "description")
    default_ordering = ("key",)
