from rest_framework import filters
from rest_framework.decorators import action
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from common.mixins import TenantScopedModelViewSet
from common.permissions import StaffTenantOnly
from .models import NotificationTemplate, NotificationDispatch
from .serializers import NotificationTemplateSerializer, NotificationDispatchSerializer
from .tasks import deliver_dispatch_async
from .utils import render_preview

READ_FILTERS = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]


class NotificationTemplateViewSet(TenantScopedModelViewSet):
    queryset = NotificationTemplate.objects.all()
    serializer_class = NotificationTemplateSerializer
    permission_classes = [StaffTenantOnly]
    filter_backends = READ_FILTERS
    search_fields = ["template_key", "subject", "body"]
    filterset_fields = ["template_key", "channel", "is_active"]

    @action(detail=True, methods=["post"])
    def preview(self, request, pk=None):
        rendered = render_preview(self.get_object(), request.data.get("payload") or {})
        return Response(rendered, status=400 if "error" in rendered else 200)


class NotificationDispatchViewSet(TenantScopedModelViewSet):
    queryset = NotificationDispatch.objects.all()
    serializer_class = NotificationDispatchSerializer
    permission_classes = [StaffTenantOnly]
    filter_backends = READ_FILTERS
    filterset_fields = ["channel", "status"]
    http_method_names = ["get", "post", "head", "options"]

    def create(self, request, *args, **kwargs):
        return Response({"success": False, "message": "Dispatches are created by the system.", "errors": {}}, status=405)

    @action(detail=True, methods=["post"])
    def retry(self, request, pk=None):
        d = self.get_object()
        if d.status != "failed":
            return Response({"success": False, "message": "Only failed dispatches can be retried.", "errors": {}}, status=400)
        d.status = "queued"
        d.error_message = None
        d.save(update_fields=["status", "error_message"])
        deliver_dispatch_async.delay(d.id)
        d.refresh_from_db()
        return Response(NotificationDispatchSerializer(d).data)
