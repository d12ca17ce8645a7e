import csv
import io
import json
import logging

from django.http import Http404, HttpResponse, StreamingHttpResponse
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.parsers import FormParser, JSONParser, MultiPartParser
from rest_framework.renderers import JSONRenderer
from rest_framework.response import Response
from rest_framework.views import APIView
from django_filters.rest_framework import DjangoFilterBackend

from django.conf import settings

from common.mixins import AuditedActionsMixin, BulkActionMixin, TenantScopedModelViewSet, lookup_tenant, require_tenant
from common.permissions import PublicReadStaffWrite, StaffTenantOnly, is_staff_user
from common.renderers import CSVRenderer
from common.serializers import BulkSerializer
from . import analytics, media, menus, redirects, services, sitemap
from .models import Media, MediaFolder, Menu, MenuItem, Page, Redirect, Template
from .serializers import (
    JSONImportSerializer, MediaFolderSerializer, MediaSerializer, MediaUploadSerializer, MenuItemMoveSerializer,
    MenuItemSerializer, MenuReorderSerializer, MenuSerializer, PageDuplicateSerializer, PageListSerializer,
    PageScheduleSerializer, PageSerializer, RedirectImportSerializer, RedirectSerializer, TemplateSerializer,
)
from .utils import unique_slug

logger = logging.getLogger(__name__)

FILTERS = [DjangoFilterBackend, SearchFilter, OrderingFilter]


def _ok(**payload):
    return Response({"success": True, **payload})


def _read_json_payload(validated):
    if validated.get("data"):
        return validated["data"]
    try:
        return json.loads(validated["file"].read().decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError({"file": ["The file is not valid JSON."]})


def _json_attachment(payload, filename):
    resp = Response(payload)
    resp["Content-Disposition"] = f'attachment; filename="{filename}"'
    return resp


def _days(request, default=30):
    try:
        return max(1, min(int(request.query_params.get("days", default)), 365))
    except ValueError:
        raise ValidationError({"days": ["Must be an integer."]})


# -----------------------------
# Pages
# -----------------------------

class PageViewSet(BulkActionMixin, AuditedActionsMixin, TenantScopedModelViewSet):
    """
    Staff manage pages; visitors with the tenant header read published ones
    (and each read counts as a view).
    """
    queryset = Page.objects.select_related("author", "template", "parent")
    serializer_class = PageSerializer
    permission_classes = [PublicReadStaffWrite]
    filter_backends = FILTERS
    filterset_fields = ["status", "language", "template", "parent", "is_homepage", "author"]
    search_fields = ["title", "content", "excerpt", "slug"]
    ordering_fields = ["title", "created_at", "updated_at", "published_at", "view_count"]
    default_ordering = ("-updated_at",)

    def get_serializer_class(self):
        return PageListSerializer if self.action == "list" else PageSerializer

    def get_queryset(self):
        qs = super().get_queryset()
        if not is_staff_user(self.request.user):
            qs = qs.filter(status="published")
        return qs

    def _page_response(self, page, code=status.HTTP_200_OK, **extra):
        page.refresh_from_db()
        return Response({"success": True, "page": PageSerializer(page, context=self.get_serializer_context()).data,
                         **extra}, status=code)

    def retrieve(self, request, *args, **kwargs):
        page = self.get_object()
        if not is_staff_user(request.user):
            services.record_view(page)
        return Response(self.get_serializer(page).data)

    def perform_create(self, serializer):
        serializer.instance = services.create_page(self.get_tenant(), dict(serializer.validated_data),
                                                   author=self.request.user)
        self._audit("create", serializer.instance, meta=self._request_meta())

    def perform_update(self, serializer):
        services.update_page(serializer.instance, dict(serializer.validated_data))
        self._audit("update", serializer.instance, meta=self._request_meta())

    def perform_destroy(self, instance):
        self._audit("delete", instance, meta=self._request_meta())
        services.delete_page(instance)

    @action(detail=True, methods=["post"])
    def publish(self, request, pk=None):
        return self._page_response(services.publish_page(self.get_object()), message="Page published successfully.")

    @action(detail=True, methods=["post"])
    def unpublish(self, request, pk=None):
        return self._page_response(services.unpublish_page(self.get_object()),
                                   message="Page unpublished successfully.")

    @action(detail=True, methods=["post"])
    def schedule(self, request, pk=None):
        ser = PageScheduleSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        page = services.schedule_page(self.get_object(), ser.validated_data["scheduled_at"])
        return self._page_response(page, message="Page scheduled successfully.")

    @action(detail=True, methods=["post"])
    def archive(self, request, pk=None):
        return self._page_response(services.archive_page(self.get_object()), message="Page archived successfully.")

    @action(detail=True, methods=["post"])
    def duplicate(self, request, pk=None):
        ser = PageDuplicateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        copy = services.duplicate_page(self.get_object(), author=request.user, title=ser.validated_data.get("title"))
        return self._page_response(copy, code=status.HTTP_201_CREATED, message="Page duplicated successfully.")

    @action(detail=True, methods=["get"], url_path="seo-analysis", permission_classes=[StaffTenantOnly])
    def seo_analysis(self, request, pk=None):
        return Response(services.seo_analysis(self.get_object()))

    @action(detail=False, methods=["post"])
    def bulk(self, request):
        ser = BulkSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        op = ser.validated_data["action"]
        pages, skipped = self.resolve_bulk_ids(ser.validated_data["ids"])
        processed = services.bulk_pages(pages, op)
        return Response(self.bulk_response(op, processed, skipped, noun="pages"))


# -----------------------------
# Templates
# -----------------------------

class TemplateViewSet(AuditedActionsMixin, TenantScopedModelViewSet):
    queryset = Template.objects.all()
    serializer_class = TemplateSerializer
    permission_classes = [StaffTenantOnly]
    filter_backends = FILTERS
    filterset_fields = ["category", "is_active", "is_default"]
    search_fields = ["name", "description"]
    default_ordering = ("name",)

    def perform_create(self, serializer):
        serializer.instance = services.create_template(self.get_tenant(), dict(serializer.validated_data),
                                                       user=self.request.user)
        self._audit("create", serializer.instance, meta=self._request_meta())

    def perform_update(self, serializer):
        services.update_template(serializer.instance, dict(serializer.validated_data))
        self._audit("update", serializer.instance, meta=self._request_meta())

    def perform_destroy(self, instance):
        services.delete_template(instance)

    @action(detail=True, methods=["post"], url_path="set-default")
    def set_default(self, request, pk=None):
        template = services.set_default_template(self.get_object())
        return _ok(message="Template set as default successfully.", template=self.get_serializer(template).data)

    @action(detail=True, methods=["post"])
    def duplicate(self, request, pk=None):
        copy = services.duplicate_template(self.get_object(), name=request.data.get("name") or None,
                                           user=request.user)
        return Response({"success": True, "template": self.get_serializer(copy).data}, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"])
    def export(self, request, pk=None):
        template = self.get_object()
        return _json_attachment(services.export_template(template), f"{template.slug}.json")

    @action(detail=False, methods=["post"], url_path="import", parser_classes=[MultiPartParser, FormParser, JSONParser])
    def import_template(self, request):
        ser = JSONImportSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        template = services.import_template(self.get_tenant(), _read_json_payload(ser.validated_data),
                                            user=request.user)
        return Response({"success": True, "message": "Template imported successfully.",
                         "template": self.get_serializer(template).data}, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"])
    def usage(self, request, pk=None):
        return Response(services.template_usage(self.get_object()))


# -----------------------------
# Media
# -----------------------------

class MediaFolderViewSet(TenantScopedModelViewSet):
    queryset = MediaFolder.objects.select_related("parent")
    serializer_class = MediaFolderSerializer
    permission_classes = [StaffTenantOnly]
    default_ordering = ("name",)

    def perform_create(self, serializer):
        serializer.instance = media.create_folder(self.get_tenant(), dict(serializer.validated_data))

    def perform_update(self, serializer):
        media.update_folder(serializer.instance, dict(serializer.validated_data))

    def destroy(self, request, *args, **kwargs):
        folder = self.get_object()
        delete_contents = str(request.query_params.get("delete_contents", "")).lower() in ("1", "true", "yes")
        result = media.delete_folder(folder, delete_contents=delete_contents)
        return _ok(message="Folder deleted successfully.", **result)


class MediaViewSet(BulkActionMixin, TenantScopedModelViewSet):
    """POST to the list uploads one or more files (multipart `files`)."""
    queryset = Media.objects.select_related("folder")
    serializer_class = MediaSerializer
    permission_classes = [StaffTenantOnly]
    parser_classes = [MultiPartParser, FormParser, JSONParser]
    filter_backends = FILTERS
    filterset_fields = ["folder", "mime_type"]
    search_fields = ["name", "original_name", "alt_text", "caption"]
    ordering_fields = ["created_at", "size", "name"]

    def create(self, request, *args, **kwargs):
        data = request.data
        payload = {
            "files": request.FILES.getlist("files") or request.FILES.getlist("file"),
            "folder": data.get("folder") or None,
            "alt_text": data.get("alt_text", ""),
            "caption": data.get("caption", ""),
            "tags": data.getlist("tags") if hasattr(data, "getlist") else data.get("tags", []),
        }
        ser = MediaUploadSerializer(data=payload, context=self.get_serializer_context())
        ser.is_valid(raise_exception=True)
        items = media.upload_media(self.get_tenant(), ser.validated_data["files"],
                                   folder=ser.validated_data.get("folder"), user=request.user,
                                   alt_text=ser.validated_data["alt_text"], caption=ser.validated_data["caption"],
                                   tags=ser.validated_data["tags"])
        return Response({"success": True, "message": "Files uploaded successfully.",
                         "media": self.get_serializer(items, many=True).data}, status=status.HTTP_201_CREATED)

    def perform_destroy(self, instance):
        media.delete_media(instance)

    @action(detail=False, methods=["post"])
    def bulk(self, request):
        ser = BulkSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        op, params = ser.validated_data["action"], ser.validated_data["params"]
        folder = None
        if op == "move" and params.get("folder_id"):
            folder = MediaFolder.objects.filter(tenant=self.get_tenant(), pk=params["folder_id"]).first()
            if folder is None:
                raise ValidationError({"params.folder_id": ["Unknown folder."]})
        items, skipped = self.resolve_bulk_ids(ser.validated_data["ids"])
        processed = media.bulk_media(items, op, folder=folder, tags=params.get("tags"))
        return Response(self.bulk_response(op, processed, skipped, noun="items"))

    @action(detail=False, methods=["get"])
    def stats(self, request):
        return Response(media.media_stats(self.get_tenant()))


# -----------------------------
# Menus
# -----------------------------

class MenuViewSet(BulkActionMixin, AuditedActionsMixin, TenantScopedModelViewSet):
    """Visitors may read active menus and their structure; staff manage them."""
    queryset = Menu.objects.all()
    serializer_class = MenuSerializer
    permission_classes = [PublicReadStaffWrite]
    filter_backends = FILTERS
    filterset_fields = ["location", "is_active"]
    search_fields = ["name", "description"]
    default_ordering = ("name",)

    def get_queryset(self):
        qs = super().get_queryset()
        if not is_staff_user(self.request.user):
            qs = qs.filter(is_active=True)
        return qs

    def perform_create(self, serializer):
        data = serializer.validated_data
        slug = unique_slug(Menu, self.get_tenant(), data.get("slug") or data["name"])
        serializer.save(tenant=self.get_tenant(), slug=slug)
        self._audit("create", serializer.instance, meta=self._request_meta())

    def perform_update(self, serializer):
        data = serializer.validated_data
        extra = {}
        if data.get("slug") and data["slug"] != serializer.instance.slug:
            extra["slug"] = unique_slug(Menu, self.get_tenant(), data["slug"], exclude_pk=serializer.instance.pk)
        elif "slug" in data and not data["slug"]:
            extra["slug"] = serializer.instance.slug
        serializer.save(**extra)
        self._audit("update", serializer.instance, meta=self._request_meta())

    @action(detail=True, methods=["get"])
    def structure(self, request, pk=None):
        menu = self.get_object()
        return Response({"menu": MenuSerializer(menu).data, "items": menus.menu_structure(menu, request.user)})

    @action(detail=False, methods=["get"], url_path=r"location/(?P<location>[\w-]+)")
    def by_location(self, request, location=None):
        menu = menus.active_menu_for_location(self.get_tenant(), location)
        if menu is None:
            raise Http404
        return Response({"menu": MenuSerializer(menu).data, "items": menus.menu_structure(menu, request.user)})

    @action(detail=True, methods=["get"], permission_classes=[StaffTenantOnly])
    def export(self, request, pk=None):
        menu = self.get_object()
        return _json_attachment(menus.export_menu(menu), f"menu-{menu.slug}.json")

    @action(detail=False, methods=["post"], url_path="import", parser_classes=[MultiPartParser, FormParser, JSONParser])
    def import_menu(self, request):
        ser = JSONImportSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        menu = menus.import_menu(self.get_tenant(), _read_json_payload(ser.validated_data))
        return Response({"success": True, "message": "Menu imported successfully.",
                         "menu": MenuSerializer(menu).data}, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"])
    def duplicate(self, request, pk=None):
        copy = menus.duplicate_menu(self.get_object(), name=request.data.get("name") or None)
        return Response({"success": True, "menu": MenuSerializer(copy).data}, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"])
    def bulk(self, request):
        ser = BulkSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        op = ser.validated_data["action"]
        if op not in ("activate", "deactivate", "delete"):
            raise ValidationError({"action": ["Must be one of activate, deactivate, delete."]})
        items, skipped = self.resolve_bulk_ids(ser.validated_data["ids"])
        for menu in items:
            self._audit(op, menu)
        ids = [m.pk for m in items]
        if op == "delete":
            Menu.objects.filter(pk__in=ids).delete()
        else:
            Menu.objects.filter(pk__in=ids).update(is_active=(op == "activate"))
        return Response(self.bulk_response(op, len(items), skipped, noun="menus"))


class MenuItemViewSet(BulkActionMixin, TenantScopedModelViewSet):
    """Writes go through cms.menus so sibling order stays dense and trees stay acyclic."""
    queryset = MenuItem.objects.select_related("menu", "page", "parent")
    serializer_class = MenuItemSerializer
    permission_classes = [StaffTenantOnly]
    filter_backends = FILTERS
    filterset_fields = ["menu", "parent", "is_active"]
    default_ordering = ("menu", "sort_order", "created_at")

    def _item_response(self, item, code=status.HTTP_200_OK, message=None):
        item.refresh_from_db()
        body = {"success": True, "item": MenuItemSerializer(item, context=self.get_serializer_context()).data}
        if message:
            body["message"] = message
        return Response(body, status=code)

    def create(self, request, *args, **kwargs):
        ser = self.get_serializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = dict(ser.validated_data)
        item = menus.create_item(data.pop("menu"), data)
        return self._item_response(item, status.HTTP_201_CREATED, "Menu item created successfully.")

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop("partial", False)
        item = self.get_object()
        ser = self.get_serializer(item, data=request.data, partial=partial)
        ser.is_valid(raise_exception=True)
        data = dict(ser.validated_data)
        data.pop("menu", None)
        data.pop("sort_order", None)
        menus.update_item(item, data)
        return self._item_response(item, message="Menu item updated successfully.")

    def perform_destroy(self, instance):
        menus.delete_item(instance)

    @action(detail=True, methods=["post"])
    def move(self, request, pk=None):
        ser = MenuItemMoveSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        item = menus.move_item(self.get_object(), ser.validated_data.get("parent_id") or None,
                               ser.validated_data["sort_order"])
        return self._item_response(item, message="Menu item moved successfully.")

    @action(detail=False, methods=["post"])
    def reorder(self, request):
        ser = MenuReorderSerializer(data=request.data, context=self.get_serializer_context())
        ser.is_valid(raise_exception=True)
        applied, skipped = menus.reorder_items(ser.validated_data["menu"], ser.validated_data["items"])
        return _ok(message="Menu items reordered successfully.", processed=applied, skipped=len(skipped),
                   skipped_ids=[str(s) for s in skipped if s is not None])

    @action(detail=False, methods=["post"])
    def bulk(self, request):
        ser = BulkSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        op = ser.validated_data["action"]
        items, skipped = self.resolve_bulk_ids(ser.validated_data["ids"])
        processed = menus.bulk_items(items, op)
        return Response(self.bulk_response(op, processed, skipped, noun="menu items"))


# -----------------------------
# Redirects
# -----------------------------

class RedirectViewSet(BulkActionMixin, AuditedActionsMixin, TenantScopedModelViewSet):
    queryset = Redirect.objects.all()
    serializer_class = RedirectSerializer
    permission_classes = [StaffTenantOnly]
    filter_backends = FILTERS
    filterset_fields = {"status_code": ["exact"], "is_active": ["exact"], "hit_count": ["exact", "gt"]}
    search_fields = ["from_url", "to_url", "description"]
    ordering_fields = ["from_url", "hit_count", "last_hit_at", "created_at"]
    default_ordering = ("from_url",)

    def perform_create(self, serializer):
        serializer.instance = redirects.save_redirect(self.get_tenant(), dict(serializer.validated_data),
                                                      user=self.request.user)
        self._audit("create", serializer.instance, meta=self._request_meta())

    def perform_update(self, serializer):
        redirects.save_redirect(self.get_tenant(), dict(serializer.validated_data), instance=serializer.instance)
        self._audit("update", serializer.instance, meta=self._request_meta())

    @action(detail=False, methods=["post"], url_path="test")
    def check_url(self, request):
        url = (request.data.get("url") or "").strip()
        if not url:
            raise ValidationError({"url": ["This field is required."]})
        result = redirects.inspect_url(self.get_tenant(), url)
        if result["found"]:
            result["redirect"] = RedirectSerializer(result["redirect"]).data
        return Response(result)

    @action(detail=False, methods=["get"])
    def statistics(self, request):
        return Response(redirects.redirect_stats(self.get_tenant()))

    @action(detail=False, methods=["post"], url_path="import", parser_classes=[MultiPartParser, FormParser])
    def import_csv(self, request):
        ser = RedirectImportSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            text = ser.validated_data["file"].read().decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ValidationError({"file": ["The file must be UTF-8 encoded CSV."]})
        result = redirects.import_csv(self.get_tenant(), text, has_headers=ser.validated_data["has_headers"],
                                      user=request.user)
        return _ok(**result)

    @action(detail=False, methods=["get"])
    def export(self, request):
        tenant = self.get_tenant()
        resp = StreamingHttpResponse(redirects.export_rows(tenant), content_type="text/csv")
        resp["Content-Disposition"] = f'attachment; filename="redirects-{tenant.slug}.csv"'
        return resp

    @action(detail=False, methods=["post"])
    def bulk(self, request):
        ser = BulkSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        op = ser.validated_data["action"]
        items, skipped = self.resolve_bulk_ids(ser.validated_data["ids"])
        processed = redirects.bulk_redirects(items, op)
        return Response(self.bulk_response(op, processed, skipped, noun="redirects"))


# -----------------------------
# Sitemap
# -----------------------------

class SitemapStatusView(APIView):
    permission_classes = [StaffTenantOnly]

    def get(self, request):
        tenant = require_tenant(request)
        generated = sitemap.last_generated(tenant)
        recent = (Page.objects.filter(tenant=tenant, status="published").order_by("-updated_at")
                  .values("id", "title", "slug", "updated_at")[:20])
        return Response({
            "exists": generated is not None or sitemap.read_sitemap(tenant) is not None,
            "last_generated": generated,
            "page_count": Page.objects.filter(tenant=tenant, status="published").count(),
            "recent_pages": list(recent),
            "sitemap_url": sitemap.public_sitemap_url(tenant),
        })


class SitemapGenerateView(APIView):
    permission_classes = [StaffTenantOnly]

    def post(self, request):
        return Response(sitemap.generate_sitemap(require_tenant(request)))


class SitemapValidateView(APIView):
    permission_classes = [StaffTenantOnly]

    def get(self, request):
        return Response(sitemap.validate_sitemap(require_tenant(request)))


class SitemapSubmitView(APIView):
    permission_classes = [StaffTenantOnly]

    def post(self, request):
        return Response(sitemap.submit_sitemap(require_tenant(request)))


class SitemapDownloadView(APIView):
    permission_classes = [StaffTenantOnly]

    def get(self, request):
        xml = sitemap.read_sitemap(require_tenant(request))
        if xml is None:
            raise Http404("Sitemap not found")
        resp = HttpResponse(xml, content_type="application/xml")
        resp["Content-Disposition"] = 'attachment; filename="sitemap.xml"'
        return resp


def sitemap_xml(request):
    """Public /sitemap.xml for the site tenant (or ?tenant=<slug>)."""
    tenant = lookup_tenant(request.GET.get("tenant") or getattr(settings, "CMS_SITE_TENANT", ""))
    if tenant is None:
        raise Http404("No site configured")
    resp = HttpResponse(sitemap.load_sitemap(tenant), content_type="application/xml")
    resp["Cache-Control"] = "public, max-age=3600"
    return resp


# -----------------------------
# Analytics
# -----------------------------

class CMSAnalyticsView(APIView):
    permission_classes = [StaffTenantOnly]
    renderer_classes = [JSONRenderer, CSVRenderer]

    def get(self, request):
        tenant = require_tenant(request)
        days = _days(request)
        if request.query_params.get("format") == "csv":
            buf = io.StringIO()
            csv.writer(buf).writerows(analytics.pages_csv_rows(tenant))
            resp = HttpResponse(buf.getvalue(), content_type="text/csv")
            resp["Content-Disposition"] = f'attachment; filename="cms-pages-{tenant.slug}.csv"'
            return resp
        return Response(analytics.content_overview(tenant, days=days))
