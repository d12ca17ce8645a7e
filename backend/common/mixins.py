# backend/common/mixins.py
from __future__ import annotations

import logging
from typing import Iterable, Dict, Any, List, Optional, Tuple

from django.core.exceptions import FieldDoesNotExist, ValidationError as DjangoValidationError
from django.db.models import Q, Model
from django.utils.functional import cached_property
from rest_framework.viewsets import ModelViewSet
from rest_framework.pagination import PageNumberPagination
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import SAFE_METHODS

from platformapp.models import Tenant
from platformapp.services.audit import log_event

logger = logging.getLogger(__name__)

TENANT_HEADER = "HTTP_X_TENANT_ID"  # maps to X-Tenant-ID


# -----------------------------
# Pagination
# -----------------------------
class DefaultPagination(PageNumberPagination):
    page_size = 25
    page_size_query_param = "page_size"
    max_page_size = 200


# -----------------------------
# Base tenant-scoped MVSet
# -----------------------------
class TenantScopedModelViewSet(ModelViewSet):
    """
    Multi-tenant base ViewSet:

    - Reads tenant from `X-Tenant-ID` header or `?tenant=` query param.
    - If tenant is present, auto-filters queryset by `<tenant_field>_id=...`.
    - If tenant is missing:
        * reads (GET/HEAD/OPTIONS) -> empty set, unless `allow_public_list` is set
          and the action is list, in which case `public_filters` apply;
        * writes -> forbidden.
    - Writes inject the tenant server-side; a tenant in the payload is ignored.
    - Adds simple "q" search (icontains across `search_fields`) and "order" (comma-separated).
    - Applies simple exact filters from query params that match model fields.
    """
    pagination_class = DefaultPagination

    tenant_header = TENANT_HEADER
    tenant_query_param = "tenant"
    tenant_field = "tenant"

    allow_public_list = False
    public_filters: Dict[str, Any] = {"is_public": True, "is_active": True}

    search_fields: Iterable[str] = tuple()
    ordering_fields: Iterable[str] = tuple()
    default_ordering: Iterable[str] = ("-created_at",)

    # control params never treated as field filters
    reserved_params = {"q", "order", "page", "page_size", "search", "ordering", "format"}

    # ---- Tenant helpers ----
    def get_tenant_id(self) -> Optional[str]:
        req = self.request
        tid = req.META.get(self.tenant_header) or req.query_params.get(self.tenant_query_param)
        return str(tid) if tid else None

    @cached_property
    def current_tenant(self) -> Optional[Tenant]:
        return lookup_tenant(self.get_tenant_id())

    def get_tenant(self, request=None) -> Tenant:
        tenant = self.current_tenant
        if tenant is None:
            raise PermissionDenied("Missing tenant context")
        return tenant

    def get_serializer_context(self):
        ctx = super().get_serializer_context()
        ctx["tenant"] = self.current_tenant
        return ctx

    # ---- Queryset plumbing ----
    def _model_class(self) -> type[Model]:
        if getattr(self, "queryset", None) is not None:
            return self.queryset.model
        return self.get_serializer_class().Meta.model  # type: ignore[attr-defined]

    def _has_field(self, field_name: str) -> bool:
        try:
            self._model_class()._meta.get_field(field_name)
            return True
        except FieldDoesNotExist:
            return False

    def _apply_public_filters(self, qs):
        filters = {k: v for k, v in (self.public_filters or {}).items() if self._has_field(k)}
        return qs.filter(**filters) if filters else qs

    def _apply_tenant_filter(self, qs, tenant: Tenant):
        return qs.filter(**{f"{self.tenant_field}_id": tenant.id})

    def _apply_search(self, qs):
        q = self.request.query_params.get("q")
        if not q:
            return qs
        fields = tuple(self.search_fields) or tuple(
            f for f in ("name", "title", "description") if self._has_field(f)
        )
        if not fields:
            return qs
        cond = Q()
        for f in fields:
            cond |= Q(**{f"{f}__icontains": q})
        return qs.filter(cond)

    def _apply_ordering(self, qs):
        order_param = self.request.query_params.get("order")
        fields_allowed = set(self.ordering_fields or ())
        if order_param:
            items = [s.strip() for s in order_param.split(",") if s.strip()]
            cleaned = []
            for it in items:
                base = it[1:] if it.startswith("-") else it
                if (not fields_allowed and self._has_field(base)) or base in fields_allowed:
                    cleaned.append(it)
            if cleaned:
                return qs.order_by(*cleaned)
        return qs.order_by(*self.default_ordering) if self.default_ordering else qs

    def _apply_simple_filters(self, qs):
        """
        Any query param naming a real model field is applied as an exact filter.
        Explicit lookups work too (e.g. created_at__gte); `<field>__in=a,b,c` splits on commas.
        """
        ignore = self.reserved_params | {self.tenant_query_param}
        filters: Dict[str, Any] = {}
        for key, value in self.request.query_params.items():
            if key in ignore:
                continue
            base = key.split("__", 1)[0]
            if base == self.tenant_field or not self._has_field(base):
                continue
            if key.endswith("__in"):
                filters[key] = [v for v in value.split(",") if v != ""]
            else:
                filters[key] = value
        if not filters:
            return qs
        try:
            return qs.filter(**filters)
        except (ValueError, DjangoValidationError) as exc:
            raise ValidationError({"filters": [str(exc)]})

    def get_queryset(self):
        if getattr(self, "queryset", None) is not None:
            qs = self.queryset.all()
        else:
            qs = self._model_class().objects.all()

        tenant = self.current_tenant
        if tenant is None:
            if self.action == "list" and self.allow_public_list:
                qs = self._apply_public_filters(qs)
            elif self.request.method in SAFE_METHODS:
                return qs.none()
            else:
                raise PermissionDenied("Missing tenant context")
        else:
            qs = self._apply_tenant_filter(qs, tenant)

        qs = self._apply_simple_filters(qs)
        qs = self._apply_search(qs)
        qs = self._apply_ordering(qs)
        return qs

    # ---- Writes ----
    def perform_create(self, serializer):
        return serializer.save(**{self.tenant_field: self.get_tenant()})

    def perform_update(self, serializer):
        return serializer.save(**{self.tenant_field: self.get_tenant()})


def _looks_like_uuid(value: str) -> bool:
    return len(value) in (32, 36) and all(c in "0123456789abcdefABCDEF-" for c in value)


def lookup_tenant(value: Optional[str]) -> Optional[Tenant]:
    """Tenant by UUID or slug; None when missing or unknown."""
    if not value:
        return None
    try:
        return Tenant.objects.filter(Q(id=value) if _looks_like_uuid(value) else Q(slug=value)).first()
    except (ValueError, DjangoValidationError):
        return None


def request_tenant(request) -> Optional[Tenant]:
    """Tenant named by the X-Tenant-ID header or ?tenant= on a plain APIView request."""
    return lookup_tenant(request.META.get(TENANT_HEADER) or request.query_params.get("tenant"))


def require_tenant(request) -> Tenant:
    """Same lookup as `request_tenant`; a missing or unknown tenant is a 403."""
    tenant = request_tenant(request)
    if tenant is None:
        raise PermissionDenied("Missing tenant context")
    return tenant


# -----------------------------
# Auditing
# -----------------------------
class AuditedActionsMixin:
    """Attach to tenant-scoped ViewSets that should write AuditLog rows."""

    def _audit(self, action: str, obj, meta=None):
        tenant = getattr(obj, "tenant", None) or self.current_tenant
        if tenant is None:
            return
        user_id = getattr(self.request.user, "id", None)
        try:
            log_event(tenant=tenant, user_id=str(user_id) if user_id else None,
                      action=action, entity=f"{obj._meta.app_label}.{obj.__class__.__name__}",
                      entity_id=str(getattr(obj, "pk", "") or ""), meta=meta or {})
        except Exception:
            # audit failures never break the request
            logger.warning("audit write failed for %s %s", action, obj.__class__.__name__, exc_info=True)

    def _request_meta(self) -> Dict[str, Any]:
        return {"path": self.request.path, "method": self.request.method}

    def perform_create(self, serializer):
        obj = super().perform_create(serializer)
        obj = obj if obj is not None else serializer.instance
        self._audit("create", obj, meta=self._request_meta())
        return obj

    def perform_update(self, serializer):
        obj = super().perform_update(serializer)
        obj = obj if obj is not None else serializer.instance
        self._audit("update", obj, meta=self._request_meta())
        return obj

    def perform_destroy(self, instance):
        self._audit("delete", instance, meta=self._request_meta())
        return super().perform_destroy(instance)


# -----------------------------
# Bulk actions
# -----------------------------
class BulkActionMixin:
    """
    Helpers for `POST .../bulk/` endpoints.

    `resolve_bulk_ids` splits the requested ids into objects of the current
    tenant (to act upon) and the ids that are skipped (unknown, malformed or
    belonging to another tenant). Responses report both counts.
    """
    bulk_max_ids = 500

    def resolve_bulk_ids(self, ids) -> Tuple[List[Model], List[str]]:
        if not isinstance(ids, (list, tuple)) or not ids:
            raise ValidationError({"ids": ["Provide a non-empty list of ids."]})
        if len(ids) > self.bulk_max_ids:
            raise ValidationError({"ids": [f"At most {self.bulk_max_ids} ids per request."]})

        tenant = self.get_tenant()
        wanted = []
        skipped = []
        for raw in dict.fromkeys(str(i) for i in ids):
            (wanted if _looks_like_uuid(raw) else skipped).append(raw)

        model = self._model_class()
        found = {
            str(o.pk): o
            for o in model._default_manager.filter(**{f"{self.tenant_field}_id": tenant.id, "pk__in": wanted})
        }
        skipped += [i for i in wanted if i not in found]
        return [found[i] for i in wanted if i in found], skipped

    @staticmethod
    def bulk_response(action: str, processed: int, skipped: List[str], noun: str = "items", **extra):
        body = {
            "success": True,
            "action": action,
            "processed": processed,
            "skipped": len(skipped),
            "skipped_ids": skipped,
            "message": f"Successfully processed {processed} {noun}.",
        }
        body.update(extra)
        return body
