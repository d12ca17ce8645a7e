"""
Dynamic API builder:
- Creates a ModelSerializer + tenant-scoped ModelViewSet per model at runtime
  (an app-defined <Model>Serializer / <Model>ViewSet wins when present).
- Registers them on a DRF router under /api/v1/<app>/<model>/
"""
from typing import Optional
from django.apps import apps
from django.utils.module_loading import import_string
from rest_framework import serializers, routers
from common.permissions import PrivateTenantOnly
from common.mixins import TenantScopedModelViewSet


def _try(dotted: str) -> Optional[type]:
    try:
        return import_string(dotted)
    except ImportError:
        return None


def build_serializer(model):
    custom = _try(f"{model._meta.app_label}.serializers.{model.__name__}Serializer")
    if custom:
        return custom
    read_only = tuple(f for f in ("tenant", "created_at", "updated_at") if _has_field(model, f))
    Meta = type("Meta", (), {"model": model, "fields": "__all__", "read_only_fields": read_only})
    return type(f"{model.__name__}AutoSerializer", (serializers.ModelSerializer,), {"Meta": Meta})


def build_viewset(model):
    custom = _try(f"{model._meta.app_label}.views.{model.__name__}ViewSet")
    if custom:
        return custom
    attrs = {
        "queryset": model.objects.all(),
        "serializer_class": build_serializer(model),
        "permission_classes": [PrivateTenantOnly],
    }
    return type(f"{model.__name__}AutoViewSet", (TenantScopedModelViewSet,), attrs)


def build_router_for_app(app_label: str) -> routers.DefaultRouter:
    router = routers.DefaultRouter()
    for model in apps.get_app_config(app_label).get_models():
        if not _has_field(model, "tenant"):
            continue
        base = model._meta.model_name.replace("_", "-")
        router.register(base, build_viewset(model), basename=f"{app_label}-{base}")
    return router


def _has_field(model, name: str) -> bool:
    return any(f.name == name for f in model._meta.get_fields())
