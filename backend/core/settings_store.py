# backend/core/settings_store.py
"""
Read path for runtime settings: tenant row -> global row -> caller default.
Lookups are cached; core.signals drops the cache entry when a row changes.
"""
from typing import Any, Optional

from django.core.cache import cache

from .models import Setting

CACHE_TTL = 300
_MISSING = "__missing__"


def _cache_key(key: str, tenant_id) -> str:
    return f"core:setting:{tenant_id or 'global'}:{key}"


def _lookup(key: str, tenant_id) -> Any:
    ck = _cache_key(key, tenant_id)
    hit = cache.get(ck)
    if hit is not None:
        return hit
    row = Setting.objects.filter(key=key, tenant_id=tenant_id).only("value").first()
    val = row.value if row is not None else _MISSING
    cache.set(ck, val, CACHE_TTL)
    return val


def get_setting(key: str, default: Any = None, tenant=None) -> Any:
    tenant_id = getattr(tenant, "id", tenant)
    if tenant_id:
        val = _lookup(key, tenant_id)
        if val != _MISSING:
            return val
    val = _lookup(key, None)
    return default if val == _MISSING else val


def set_setting(key: str, value: Any, tenant=None, description: str = "") -> Setting:
    obj, _ = Setting.objects.update_or_create(
        tenant=tenant, key=key, defaults={"value": value, "description": description}
    )
    return obj


def forget(key: str, tenant_id: Optional[Any] = None) -> None:
    cache.delete(_cache_key(key, tenant_id))
