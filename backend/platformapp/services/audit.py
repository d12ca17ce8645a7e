from __future__ import annotations
from typing import Optional, Dict, Any
from platformapp.models import AuditLog, Tenant

REDACT_KEYS = {"password", "token", "access", "refresh", "secret", "api_key", "authorization"}


def _sanitize(meta: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in (meta or {}).items():
        if k.lower() in REDACT_KEYS:
            out[k] = "***"
        elif isinstance(v, dict):
            out[k] = _sanitize(v)
        else:
            out[k] = v
    return out


def log_event(*, tenant: Tenant, user_id: Optional[str], action: str,
              entity: str, entity_id: str, meta: Optional[Dict[str, Any]] = None) -> AuditLog:
    return AuditLog.objects.create(
        tenant=tenant,
        user_id=user_id or None,
        action=action[:80],
        entity=entity[:120],
        entity_id=str(entity_id)[:120],
        meta_json=_sanitize(meta or {}),
    )
