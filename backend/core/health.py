import time
from typing import Any, Dict

from django.core.cache import cache
from django.db import connection


def check_db() -> Dict[str, Any]:
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
            cur.fetchone()
        return {"ok": True}
    except Exception as e:
        return {"ok": False, "error": str(e)}


def check_cache() -> Dict[str, Any]:
    try:
        val = str(time.time())
        cache.set("core_health_probe", val, timeout=10)
        if cache.get("core_health_probe") == val:
            return {"ok": True}
        return {"ok": False, "error": "Cache mismatch"}
    except Exception as e:
        return {"ok": False, "error": str(e)}


def check_celery(timeout: int = 5) -> Dict[str, Any]:
    try:
        from .tasks import ping
        val = ping.delay().get(timeout=timeout)
        return {"ok": val == "pong"}
    except Exception as e:
        return {"ok": False, "error": str(e)}


CHECKS = {"db": check_db, "cache": check_cache, "celery": check_celery}


def run_checks(names) -> Dict[str, Any]:
    out: Dict[str, Any] = {"ok": True, "checks": {}}
    for name in names:
        res = CHECKS[name]()
        out["checks"][name] = res
        if not res.get("ok"):
            out["ok"] = False
    return out
