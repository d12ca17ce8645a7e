"""
URL redirects: normalisation, loop-safe writes, chain following, CSV
import/export and usage statistics.
"""
from __future__ import annotations

import csv
import io
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Sum
from django.utils import timezone

from common.exceptions import BusinessRuleError, RedirectLoopError

from .models import REDIRECT_STATUS_CODES, Redirect

logger = logging.getLogger(__name__)

STATUS_CODES = dict(REDIRECT_STATUS_CODES)
BULK_ACTIONS = ("activate", "deactivate", "delete")
EXPORT_HEADER = ["From URL", "To URL", "Status Code", "Description", "Is Active", "Hit Count", "Last Hit", "Created At"]
TRUTHY = {"1", "true", "yes", "y", "on"}


def max_hops() -> int:
    return int(getattr(settings, "CMS_REDIRECT_MAX_HOPS", 10))


def normalize_url(url: Optional[str]) -> str:
    """
    Trim, lower-case scheme and host of absolute URLs, give relative paths a
    leading slash and drop a trailing slash everywhere except the root.
    """
    url = (url or "").strip()
    if not url:
        return ""
    parts = urlsplit(url)
    if parts.scheme and parts.netloc:
        path = parts.path.rstrip("/") if parts.path not in ("", "/") else ""
        return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, parts.fragment))
    if not url.startswith("/"):
        url = "/" + url
    head, sep, tail = url.partition("?")
    if head != "/":
        head = head.rstrip("/") or "/"
    return head + sep + tail


def _active(tenant, exclude_pk=None):
    qs = Redirect.objects.filter(tenant=tenant, is_active=True)
    return qs.exclude(pk=exclude_pk) if exclude_pk else qs


def follow_chain(tenant, url: str, *, exclude_pk=None, extra_edge=None) -> Dict[str, Any]:
    """
    Walk from `url` through active redirects. `extra_edge` (from, to) is
    treated as if it were already stored, which lets writes be checked before
    they happen. Stops on a revisit (loop) or after CMS_REDIRECT_MAX_HOPS.
    """
    limit = max_hops()
    edges = dict(_active(tenant, exclude_pk).values_list("from_url", "to_url"))
    if extra_edge:
        edges[extra_edge[0]] = extra_edge[1]

    current = normalize_url(url)
    chain = [current]
    seen = {current}
    has_loop = truncated = False
    while current in edges:
        if len(chain) > limit:
            truncated = True
            break
        current = normalize_url(edges[current])
        chain.append(current)
        if current in seen:
            has_loop = True
            break
        seen.add(current)
    return {
        "chain": chain,
        "final_url": chain[-1],
        "hops": len(chain) - 1,
        "has_loop": has_loop,
        "truncated": truncated,
    }


def check_redirect(tenant, from_url: str, to_url: str, *, instance: Optional[Redirect] = None,
                   is_active: bool = True) -> None:
    """Raise when the redirect points at itself, duplicates a source or would loop."""
    if not from_url:
        raise BusinessRuleError("Source URL is required.", field="from_url")
    if not to_url:
        raise BusinessRuleError("Destination URL is required.", field="to_url")
    if from_url == to_url:
        raise BusinessRuleError("Destination URL must be different from source URL.", field="to_url")

    dupes = Redirect.objects.filter(tenant=tenant, from_url=from_url)
    if instance is not None:
        dupes = dupes.exclude(pk=instance.pk)
    if dupes.exists():
        raise BusinessRuleError("A redirect for this URL already exists.", field="from_url")

    if not is_active:
        return
    walk = follow_chain(tenant, from_url, exclude_pk=getattr(instance, "pk", None), extra_edge=(from_url, to_url))
    if walk["has_loop"]:
        raise RedirectLoopError("This redirect would create a loop.", field="to_url")
    if walk["truncated"]:
        raise RedirectLoopError(f"This redirect would create a chain longer than {max_hops()} hops.", field="to_url")


def save_redirect(tenant, data: Dict[str, Any], *, instance: Optional[Redirect] = None, user=None) -> Redirect:
    from_url = normalize_url(data.get("from_url", instance.from_url if instance else ""))
    to_url = normalize_url(data.get("to_url", instance.to_url if instance else ""))
    is_active = data.get("is_active", instance.is_active if instance else True)
    check_redirect(tenant, from_url, to_url, instance=instance, is_active=is_active)

    redirect = instance or Redirect(tenant=tenant, created_by=user)
    redirect.from_url = from_url
    redirect.to_url = to_url
    redirect.is_active = is_active
    for key in ("status_code", "description"):
        if key in data:
            setattr(redirect, key, data[key])
    if redirect.status_code not in STATUS_CODES:
        raise BusinessRuleError("Invalid status code.", field="status_code")
    redirect.save()
    return redirect


def find_redirect(tenant, url: str) -> Optional[Redirect]:
    return _active(tenant).filter(from_url=normalize_url(url)).first()


def record_hit(redirect: Redirect) -> None:
    now = timezone.now()
    Redirect.objects.filter(pk=redirect.pk).update(hit_count=F("hit_count") + 1, last_hit_at=now)
    redirect.hit_count += 1
    redirect.last_hit_at = now


def resolve(tenant, url: str):
    """
    (redirect, final_url) for a source URL, or None. A chain that loops or
    runs past the hop bound never resolves.
    """
    redirect = find_redirect(tenant, url)
    if redirect is None:
        return None
    walk = follow_chain(tenant, redirect.from_url)
    if walk["has_loop"] or walk["truncated"]:
        logger.warning("redirect chain from %s is broken: %s", redirect.from_url, " -> ".join(walk["chain"]))
        return None
    return redirect, walk["final_url"]


def inspect_url(tenant, url: str) -> Dict[str, Any]:
    redirect = find_redirect(tenant, url)
    if redirect is None:
        return {"found": False, "message": "No redirect found for this URL."}
    walk = follow_chain(tenant, redirect.from_url)
    return {"found": True, "redirect": redirect, "chain": walk["chain"], "final_url": walk["final_url"],
            "has_loop": walk["has_loop"] or walk["truncated"]}


def bulk_redirects(redirects: List[Redirect], action: str) -> int:
    if action not in BULK_ACTIONS:
        raise BusinessRuleError("Invalid bulk action.", field="action")
    ids = [r.pk for r in redirects]
    if action == "delete":
        return Redirect.objects.filter(pk__in=ids).delete()[0]
    if action == "activate":
        # re-activation must not close a loop through the other active redirects
        activated = 0
        for redirect in redirects:
            if redirect.is_active:
                activated += 1
                continue
            try:
                with transaction.atomic():
                    check_redirect(redirect.tenant, redirect.from_url, redirect.to_url, instance=redirect)
                    Redirect.objects.filter(pk=redirect.pk).update(is_active=True)
                activated += 1
            except BusinessRuleError as exc:
                logger.info("redirect %s not activated: %s", redirect.from_url, exc.message)
        return activated
    return Redirect.objects.filter(pk__in=ids).update(is_active=False)


# ---- CSV --------------------------------------------------------------------

def _parse_bool(value: str) -> bool:
    return value.strip().lower() in TRUTHY


def import_csv(tenant, text: str, *, has_headers: bool = True, user=None) -> Dict[str, Any]:
    """
    Rows are `from,to[,status_code[,description[,is_active]]]`. Each row is
    written on its own; failures are collected per line and never stop the
    rest of the file.
    """
    imported = 0
    errors: List[Dict[str, Any]] = []
    reader = csv.reader(io.StringIO(text))
    for line_no, row in enumerate(reader, start=1):
        if has_headers and line_no == 1:
            continue
        if not any(cell.strip() for cell in row):
            continue
        if len(row) < 2:
            errors.append({"line": line_no, "message": "Expected at least a source and a destination URL."})
            continue
        data: Dict[str, Any] = {"from_url": row[0], "to_url": row[1]}
        if len(row) > 2 and row[2].strip():
            try:
                data["status_code"] = int(row[2])
            except ValueError:
                errors.append({"line": line_no, "message": f"Invalid status code '{row[2].strip()}'."})
                continue
        if len(row) > 3:
            data["description"] = row[3].strip()[:255]
        if len(row) > 4 and row[4].strip():
            data["is_active"] = _parse_bool(row[4])
        try:
            with transaction.atomic():
                save_redirect(tenant, data, user=user)
            imported += 1
        except BusinessRuleError as exc:
            errors.append({"line": line_no, "message": exc.message})
        except IntegrityError:
            errors.append({"line": line_no, "message": "A redirect for this URL already exists."})

    message = f"Import completed. {imported} redirects imported."
    if errors:
        message += f" {len(errors)} errors occurred."
    logger.info("redirect import for %s: %d imported, %d errors", tenant.slug, imported, len(errors))
    return {"imported": imported, "errors": errors, "message": message}


class _Echo:
    def write(self, value):
        return value


def export_rows(tenant) -> Iterable[str]:
    writer = csv.writer(_Echo())
    yield writer.writerow(EXPORT_HEADER)
    for r in Redirect.objects.filter(tenant=tenant).order_by("from_url").iterator(chunk_size=1000):
        yield writer.writerow([
            r.from_url, r.to_url, r.status_code, r.description, "Yes" if r.is_active else "No", r.hit_count,
            r.last_hit_at.isoformat() if r.last_hit_at else "", r.created_at.isoformat(),
        ])


# ---- statistics -------------------------------------------------------------

def _brief(qs) -> List[Dict[str, Any]]:
    return list(qs.values("id", "from_url", "to_url", "hit_count", "last_hit_at")[:10])


def redirect_stats(tenant) -> Dict[str, Any]:
    qs = Redirect.objects.filter(tenant=tenant)
    by_code = {
        code: {"count": qs.filter(status_code=code).count(), "description": label}
        for code, label in REDIRECT_STATUS_CODES
    }
    return {
        "total": qs.count(),
        "active": qs.filter(is_active=True).count(),
        "inactive": qs.filter(is_active=False).count(),
        "used": qs.filter(hit_count__gt=0).count(),
        "unused": qs.filter(hit_count=0).count(),
        "total_hits": qs.aggregate(s=Sum("hit_count"))["s"] or 0,
        "by_status_code": by_code,
        "top_redirects": _brief(qs.filter(hit_count__gt=0).order_by("-hit_count")),
        "recent_hits": _brief(qs.filter(last_hit_at__isnull=False).order_by("-last_hit_at")),
    }
