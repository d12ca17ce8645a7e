from __future__ import annotations

import csv
import io
from datetime import timedelta
from typing import Any, Dict

from django.db.models import Avg, Count
from django.db.models.functions import TruncDate
from django.utils import timezone

from .models import DONE_STATUSES, SLAPolicy, Ticket
from .sla import breached_q, compliance_percentage


def _counts(qs, field: str) -> Dict[str, int]:
    return {str(row[field] or "none"): row["n"] for row in qs.values(field).annotate(n=Count("id")).order_by(field)}


def _series(qs, field: str) -> Dict[str, int]:
    rows = (qs.filter(**{f"{field}__isnull": False}).annotate(day=TruncDate(field))
            .values("day").annotate(n=Count("id")).order_by("day"))
    return {row["day"].isoformat(): row["n"] for row in rows}


def support_overview(tenant, days: int = 30) -> Dict[str, Any]:
    now = timezone.now()
    since = now - timedelta(days=days)
    all_tickets = Ticket.objects.filter(tenant=tenant)
    window = all_tickets.filter(created_at__gte=since)
    averages = window.aggregate(
        avg_response=Avg("response_time_minutes"), avg_resolution=Avg("resolution_time_minutes"),
    )
    return {
        "window_days": days,
        "totals": {
            "tickets": all_tickets.count(),
            "open": all_tickets.exclude(status__in=DONE_STATUSES).count(),
            "created_in_window": window.count(),
            "resolved_in_window": all_tickets.filter(resolved_at__gte=since).count(),
            "escalated": all_tickets.filter(escalation_level__gt=0).count(),
            "unassigned_open": all_tickets.exclude(status__in=DONE_STATUSES).filter(assigned_to__isnull=True).count(),
        },
        "by_status": _counts(all_tickets, "status"),
        "by_priority": _counts(all_tickets, "priority"),
        "by_category": _counts(all_tickets, "category__name"),
        "by_channel": _counts(window, "channel"),
        "avg_response_minutes": round(averages["avg_response"] or 0, 1),
        "avg_resolution_minutes": round(averages["avg_resolution"] or 0, 1),
        "breaches": {
            "response": window.filter(response_breached_at__isnull=False).count(),
            "resolution": window.filter(breached_q(now)).count(),
        },
        "sla_compliance": [
            {"policy_id": str(p.pk), "name": p.name,
             "compliance_percentage": compliance_percentage(p, start=since, now=now)}
            for p in SLAPolicy.objects.filter(tenant=tenant, is_active=True).order_by("name")
        ],
        "daily": {"created": _series(window, "created_at"), "resolved": _series(window, "resolved_at")},
    }


def overview_csv(data: Dict[str, Any]) -> str:
    """Flatten the overview into metric,key,value rows."""
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["metric", "key", "value"])
    for key, value in data["totals"].items():
        w.writerow(["totals", key, value])
    for section in ("by_status", "by_priority", "by_category", "by_channel"):
        for key, value in data[section].items():
            w.writerow([section, key, value])
    w.writerow(["averages", "response_minutes", data["avg_response_minutes"]])
    w.writerow(["averages", "resolution_minutes", data["avg_resolution_minutes"]])
    for key, value in data["breaches"].items():
        w.writerow(["breaches", key, value])
    for row in data["sla_compliance"]:
        w.writerow(["sla_compliance", row["name"], row["compliance_percentage"]])
    for series, points in data["daily"].items():
        for day, value in points.items():
            w.writerow([f"daily_{series}", day, value])
    return buf.getvalue()
