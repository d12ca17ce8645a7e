# backend/support/sla.py
"""
SLA clocks.

Due dates are computed from a start instant and a policy budget. Policies with
`business_hours_only` consume time only inside the business calendar
(default Mon-Fri 09:00-17:00 in the tenant's time zone); the others add
wall-clock hours.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, FrozenSet, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from core.settings_store import get_setting
from .models import SLAPolicy, Ticket

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
SLA_KINDS = ("response", "resolution", "escalation")

STANDARD_POLICY = {
    "name": "Standard SLA",
    "description": "Default service level for all tickets.",
    "response_time_hours": 24,
    "resolution_time_hours": 72,
    "escalation_time_hours": 48,
    "business_hours_only": False,
}


def sla_config(key: str, tenant=None) -> Any:
    """`support.sla.<key>` runtime setting, defaulting to settings.SUPPORT_SLA."""
    defaults = getattr(settings, "SUPPORT_SLA", {})
    return get_setting(f"support.sla.{key}", defaults.get(key), tenant=tenant)


def _parse_time(value, fallback: time) -> time:
    if isinstance(value, time):
        return value
    try:
        hh, mm = str(value).split(":")[:2]
        return time(int(hh), int(mm))
    except (TypeError, ValueError):
        logger.warning("invalid business time %r, using %s", value, fallback)
        return fallback


@dataclass(frozen=True)
class BusinessCalendar:
    start: time
    end: time
    workdays: FrozenSet[int]
    tz: ZoneInfo
    enabled: bool = True

    @classmethod
    def for_tenant(cls, tenant=None) -> "BusinessCalendar":
        days = sla_config("business_days", tenant) or []
        workdays = frozenset(WEEKDAYS.index(str(d).lower()) for d in days if str(d).lower() in WEEKDAYS)
        tz_name = getattr(tenant, "timezone", None) or settings.TIME_ZONE
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown time zone %r for tenant %s, using UTC", tz_name, getattr(tenant, "slug", "-"))
            tz = ZoneInfo("UTC")
        return cls(
            start=_parse_time(sla_config("business_start_time", tenant), time(9, 0)),
            end=_parse_time(sla_config("business_end_time", tenant), time(17, 0)),
            workdays=workdays,
            tz=tz,
            enabled=bool(sla_config("business_hours_enabled", tenant)),
        )

    @property
    def usable(self) -> bool:
        return self.enabled and bool(self.workdays) and self.start < self.end

    def _open(self, day: date) -> datetime:
        return datetime.combine(day, self.start, tzinfo=self.tz)

    def _close(self, day: date) -> datetime:
        return datetime.combine(day, self.end, tzinfo=self.tz)

    def is_business_time(self, moment: datetime) -> bool:
        local = moment.astimezone(self.tz)
        return local.weekday() in self.workdays and self.start <= local.time() < self.end

    def add_business_hours(self, start: datetime, hours: float) -> datetime:
        """
        Walk forward from `start` consuming `hours` of business time only.
        Non-decreasing in `hours` for a fixed start.
        """
        if not self.usable:
            return start + timedelta(hours=hours)

        remaining = timedelta(hours=hours)
        cursor = start.astimezone(self.tz)
        while True:
            day = cursor.date()
            if day.weekday() not in self.workdays or cursor >= self._close(day):
                cursor = self._open(day + timedelta(days=1))
                continue
            if cursor < self._open(day):
                cursor = self._open(day)
            available = self._close(day) - cursor
            if remaining <= available:
                return (cursor + remaining).astimezone(start.tzinfo or self.tz)
            remaining -= available
            cursor = self._open(day + timedelta(days=1))

    def business_minutes_between(self, start: datetime, end: datetime) -> int:
        if end <= start:
            return 0
        if not self.usable:
            return int((end - start).total_seconds() // 60)
        total = timedelta()
        cursor = start.astimezone(self.tz)
        end_local = end.astimezone(self.tz)
        while cursor < end_local:
            day = cursor.date()
            if day.weekday() in self.workdays:
                lo = max(cursor, self._open(day))
                hi = min(end_local, self._close(day))
                if hi > lo:
                    total += hi - lo
            cursor = self._open(day + timedelta(days=1))
        return int(total.total_seconds() // 60)


def budget_hours(policy: SLAPolicy, kind: str) -> int:
    return {
        "response": policy.response_time_hours,
        "resolution": policy.resolution_time_hours,
        "escalation": policy.escalation_time_hours,
    }[kind]


def compute_due_date(policy: SLAPolicy, start: datetime, kind: str = "resolution",
                     calendar: Optional[BusinessCalendar] = None) -> datetime:
    hours = budget_hours(policy, kind)
    if policy.business_hours_only:
        calendar = calendar or BusinessCalendar.for_tenant(policy.tenant)
        return calendar.add_business_hours(start, hours)
    return start + timedelta(hours=hours)


def apply_sla(ticket: Ticket, policy: SLAPolicy, start: Optional[datetime] = None) -> Ticket:
    """Stamp the three due dates on `ticket` (not saved) and clear breach marks."""
    start = start or timezone.now()
    calendar = BusinessCalendar.for_tenant(policy.tenant) if policy.business_hours_only else None
    ticket.sla_policy = policy
    ticket.response_due_at = compute_due_date(policy, start, "response", calendar)
    ticket.due_date = compute_due_date(policy, start, "resolution", calendar)
    ticket.escalation_due_at = compute_due_date(policy, start, "escalation", calendar)
    ticket.response_breached_at = None
    ticket.resolution_breached_at = None
    return ticket


def ensure_default_policy(tenant) -> SLAPolicy:
    policy = SLAPolicy.objects.filter(tenant=tenant, is_default=True).first()
    if policy:
        return policy
    policy, created = SLAPolicy.objects.get_or_create(
        tenant=tenant, name=STANDARD_POLICY["name"],
        defaults={**STANDARD_POLICY, "is_default": True},
    )
    if created:
        logger.info("created fallback SLA policy for tenant %s", tenant.slug)
    elif not policy.is_default:
        set_default_policy(policy)
    return policy


def resolve_policy(tenant, category=None, priority: Optional[str] = None) -> SLAPolicy:
    """Category default -> policy targeting the priority -> tenant default -> Standard SLA."""
    if category is not None and category.default_sla_policy_id:
        policy = category.default_sla_policy
        if policy.is_active:
            return policy
    active = SLAPolicy.objects.filter(tenant=tenant, is_active=True)
    if priority:
        for policy in active.order_by("created_at"):
            if priority in (policy.priority_levels or []):
                return policy
    default = active.filter(is_default=True).first()
    return default or ensure_default_policy(tenant)


@transaction.atomic
def set_default_policy(policy: SLAPolicy) -> SLAPolicy:
    SLAPolicy.objects.filter(tenant=policy.tenant, is_default=True).exclude(pk=policy.pk).update(is_default=False)
    policy.is_default = True
    policy.is_active = True
    policy.save(update_fields=["is_default", "is_active", "updated_at"])
    return policy


def is_breached(ticket: Ticket, kind: str = "resolution", now: Optional[datetime] = None) -> bool:
    now = now or timezone.now()
    if kind == "response":
        if ticket.response_due_at is None:
            return False
        return (ticket.first_response_at or now) > ticket.response_due_at
    if ticket.due_date is None:
        return False
    return (ticket.resolved_at or now) > ticket.due_date


def _clock(start: datetime, due: Optional[datetime], done: Optional[datetime],
           now: datetime, threshold: int) -> Dict[str, Any]:
    if due is None:
        return {"due_at": None, "breached": False, "warning": False, "remaining_minutes": None, "consumed_percent": None}
    ref = done or now
    window = (due - start).total_seconds()
    consumed = 100.0 if window <= 0 else max(0.0, (ref - start).total_seconds() / window * 100)
    breached = ref > due
    return {
        "due_at": due,
        "breached": breached,
        "warning": not breached and done is None and consumed >= threshold,
        "remaining_minutes": None if done else int((due - now).total_seconds() // 60),
        "consumed_percent": round(consumed, 1),
        "completed_at": done,
    }


def sla_status(ticket: Ticket, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or timezone.now()
    threshold = int(sla_config("sla_warning_threshold", ticket.tenant) or 80)
    start = ticket.reopened_at or ticket.created_at
    return {
        "policy": {"id": str(ticket.sla_policy_id), "name": ticket.sla_policy.name,
                   "business_hours_only": ticket.sla_policy.business_hours_only},
        "clock_started_at": start,
        "response": _clock(start, ticket.response_due_at, ticket.first_response_at, now, threshold),
        "resolution": _clock(start, ticket.due_date, ticket.resolved_at, now, threshold),
        "escalation_due_at": ticket.escalation_due_at,
        "warning_threshold": threshold,
    }


def breached_q(now: datetime) -> Q:
    """Tickets whose resolution SLA is (or was) missed."""
    return (
        Q(resolution_breached_at__isnull=False)
        | Q(resolved_at__isnull=False, resolved_at__gt=F("due_date"))
        | Q(resolved_at__isnull=True, due_date__lt=now)
    )


def compliance_percentage(policy: SLAPolicy, start: Optional[datetime] = None,
                          end: Optional[datetime] = None, now: Optional[datetime] = None) -> float:
    now = now or timezone.now()
    qs = policy.tickets.all()
    if start:
        qs = qs.filter(created_at__gte=start)
    if end:
        qs = qs.filter(created_at__lte=end)
    total = qs.count()
    if total == 0:
        return 100.0
    breached = qs.filter(breached_q(now)).count()
    return round((total - breached) / total * 100, 2)


def policy_metrics(policy: SLAPolicy, days: int = 30) -> Dict[str, Any]:
    now = timezone.now()
    since = now - timedelta(days=days)
    qs = policy.tickets.filter(created_at__gte=since)
    return {
        "policy_id": str(policy.id),
        "name": policy.name,
        "window_days": days,
        "tickets": qs.count(),
        "open": qs.filter(resolved_at__isnull=True).exclude(status="closed").count(),
        "response_breaches": qs.filter(response_breached_at__isnull=False).count(),
        "resolution_breaches": qs.filter(breached_q(now)).count(),
        "compliance_percentage": compliance_percentage(policy, start=since, now=now),
    }
