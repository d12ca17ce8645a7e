from datetime import datetime, timedelta, timezone as dt_timezone
from unittest import mock

import pytest
from django.utils import timezone

from core.settings_store import set_setting
from common.exceptions import BusinessRuleError
from support import services
from support.models import SLAPolicy, Ticket, TicketCategory
from support.sla import (
    BusinessCalendar, compliance_percentage, compute_due_date, is_breached, resolve_policy, sla_status,
)
from support.tasks import sweep_sla_breaches

pytestmark = pytest.mark.django_db

UTC = dt_timezone.utc
FRIDAY_4PM = datetime(2024, 3, 1, 16, 0, tzinfo=UTC)


@pytest.fixture
def utc_tenant(tenant):
    tenant.timezone = "UTC"
    tenant.save()
    return tenant


@pytest.fixture
def business_policy(utc_tenant):
    return SLAPolicy.objects.create(
        tenant=utc_tenant, name="Business", response_time_hours=2, resolution_time_hours=8,
        escalation_time_hours=4, business_hours_only=True,
    )


@pytest.fixture
def wallclock_policy(utc_tenant):
    return SLAPolicy.objects.create(
        tenant=utc_tenant, name="Round the clock", response_time_hours=1, resolution_time_hours=72,
        escalation_time_hours=24,
    )


def test_wall_clock_policy_adds_plain_hours(wallclock_policy):
    assert compute_due_date(wallclock_policy, FRIDAY_4PM, "resolution") == FRIDAY_4PM + timedelta(hours=72)


def test_business_hours_skip_the_weekend(business_policy):
    due = compute_due_date(business_policy, FRIDAY_4PM, "response")
    assert due == datetime(2024, 3, 4, 10, 0, tzinfo=UTC)


def test_start_outside_hours_waits_for_opening(business_policy):
    saturday = datetime(2024, 3, 2, 11, 0, tzinfo=UTC)
    assert compute_due_date(business_policy, saturday, "response") == datetime(2024, 3, 4, 11, 0, tzinfo=UTC)


def test_business_hours_follow_tenant_time_zone(business_policy, utc_tenant):
    utc_tenant.timezone = "Europe/Berlin"
    utc_tenant.save()
    business_policy.tenant = utc_tenant
    # 15:00 UTC is 16:00 in Berlin; one hour left on Friday, one more on Monday from 09:00 local
    due = compute_due_date(business_policy, datetime(2024, 3, 1, 15, 0, tzinfo=UTC), "response")
    assert due == datetime(2024, 3, 4, 9, 0, tzinfo=UTC)


def test_due_date_is_monotonic_in_budget(utc_tenant):
    cal = BusinessCalendar.for_tenant(utc_tenant)
    start = datetime(2024, 3, 1, 13, 37, tzinfo=UTC)
    dues = [cal.add_business_hours(start, h) for h in range(0, 60)]
    assert dues == sorted(dues)
    assert dues[0] == start


def test_business_minutes_between_ignores_closed_time(utc_tenant):
    cal = BusinessCalendar.for_tenant(utc_tenant)
    assert cal.business_minutes_between(FRIDAY_4PM, datetime(2024, 3, 4, 10, 0, tzinfo=UTC)) == 120


def test_runtime_setting_disables_business_hours(business_policy, utc_tenant):
    set_setting("support.sla.business_hours_enabled", False, tenant=utc_tenant)
    assert compute_due_date(business_policy, FRIDAY_4PM, "response") == FRIDAY_4PM + timedelta(hours=2)


def test_resolve_policy_prefers_category_default(utc_tenant, business_policy, wallclock_policy):
    category = TicketCategory.objects.create(tenant=utc_tenant, name="Billing", default_sla_policy=business_policy)
    assert resolve_policy(utc_tenant, category, "low") == business_policy


def test_resolve_policy_by_priority_level(utc_tenant, wallclock_policy):
    wallclock_policy.priority_levels = ["urgent"]
    wallclock_policy.save()
    assert resolve_policy(utc_tenant, None, "urgent") == wallclock_policy


def test_fallback_policy_is_created_once(utc_tenant):
    first = resolve_policy(utc_tenant, None, "medium")
    second = resolve_policy(utc_tenant, None, "medium")
    assert first == second
    assert first.name == "Standard SLA" and first.is_default
    assert (first.response_time_hours, first.resolution_time_hours, first.escalation_time_hours) == (24, 72, 48)


def test_new_ticket_always_carries_due_dates(utc_tenant):
    ticket = services.create_ticket(utc_tenant, {"title": "Printer on fire"})
    assert ticket.sla_policy.name == "Standard SLA"
    assert abs(ticket.due_date - ticket.created_at - timedelta(hours=72)) < timedelta(seconds=5)
    assert ticket.response_due_at < ticket.escalation_due_at < ticket.due_date


def test_breach_uses_resolution_time_when_resolved(utc_tenant, wallclock_policy):
    ticket = services.create_ticket(utc_tenant, {"title": "Slow", "sla_policy": wallclock_policy})
    later = ticket.due_date + timedelta(hours=1)
    assert is_breached(ticket, "resolution", now=later)
    ticket.resolved_at = ticket.due_date - timedelta(minutes=1)
    assert not is_breached(ticket, "resolution", now=later)


def test_sla_status_warns_near_the_deadline(utc_tenant, wallclock_policy):
    ticket = services.create_ticket(utc_tenant, {"title": "Slow", "sla_policy": wallclock_policy})
    status = sla_status(ticket, now=ticket.created_at + timedelta(hours=60))
    assert status["resolution"]["warning"] is True
    assert status["resolution"]["breached"] is False
    assert status["response"]["breached"] is True


def test_compliance_is_full_without_tickets(wallclock_policy):
    assert compliance_percentage(wallclock_policy) == 100.0


def test_compliance_counts_breached_share(utc_tenant, wallclock_policy):
    on_time = services.create_ticket(utc_tenant, {"title": "a", "sla_policy": wallclock_policy})
    late = services.create_ticket(utc_tenant, {"title": "b", "sla_policy": wallclock_policy})
    late.resolution_breached_at = late.due_date
    late.save()
    assert on_time.resolution_breached_at is None
    assert compliance_percentage(wallclock_policy) == 50.0


def test_reopen_restarts_the_clock(utc_tenant, wallclock_policy):
    ticket = services.create_ticket(utc_tenant, {"title": "Again", "sla_policy": wallclock_policy})
    original_due = ticket.due_date
    services.change_status(ticket, "resolved")
    assert ticket.resolved_at is not None
    services.reopen_ticket(ticket)
    assert ticket.status == "open"
    assert ticket.resolved_at is None
    assert ticket.due_date >= original_due
    assert ticket.due_date - ticket.reopened_at == timedelta(hours=72)


@pytest.fixture
def fast_policy(utc_tenant):
    return SLAPolicy.objects.create(
        tenant=utc_tenant, name="Fast lane", response_time_hours=2, resolution_time_hours=10,
        escalation_time_hours=5,
    )


def test_policy_change_recomputes_from_creation(utc_tenant, wallclock_policy, fast_policy):
    ticket = services.create_ticket(utc_tenant, {"title": "Switch", "sla_policy": wallclock_policy})
    ticket.response_breached_at = timezone.now()
    ticket.save()

    services.set_sla_policy(ticket, fast_policy)
    ticket.refresh_from_db()
    assert ticket.sla_policy == fast_policy
    assert ticket.response_due_at == ticket.created_at + timedelta(hours=2)
    assert ticket.due_date == ticket.created_at + timedelta(hours=10)
    assert ticket.escalation_due_at == ticket.created_at + timedelta(hours=5)
    assert ticket.response_breached_at is None


def test_policy_change_after_reopen_counts_from_reopen(utc_tenant, wallclock_policy, fast_policy):
    ticket = services.create_ticket(utc_tenant, {"title": "Again", "sla_policy": wallclock_policy})
    services.change_status(ticket, "resolved")
    services.reopen_ticket(ticket)
    services.set_sla_policy(ticket, fast_policy)
    assert ticket.due_date == ticket.reopened_at + timedelta(hours=10)


def test_inactive_policy_cannot_be_applied(utc_tenant, wallclock_policy, fast_policy):
    ticket = services.create_ticket(utc_tenant, {"title": "x", "sla_policy": wallclock_policy})
    fast_policy.is_active = False
    fast_policy.save()
    with pytest.raises(BusinessRuleError) as exc:
        services.set_sla_policy(ticket, fast_policy)
    assert exc.value.message == "SLA policy is not active."


def test_sweep_stamps_breaches_and_escalates_once(utc_tenant, wallclock_policy):
    now = timezone.now()
    late = services.create_ticket(utc_tenant, {"title": "Late", "sla_policy": wallclock_policy})
    on_time = services.create_ticket(utc_tenant, {"title": "On time", "sla_policy": wallclock_policy})
    Ticket.objects.filter(pk=late.pk).update(
        response_due_at=now - timedelta(hours=2), due_date=now - timedelta(minutes=5),
        escalation_due_at=now - timedelta(minutes=10),
    )

    with mock.patch("support.automation.dispatch_event") as dispatch:
        counts = sweep_sla_breaches()
    assert counts == {"response": 1, "resolution": 1, "escalated": 1, "errors": 0}
    assert [(c.args[0].pk, c.args[1], c.args[2]) for c in dispatch.call_args_list] == [
        (late.pk, "sla_breach", {"breach_type": "response"}),
        (late.pk, "sla_breach", {"breach_type": "resolution"}),
        (late.pk, "ticket_overdue", {"escalation_level": 1}),
    ]
    late.refresh_from_db()
    assert late.response_breached_at is not None and late.resolution_breached_at is not None
    assert late.escalation_level == 1
    assert late.escalations.get().is_automatic
    on_time.refresh_from_db()
    assert on_time.response_breached_at is None and on_time.escalation_level == 0

    with mock.patch("support.automation.dispatch_event") as dispatch:
        assert sweep_sla_breaches() == {"response": 0, "resolution": 0, "escalated": 0, "errors": 0}
    dispatch.assert_not_called()


def test_sweep_skips_answered_and_finished_tickets(utc_tenant, wallclock_policy):
    past = timezone.now() - timedelta(hours=1)
    answered = services.create_ticket(utc_tenant, {"title": "Answered", "sla_policy": wallclock_policy})
    done = services.create_ticket(utc_tenant, {"title": "Done", "sla_policy": wallclock_policy})
    services.change_status(done, "resolved")
    Ticket.objects.filter(pk=answered.pk).update(first_response_at=past, response_due_at=past)
    Ticket.objects.filter(pk=done.pk).update(response_due_at=past, due_date=past, escalation_due_at=past)

    with mock.patch("support.automation.dispatch_event"):
        assert sweep_sla_breaches() == {"response": 0, "resolution": 0, "escalated": 0, "errors": 0}


def test_reopened_ticket_can_be_escalated_again(utc_tenant, wallclock_policy):
    ticket = services.create_ticket(utc_tenant, {"title": "Flaky", "sla_policy": wallclock_policy})
    services.escalate_ticket(ticket, reason="First round")
    services.change_status(ticket, "resolved")
    services.reopen_ticket(ticket)
    assert ticket.escalation_level == 0

    Ticket.objects.filter(pk=ticket.pk).update(escalation_due_at=timezone.now() - timedelta(minutes=1))
    with mock.patch("support.automation.dispatch_event"):
        assert sweep_sla_breaches()["escalated"] == 1
    assert ticket.escalations.count() == 2


def test_triage_moves_ticket_to_the_priority_policy(utc_tenant, wallclock_policy):
    wallclock_policy.priority_levels = ["urgent"]
    wallclock_policy.save()
    ticket = services.create_ticket(utc_tenant, {"title": "Total outage", "description": "Everything is down."},
                                    auto_triage=True)
    ticket.refresh_from_db()
    assert ticket.priority == "urgent"
    assert ticket.sla_policy == wallclock_policy
    assert ticket.response_due_at == ticket.created_at + timedelta(hours=1)
    assert ticket.metadata["ai"]["triage"]["sla_policy"] == "Round the clock"

    standard = resolve_policy(utc_tenant)
    pinned = services.create_ticket(utc_tenant, {"title": "Another outage", "sla_policy": standard},
                                    auto_triage=True)
    pinned.refresh_from_db()
    assert pinned.priority == "urgent" and pinned.sla_policy == standard
