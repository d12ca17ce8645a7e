from datetime import timedelta
from unittest import mock

import pytest
from django.utils import timezone

from notificationsapp.models import NotificationDispatch
from support import automation, services
from support.models import AutomationRule, AutomationRun, Ticket, TicketCategory

pytestmark = pytest.mark.django_db


def make_rule(tenant, name, *, trigger="ticket_created", conditions=None, actions=None, priority=0):
    return AutomationRule.objects.create(
        tenant=tenant, name=name, trigger_event=trigger,
        conditions=conditions or [], actions=actions or [], priority=priority,
    )


# ---- operators --------------------------------------------------------------

@pytest.mark.parametrize("condition,expected", [
    ({"field": "title", "operator": "contains", "value": "REFUND"}, True),
    ({"field": "title", "operator": "equals", "value": "refund please"}, True),
    ({"field": "title", "operator": "starts_with", "value": "refund"}, True),
    ({"field": "title", "operator": "ends_with", "value": "now"}, False),
    ({"field": "tags", "operator": "contains", "value": "vip"}, True),
    ({"field": "tags", "operator": "not_contains", "value": "vip"}, False),
    ({"field": "priority", "operator": "in", "value": "high, urgent"}, True),
    ({"field": "priority", "operator": "not_in", "value": ["low"]}, True),
    ({"field": "priority", "operator": "greater_than", "value": "medium"}, True),
    ({"field": "priority", "operator": "less_than", "value": "medium"}, False),
    ({"field": "escalation_level", "operator": "greater_than", "value": "1"}, True),
    ({"field": "assigned_to", "operator": "is_empty"}, True),
    ({"field": "requester_email", "operator": "is_not_empty"}, True),
    ({"field": "title", "operator": "sounds_like", "value": "refund"}, False),
    ({"field": "no_such_field", "operator": "equals", "value": "x"}, False),
])
def test_operators(condition, expected):
    ticket = Ticket(title="Refund please", priority="high", tags=["vip", "billing"],
                    escalation_level=2, requester_email="pat@example.com")
    assert automation.evaluate_condition(ticket, condition) is expected


def test_created_at_compares_as_time():
    ticket = Ticket(title="x", created_at=timezone.now())
    yesterday = (timezone.now() - timedelta(days=1)).isoformat()
    assert automation.evaluate_condition(ticket, {"field": "created_at", "operator": "greater_than", "value": yesterday})


def test_empty_condition_list_matches():
    matched, detail = automation.evaluate_conditions(Ticket(title="x"), [])
    assert matched and detail == []


# ---- execution --------------------------------------------------------------

def test_matching_rule_runs_all_actions_in_order(tenant):
    make_rule(tenant, "Refunds", conditions=[{"field": "title", "operator": "contains", "value": "refund"}],
              actions=[{"type": "set_priority", "params": {"priority": "high"}},
                       {"type": "add_tag", "params": {"tag": "billing"}},
                       {"type": "add_tag", "params": {"tag": "refund"}}])
    ticket = services.create_ticket(tenant, {"title": "Refund for order 42"})
    ticket.refresh_from_db()
    assert ticket.priority == "high"
    assert ticket.tags == ["billing", "refund"]
    run = AutomationRun.objects.get()
    assert run.status == "done" and run.matched
    assert [r["action"] for r in run.results] == ["set_priority", "add_tag", "add_tag"]
    assert all(r["success"] for r in run.results)
    rule = AutomationRule.objects.get()
    assert rule.run_count == 1 and rule.last_run_at is not None


def test_unmatched_rule_executes_nothing(tenant):
    make_rule(tenant, "Refunds", conditions=[{"field": "title", "operator": "contains", "value": "refund"}],
              actions=[{"type": "set_priority", "params": {"priority": "urgent"}}])
    ticket = services.create_ticket(tenant, {"title": "Password reset"})
    ticket.refresh_from_db()
    assert ticket.priority == "medium"
    run = AutomationRun.objects.get()
    assert run.status == "skipped" and not run.matched and run.results == []
    assert AutomationRule.objects.get().run_count == 0


def test_bad_action_is_recorded_and_the_next_one_runs(tenant):
    make_rule(tenant, "Mixed", actions=[
        {"type": "set_priority", "params": {"priority": "whenever"}},
        {"type": "assign_to_user", "params": {"user_id": "not-a-uuid"}},
        {"type": "add_tag", "params": {"tag": "seen"}},
    ])
    ticket = services.create_ticket(tenant, {"title": "Anything"})
    ticket.refresh_from_db()
    assert ticket.tags == ["seen"]
    results = AutomationRun.objects.get().results
    assert [r["success"] for r in results] == [False, False, True]
    assert "Unknown priority" in results[0]["error"]


def test_rules_run_by_priority_then_age(tenant):
    make_rule(tenant, "low", actions=[{"type": "add_tag", "params": {"tag": "second"}}], priority=1)
    make_rule(tenant, "high", actions=[{"type": "add_tag", "params": {"tag": "first"}}], priority=10)
    make_rule(tenant, "low-later", actions=[{"type": "add_tag", "params": {"tag": "third"}}], priority=1)
    ticket = services.create_ticket(tenant, {"title": "Order"})
    ticket.refresh_from_db()
    assert ticket.tags == ["first", "second", "third"]


def test_failing_rule_does_not_stop_the_rest(tenant):
    make_rule(tenant, "boom", actions=[{"type": "add_tag", "params": {"tag": "never"}}], priority=5)
    make_rule(tenant, "fine", actions=[{"type": "add_tag", "params": {"tag": "ok"}}])
    real = automation.execute_rule

    def flaky(rule, *args, **kwargs):
        if rule.name == "boom":
            raise RuntimeError("kaput")
        return real(rule, *args, **kwargs)

    with mock.patch.object(automation, "execute_rule", side_effect=flaky):
        ticket = services.create_ticket(tenant, {"title": "Order"})
    ticket.refresh_from_db()
    assert ticket.tags == ["ok"]
    statuses = dict(AutomationRun.objects.values_list("rule__name", "status"))
    assert statuses == {"boom": "error", "fine": "done"}


def test_actions_do_not_cascade_events(tenant):
    make_rule(tenant, "escalate on pending", trigger="ticket_status_changed",
              conditions=[{"field": "status", "operator": "equals", "value": "pending"}],
              actions=[{"type": "set_priority", "params": {"priority": "urgent"}}])
    make_rule(tenant, "tag urgent", trigger="ticket_priority_changed",
              actions=[{"type": "add_tag", "params": {"tag": "hot"}}])
    ticket = services.create_ticket(tenant, {"title": "Waiting"})
    services.change_status(ticket, "pending")
    ticket.refresh_from_db()
    assert ticket.priority == "urgent"
    assert "hot" not in ticket.tags


def test_inactive_and_other_trigger_rules_are_ignored(tenant):
    rule = make_rule(tenant, "off", actions=[{"type": "add_tag", "params": {"tag": "x"}}])
    rule.is_active = False
    rule.save()
    make_rule(tenant, "updates only", trigger="ticket_updated", actions=[{"type": "add_tag", "params": {"tag": "y"}}])
    services.create_ticket(tenant, {"title": "Quiet"})
    assert AutomationRun.objects.count() == 0


def test_category_and_comment_actions(tenant, staff_user):
    billing = TicketCategory.objects.create(tenant=tenant, name="Billing")
    make_rule(tenant, "route", conditions=[{"field": "description", "operator": "contains", "value": "invoice"}],
              actions=[{"type": "set_category", "params": {"category_id": str(billing.pk)}},
                       {"type": "assign_to_user", "params": {"user_id": str(staff_user.pk)}},
                       {"type": "add_comment", "params": {"content": "Routed {{reference}} to billing"}}])
    ticket = services.create_ticket(tenant, {"title": "Help", "description": "Wrong invoice total"})
    ticket.refresh_from_db()
    assert ticket.category == billing
    assert ticket.assigned_to == staff_user
    note = ticket.comments.get()
    assert note.is_system and note.is_internal
    assert note.content == f"Routed {ticket.reference} to billing"


def test_send_email_action_queues_notification(tenant):
    make_rule(tenant, "ack", actions=[{"type": "send_email", "params": {
        "to": "requester", "subject": "Got it: {{reference}}", "message": "We received {{title}}"}}])
    ticket = services.create_ticket(tenant, {"title": "Broken link", "requester_email": "pat@example.com"})
    dispatch = NotificationDispatch.objects.get(tenant=tenant)
    assert dispatch.to_address == "pat@example.com"
    assert dispatch.subject == f"Got it: {ticket.reference}"


def test_escalate_action_bumps_level(tenant):
    make_rule(tenant, "vip", conditions=[{"field": "tags", "operator": "contains", "value": "vip"}],
              actions=[{"type": "escalate", "params": {"reason": "VIP customer"}}])
    ticket = services.create_ticket(tenant, {"title": "Hello", "tags": ["vip"]})
    ticket.refresh_from_db()
    assert ticket.escalation_level == 1
    assert ticket.escalations.get().is_automatic


# ---- authoring helpers ------------------------------------------------------

def test_validate_rule_reports_each_problem():
    errors = automation.validate_rule({
        "trigger_event": "ticket_exploded",
        "conditions": [{"field": "title"}, {"field": "nope", "operator": "equals"}],
        "actions": [{"type": "launch_rocket"}],
    })
    assert errors["trigger_event"] == ["Invalid trigger event."]
    assert errors["conditions.0"] == ["Field and operator are required."]
    assert "conditions.1" in errors
    assert errors["actions.0"] == ["Invalid action type."]


def test_validate_rule_requires_actions():
    errors = automation.validate_rule({"trigger_event": "ticket_created", "conditions": [], "actions": []})
    assert errors == {"actions": ["At least one action is required."]}


def test_dry_run_does_not_execute(tenant):
    ticket = services.create_ticket(tenant, {"title": "Refund", "priority": "low"})
    result = automation.dry_run_rule({
        "conditions": [{"field": "priority", "operator": "equals", "value": "low"}],
        "actions": [{"type": "set_priority", "params": {"priority": "urgent"}}],
    }, ticket)
    assert result["matches"] is True
    assert result["actions"][0]["label"] == "Set priority"
    ticket.refresh_from_db()
    assert ticket.priority == "low"


def test_suggestions_mine_recent_keywords(tenant):
    billing = TicketCategory.objects.create(tenant=tenant, name="Billing")
    for n in range(3):
        services.create_ticket(tenant, {"title": f"Invoice question {n}", "category": billing})
    suggestions = automation.suggest_rules(tenant)
    names = [s["name"] for s in suggestions]
    assert "Auto-categorize 'invoice' as Billing" in names
    invoice = next(s for s in suggestions if s["name"] == "Auto-categorize 'invoice' as Billing")
    assert invoice["confidence"] == 30
    assert invoice["actions"] == [{"type": "set_category", "params": {"category_id": str(billing.pk)}}]


def test_async_dispatch_waits_for_commit(tenant, settings, django_capture_on_commit_callbacks):
    settings.SUPPORT_AUTOMATION_ASYNC = True
    make_rule(tenant, "Tag everything", actions=[{"type": "add_tag", "params": {"tag": "queued"}}])

    with mock.patch("support.tasks.run_ticket_automation.delay") as delay:
        with django_capture_on_commit_callbacks(execute=False) as callbacks:
            ticket = services.create_ticket(tenant, {"title": "Queued"})
        assert not AutomationRun.objects.exists()
        assert delay.call_count == 0
        for callback in callbacks:
            callback()
    delay.assert_called_once_with(str(ticket.pk), "ticket_created", mock.ANY)

    # eager Celery runs the queued work inline
    with django_capture_on_commit_callbacks(execute=True):
        other = services.create_ticket(tenant, {"title": "Also queued"})
    other.refresh_from_db()
    assert other.tags == ["queued"]
    assert AutomationRun.objects.filter(ticket=other, status="done").count() == 1
