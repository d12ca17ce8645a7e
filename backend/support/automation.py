# backend/support/automation.py
"""
Ticket automation engine.

A rule is (trigger event, conditions, actions). For an event on a ticket every
active rule of the tenant with that trigger is evaluated, highest `priority`
first (oldest first on ties). Conditions are ANDed; an empty list matches.
When a rule matches, its actions run in declared order. Each action is
isolated: a failing or misconfigured action is recorded and the next one still
runs. A rule that blows up is logged and recorded, and the next rule still runs.

Operators, fields and actions live in registries keyed by name, so the rule
JSON is interpreted rather than compiled. Actions call the ticket services with
`fire_events=False`: automation never re-enters itself.
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from .models import (
    AutomationRule, AutomationRun, SLAPolicy, Ticket, TicketCategory,
    PRIORITY_LADDER, TICKET_PRIORITY, TICKET_STATUS, TRIGGER_EVENTS,
)

logger = logging.getLogger(__name__)

TRIGGERS = dict(TRIGGER_EVENTS)


class ActionError(Exception):
    """Raised by an action handler for invalid params or an impossible change."""


# ---------------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------------

FIELDS: Dict[str, Tuple[str, Callable[[Ticket], Any]]] = {
    "title": ("Title", lambda t: t.title),
    "description": ("Description", lambda t: t.description),
    "status": ("Status", lambda t: t.status),
    "priority": ("Priority", lambda t: t.priority),
    "channel": ("Channel", lambda t: t.channel),
    "category_id": ("Category", lambda t: str(t.category_id) if t.category_id else None),
    "category_name": ("Category name", lambda t: t.category.name if t.category_id else None),
    "assigned_to": ("Assignee", lambda t: str(t.assigned_to_id) if t.assigned_to_id else None),
    "requester_email": ("Requester email", lambda t: t.requester_email),
    "requester_type": ("Requester type", lambda t: t.requester_type),
    "tags": ("Tags", lambda t: list(t.tags or [])),
    "escalation_level": ("Escalation level", lambda t: t.escalation_level),
    "created_at": ("Created at", lambda t: t.created_at),
}


def field_value(ticket: Ticket, name: str) -> Any:
    return FIELDS[name][1](ticket)


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------

OPERATORS: Dict[str, Tuple[str, Callable[[Any, Any], bool]]] = {}


def operator(name: str, label: str):
    def register(fn):
        OPERATORS[name] = (label, fn)
        return fn
    return register


def _norm(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [] if value is None else [value]


def _comparable(value: Any):
    """Priority names rank, datetimes/dates compare as time, the rest as numbers."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = _norm(value)
    if text in PRIORITY_LADDER:
        return PRIORITY_LADDER.index(text)
    dt = parse_datetime(str(value)) if value is not None else None
    if dt is None and value is not None:
        d = parse_date(str(value))
        if d is not None:
            dt = datetime(d.year, d.month, d.day)
    if dt is not None:
        return dt if timezone.is_aware(dt) else timezone.make_aware(dt)
    return float(text)  # ValueError for anything else


def _compare(actual: Any, expected: Any) -> Optional[int]:
    try:
        a, b = _comparable(actual), _comparable(expected)
        if isinstance(a, datetime) != isinstance(b, datetime):
            return None
        return (a > b) - (a < b)
    except (TypeError, ValueError):
        return None


@operator("equals", "Equals")
def _equals(actual, expected):
    if isinstance(actual, list):
        return any(_norm(a) == _norm(expected) for a in actual)
    return _norm(actual) == _norm(expected)


@operator("not_equals", "Does not equal")
def _not_equals(actual, expected):
    return not _equals(actual, expected)


@operator("contains", "Contains")
def _contains(actual, expected):
    if isinstance(actual, list):
        return _norm(expected) in {_norm(a) for a in actual}
    needle = _norm(expected)
    return bool(needle) and needle in _norm(actual)


@operator("not_contains", "Does not contain")
def _not_contains(actual, expected):
    return not _contains(actual, expected)


@operator("starts_with", "Starts with")
def _starts_with(actual, expected):
    return _norm(actual).startswith(_norm(expected))


@operator("ends_with", "Ends with")
def _ends_with(actual, expected):
    return _norm(actual).endswith(_norm(expected))


@operator("in", "Is one of")
def _in(actual, expected):
    options = {_norm(v) for v in _as_list(expected)}
    if isinstance(actual, list):
        return any(_norm(a) in options for a in actual)
    return _norm(actual) in options


@operator("not_in", "Is not one of")
def _not_in(actual, expected):
    return not _in(actual, expected)


@operator("greater_than", "Greater than")
def _greater_than(actual, expected):
    return _compare(actual, expected) == 1


@operator("less_than", "Less than")
def _less_than(actual, expected):
    return _compare(actual, expected) == -1


@operator("is_empty", "Is empty")
def _is_empty(actual, expected=None):
    return actual is None or actual == "" or actual == [] or actual == {}


@operator("is_not_empty", "Is not empty")
def _is_not_empty(actual, expected=None):
    return not _is_empty(actual)


def evaluate_condition(ticket: Ticket, condition: Dict[str, Any]) -> bool:
    name = condition.get("field")
    op = condition.get("operator")
    if name not in FIELDS:
        logger.warning("automation condition on unknown field %r", name)
        return False
    if op not in OPERATORS:
        logger.warning("automation condition with unknown operator %r", op)
        return False
    return bool(OPERATORS[op][1](field_value(ticket, name), condition.get("value")))


def evaluate_conditions(ticket: Ticket, conditions: List[Dict[str, Any]]) -> Tuple[bool, List[Dict[str, Any]]]:
    """All conditions must hold. Returns (matched, per-condition detail)."""
    detail = []
    matched = True
    for cond in conditions or []:
        ok = evaluate_condition(ticket, cond) if isinstance(cond, dict) else False
        detail.append({
            "field": cond.get("field") if isinstance(cond, dict) else None,
            "operator": cond.get("operator") if isinstance(cond, dict) else None,
            "value": cond.get("value") if isinstance(cond, dict) else None,
            "actual": _jsonable(field_value(ticket, cond["field"])) if isinstance(cond, dict) and cond.get("field") in FIELDS else None,
            "result": ok,
        })
        matched = matched and ok
    return matched, detail


def _jsonable(value):
    return value.isoformat() if isinstance(value, datetime) else value


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass
class ActionContext:
    rule: AutomationRule
    event: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionSpec:
    label: str
    handler: Callable[[Ticket, Dict[str, Any], ActionContext], str]
    params: Tuple[str, ...] = ()


ACTIONS: Dict[str, ActionSpec] = {}


def action(name: str, label: str, params: Tuple[str, ...] = ()):
    def register(fn):
        ACTIONS[name] = ActionSpec(label=label, handler=fn, params=params)
        return fn
    return register


def _require(params: Dict[str, Any], key: str) -> Any:
    value = params.get(key)
    if value in (None, "", []):
        raise ActionError(f"Missing parameter '{key}'.")
    return value


def _tenant_user(ticket: Ticket, user_id):
    User = get_user_model()
    try:
        user = User.objects.filter(pk=user_id, is_active=True).first()
    except (ValueError, ValidationError) as exc:
        raise ActionError(f"Invalid user id {user_id!r}.") from exc
    if user is None:
        raise ActionError(f"User {user_id} not found.")
    return user


@action("assign_to_user", "Assign to user", params=("user_id",))
def _assign_to_user(ticket, params, ctx):
    from . import services
    user = _tenant_user(ticket, _require(params, "user_id"))
    services.assign_ticket(ticket, user, fire_events=False)
    return f"Assigned to {user.email}"


@action("set_priority", "Set priority", params=("priority",))
def _set_priority(ticket, params, ctx):
    from . import services
    priority = _norm(_require(params, "priority"))
    if priority not in dict(TICKET_PRIORITY):
        raise ActionError(f"Unknown priority {priority!r}.")
    services.change_priority(ticket, priority, fire_events=False)
    return f"Priority set to {priority}"


@action("set_status", "Set status", params=("status",))
def _set_status(ticket, params, ctx):
    from . import services
    status = _norm(_require(params, "status"))
    if status not in dict(TICKET_STATUS):
        raise ActionError(f"Unknown status {status!r}.")
    services.change_status(ticket, status, fire_events=False)
    return f"Status set to {status}"


@action("set_category", "Set category", params=("category_id",))
def _set_category(ticket, params, ctx):
    from . import services
    cid = _require(params, "category_id")
    try:
        category = TicketCategory.objects.filter(tenant=ticket.tenant, pk=cid).first()
    except (ValueError, ValidationError) as exc:
        raise ActionError(f"Invalid category id {cid!r}.") from exc
    if category is None:
        raise ActionError(f"Category {cid} not found.")
    services.update_ticket(ticket, {"category": category}, fire_events=False)
    return f"Category set to {category.name}"


@action("set_sla_policy", "Set SLA policy", params=("sla_policy_id",))
def _set_sla_policy(ticket, params, ctx):
    from . import services
    pid = _require(params, "sla_policy_id")
    try:
        policy = SLAPolicy.objects.filter(tenant=ticket.tenant, pk=pid, is_active=True).first()
    except (ValueError, ValidationError) as exc:
        raise ActionError(f"Invalid SLA policy id {pid!r}.") from exc
    if policy is None:
        raise ActionError(f"Active SLA policy {pid} not found.")
    services.set_sla_policy(ticket, policy)
    return f"SLA policy set to {policy.name}"


@action("add_tag", "Add tag", params=("tag",))
def _add_tag(ticket, params, ctx):
    from . import services
    tag = str(_require(params, "tag")).strip()
    added = services.add_tags(ticket, [tag])
    return f"Tag '{tag}' added" if added else f"Tag '{tag}' already present"


@action("remove_tag", "Remove tag", params=("tag",))
def _remove_tag(ticket, params, ctx):
    from . import services
    tag = str(_require(params, "tag")).strip()
    removed = services.remove_tags(ticket, [tag])
    return f"Tag '{tag}' removed" if removed else f"Tag '{tag}' not present"


def _recipient(ticket: Ticket, to: str) -> str:
    to = str(to).strip()
    if to == "requester":
        address = ticket.requester_email
    elif to == "assignee":
        address = ticket.assigned_to.email if ticket.assigned_to_id else ""
    else:
        address = to
    if not address or "@" not in address:
        raise ActionError(f"No e-mail address for recipient {to!r}.")
    return address


def _render(text: str, ticket: Ticket) -> str:
    """{{reference}}, {{title}}, {{status}}, {{priority}} placeholders."""
    values = {
        "reference": ticket.reference, "title": ticket.title,
        "status": ticket.status, "priority": ticket.priority,
        "requester_name": ticket.requester_name,
    }
    return re.sub(r"\{\{\s*(\w+)\s*\}\}", lambda m: str(values.get(m.group(1), m.group(0))), text or "")


@action("send_email", "Send e-mail", params=("to", "subject", "message"))
def _send_email(ticket, params, ctx):
    from notificationsapp.utils import queue_notification
    address = _recipient(ticket, _require(params, "to"))
    queue_notification(
        ticket.tenant, channel="email", to_address=address,
        subject=_render(_require(params, "subject"), ticket),
        body=_render(_require(params, "message"), ticket),
        payload={"ticket_id": str(ticket.id), "rule_id": str(ctx.rule.id)},
    )
    return f"E-mail queued to {address}"


@action("notify", "Notify user", params=("message",))
def _notify(ticket, params, ctx):
    from notificationsapp.utils import queue_notification
    user_id = params.get("user_id") or ticket.assigned_to_id
    if not user_id:
        raise ActionError("No user to notify (ticket unassigned and no user_id).")
    user = _tenant_user(ticket, user_id)
    channel = params.get("channel") or "email"
    if channel not in ("email", "in_app"):
        raise ActionError(f"Unsupported channel {channel!r}.")
    queue_notification(
        ticket.tenant, channel=channel, to_address=user.email, to_user_id=str(user.pk),
        subject=f"[{ticket.reference}] {ticket.title}",
        body=_render(_require(params, "message"), ticket),
        payload={"ticket_id": str(ticket.id), "rule_id": str(ctx.rule.id)},
    )
    return f"Notified {user.email} via {channel}"


@action("add_comment", "Add comment", params=("content",))
def _add_comment(ticket, params, ctx):
    from . import services
    comment = services.add_comment(
        ticket, content=_render(_require(params, "content"), ticket),
        is_internal=bool(params.get("is_internal", True)), is_system=True, fire_events=False,
    )
    return f"Comment {comment.id} added"


@action("escalate", "Escalate", params=("reason",))
def _escalate(ticket, params, ctx):
    from . import services
    escalated_to = _tenant_user(ticket, params["escalated_to"]) if params.get("escalated_to") else None
    level = params.get("level")
    if level not in (None, ""):
        try:
            level = int(level)
        except (TypeError, ValueError) as exc:
            raise ActionError(f"Invalid escalation level {level!r}.") from exc
        if level < 1:
            raise ActionError("Escalation level must be at least 1.")
    else:
        level = None
    services.escalate_ticket(
        ticket, reason=params.get("reason") or f"Automation rule: {ctx.rule.name}",
        escalated_to=escalated_to, level=level, is_automatic=True, fire_events=False,
    )
    return f"Escalated to level {ticket.escalation_level}"


def execute_action(ticket: Ticket, step: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    kind = step.get("type") if isinstance(step, dict) else None
    out: Dict[str, Any] = {"action": kind}
    try:
        if kind not in ACTIONS:
            raise ActionError(f"Unknown action type: {kind}")
        params = step.get("params") or {}
        if not isinstance(params, dict):
            raise ActionError("Action params must be an object.")
        with transaction.atomic():
            out["result"] = ACTIONS[kind].handler(ticket, params, ctx)
        out["success"] = True
    except ActionError as exc:
        logger.warning("automation rule %s action %s rejected: %s", ctx.rule.id, kind, exc)
        out.update(success=False, error=str(exc))
    except Exception as exc:
        logger.warning("automation rule %s action %s failed", ctx.rule.id, kind, exc_info=True)
        out.update(success=False, error=str(exc))
    return out


# ---------------------------------------------------------------------------
# Rule execution
# ---------------------------------------------------------------------------

def active_rules(tenant, event: str):
    return AutomationRule.objects.filter(tenant=tenant, is_active=True, trigger_event=event).order_by("-priority", "created_at")


def execute_rule(rule: AutomationRule, ticket: Ticket, event: str,
                 context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    matched, detail = evaluate_conditions(ticket, rule.conditions or [])
    if not matched:
        return {"rule_id": str(rule.id), "rule_name": rule.name, "matched": False,
                "executed": False, "message": "Conditions not met", "conditions": detail, "actions": []}

    ctx = ActionContext(rule=rule, event=event, context=context or {})
    results = [execute_action(ticket, step, ctx) for step in (rule.actions or [])]
    AutomationRule.objects.filter(pk=rule.pk).update(run_count=F("run_count") + 1, last_run_at=timezone.now())
    logger.info("automation rule %s (%s) executed on %s for %s", rule.name, rule.id, ticket.reference, event)
    return {"rule_id": str(rule.id), "rule_name": rule.name, "matched": True, "executed": True,
            "conditions": detail, "actions": results}


def process_ticket_event(ticket: Ticket, event: str, context: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Run every matching rule for `event`; one rule's failure never stops the next."""
    if event not in TRIGGERS:
        raise ValueError(f"Unknown trigger event: {event}")

    results = []
    for rule in active_rules(ticket.tenant, event):
        try:
            with transaction.atomic():
                outcome = execute_rule(rule, ticket, event, context)
            status = "done" if outcome["matched"] else "skipped"
            AutomationRun.objects.create(
                tenant=ticket.tenant, rule=rule, ticket=ticket, event=event,
                matched=outcome["matched"], status=status, results=outcome["actions"],
            )
        except Exception as exc:
            logger.exception("automation rule %s failed on ticket %s", rule.id, ticket.id)
            outcome = {"rule_id": str(rule.id), "rule_name": rule.name, "matched": None,
                       "executed": False, "error": str(exc), "actions": []}
            AutomationRun.objects.create(
                tenant=ticket.tenant, rule=rule, ticket=ticket, event=event,
                matched=False, status="error", error=str(exc),
            )
            ticket.refresh_from_db()
        results.append(outcome)
    return results


def dispatch_event(ticket: Ticket, event: str, context: Optional[Dict[str, Any]] = None):
    """
    Entry point used by the ticket services. Synchronous unless
    SUPPORT_AUTOMATION_ASYNC is set, in which case the work is queued after commit.
    """
    if getattr(settings, "SUPPORT_AUTOMATION_ASYNC", False):
        from .tasks import run_ticket_automation
        ticket_id = str(ticket.id)
        transaction.on_commit(lambda: run_ticket_automation.delay(ticket_id, event, context or {}))
        return None
    return process_ticket_event(ticket, event, context)


# ---------------------------------------------------------------------------
# Authoring helpers
# ---------------------------------------------------------------------------

def validate_rule(data: Dict[str, Any]) -> Dict[str, List[str]]:
    """Field-keyed error messages; empty dict means the rule is valid."""
    errors: Dict[str, List[str]] = {}
    if data.get("trigger_event") not in TRIGGERS:
        errors["trigger_event"] = ["Invalid trigger event."]

    conditions = data.get("conditions") or []
    if not isinstance(conditions, list):
        errors["conditions"] = ["Conditions must be a list."]
        conditions = []
    for i, cond in enumerate(conditions):
        if not isinstance(cond, dict) or not cond.get("field") or not cond.get("operator"):
            errors[f"conditions.{i}"] = ["Field and operator are required."]
        elif cond["field"] not in FIELDS:
            errors[f"conditions.{i}"] = [f"Unknown field '{cond['field']}'."]
        elif cond["operator"] not in OPERATORS:
            errors[f"conditions.{i}"] = [f"Unknown operator '{cond['operator']}'."]

    actions = data.get("actions")
    if not isinstance(actions, list) or not actions:
        errors["actions"] = ["At least one action is required."]
        actions = []
    for i, act in enumerate(actions):
        if not isinstance(act, dict) or act.get("type") not in ACTIONS:
            errors[f"actions.{i}"] = ["Invalid action type."]
            continue
        params = act.get("params") or {}
        missing = [p for p in ACTIONS[act["type"]].params
                   if p not in ("reason",) and params.get(p) in (None, "")]
        if missing:
            errors[f"actions.{i}"] = [f"Missing parameter(s): {', '.join(missing)}."]
    return errors


def ticket_snapshot(ticket: Ticket) -> Dict[str, Any]:
    return {name: _jsonable(field_value(ticket, name)) for name in FIELDS}


def dry_run_rule(rule_data: Dict[str, Any], ticket: Ticket) -> Dict[str, Any]:
    """Dry run: would this rule match `ticket`? Nothing is executed."""
    matched, detail = evaluate_conditions(ticket, rule_data.get("conditions") or [])
    return {
        "matches": matched,
        "conditions": detail,
        "actions": [
            {"type": a.get("type"), "label": ACTIONS[a["type"]].label if a.get("type") in ACTIONS else None,
             "params": a.get("params") or {}}
            for a in (rule_data.get("actions") or []) if isinstance(a, dict)
        ],
        "ticket_data": ticket_snapshot(ticket),
    }


def metadata() -> Dict[str, Any]:
    return {
        "trigger_events": [{"value": k, "label": v} for k, v in TRIGGER_EVENTS],
        "fields": [{"value": k, "label": v[0]} for k, v in FIELDS.items()],
        "operators": [{"value": k, "label": v[0]} for k, v in OPERATORS.items()],
        "actions": [{"value": k, "label": v.label, "params": list(v.params)} for k, v in ACTIONS.items()],
        "priorities": PRIORITY_LADDER,
        "statuses": [s for s, _ in TICKET_STATUS],
    }


STOPWORDS = {
    "about", "after", "again", "cannot", "could", "there", "their", "these", "thing",
    "where", "which", "while", "would", "please", "thanks", "hello", "since", "still",
}


def _words(text: str) -> List[str]:
    return [w for w in re.findall(r"[a-z0-9']+", (text or "").lower()) if len(w) > 4 and w not in STOPWORDS]


def suggest_rules(tenant, days: int = 30) -> List[Dict[str, Any]]:
    """
    Mine recent tickets for keywords that co-occur with a category or a
    non-default priority and propose rules for them.
    """
    since = timezone.now() - timedelta(days=days)
    recent = Ticket.objects.filter(tenant=tenant, created_at__gte=since).select_related("category")
    by_category: Dict[Any, Counter] = {}
    by_priority: Dict[str, Counter] = {}
    names: Dict[Any, str] = {}
    for t in recent.only("title", "description", "priority", "category__name", "category_id"):
        words = set(_words(f"{t.title} {t.description}"))
        if t.category_id:
            names[t.category_id] = t.category.name
            by_category.setdefault(t.category_id, Counter()).update(words)
        if t.priority != "medium":
            by_priority.setdefault(t.priority, Counter()).update(words)

    suggestions = []
    for cid, counter in by_category.items():
        for word, count in counter.most_common(3):
            if count < 3:
                continue
            suggestions.append({
                "type": "auto_categorize",
                "name": f"Auto-categorize '{word}' as {names[cid]}",
                "trigger_event": "ticket_created",
                "conditions": [{"field": "title", "operator": "contains", "value": word}],
                "actions": [{"type": "set_category", "params": {"category_id": str(cid)}}],
                "confidence": min(round(count / 10 * 100), 95),
                "sample_size": count,
            })
    for priority, counter in by_priority.items():
        for word, count in counter.most_common(2):
            if count < 2:
                continue
            suggestions.append({
                "type": "auto_prioritize",
                "name": f"Set {priority} priority for '{word}'",
                "trigger_event": "ticket_created",
                "conditions": [{"field": "title", "operator": "contains", "value": word}],
                "actions": [{"type": "set_priority", "params": {"priority": priority}}],
                "confidence": min(round(count / 5 * 100), 90),
                "sample_size": count,
            })
    return sorted(suggestions, key=lambda s: -s["confidence"])
