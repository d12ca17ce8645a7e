# backend/support/services.py
"""
Ticket lifecycle. Views, the chatbot, the SLA sweep and automation actions all
mutate tickets through these functions so that timestamps, SLA clocks, audit
rows and automation events stay consistent.

Every mutator takes `fire_events`; automation actions pass False.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from django.conf import settings
from django.contrib.contenttypes.models import ContentType
from django.db import transaction
from django.db.models import Max
from django.utils import timezone

from common.exceptions import BusinessRuleError, ResourceInUseError
from platformapp.models import Tenant
from platformapp.services.audit import log_event
from .models import (
    DEFAULT_PRIORITY, DONE_STATUSES, OPEN_STATUSES, TICKET_PRIORITY, TICKET_STATUS,
    SLAPolicy, Ticket, TicketComment, TicketEscalation,
)
from .sla import BusinessCalendar, apply_sla, resolve_policy, sla_config

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "status", "priority", "channel", "category", "assigned_to",
                    "tags", "requester_name", "requester_email")
BULK_ACTIONS = ("assign", "set_status", "set_priority", "add_tag", "close", "delete")


def _fire(ticket: Ticket, event: str, context: Optional[Dict[str, Any]] = None):
    from .automation import dispatch_event
    return dispatch_event(ticket, event, context or {})


def _audit(ticket: Ticket, action: str, actor=None, meta: Optional[Dict[str, Any]] = None):
    try:
        log_event(tenant=ticket.tenant, user_id=str(actor.pk) if getattr(actor, "pk", None) else None,
                  action=f"ticket.{action}", entity="support.Ticket", entity_id=str(ticket.pk), meta=meta or {})
    except Exception:
        logger.warning("audit write failed for ticket.%s %s", action, ticket.pk, exc_info=True)


def _minutes_since_clock(ticket: Ticket, end) -> int:
    start = ticket.reopened_at or ticket.created_at or end
    if ticket.sla_policy_id and ticket.sla_policy.business_hours_only:
        return BusinessCalendar.for_tenant(ticket.tenant).business_minutes_between(start, end)
    return max(0, int((end - start).total_seconds() // 60))


def _next_number(tenant: Tenant) -> int:
    # lock the tenant row so concurrent creates serialise on the counter
    Tenant.objects.select_for_update().filter(pk=tenant.pk).first()
    current = Ticket.objects.filter(tenant=tenant).aggregate(m=Max("number"))["m"] or 0
    return current + 1


def _describe_requester(obj) -> Tuple[str, str]:
    name = getattr(obj, "name", None) or getattr(obj, "display_name", None) or str(obj)
    return name or "", getattr(obj, "email", None) or ""


def set_requester(ticket: Ticket, requester) -> None:
    """Point the generic requester at a crm.Customer, crm.Lead or identity.User."""
    ticket.requester_content_type = ContentType.objects.get_for_model(requester)
    ticket.requester_object_id = str(requester.pk)
    name, email = _describe_requester(requester)
    ticket.requester_name = ticket.requester_name or name
    ticket.requester_email = ticket.requester_email or email


# ---------------------------------------------------------------------------
# create / update
# ---------------------------------------------------------------------------

def create_ticket(tenant: Tenant, data: Dict[str, Any], *, actor=None, requester=None,
                  fire_events: bool = True, auto_triage: Optional[bool] = None) -> Ticket:
    priority = data.get("priority") or DEFAULT_PRIORITY
    category = data.get("category")
    with transaction.atomic():
        ticket = Ticket(
            tenant=tenant,
            number=_next_number(tenant),
            title=data["title"],
            description=data.get("description") or "",
            priority=priority,
            status=data.get("status") or "open",
            channel=data.get("channel") or ("staff" if actor is not None else "web"),
            category=category,
            assigned_to=data.get("assigned_to"),
            created_by=actor if getattr(actor, "is_authenticated", False) else None,
            requester_name=data.get("requester_name") or "",
            requester_email=data.get("requester_email") or "",
            tags=list(dict.fromkeys(data.get("tags") or [])),
            metadata=dict(data.get("metadata") or {}),
        )
        if requester is not None:
            set_requester(ticket, requester)
        policy = data.get("sla_policy") or resolve_policy(tenant, category, priority)
        apply_sla(ticket, policy, timezone.now())
        ticket.save()
        _audit(ticket, "created", actor, {"reference": ticket.reference, "sla_policy": policy.name})

    logger.info("ticket %s created for tenant %s (policy %s)", ticket.reference, tenant.slug, policy.name)

    if auto_triage is None:
        auto_triage = getattr(settings, "SUPPORT_AI", {}).get("AUTO_TRIAGE", False)
    if auto_triage:
        from .ai import auto_triage as run_triage
        run_triage(ticket, keep_policy=bool(data.get("sla_policy")))

    if fire_events:
        _fire(ticket, "ticket_created", {"actor_id": str(actor.pk) if getattr(actor, "pk", None) else None})
    return ticket


def _apply_status(ticket: Ticket, new_status: str, now) -> None:
    old = ticket.status
    ticket.status = new_status
    if new_status in DONE_STATUSES and old not in DONE_STATUSES:
        ticket.resolved_at = ticket.resolved_at or now
        ticket.resolution_time_minutes = _minutes_since_clock(ticket, ticket.resolved_at)
    if new_status == "closed":
        ticket.closed_at = now
    elif old == "closed":
        ticket.closed_at = None
    if new_status in OPEN_STATUSES and old in DONE_STATUSES:
        _restart_clock(ticket, now)


def _restart_clock(ticket: Ticket, now) -> None:
    ticket.reopened_at = now
    ticket.escalation_level = 0
    ticket.resolved_at = None
    ticket.closed_at = None
    ticket.resolution_time_minutes = None
    apply_sla(ticket, ticket.sla_policy, now)


def update_ticket(ticket: Ticket, data: Dict[str, Any], *, actor=None, fire_events: bool = True) -> Dict[str, Any]:
    """
    Apply field changes and fire one event per kind of change, then
    `ticket_updated`. Returns {field: [old, new]} for what actually changed.
    """
    if "status" in data and data["status"] not in dict(TICKET_STATUS):
        raise BusinessRuleError(f"Unknown status '{data['status']}'.", field="status")
    if "priority" in data and data["priority"] not in dict(TICKET_PRIORITY):
        raise BusinessRuleError(f"Unknown priority '{data['priority']}'.", field="priority")

    now = timezone.now()
    changes: Dict[str, Any] = {}
    with transaction.atomic():
        for name in UPDATABLE_FIELDS:
            if name not in data:
                continue
            old = getattr(ticket, name)
            new = data[name]
            if name == "tags":
                new = list(dict.fromkeys(new or []))
            if old == new:
                continue
            changes[name] = [_plain(old), _plain(new)]
            if name == "status":
                _apply_status(ticket, new, now)
            else:
                setattr(ticket, name, new)
        if not changes:
            return {}
        ticket.save()
        _audit(ticket, "updated", actor, {"changes": changes})

    if fire_events:
        context = {"changes": changes, "actor_id": str(actor.pk) if getattr(actor, "pk", None) else None}
        if "status" in changes:
            _fire(ticket, "ticket_status_changed", {**context, "old_status": changes["status"][0]})
        if "priority" in changes:
            _fire(ticket, "ticket_priority_changed", {**context, "old_priority": changes["priority"][0]})
        if "assigned_to" in changes and ticket.assigned_to_id:
            _fire(ticket, "ticket_assigned", context)
        _fire(ticket, "ticket_updated", context)
    return changes


def _plain(value):
    if hasattr(value, "pk"):
        return str(value.pk)
    return value


def change_status(ticket: Ticket, status: str, *, actor=None, fire_events: bool = True) -> Dict[str, Any]:
    return update_ticket(ticket, {"status": status}, actor=actor, fire_events=fire_events)


def change_priority(ticket: Ticket, priority: str, *, actor=None, fire_events: bool = True) -> Dict[str, Any]:
    return update_ticket(ticket, {"priority": priority}, actor=actor, fire_events=fire_events)


def assign_ticket(ticket: Ticket, user, *, actor=None, fire_events: bool = True) -> Dict[str, Any]:
    if user is not None and not user.is_active:
        raise BusinessRuleError("Cannot assign a ticket to an inactive user.", field="assigned_to")
    return update_ticket(ticket, {"assigned_to": user}, actor=actor, fire_events=fire_events)


def set_sla_policy(ticket: Ticket, policy: SLAPolicy, *, actor=None) -> Ticket:
    """Switch policy; due dates are recomputed from the ticket's creation time."""
    if policy.tenant_id != ticket.tenant_id:
        raise BusinessRuleError("SLA policy belongs to another tenant.", field="sla_policy")
    if not policy.is_active:
        raise BusinessRuleError("SLA policy is not active.", field="sla_policy")
    old = ticket.sla_policy_id
    apply_sla(ticket, policy, ticket.reopened_at or ticket.created_at)
    ticket.save()
    _audit(ticket, "sla_changed", actor, {"from": str(old), "to": str(policy.pk)})
    return ticket


def add_tags(ticket: Ticket, tags: Iterable[str]) -> List[str]:
    current = list(ticket.tags or [])
    added = [t for t in dict.fromkeys(t.strip() for t in tags if t and t.strip()) if t not in current]
    if added:
        ticket.tags = current + added
        ticket.save(update_fields=["tags", "updated_at"])
    return added


def remove_tags(ticket: Ticket, tags: Iterable[str]) -> List[str]:
    drop = {t.strip() for t in tags if t}
    current = list(ticket.tags or [])
    removed = [t for t in current if t in drop]
    if removed:
        ticket.tags = [t for t in current if t not in drop]
        ticket.save(update_fields=["tags", "updated_at"])
    return removed


# ---------------------------------------------------------------------------
# lifecycle actions
# ---------------------------------------------------------------------------

def add_comment(ticket: Ticket, *, content: str, author=None, is_internal: bool = False,
                is_system: bool = False, is_ai_generated: bool = False, fire_events: bool = True) -> TicketComment:
    if not (content or "").strip():
        raise BusinessRuleError("Comment content is required.", field="content")
    now = timezone.now()
    with transaction.atomic():
        comment = TicketComment.objects.create(
            tenant=ticket.tenant, ticket=ticket, author=author, content=content,
            is_internal=is_internal, is_system=is_system, is_ai_generated=is_ai_generated,
        )
        staff_reply = bool(author is not None and getattr(author, "is_staff", False))
        if staff_reply and not is_internal and not is_system and ticket.first_response_at is None:
            ticket.first_response_at = now
            ticket.response_time_minutes = _minutes_since_clock(ticket, now)
            ticket.save(update_fields=["first_response_at", "response_time_minutes", "updated_at"])
    if fire_events:
        _fire(ticket, "comment_added", {"comment_id": str(comment.pk), "is_internal": is_internal})
    return comment


def escalate_ticket(ticket: Ticket, *, reason: str = "", escalated_by=None, escalated_to=None,
                    level: Optional[int] = None, is_automatic: bool = False,
                    fire_events: bool = True) -> TicketEscalation:
    if ticket.status in DONE_STATUSES:
        raise BusinessRuleError("Resolved or closed tickets cannot be escalated.", field="status")
    now = timezone.now()
    new_level = level or ticket.escalation_level + 1
    with transaction.atomic():
        escalation = TicketEscalation.objects.create(
            tenant=ticket.tenant, ticket=ticket, level=new_level, reason=reason,
            escalated_by=escalated_by, escalated_to=escalated_to, is_automatic=is_automatic,
        )
        ticket.escalation_level = max(ticket.escalation_level, new_level)
        ticket.escalated_at = now
        update_fields = ["escalation_level", "escalated_at", "updated_at"]
        if escalated_to is not None and ticket.assigned_to_id != escalated_to.pk:
            ticket.assigned_to = escalated_to
            update_fields.append("assigned_to")
        ticket.save(update_fields=update_fields)
        TicketComment.objects.create(
            tenant=ticket.tenant, ticket=ticket, author=escalated_by, is_internal=True, is_system=True,
            content=f"Escalated to level {new_level}" + (f": {reason}" if reason else "."),
        )
        _audit(ticket, "escalated", escalated_by, {"level": new_level, "automatic": is_automatic})
        if escalated_to is not None and escalated_to.email:
            from notificationsapp.utils import queue_notification
            queue_notification(
                ticket.tenant, channel="email", to_address=escalated_to.email, to_user_id=str(escalated_to.pk),
                template_key="ticket_escalated",
                subject=f"[{ticket.reference}] escalated to level {new_level}",
                body=f"{ticket.title}\n\n{reason}".strip(),
                payload={"ticket_id": str(ticket.pk), "reference": ticket.reference, "level": new_level},
            )

    logger.info("ticket %s escalated to level %s (automatic=%s)", ticket.reference, new_level, is_automatic)
    if fire_events and "assigned_to" in update_fields:
        _fire(ticket, "ticket_assigned", {"escalation_id": str(escalation.pk)})
    if fire_events:
        _fire(ticket, "ticket_updated", {"escalation_id": str(escalation.pk)})
    return escalation


def reopen_ticket(ticket: Ticket, *, actor=None, reason: str = "", fire_events: bool = True) -> Ticket:
    if ticket.status not in DONE_STATUSES:
        raise BusinessRuleError("Only resolved or closed tickets can be reopened.", field="status")
    old = ticket.status
    now = timezone.now()
    with transaction.atomic():
        ticket.status = "open"
        _restart_clock(ticket, now)
        ticket.save()
        if reason:
            TicketComment.objects.create(tenant=ticket.tenant, ticket=ticket, author=actor,
                                         is_internal=True, is_system=True, content=f"Reopened: {reason}")
        _audit(ticket, "reopened", actor, {"from": old})
    if fire_events:
        context = {"changes": {"status": [old, "open"]}, "old_status": old}
        _fire(ticket, "ticket_status_changed", context)
        _fire(ticket, "ticket_updated", context)
    return ticket


def close_ticket(ticket: Ticket, *, actor=None, fire_events: bool = True) -> Ticket:
    if ticket.status == "closed":
        raise BusinessRuleError("Ticket is already closed.", field="status")
    change_status(ticket, "closed", actor=actor, fire_events=fire_events)
    return ticket


def bulk_update(tickets: List[Ticket], action: str, params: Dict[str, Any], *, actor=None) -> Tuple[int, List[str]]:
    """
    Apply one bulk action. Returns (processed, failed_ids); a ticket that
    violates a rule (e.g. closing a closed ticket) is reported, not fatal.
    """
    if action not in BULK_ACTIONS:
        raise BusinessRuleError(f"Unknown bulk action '{action}'.", field="action")
    user = None
    if action == "assign":
        from django.contrib.auth import get_user_model
        user = get_user_model().objects.filter(pk=params.get("user_id"), is_active=True).first() \
            if params.get("user_id") else None
        if user is None:
            raise BusinessRuleError("A valid user_id is required.", field="user_id")
    if action == "set_status" and params.get("status") not in dict(TICKET_STATUS):
        raise BusinessRuleError("A valid status is required.", field="status")
    if action == "set_priority" and params.get("priority") not in dict(TICKET_PRIORITY):
        raise BusinessRuleError("A valid priority is required.", field="priority")
    if action == "add_tag" and not str(params.get("tag") or "").strip():
        raise BusinessRuleError("A tag is required.", field="tag")

    processed, failed = 0, []
    for ticket in tickets:
        try:
            if action == "assign":
                assign_ticket(ticket, user, actor=actor)
            elif action == "set_status":
                change_status(ticket, params["status"], actor=actor)
            elif action == "set_priority":
                change_priority(ticket, params["priority"], actor=actor)
            elif action == "add_tag":
                add_tags(ticket, [str(params["tag"])])
            elif action == "close":
                close_ticket(ticket, actor=actor)
            elif action == "delete":
                _audit(ticket, "deleted", actor, {"reference": ticket.reference})
                ticket.delete()
            processed += 1
        except BusinessRuleError as exc:
            logger.info("bulk %s skipped ticket %s: %s", action, ticket.pk, exc.message)
            failed.append(str(ticket.pk))
    return processed, failed


def delete_sla_policy(policy: SLAPolicy) -> None:
    if policy.tickets.exists():
        raise ResourceInUseError("Cannot delete SLA policy that has tickets assigned to it.", field="sla_policy")
    if policy.is_default:
        raise ResourceInUseError("Cannot delete the default SLA policy.", field="sla_policy")
    policy.delete()


def escalation_enabled(tenant) -> bool:
    return bool(sla_config("enable_sla_escalation", tenant))
