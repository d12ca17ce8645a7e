import logging

from celery import shared_task
from django.utils import timezone

from .models import OPEN_STATUSES, Ticket

logger = logging.getLogger(__name__)


@shared_task
def run_ticket_automation(ticket_id: str, event: str, context: dict = None):
    from .automation import process_ticket_event

    ticket = Ticket.objects.select_related("tenant", "category", "sla_policy").filter(pk=ticket_id).first()
    if ticket is None:
        logger.info("automation skipped: ticket %s no longer exists", ticket_id)
        return []
    return process_ticket_event(ticket, event, context or {})


@shared_task
def sweep_sla_breaches():
    """
    Stamp newly breached response/resolution SLAs and fire `sla_breach`;
    escalate tickets whose escalation window elapsed and fire `ticket_overdue`.
    """
    from .automation import dispatch_event
    from .services import escalate_ticket, escalation_enabled

    now = timezone.now()
    counts = {"response": 0, "resolution": 0, "escalated": 0, "errors": 0}
    open_tickets = Ticket.objects.filter(status__in=OPEN_STATUSES).select_related("tenant", "sla_policy", "category")

    for ticket in open_tickets.filter(first_response_at__isnull=True, response_breached_at__isnull=True,
                                      response_due_at__lt=now):
        try:
            ticket.response_breached_at = now
            ticket.save(update_fields=["response_breached_at", "updated_at"])
            dispatch_event(ticket, "sla_breach", {"breach_type": "response"})
            counts["response"] += 1
        except Exception:
            logger.exception("sla sweep failed on ticket %s (response)", ticket.pk)
            counts["errors"] += 1

    for ticket in open_tickets.filter(resolution_breached_at__isnull=True, due_date__lt=now):
        try:
            ticket.resolution_breached_at = now
            ticket.save(update_fields=["resolution_breached_at", "updated_at"])
            dispatch_event(ticket, "sla_breach", {"breach_type": "resolution"})
            counts["resolution"] += 1
        except Exception:
            logger.exception("sla sweep failed on ticket %s (resolution)", ticket.pk)
            counts["errors"] += 1

    for ticket in open_tickets.filter(escalation_level=0, escalation_due_at__lt=now):
        if not escalation_enabled(ticket.tenant):
            continue
        try:
            escalate_ticket(ticket, reason="SLA escalation window elapsed.", is_automatic=True, fire_events=False)
            dispatch_event(ticket, "ticket_overdue", {"escalation_level": ticket.escalation_level})
            counts["escalated"] += 1
        except Exception:
            logger.exception("sla sweep failed on ticket %s (escalation)", ticket.pk)
            counts["errors"] += 1

    if any(counts.values()):
        logger.info("sla sweep: %s", counts)
    return counts
