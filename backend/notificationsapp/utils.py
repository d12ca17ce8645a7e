import logging
from typing import Optional, Dict, Any

from django.db import transaction
from django.template import engines

from .models import NotificationDispatch, NotificationLog, NotificationTemplate

logger = logging.getLogger(__name__)


def render_string(template_string: str, context: Dict[str, Any]) -> str:
    return engines["django"].from_string(template_string).render(context)


def render_preview(template: NotificationTemplate, payload: Dict[str, Any]) -> Dict[str, str]:
    try:
        return {
            "subject": render_string(template.subject, payload) if template.subject else "",
            "body": render_string(template.body or "", payload),
        }
    except Exception as e:
        return {"error": str(e)}


def queue_notification(
    tenant,
    *,
    channel: str = "email",
    to_address: Optional[str] = None,
    to_user_id: Optional[str] = None,
    template_key: Optional[str] = None,
    subject: str = "",
    body: str = "",
    payload: Optional[Dict[str, Any]] = None,
) -> NotificationDispatch:
    """
    Record a dispatch and hand it to the delivery task once the surrounding
    transaction commits. A tenant template named `template_key` wins over the
    inline subject/body.
    """
    tmpl = None
    if template_key:
        tmpl = NotificationTemplate.objects.filter(
            tenant=tenant, template_key=template_key, channel=channel, is_active=True
        ).first()

    d = NotificationDispatch.objects.create(
        tenant=tenant,
        template=tmpl,
        to_user_id=to_user_id,
        to_address=to_address,
        channel=channel,
        subject=subject[:255],
        body=body,
        payload_json=payload or {},
        status="queued",
    )
    logger.info("notification queued: %s -> %s (%s)", channel, to_address or to_user_id, d.id)

    from .tasks import deliver_dispatch_async
    transaction.on_commit(lambda: deliver_dispatch_async.delay(d.id))
    return d


def log_delivery(dispatch: NotificationDispatch, provider: str, status: str = "sent",
                 provider_ref: Optional[str] = None, meta: Optional[Dict[str, Any]] = None):
    return NotificationLog.objects.create(
        tenant=dispatch.tenant,
        dispatch=dispatch,
        provider=provider,
        status=status,
        provider_ref=provider_ref,
        meta_json=meta or {},
    )
