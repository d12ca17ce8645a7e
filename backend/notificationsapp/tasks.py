import logging

import requests
from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

from .models import NotificationDispatch
from .utils import render_preview, log_delivery

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10


def _send_email(to_address: str, subject: str, body: str) -> str:
    sent = send_mail(subject or "(no subject)", body, settings.DEFAULT_FROM_EMAIL, [to_address])
    if not sent:
        raise RuntimeError("mail backend accepted no messages")
    return f"smtp:{to_address}"


def _send_webhook(url: str, subject: str, body: str, payload: dict) -> str:
    r = requests.post(url, json={"subject": subject, "body": body, "payload": payload}, timeout=WEBHOOK_TIMEOUT)
    r.raise_for_status()
    return f"webhook:{r.status_code}"


@shared_task
def deliver_dispatch_async(dispatch_id: int):
    d = NotificationDispatch.objects.select_related("template", "tenant").filter(id=dispatch_id).first()
    if not d or d.status in ("sent", "cancelled"):
        return

    d.status = "sending"
    d.save(update_fields=["status"])

    try:
        subject, body = d.subject, d.body
        if d.template:
            rendered = render_preview(d.template, d.payload_json or {})
            if "error" in rendered:
                raise ValueError(rendered["error"])
            subject, body = rendered["subject"], rendered["body"]

        if d.channel == "email":
            if not d.to_address:
                raise ValueError("email dispatch without address")
            ref, provider = _send_email(d.to_address, subject, body), "smtp"
        elif d.channel == "webhook":
            ref, provider = _send_webhook(d.to_address or "", subject, body, d.payload_json or {}), "webhook"
        elif d.channel == "in_app":
            ref, provider = f"in_app:{d.to_user_id}", "in_app"
        else:
            raise ValueError(f"Unsupported channel: {d.channel}")

        d.provider_ref = ref
        d.sent_at = timezone.now()
        d.status = "sent"
        d.save(update_fields=["provider_ref", "sent_at", "status"])
        log_delivery(dispatch=d, provider=provider, status="sent", provider_ref=ref, meta={"len": len(body or "")})
    except Exception as e:
        logger.warning("notification %s failed: %s", dispatch_id, e)
        d.status = "failed"
        d.error_message = str(e)
        d.save(update_fields=["status", "error_message"])
        log_delivery(dispatch=d, provider="internal", status="failed", meta={"error": str(e)})
