from unittest import mock

import pytest
import requests
from django.core import mail

from notificationsapp.models import NotificationTemplate
from notificationsapp.utils import queue_notification

pytestmark = pytest.mark.django_db


def test_email_dispatch_is_sent_after_commit(tenant, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True):
        d = queue_notification(tenant, to_address="agent@acme.test", subject="Hello", body="World")
    d.refresh_from_db()
    assert d.status == "sent"
    assert len(mail.outbox) == 1
    assert mail.outbox[0].subject == "Hello"
    assert d.logs.get().provider == "smtp"


def test_tenant_template_overrides_inline_text(tenant, django_capture_on_commit_callbacks):
    NotificationTemplate.objects.create(
        tenant=tenant, template_key="ticket_escalated", channel="email",
        subject="Ticket {{ reference }} escalated", body="Level {{ level }}",
    )
    with django_capture_on_commit_callbacks(execute=True):
        queue_notification(tenant, to_address="lead@acme.test", template_key="ticket_escalated",
                           subject="ignored", payload={"reference": "TKT-000001", "level": 2})
    assert mail.outbox[0].subject == "Ticket TKT-000001 escalated"
    assert mail.outbox[0].body == "Level 2"


def test_webhook_failure_marks_dispatch_failed(tenant, django_capture_on_commit_callbacks):
    with mock.patch("notificationsapp.tasks.requests.post", side_effect=requests.ConnectionError("down")):
        with django_capture_on_commit_callbacks(execute=True):
            d = queue_notification(tenant, channel="webhook", to_address="https://hooks.example/x", body="hi")
    d.refresh_from_db()
    assert d.status == "failed"
    assert "down" in d.error_message
