from django.db import models
from common.models import BaseModel


CHANNEL_CHOICES = (
    ("email", "Email"),
    ("webhook", "Webhook"),
    ("in_app", "In-app"),
)

DISPATCH_STATUS = (
    ("queued", "Queued"),
    ("sending", "Sending"),
    ("sent", "Sent"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
)


class NotificationTemplate(BaseModel):
    """
    Tenant-editable message keyed by a stable name, e.g. `ticket_escalated`.
    Subject and body are Django template strings rendered with the dispatch payload.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="notif_templates")
    template_key = models.CharField(max_length=120)
    channel = models.CharField(max_length=16, choices=CHANNEL_CHOICES, default="email")
    subject = models.CharField(max_length=255, blank=True, null=True)
    body = models.TextField()
    is_active = models.BooleanField(default=True)

    class Meta:
        unique_together = (("tenant", "template_key", "channel"),)

    def __str__(self):
        return f"{self.template_key} ({self.channel})"


class NotificationDispatch(models.Model):
    id = models.BigAutoField(primary_key=True)
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="notif_dispatches")
    template = models.ForeignKey("notificationsapp.NotificationTemplate", on_delete=models.SET_NULL, null=True, blank=True)

    to_user_id = models.UUIDField(blank=True, null=True)
    to_address = models.CharField(max_length=255, blank=True, null=True)
    channel = models.CharField(max_length=16, choices=CHANNEL_CHOICES, default="email")

    subject = models.CharField(max_length=255, blank=True, default="")
    body = models.TextField(blank=True, default="")
    payload_json = models.JSONField(default=dict, blank=True)

    status = models.CharField(max_length=16, choices=DISPATCH_STATUS, default="queued")
    error_message = models.TextField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    sent_at = models.DateTimeField(blank=True, null=True)
    provider_ref = models.CharField(max_length=200, blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "channel", "status"]),
            models.Index(fields=["tenant", "created_at"]),
        ]


class NotificationLog(models.Model):
    id = models.BigAutoField(primary_key=True)
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="notif_logs")
    dispatch = models.ForeignKey("notificationsapp.NotificationDispatch", on_delete=models.CASCADE, related_name="logs")
    provider = models.CharField(max_length=120)  # smtp|webhook|in_app|internal
    provider_ref = models.CharField(max_length=200, blank=True, null=True)
    status = models.CharField(max_length=16, default="sent")
    meta_json = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
