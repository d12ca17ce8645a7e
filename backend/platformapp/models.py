from django.db import models
from common.models import BaseModel


class Tenant(BaseModel):
    slug = models.SlugField(max_length=100, unique=True)
    name = models.CharField(max_length=200)
    status = models.CharField(max_length=20, default="active")  # active|suspended
    plan = models.CharField(max_length=20, default="free")
    timezone = models.CharField(max_length=64, blank=True, null=True)  # overrides TIME_ZONE for SLA clocks

    def __str__(self):
        return self.name


class AuditLog(models.Model):
    id = models.BigAutoField(primary_key=True)
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="audit_logs")
    user_id = models.UUIDField(blank=True, null=True)
    action = models.CharField(max_length=80)          # e.g. "ticket.escalated"
    entity = models.CharField(max_length=120)         # e.g. "support.Ticket"
    entity_id = models.CharField(max_length=120)
    meta_json = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "entity", "entity_id"]),
            models.Index(fields=["tenant", "-created_at"]),
        ]
