from django.db import models
from common.models import BaseModel


class Setting(BaseModel):
    """
    Runtime configuration editable by staff, e.g. `support.sla.business_start_time`.
    A row without tenant is the deployment-wide value; a tenant row overrides it.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE,
                               null=True, blank=True, related_name="settings")
    key = models.CharField(max_length=120)
    value = models.JSONField(blank=True, null=True)
    description = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "key"], name="uniq_setting_per_tenant"),
        ]
        indexes = [models.Index(fields=["key"])]

    def __str__(self):
        return self.key
