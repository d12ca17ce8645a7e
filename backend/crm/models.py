from django.db import models
from common.models import BaseModel


class Customer(BaseModel):
    """
    Client account (person or company). Tickets may name one as requester.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="customers")

    type = models.CharField(max_length=20, default="person")  # person|company
    name = models.CharField(max_length=200)
    company = models.CharField(max_length=200, blank=True, null=True)
    email = models.EmailField(blank=True, null=True)
    phone = models.CharField(max_length=32, blank=True, null=True)
    status = models.CharField(max_length=24, default="active")  # active|inactive|blocked
    tags = models.JSONField(default=list, blank=True)
    meta_json = models.JSONField(default=dict, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "email"]),
            models.Index(fields=["tenant", "status"]),
        ]

    def __str__(self):
        return self.name


class Lead(BaseModel):
    """
    Prospect captured by forms or the chatbot; can raise tickets before becoming a customer.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="leads")
    name = models.CharField(max_length=200)
    email = models.EmailField(blank=True, null=True)
    phone = models.CharField(max_length=32, blank=True, null=True)
    company = models.CharField(max_length=200, blank=True, null=True)
    source = models.CharField(max_length=50, default="web")  # web|chatbot|import|api
    status = models.CharField(max_length=24, default="new")  # new|contacted|qualified|converted|lost
    meta_json = models.JSONField(default=dict, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "email"]),
            models.Index(fields=["tenant", "status"]),
        ]

    def __str__(self):
        return self.name
