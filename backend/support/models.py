from django.conf import settings
from django.contrib.contenttypes.fields import GenericForeignKey
from django.contrib.contenttypes.models import ContentType
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.db.models import Q

from common.models import BaseModel


TICKET_STATUS = (
    ("open", "Open"),
    ("in_progress", "In progress"),
    ("pending", "Pending"),
    ("resolved", "Resolved"),
    ("closed", "Closed"),
)
OPEN_STATUSES = ("open", "in_progress", "pending")
DONE_STATUSES = ("resolved", "closed")

TICKET_PRIORITY = (
    ("low", "Low"),
    ("medium", "Medium"),
    ("high", "High"),
    ("urgent", "Urgent"),
)
PRIORITY_LADDER = [p for p, _ in TICKET_PRIORITY]
DEFAULT_PRIORITY = "medium"

TICKET_CHANNEL = (
    ("web", "Web form"),
    ("email", "Email"),
    ("phone", "Phone"),
    ("chatbot", "Chatbot"),
    ("staff", "Staff"),
)

TRIGGER_EVENTS = (
    ("ticket_created", "Ticket created"),
    ("ticket_updated", "Ticket updated"),
    ("ticket_assigned", "Ticket assigned"),
    ("ticket_status_changed", "Ticket status changed"),
    ("ticket_priority_changed", "Ticket priority changed"),
    ("comment_added", "Comment added"),
    ("sla_breach", "SLA breach"),
    ("ticket_overdue", "Ticket overdue"),
)

RUN_STATUS = (
    ("done", "Executed"),
    ("skipped", "Conditions not met"),
    ("error", "Error"),
)


class SLAPolicy(BaseModel):
    """
    Response/resolution/escalation budgets in hours. With `business_hours_only`
    the budget only consumes time inside the tenant's business calendar.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="sla_policies")
    name = models.CharField(max_length=120)
    description = models.TextField(blank=True, default="")
    response_time_hours = models.PositiveIntegerField(validators=[MinValueValidator(1), MaxValueValidator(168)])
    resolution_time_hours = models.PositiveIntegerField(validators=[MinValueValidator(1), MaxValueValidator(720)])
    escalation_time_hours = models.PositiveIntegerField(validators=[MinValueValidator(1), MaxValueValidator(168)])
    business_hours_only = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    is_default = models.BooleanField(default=False)
    priority_levels = models.JSONField(default=list, blank=True)  # e.g. ["high", "urgent"]

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "name"], name="uniq_sla_name_per_tenant"),
            models.UniqueConstraint(fields=["tenant"], condition=Q(is_default=True), name="uniq_default_sla_per_tenant"),
        ]

    def __str__(self):
        return self.name


class TicketCategory(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="ticket_categories")
    name = models.CharField(max_length=120)
    description = models.TextField(blank=True, default="")
    color = models.CharField(max_length=16, blank=True, default="#6b7280")
    is_active = models.BooleanField(default=True)
    sort_order = models.PositiveIntegerField(default=0)
    default_sla_policy = models.ForeignKey("support.SLAPolicy", on_delete=models.SET_NULL,
                                           null=True, blank=True, related_name="categories")

    class Meta:
        constraints = [models.UniqueConstraint(fields=["tenant", "name"], name="uniq_category_name_per_tenant")]

    def __str__(self):
        return self.name


class Ticket(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="tickets")
    number = models.PositiveIntegerField(editable=False)
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    status = models.CharField(max_length=16, choices=TICKET_STATUS, default="open")
    priority = models.CharField(max_length=16, choices=TICKET_PRIORITY, default=DEFAULT_PRIORITY)
    channel = models.CharField(max_length=16, choices=TICKET_CHANNEL, default="web")
    category = models.ForeignKey("support.TicketCategory", on_delete=models.SET_NULL,
                                 null=True, blank=True, related_name="tickets")
    assigned_to = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
                                    null=True, blank=True, related_name="assigned_tickets")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
                                   null=True, blank=True, related_name="created_tickets")

    # requester: crm.Customer ("client"), crm.Lead or identity.User
    requester_content_type = models.ForeignKey(ContentType, on_delete=models.SET_NULL, null=True, blank=True)
    requester_object_id = models.CharField(max_length=64, blank=True, default="")
    requester = GenericForeignKey("requester_content_type", "requester_object_id")
    requester_name = models.CharField(max_length=200, blank=True, default="")
    requester_email = models.EmailField(blank=True, default="")

    # SLA clock
    sla_policy = models.ForeignKey("support.SLAPolicy", on_delete=models.PROTECT, related_name="tickets")
    response_due_at = models.DateTimeField(null=True, blank=True)
    due_date = models.DateTimeField(null=True, blank=True)  # resolution due
    escalation_due_at = models.DateTimeField(null=True, blank=True)
    response_breached_at = models.DateTimeField(null=True, blank=True)
    resolution_breached_at = models.DateTimeField(null=True, blank=True)

    # lifecycle
    first_response_at = models.DateTimeField(null=True, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    closed_at = models.DateTimeField(null=True, blank=True)
    reopened_at = models.DateTimeField(null=True, blank=True)
    response_time_minutes = models.PositiveIntegerField(null=True, blank=True)
    resolution_time_minutes = models.PositiveIntegerField(null=True, blank=True)
    escalation_level = models.PositiveSmallIntegerField(default=0)
    escalated_at = models.DateTimeField(null=True, blank=True)

    tags = models.JSONField(default=list, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ("-created_at",)
        constraints = [models.UniqueConstraint(fields=["tenant", "number"], name="uniq_ticket_number_per_tenant")]
        indexes = [
            models.Index(fields=["tenant", "status"]),
            models.Index(fields=["tenant", "priority"]),
            models.Index(fields=["tenant", "due_date"]),
            models.Index(fields=["requester_content_type", "requester_object_id"]),
        ]

    def __str__(self):
        return f"{self.reference} {self.title}"

    @property
    def reference(self) -> str:
        return f"TKT-{self.number:06d}" if self.number else ""

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def requester_type(self) -> str:
        ct = self.requester_content_type
        if ct is None:
            return ""
        return {"customer": "client", "lead": "lead", "user": "user"}.get(ct.model, ct.model)


class TicketComment(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="ticket_comments")
    ticket = models.ForeignKey("support.Ticket", on_delete=models.CASCADE, related_name="comments")
    author = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    content = models.TextField()
    is_internal = models.BooleanField(default=False)
    is_ai_generated = models.BooleanField(default=False)
    is_system = models.BooleanField(default=False)  # written by automation

    class Meta:
        ordering = ("created_at",)


class TicketEscalation(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="ticket_escalations")
    ticket = models.ForeignKey("support.Ticket", on_delete=models.CASCADE, related_name="escalations")
    level = models.PositiveSmallIntegerField()
    reason = models.TextField(blank=True, default="")
    escalated_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
                                     null=True, blank=True, related_name="+")
    escalated_to = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
                                     null=True, blank=True, related_name="+")
    is_automatic = models.BooleanField(default=False)

    class Meta:
        ordering = ("created_at",)


class AutomationRule(BaseModel):
    """
    `conditions`: [{"field": "title", "operator": "contains", "value": "refund"}, ...] (AND)
    `actions`:    [{"type": "set_priority", "params": {"priority": "high"}}, ...] (in order)
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="automation_rules")
    name = models.CharField(max_length=160)
    description = models.TextField(blank=True, default="")
    trigger_event = models.CharField(max_length=40, choices=TRIGGER_EVENTS)
    conditions = models.JSONField(default=list, blank=True)
    actions = models.JSONField(default=list)
    priority = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    run_count = models.PositiveIntegerField(default=0)
    last_run_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("-priority", "created_at")
        indexes = [models.Index(fields=["tenant", "trigger_event", "is_active"])]

    def __str__(self):
        return self.name


class AutomationRun(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="automation_runs")
    rule = models.ForeignKey("support.AutomationRule", on_delete=models.CASCADE, related_name="runs")
    ticket = models.ForeignKey("support.Ticket", on_delete=models.CASCADE, related_name="automation_runs")
    event = models.CharField(max_length=40)
    matched = models.BooleanField(default=False)
    status = models.CharField(max_length=16, choices=RUN_STATUS, default="done")
    results = models.JSONField(default=list, blank=True)
    error = models.TextField(blank=True, default="")


class KBArticle(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="kb_articles")
    title = models.CharField(max_length=200)
    body = models.TextField()
    category = models.ForeignKey("support.TicketCategory", on_delete=models.SET_NULL,
                                 null=True, blank=True, related_name="kb_articles")
    tags = models.JSONField(default=list, blank=True)
    is_published = models.BooleanField(default=False)
    view_count = models.PositiveIntegerField(default=0)
    helpful_count = models.PositiveIntegerField(default=0)
    not_helpful_count = models.PositiveIntegerField(default=0)

    def __str__(self):
        return self.title
