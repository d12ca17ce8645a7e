from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import serializers

from common.serializers import BulkSerializer, TenantScopedPKField
from crm.models import Customer, Lead
from identity.serializers import UserSummarySerializer
from .automation import validate_rule
from .models import (
    AutomationRule, AutomationRun, KBArticle, SLAPolicy, Ticket, TicketCategory,
    TicketComment, TicketEscalation, PRIORITY_LADDER,
)

REQUESTER_MODELS = {"client": Customer, "lead": Lead}


class SLAPolicySerializer(serializers.ModelSerializer):
    priority_levels = serializers.ListField(
        child=serializers.ChoiceField(choices=PRIORITY_LADDER), required=False, allow_empty=True,
    )
    ticket_count = serializers.SerializerMethodField()

    class Meta:
        model = SLAPolicy
        fields = (
            "id", "name", "description", "response_time_hours", "resolution_time_hours",
            "escalation_time_hours", "business_hours_only", "is_active", "is_default",
            "priority_levels", "ticket_count", "created_at", "updated_at",
        )
        read_only_fields = ("is_default", "created_at", "updated_at")

    def get_ticket_count(self, obj):
        return obj.tickets.count()

    def validate_name(self, value):
        tenant = self.context.get("tenant")
        qs = SLAPolicy.objects.filter(tenant=tenant, name__iexact=value)
        if self.instance is not None:
            qs = qs.exclude(pk=self.instance.pk)
        if qs.exists():
            raise serializers.ValidationError("An SLA policy with this name already exists.")
        return value

    def validate(self, attrs):
        if self.instance is not None and self.instance.is_default and attrs.get("is_active") is False:
            raise serializers.ValidationError({"is_active": ["The default SLA policy cannot be deactivated."]})
        return attrs


class TicketCategorySerializer(serializers.ModelSerializer):
    default_sla_policy = TenantScopedPKField(queryset=SLAPolicy.objects.all(), required=False, allow_null=True)

    class Meta:
        model = TicketCategory
        fields = ("id", "name", "description", "color", "is_active", "sort_order",
                  "default_sla_policy", "created_at", "updated_at")
        read_only_fields = ("created_at", "updated_at")


class TicketCommentSerializer(serializers.ModelSerializer):
    author = UserSummarySerializer(read_only=True)

    class Meta:
        model = TicketComment
        fields = ("id", "ticket", "author", "content", "is_internal", "is_ai_generated", "is_system", "created_at")
        read_only_fields = fields


class TicketEscalationSerializer(serializers.ModelSerializer):
    class Meta:
        model = TicketEscalation
        fields = ("id", "level", "reason", "escalated_by", "escalated_to", "is_automatic", "created_at")
        read_only_fields = fields


class TicketSerializer(serializers.ModelSerializer):
    reference = serializers.CharField(read_only=True)
    category = TenantScopedPKField(queryset=TicketCategory.objects.all(), required=False, allow_null=True)
    assigned_to = serializers.PrimaryKeyRelatedField(
        queryset=get_user_model().objects.filter(is_active=True), required=False, allow_null=True,
    )
    sla_policy = TenantScopedPKField(queryset=SLAPolicy.objects.filter(is_active=True), required=False)
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False)
    requester_type = serializers.ChoiceField(choices=("client", "lead"), required=False, write_only=True)
    requester_id = serializers.CharField(required=False, write_only=True)
    requester = serializers.SerializerMethodField()
    assignee = UserSummarySerializer(source="assigned_to", read_only=True)
    sla_policy_name = serializers.CharField(source="sla_policy.name", read_only=True)

    class Meta:
        model = Ticket
        fields = (
            "id", "reference", "number", "title", "description", "status", "priority", "channel",
            "category", "assigned_to", "assignee", "sla_policy", "sla_policy_name",
            "requester_type", "requester_id", "requester", "requester_name", "requester_email",
            "response_due_at", "due_date", "escalation_due_at", "response_breached_at", "resolution_breached_at",
            "first_response_at", "resolved_at", "closed_at", "reopened_at",
            "response_time_minutes", "resolution_time_minutes", "escalation_level", "escalated_at",
            "tags", "metadata", "created_at", "updated_at",
        )
        read_only_fields = (
            "number", "response_due_at", "due_date", "escalation_due_at", "response_breached_at",
            "resolution_breached_at", "first_response_at", "resolved_at", "closed_at", "reopened_at",
            "response_time_minutes", "resolution_time_minutes", "escalation_level", "escalated_at",
            "metadata", "created_at", "updated_at",
        )

    def get_requester(self, obj):
        if not obj.requester_content_type_id:
            return None
        return {"type": obj.requester_type, "id": obj.requester_object_id,
                "name": obj.requester_name, "email": obj.requester_email}

    def validate(self, attrs):
        kind = attrs.pop("requester_type", None)
        rid = attrs.pop("requester_id", None)
        if bool(kind) != bool(rid):
            raise serializers.ValidationError({"requester_id": ["requester_type and requester_id go together."]})
        if kind:
            tenant = self.context.get("tenant")
            try:
                obj = REQUESTER_MODELS[kind].objects.filter(tenant=tenant, pk=rid).first()
            except (ValueError, DjangoValidationError):
                obj = None
            if obj is None:
                raise serializers.ValidationError({"requester_id": ["Requester not found."]})
            attrs["requester"] = obj
        if self.instance is not None:
            if "sla_policy" in attrs:
                raise serializers.ValidationError({"sla_policy": ["Use the set-sla-policy action to change this."]})
            if "requester" in attrs:
                raise serializers.ValidationError({"requester_id": ["The requester cannot be changed."]})
        return attrs


class TicketStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Ticket._meta.get_field("status").choices)


class TicketPrioritySerializer(serializers.Serializer):
    priority = serializers.ChoiceField(choices=PRIORITY_LADDER)


class TicketSLAPolicySerializer(serializers.Serializer):
    sla_policy = TenantScopedPKField(queryset=SLAPolicy.objects.filter(is_active=True))


class TicketAssignSerializer(serializers.Serializer):
    user_id = serializers.PrimaryKeyRelatedField(
        queryset=get_user_model().objects.filter(is_active=True), allow_null=True, source="user",
    )


class TicketCommentCreateSerializer(serializers.Serializer):
    content = serializers.CharField()
    is_internal = serializers.BooleanField(default=False)


class TicketEscalateSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")
    escalated_to = serializers.PrimaryKeyRelatedField(
        queryset=get_user_model().objects.filter(is_active=True), required=False, allow_null=True,
    )
    level = serializers.IntegerField(required=False, min_value=1)


class AutomationRuleSerializer(serializers.ModelSerializer):
    class Meta:
        model = AutomationRule
        fields = ("id", "name", "description", "trigger_event", "conditions", "actions", "priority",
                  "is_active", "created_by", "run_count", "last_run_at", "created_at", "updated_at")
        read_only_fields = ("created_by", "run_count", "last_run_at", "created_at", "updated_at")

    def validate(self, attrs):
        merged = {
            "trigger_event": attrs.get("trigger_event", getattr(self.instance, "trigger_event", None)),
            "conditions": attrs.get("conditions", getattr(self.instance, "conditions", [])),
            "actions": attrs.get("actions", getattr(self.instance, "actions", [])),
        }
        errors = validate_rule(merged)
        if errors:
            raise serializers.ValidationError(errors)
        return attrs


class AutomationRunSerializer(serializers.ModelSerializer):
    rule_name = serializers.CharField(source="rule.name", read_only=True)
    ticket_reference = serializers.CharField(source="ticket.reference", read_only=True)

    class Meta:
        model = AutomationRun
        fields = ("id", "rule", "rule_name", "ticket", "ticket_reference", "event", "matched",
                  "status", "results", "error", "created_at")
        read_only_fields = fields


class KBArticleSerializer(serializers.ModelSerializer):
    category = TenantScopedPKField(queryset=TicketCategory.objects.all(), required=False, allow_null=True)

    class Meta:
        model = KBArticle
        fields = ("id", "title", "body", "category", "tags", "is_published", "view_count",
                  "helpful_count", "not_helpful_count", "created_at", "updated_at")
        read_only_fields = ("view_count", "helpful_count", "not_helpful_count", "created_at", "updated_at")


class ChatMessageSerializer(serializers.Serializer):
    message = serializers.CharField(max_length=2000)
    conversation_id = serializers.CharField(required=False, allow_blank=True)
    name = serializers.CharField(required=False, allow_blank=True, max_length=200)
    email = serializers.EmailField(required=False, allow_blank=True)


class ChatTicketSerializer(serializers.Serializer):
    title = serializers.CharField(required=False, allow_blank=True, max_length=200)
    name = serializers.CharField(required=False, allow_blank=True, max_length=200)
    email = serializers.EmailField(required=False, allow_blank=True)
    priority = serializers.ChoiceField(choices=PRIORITY_LADDER, required=False)


class ChatRatingSerializer(serializers.Serializer):
    rating = serializers.IntegerField(min_value=1, max_value=5)
    feedback = serializers.CharField(required=False, allow_blank=True, default="")
