import logging

from django.db.models import F, Q
from django.http import HttpResponse
from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.permissions import AllowAny
from rest_framework.renderers import JSONRenderer
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView
from django_filters.rest_framework import DjangoFilterBackend

from common.mixins import AuditedActionsMixin, BulkActionMixin, TenantScopedModelViewSet, request_tenant, require_tenant
from common.renderers import CSVRenderer
from common.permissions import PublicReadStaffWrite, StaffTenantOnly, is_staff_user
from . import ai, analytics, automation, chatbot, services
from .models import AutomationRule, AutomationRun, KBArticle, SLAPolicy, Ticket, TicketCategory
from .serializers import (
    AutomationRuleSerializer, AutomationRunSerializer, BulkSerializer, ChatMessageSerializer,
    ChatRatingSerializer, ChatTicketSerializer, KBArticleSerializer, SLAPolicySerializer,
    TicketAssignSerializer, TicketCategorySerializer, TicketCommentCreateSerializer,
    TicketCommentSerializer, TicketEscalateSerializer, TicketEscalationSerializer,
    TicketPrioritySerializer, TicketSerializer, TicketSLAPolicySerializer, TicketStatusSerializer,
)
from .sla import policy_metrics, set_default_policy, sla_status

logger = logging.getLogger(__name__)

FILTERS = [DjangoFilterBackend, SearchFilter, OrderingFilter]


def _ok(**payload):
    return Response({"success": True, **payload})


# -----------------------------
# Tickets
# -----------------------------

class TicketViewSet(BulkActionMixin, TenantScopedModelViewSet):
    """
    Agent surface. All writes go through support.services so SLA clocks,
    audit rows and automation events stay in step.
    """
    queryset = Ticket.objects.select_related("category", "assigned_to", "sla_policy", "requester_content_type")
    serializer_class = TicketSerializer
    permission_classes = [StaffTenantOnly]
    filter_backends = FILTERS
    filterset_fields = {
        "status": ["exact", "in"],
        "priority": ["exact", "in"],
        "channel": ["exact"],
        "category": ["exact"],
        "assigned_to": ["exact", "isnull"],
        "escalation_level": ["exact", "gte"],
    }
    search_fields = ["title", "description", "requester_email", "requester_name"]
    ordering_fields = ["created_at", "updated_at", "priority", "status", "due_date", "number"]

    def _ticket_response(self, ticket, code=status.HTTP_200_OK):
        ticket.refresh_from_db()
        return Response({"success": True, "ticket": TicketSerializer(ticket, context=self.get_serializer_context()).data},
                        status=code)

    def perform_create(self, serializer):
        data = dict(serializer.validated_data)
        requester = data.pop("requester", None)
        serializer.instance = services.create_ticket(
            self.get_tenant(), data, actor=self.request.user, requester=requester,
        )

    def perform_update(self, serializer):
        services.update_ticket(serializer.instance, dict(serializer.validated_data), actor=self.request.user)

    def perform_destroy(self, instance):
        services._audit(instance, "deleted", self.request.user, {"reference": instance.reference})
        instance.delete()

    @action(detail=True, methods=["post"])
    def reopen(self, request, pk=None):
        t = services.reopen_ticket(self.get_object(), actor=request.user, reason=request.data.get("reason", ""))
        return self._ticket_response(t)

    @action(detail=True, methods=["post"])
    def close(self, request, pk=None):
        t = services.close_ticket(self.get_object(), actor=request.user)
        return self._ticket_response(t)

    @action(detail=True, methods=["post"], url_path="set-status")
    def set_status(self, request, pk=None):
        ser = TicketStatusSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        t = self.get_object()
        services.change_status(t, ser.validated_data["status"], actor=request.user)
        return self._ticket_response(t)

    @action(detail=True, methods=["post"], url_path="set-priority")
    def set_priority(self, request, pk=None):
        ser = TicketPrioritySerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        t = self.get_object()
        services.change_priority(t, ser.validated_data["priority"], actor=request.user)
        return self._ticket_response(t)

    @action(detail=True, methods=["post"], url_path="set-sla-policy")
    def set_sla_policy(self, request, pk=None):
        ser = TicketSLAPolicySerializer(data=request.data, context=self.get_serializer_context())
        ser.is_valid(raise_exception=True)
        t = self.get_object()
        services.set_sla_policy(t, ser.validated_data["sla_policy"], actor=request.user)
        return self._ticket_response(t)

    @action(detail=True, methods=["post"])
    def assign(self, request, pk=None):
        ser = TicketAssignSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        t = self.get_object()
        services.assign_ticket(t, ser.validated_data["user"], actor=request.user)
        return self._ticket_response(t)

    @action(detail=True, methods=["get", "post"])
    def comment(self, request, pk=None):
        t = self.get_object()
        if request.method == "GET":
            return Response(TicketCommentSerializer(t.comments.select_related("author"), many=True).data)
        ser = TicketCommentCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        c = services.add_comment(t, author=request.user, **ser.validated_data)
        return Response(TicketCommentSerializer(c).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get", "post"])
    def escalate(self, request, pk=None):
        t = self.get_object()
        if request.method == "GET":
            return Response(TicketEscalationSerializer(t.escalations.all(), many=True).data)
        ser = TicketEscalateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        e = services.escalate_ticket(t, escalated_by=request.user, **ser.validated_data)
        return Response({"success": True, "escalation": TicketEscalationSerializer(e).data,
                         "ticket": TicketSerializer(t, context=self.get_serializer_context()).data},
                        status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"])
    def sla(self, request, pk=None):
        return Response(sla_status(self.get_object()))

    @action(detail=True, methods=["get"], url_path="automation-runs")
    def automation_runs(self, request, pk=None):
        runs = AutomationRun.objects.filter(ticket=self.get_object()).select_related("rule").order_by("-created_at")
        return Response(AutomationRunSerializer(runs[:100], many=True).data)

    @action(detail=True, methods=["get"], url_path="ai/summary")
    def ai_summary(self, request, pk=None):
        return Response(ai.run_ai("summary", self.get_object()))

    @action(detail=True, methods=["get"], url_path="ai/classify")
    def ai_classify(self, request, pk=None):
        return Response(ai.run_ai("classify", self.get_object()))

    @action(detail=True, methods=["get", "post"], url_path="ai/sentiment")
    def ai_sentiment(self, request, pk=None):
        text = request.data.get("text") if request.method == "POST" else None
        return Response(ai.analyze_sentiment(self.get_object(), text=text))

    @action(detail=True, methods=["get"], url_path="ai/suggest-reply")
    def ai_suggest_reply(self, request, pk=None):
        return Response(ai.run_ai("suggest_reply", self.get_object()))

    @action(detail=False, methods=["post"])
    def bulk(self, request):
        ser = BulkSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        tickets, skipped = self.resolve_bulk_ids(ser.validated_data["ids"])
        processed, failed = services.bulk_update(
            tickets, ser.validated_data["action"], ser.validated_data["params"], actor=request.user,
        )
        return Response(self.bulk_response(ser.validated_data["action"], processed, skipped + failed, noun="tickets"))


# -----------------------------
# Categories & SLA policies
# -----------------------------

class TicketCategoryViewSet(AuditedActionsMixin, TenantScopedModelViewSet):
    queryset = TicketCategory.objects.select_related("default_sla_policy")
    serializer_class = TicketCategorySerializer
    permission_classes = [StaffTenantOnly]
    default_ordering = ("sort_order", "name")


class SLAPolicyViewSet(AuditedActionsMixin, TenantScopedModelViewSet):
    queryset = SLAPolicy.objects.all()
    serializer_class = SLAPolicySerializer
    permission_classes = [StaffTenantOnly]
    filter_backends = FILTERS
    filterset_fields = ["is_active", "is_default", "business_hours_only"]
    default_ordering = ("name",)

    def perform_destroy(self, instance):
        self._audit("delete", instance, meta=self._request_meta())
        services.delete_sla_policy(instance)

    @action(detail=True, methods=["post"])
    def activate(self, request, pk=None):
        policy = self.get_object()
        active = bool(request.data.get("is_active", True))
        if not active and policy.is_default:
            raise ValidationError({"is_active": ["The default SLA policy cannot be deactivated."]})
        policy.is_active = active
        policy.save(update_fields=["is_active", "updated_at"])
        self._audit("activate" if active else "deactivate", policy)
        return _ok(policy=SLAPolicySerializer(policy, context=self.get_serializer_context()).data)

    @action(detail=True, methods=["post"], url_path="set-default")
    def set_default(self, request, pk=None):
        policy = set_default_policy(self.get_object())
        self._audit("set_default", policy)
        return _ok(policy=SLAPolicySerializer(policy, context=self.get_serializer_context()).data)

    @action(detail=True, methods=["get"])
    def metrics(self, request, pk=None):
        try:
            days = max(1, min(int(request.query_params.get("days", 30)), 365))
        except ValueError:
            raise ValidationError({"days": ["Must be an integer."]})
        return Response(policy_metrics(self.get_object(), days=days))


# -----------------------------
# Automation rules
# -----------------------------

class AutomationRuleViewSet(BulkActionMixin, AuditedActionsMixin, TenantScopedModelViewSet):
    queryset = AutomationRule.objects.all()
    serializer_class = AutomationRuleSerializer
    permission_classes = [StaffTenantOnly]
    filter_backends = FILTERS
    filterset_fields = ["trigger_event", "is_active"]
    default_ordering = ("-priority", "created_at")

    def perform_create(self, serializer):
        obj = serializer.save(tenant=self.get_tenant(), created_by=self.request.user)
        self._audit("create", obj, meta=self._request_meta())
        return obj

    @action(detail=False, methods=["post"])
    def test(self, request):
        """Dry run `rule` (a saved rule id or an inline definition) against `ticket_id`."""
        tenant = self.get_tenant()
        ticket = get_object_or_404(Ticket, tenant=tenant, pk=request.data.get("ticket_id"))
        rule = request.data.get("rule")
        if isinstance(rule, str):
            saved = get_object_or_404(AutomationRule, tenant=tenant, pk=rule)
            rule = {"trigger_event": saved.trigger_event, "conditions": saved.conditions, "actions": saved.actions}
        if not isinstance(rule, dict):
            raise ValidationError({"rule": ["Provide a rule id or a rule definition."]})
        errors = automation.validate_rule(rule)
        if errors:
            raise ValidationError(errors)
        return Response(automation.dry_run_rule(rule, ticket))

    @action(detail=True, methods=["get"])
    def runs(self, request, pk=None):
        qs = self.get_object().runs.select_related("ticket").order_by("-created_at")
        page = self.paginate_queryset(qs)
        ser = AutomationRunSerializer(page if page is not None else qs, many=True)
        return self.get_paginated_response(ser.data) if page is not None else Response(ser.data)

    @action(detail=False, methods=["get"], url_path="metadata")
    def rule_metadata(self, request):
        return Response(automation.metadata())

    @action(detail=False, methods=["get"])
    def suggestions(self, request):
        return Response({"suggestions": automation.suggest_rules(self.get_tenant())})

    @action(detail=False, methods=["post"])
    def bulk(self, request):
        ser = BulkSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        op = ser.validated_data["action"]
        if op not in ("activate", "deactivate", "delete"):
            raise ValidationError({"action": ["Must be one of activate, deactivate, delete."]})
        rules, skipped = self.resolve_bulk_ids(ser.validated_data["ids"])
        for rule in rules:
            self._audit(op, rule)
            if op == "delete":
                rule.delete()
            else:
                rule.is_active = op == "activate"
                rule.save(update_fields=["is_active", "updated_at"])
        return Response(self.bulk_response(op, len(rules), skipped, noun="rules"))


# -----------------------------
# Knowledge base (public read)
# -----------------------------

class KBArticleViewSet(AuditedActionsMixin, TenantScopedModelViewSet):
    """
    Anyone with the tenant header reads published articles; staff manage
    and see drafts too.
    """
    queryset = KBArticle.objects.select_related("category")
    serializer_class = KBArticleSerializer
    permission_classes = [PublicReadStaffWrite]
    filter_backends = FILTERS
    filterset_fields = ["is_published", "category"]
    search_fields = ["title", "body"]

    def get_permissions(self):
        if self.action == "feedback":
            return [AllowAny()]
        return super().get_permissions()

    def get_queryset(self):
        qs = super().get_queryset()
        if not is_staff_user(self.request.user):
            qs = qs.filter(is_published=True)
        return qs

    def retrieve(self, request, *args, **kwargs):
        article = self.get_object()
        KBArticle.objects.filter(pk=article.pk).update(view_count=F("view_count") + 1)
        article.refresh_from_db(fields=["view_count"])
        return Response(self.get_serializer(article).data)

    @action(detail=False, methods=["get"])
    def search(self, request):
        q = (request.query_params.get("q") or "").strip()
        if not q:
            return Response({"query": q, "results": []})
        articles = ai.kb_matches(self.get_tenant(), q, limit=10)
        if not is_staff_user(request.user):
            articles = [a for a in articles if a.is_published]
        return Response({"query": q, "results": KBArticleSerializer(articles, many=True, context=self.get_serializer_context()).data})

    @action(detail=False, methods=["get"])
    def suggest(self, request):
        q = (request.query_params.get("q") or "").strip()
        if len(q) < 2:
            return Response({"query": q, "suggestions": []})
        titles = (self.get_queryset().filter(Q(title__icontains=q) | Q(tags__icontains=q))
                  .values_list("title", flat=True)[:8])
        return Response({"query": q, "suggestions": list(titles)})

    @action(detail=True, methods=["post"])
    def feedback(self, request, pk=None):
        article = self.get_object()
        helpful = request.data.get("helpful")
        if not isinstance(helpful, bool):
            raise ValidationError({"helpful": ["Must be true or false."]})
        counter = "helpful_count" if helpful else "not_helpful_count"
        KBArticle.objects.filter(pk=article.pk).update(**{counter: F(counter) + 1})
        article.refresh_from_db(fields=["helpful_count", "not_helpful_count"])
        return _ok(helpful_count=article.helpful_count, not_helpful_count=article.not_helpful_count)


# -----------------------------
# Chatbot (guests)
# -----------------------------

class ChatbotBaseView(APIView):
    permission_classes = [AllowAny]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "chatbot"

    def tenant(self, request):
        tenant = request_tenant(request)
        if tenant is None:
            raise ValidationError({"tenant": ["Missing tenant context."]})
        return tenant


class ChatbotMessageView(ChatbotBaseView):
    def post(self, request):
        ser = ChatMessageSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        d = ser.validated_data
        result = chatbot.post_message(self.tenant(request), d["message"], conversation_id=d.get("conversation_id") or None,
                                      name=d.get("name", ""), email=d.get("email", ""))
        return Response(result)


class ChatbotConversationView(ChatbotBaseView):
    def get(self, request, conversation_id):
        return Response(chatbot.get_conversation(self.tenant(request), conversation_id))


class ChatbotTicketView(ChatbotBaseView):
    def post(self, request, conversation_id):
        ser = ChatTicketSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        ticket = chatbot.create_ticket_from_conversation(self.tenant(request), conversation_id, **ser.validated_data)
        return Response({"success": True, "ticket_id": str(ticket.pk), "reference": ticket.reference},
                        status=status.HTTP_201_CREATED)


class ChatbotRateView(ChatbotBaseView):
    def post(self, request, conversation_id):
        ser = ChatRatingSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        convo = chatbot.rate_conversation(self.tenant(request), conversation_id, **ser.validated_data)
        return _ok(rating=convo["rating"])


# -----------------------------
# Analytics
# -----------------------------

class SupportAnalyticsView(APIView):
    permission_classes = [StaffTenantOnly]
    renderer_classes = [JSONRenderer, CSVRenderer]

    def get(self, request):
        tenant = require_tenant(request)
        try:
            days = max(1, min(int(request.query_params.get("days", 30)), 365))
        except ValueError:
            raise ValidationError({"days": ["Must be an integer."]})
        data = analytics.support_overview(tenant, days=days)
        if request.query_params.get("format") == "csv":
            resp = HttpResponse(analytics.overview_csv(data), content_type="text/csv")
            resp["Content-Disposition"] = f'attachment; filename="support-analytics-{days}d.csv"'
            return resp
        return Response(data)
