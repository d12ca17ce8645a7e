from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import (
    AutomationRuleViewSet, ChatbotConversationView, ChatbotMessageView, ChatbotRateView,
    ChatbotTicketView, KBArticleViewSet, SLAPolicyViewSet, SupportAnalyticsView,
    TicketCategoryViewSet, TicketViewSet,
)

router = DefaultRouter()
router.register(r"tickets", TicketViewSet, basename="support-ticket")
router.register(r"categories", TicketCategoryViewSet, basename="support-category")
router.register(r"sla-policies", SLAPolicyViewSet, basename="support-sla-policy")
router.register(r"automation-rules", AutomationRuleViewSet, basename="support-automation-rule")
router.register(r"kb", KBArticleViewSet, basename="support-kb")

urlpatterns = [
    path("chatbot/", ChatbotMessageView.as_view(), name="support-chatbot"),
    path("chatbot/<str:conversation_id>/", ChatbotConversationView.as_view(), name="support-chatbot-conversation"),
    path("chatbot/<str:conversation_id>/ticket/", ChatbotTicketView.as_view(), name="support-chatbot-ticket"),
    path("chatbot/<str:conversation_id>/rate/", ChatbotRateView.as_view(), name="support-chatbot-rate"),
    path("analytics/", SupportAnalyticsView.as_view(), name="support-analytics"),
    path("", include(router.urls)),
]
