# backend/support/chatbot.py
"""
Guest chatbot. Conversations are plain dicts kept in the Django cache for
SUPPORT_CHATBOT_TTL seconds; nothing is written to the database until the
visitor asks for a ticket.
"""
from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from common.exceptions import BusinessRuleError
from crm.models import Customer, Lead
from .ai import kb_matches
from .models import KBArticle

logger = logging.getLogger(__name__)

INTENTS = {
    "greeting": ("hello", "hi", "hey", "good morning", "good afternoon"),
    "human": ("human", "agent", "person", "representative", "talk to someone", "real person", "speak to"),
    "ticket": ("ticket", "report", "issue", "problem", "complaint"),
    "billing": ("invoice", "billing", "charge", "charged", "refund", "payment"),
    "thanks": ("thanks", "thank you", "cheers"),
    "goodbye": ("bye", "goodbye", "see you"),
}

REPLIES = {
    "greeting": "Hi! How can I help you today?",
    "human": "I can pass this on to our support team. Share your name and e-mail and I'll open a ticket for you.",
    "ticket": "I can open a support ticket for you. Describe the problem and leave your e-mail address.",
    "billing": "Billing questions are handled by our support team. Would you like me to open a ticket?",
    "thanks": "You're welcome! Anything else I can help with?",
    "goodbye": "Thanks for chatting. Have a great day!",
}
FALLBACK_REPLY = "I'm not sure I understood. Could you rephrase, or shall I open a ticket for our team?"


def _ttl() -> int:
    return int(getattr(settings, "SUPPORT_CHATBOT_TTL", 86400))


def _key(tenant, conversation_id: str) -> str:
    return f"support:chatbot:{tenant.pk}:{conversation_id}"


def detect_intent(message: str) -> str:
    text = f" {(message or '').lower()} "
    # "human" wins over everything else
    for intent in ("human",) + tuple(i for i in INTENTS if i != "human"):
        if any(re.search(rf"\b{re.escape(word)}\b", text) for word in INTENTS[intent]):
            return intent
    return "unknown"


def needs_human(conversation: Dict[str, Any]) -> bool:
    """Explicit request, or two unanswered questions in a row."""
    intents = [m.get("intent") for m in conversation["messages"] if m["role"] == "user"]
    if "human" in intents:
        return True
    return intents[-2:] == ["unknown", "unknown"]


def get_conversation(tenant, conversation_id: str) -> Dict[str, Any]:
    convo = cache.get(_key(tenant, conversation_id))
    if convo is None:
        raise BusinessRuleError("Conversation not found or expired.", field="conversation_id")
    return convo


def _save(tenant, convo: Dict[str, Any]) -> None:
    convo["updated_at"] = timezone.now().isoformat()
    cache.set(_key(tenant, convo["id"]), convo, _ttl())


def start_conversation(tenant, *, name: str = "", email: str = "") -> Dict[str, Any]:
    convo = {
        "id": uuid.uuid4().hex,
        "tenant": str(tenant.pk),
        "visitor": {"name": name, "email": email},
        "messages": [],
        "ticket_id": None,
        "rating": None,
        "started_at": timezone.now().isoformat(),
    }
    _save(tenant, convo)
    return convo


def post_message(tenant, message: str, *, conversation_id: Optional[str] = None,
                 name: str = "", email: str = "") -> Dict[str, Any]:
    if not (message or "").strip():
        raise BusinessRuleError("Message is required.", field="message")
    convo = get_conversation(tenant, conversation_id) if conversation_id else start_conversation(tenant, name=name, email=email)
    if name:
        convo["visitor"]["name"] = name
    if email:
        convo["visitor"]["email"] = email

    intent = detect_intent(message)
    now = timezone.now().isoformat()
    convo["messages"].append({"role": "user", "content": message.strip(), "intent": intent, "at": now})

    articles: List[KBArticle] = []
    if intent in ("unknown", "ticket", "billing"):
        articles = kb_matches(tenant, message)
    if articles:
        reply = "These articles might answer your question:\n" + "\n".join(f"- {a.title}" for a in articles)
        if intent == "unknown":
            convo["messages"][-1]["intent"] = "kb"
    else:
        reply = REPLIES.get(intent, FALLBACK_REPLY)

    escalate = needs_human(convo)
    if escalate and intent != "human":
        reply += "\n\nWould you like me to connect you with a member of our team?"
    convo["messages"].append({"role": "bot", "content": reply, "at": now})
    _save(tenant, convo)
    return {
        "conversation_id": convo["id"],
        "reply": reply,
        "intent": intent,
        "suggested_articles": [{"id": str(a.pk), "title": a.title} for a in articles],
        "needs_human": escalate,
        "ticket_id": convo["ticket_id"],
    }


def transcript(convo: Dict[str, Any]) -> str:
    return "\n".join(f"{'Visitor' if m['role'] == 'user' else 'Bot'}: {m['content']}" for m in convo["messages"])


def _requester(tenant, name: str, email: str):
    customer = Customer.objects.filter(tenant=tenant, email__iexact=email).first()
    if customer is not None:
        return customer
    lead, created = Lead.objects.get_or_create(
        tenant=tenant, email=email, defaults={"name": name or email.split("@")[0], "source": "chatbot"},
    )
    if created:
        logger.info("chatbot created lead %s for tenant %s", lead.pk, tenant.slug)
    return lead


def create_ticket_from_conversation(tenant, conversation_id: str, *, title: str = "",
                                    name: str = "", email: str = "", priority: str = ""):
    from . import services

    convo = get_conversation(tenant, conversation_id)
    if convo.get("ticket_id"):
        raise BusinessRuleError("A ticket was already created for this conversation.", field="conversation_id")
    name = name or convo["visitor"].get("name") or ""
    email = email or convo["visitor"].get("email") or ""
    if not email:
        raise BusinessRuleError("An e-mail address is required to open a ticket.", field="email")
    first = next((m["content"] for m in convo["messages"] if m["role"] == "user"), "")
    if not first and not title:
        raise BusinessRuleError("The conversation is empty.", field="conversation_id")

    ticket = services.create_ticket(
        tenant,
        {"title": (title or first)[:200], "description": transcript(convo), "channel": "chatbot",
         "priority": priority or None, "requester_name": name, "requester_email": email,
         "metadata": {"chatbot_conversation_id": convo["id"]}},
        requester=_requester(tenant, name, email),
    )
    convo["ticket_id"] = str(ticket.pk)
    convo["messages"].append({"role": "bot", "at": timezone.now().isoformat(),
                              "content": f"Ticket {ticket.reference} has been created. Our team will reply by e-mail."})
    _save(tenant, convo)
    return ticket


def rate_conversation(tenant, conversation_id: str, rating: int, feedback: str = "") -> Dict[str, Any]:
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise BusinessRuleError("Rating must be between 1 and 5.", field="rating")
    convo = get_conversation(tenant, conversation_id)
    convo["rating"] = {"score": rating, "feedback": feedback, "at": timezone.now().isoformat()}
    _save(tenant, convo)
    return convo
