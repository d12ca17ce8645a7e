from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from .models import KBArticle, Ticket, TicketCategory, DEFAULT_PRIORITY
from .sla import apply_sla, resolve_policy

logger = logging.getLogger(__name__)

TASKS = ("summary", "classify", "sentiment", "categorize", "suggest_reply")

URGENT_WORDS = {"outage", "down", "urgent", "emergency", "critical", "asap", "immediately", "breach", "security"}
HIGH_WORDS = {"error", "broken", "fail", "failed", "failing", "cannot", "crash", "blocked", "refund", "charged"}
LOW_WORDS = {"question", "wondering", "feature", "suggestion", "curious", "idea", "typo"}
POSITIVE_WORDS = {"thanks", "thank", "great", "love", "excellent", "appreciate", "awesome", "happy", "helpful"}
NEGATIVE_WORDS = {"angry", "terrible", "awful", "worst", "unacceptable", "frustrated", "disappointed",
                  "useless", "hate", "broken", "furious", "ridiculous"}


def ai_config() -> Dict[str, Any]:
    return getattr(settings, "SUPPORT_AI", {}) or {}


def _tokens(text: str) -> List[str]:
    return re.findall(r"[a-z0-9']+", (text or "").lower())


def _ticket_text(ticket: Ticket) -> str:
    return f"{ticket.title}\n{ticket.description}"


def kb_matches(tenant, text: str, limit: int = 3) -> List[KBArticle]:
    words = [w for w in _tokens(text) if len(w) > 3][:8]
    if not words:
        return []
    cond = Q()
    for w in words:
        cond |= Q(title__icontains=w) | Q(body__icontains=w)
    scored = []
    for art in KBArticle.objects.filter(tenant=tenant, is_published=True).filter(cond)[:50]:
        haystack = f"{art.title} {art.body}".lower()
        scored.append((sum(haystack.count(w) for w in words) + 3 * sum(w in art.title.lower() for w in words), art))
    scored.sort(key=lambda pair: -pair[0])
    return [art for _, art in scored[:limit]]


class ProviderBase:
    name = "base"

    def run(self, task: str, ticket: Ticket, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedError


class HeuristicProvider(ProviderBase):
    """Keyword rules; always available and used as the fallback."""
    name = "heuristic"

    def run(self, task, ticket, extra=None):
        return getattr(self, f"_{task}")(ticket, extra or {})

    def _summary(self, ticket, extra):
        sentences = re.split(r"(?<=[.!?])\s+", (ticket.description or "").strip())
        body = " ".join(s for s in sentences[:2] if s)
        summary = f"{ticket.title}. {body}".strip() if body else ticket.title
        return {"summary": summary[:500], "comments": ticket.comments.count()}

    def _classify(self, ticket, extra):
        words = set(_tokens(_ticket_text(ticket)))
        if words & URGENT_WORDS:
            priority, hits = "urgent", words & URGENT_WORDS
        elif words & HIGH_WORDS:
            priority, hits = "high", words & HIGH_WORDS
        elif words & LOW_WORDS:
            priority, hits = "low", words & LOW_WORDS
        else:
            priority, hits = DEFAULT_PRIORITY, set()
        confidence = min(0.5 + 0.1 * len(hits), 0.95) if hits else 0.4
        return {"priority": priority, "confidence": round(confidence, 2), "keywords": sorted(hits)}

    def _sentiment(self, ticket, extra):
        text = extra.get("text") or _ticket_text(ticket)
        words = _tokens(text)
        pos = sum(w in POSITIVE_WORDS for w in words)
        neg = sum(w in NEGATIVE_WORDS for w in words)
        score = 0.0 if pos == neg else round((pos - neg) / (pos + neg), 2)
        label = "positive" if score > 0.2 else "negative" if score < -0.2 else "neutral"
        return {"sentiment": label, "score": score}

    def _categorize(self, ticket, extra):
        words = set(_tokens(_ticket_text(ticket)))
        best, best_hits = None, 0
        for category in TicketCategory.objects.filter(tenant=ticket.tenant, is_active=True):
            vocab = set(_tokens(f"{category.name} {category.description}"))
            hits = len(words & {v for v in vocab if len(v) > 2})
            if hits > best_hits:
                best, best_hits = category, hits
        if best is None:
            return {"category_id": None, "category_name": None, "confidence": 0.0}
        return {"category_id": str(best.pk), "category_name": best.name,
                "confidence": round(min(0.5 + 0.15 * best_hits, 0.95), 2)}

    def _suggest_reply(self, ticket, extra):
        name = ticket.requester_name or "there"
        articles = kb_matches(ticket.tenant, _ticket_text(ticket))
        lines = [f"Hi {name},", "", f"Thanks for reaching out about \"{ticket.title}\"."]
        if articles:
            lines.append("These articles may help while we look into it:")
            lines += [f"- {a.title}" for a in articles]
        else:
            lines.append("We are looking into it and will get back to you shortly.")
        lines += ["", "Best regards,", "Support team"]
        return {"reply": "\n".join(lines), "kb_articles": [{"id": str(a.pk), "title": a.title} for a in articles]}


class HttpProvider(ProviderBase):
    """POSTs {"task", "ticket"} to SUPPORT_AI["URL"] and returns its JSON."""
    name = "http"

    def __init__(self, url: str, token: str = "", timeout: int = 20):
        self.url = url
        self.token = token
        self.timeout = timeout

    def _headers(self):
        h = {"Content-Type": "application/json"}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    def run(self, task, ticket, extra=None):
        payload = {
            "task": task,
            "ticket": {"reference": ticket.reference, "title": ticket.title, "description": ticket.description,
                       "priority": ticket.priority, "status": ticket.status},
            "extra": extra or {},
        }
        r = requests.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, dict):
            raise ValueError("AI provider returned a non-object response")
        return data


def get_provider() -> ProviderBase:
    cfg = ai_config()
    if cfg.get("PROVIDER") == "http" and cfg.get("URL"):
        return HttpProvider(cfg["URL"], cfg.get("TOKEN", ""), int(cfg.get("TIMEOUT", 20)))
    return HeuristicProvider()


def run_ai(task: str, ticket: Ticket, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Run `task` on the configured provider. A failing remote provider never
    surfaces as an error: the heuristic answer comes back with `fallback`.
    """
    if task not in TASKS:
        raise ValueError(f"Unknown AI task: {task}")
    provider = get_provider()
    try:
        result = provider.run(task, ticket, extra)
        result.update(provider=provider.name, fallback=False)
    except (requests.RequestException, ValueError) as exc:
        logger.warning("AI provider %s failed for %s on %s: %s", provider.name, task, ticket.reference, exc)
        result = HeuristicProvider().run(task, ticket, extra)
        result.update(provider="heuristic", fallback=True,
                      message="AI service is unavailable; showing a basic suggestion instead.")
    return result


def _store(ticket: Ticket, key: str, value: Dict[str, Any]) -> None:
    meta = dict(ticket.metadata or {})
    ai = dict(meta.get("ai") or {})
    ai[key] = {**value, "at": timezone.now().isoformat()}
    meta["ai"] = ai
    ticket.metadata = meta
    ticket.save(update_fields=["metadata", "updated_at"])


def analyze_sentiment(ticket: Ticket, text: Optional[str] = None) -> Dict[str, Any]:
    result = run_ai("sentiment", ticket, {"text": text} if text else None)
    _store(ticket, "sentiment", result)
    return result


def auto_triage(ticket: Ticket, *, keep_policy: bool = False) -> Dict[str, Any]:
    """
    Fill category/priority suggestions on a new ticket; never raises. Unless
    the policy was chosen explicitly, it is resolved again from the triaged
    category and priority and the due dates restart from creation.
    """
    applied: Dict[str, Any] = {}
    try:
        update_fields = ["metadata", "updated_at"]
        if ticket.category_id is None:
            cat = run_ai("categorize", ticket)
            if cat.get("category_id"):
                ticket.category = TicketCategory.objects.filter(tenant=ticket.tenant, pk=cat["category_id"]).first()
                if ticket.category is not None:
                    applied["category"] = cat["category_name"]
                    update_fields.append("category")
        if ticket.priority == DEFAULT_PRIORITY:
            cls = run_ai("classify", ticket)
            if cls.get("priority") and cls["priority"] != ticket.priority and cls.get("confidence", 0) >= 0.5:
                ticket.priority = cls["priority"]
                applied["priority"] = cls["priority"]
                update_fields.append("priority")
        if applied and not keep_policy:
            policy = resolve_policy(ticket.tenant, ticket.category, ticket.priority)
            if policy.pk != ticket.sla_policy_id:
                apply_sla(ticket, policy, ticket.created_at)
                applied["sla_policy"] = policy.name
                update_fields += ["sla_policy", "response_due_at", "due_date", "escalation_due_at",
                                  "response_breached_at", "resolution_breached_at"]
        sentiment = run_ai("sentiment", ticket)
        meta = dict(ticket.metadata or {})
        meta["ai"] = {**(meta.get("ai") or {}), "triage": applied, "sentiment": sentiment}
        ticket.metadata = meta
        ticket.save(update_fields=update_fields)
    except Exception:
        logger.warning("auto triage failed for ticket %s", ticket.reference, exc_info=True)
    return applied
