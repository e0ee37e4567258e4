"""Built-in domain handlers.

Each stage resolves its handler from the ``<stage>.handler`` config key
(``module:factory``). A factory takes the config mapping and returns a
callable ``handler(item) -> outcome`` that either returns one of the outcome
types in ``leadctl.models`` or raises ``TransientError`` / ``ValidationError``.

The handlers here score what is already on the item and never call out to
the network. Real research, drafting and mail transport plug in by pointing
the config keys at other factories.
"""
import importlib
import math
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping
from urllib.parse import urlparse

import structlog

from .models import (
    Advance, HandlerNotFound, QueueItem, Scored, ValidationError,
)
from .utils import now_iso

logger = structlog.get_logger(__name__)

Handler = Callable[[QueueItem], Any]

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PLACEHOLDER_NAMES = {"company name", "test company", "example"}


def load_object(path: str):
    module_name, _, attr = (path or "").partition(":")
    if not module_name or not attr:
        raise HandlerNotFound(f"Expected 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise HandlerNotFound(f"Cannot import {module_name}: {e}") from e
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise HandlerNotFound(f"{module_name} has no attribute {attr!r}") from e


def load_handler(path: str, cfg: Mapping[str, str]) -> Handler:
    factory = load_object(path)
    handler = factory(cfg)
    if not callable(handler):
        raise HandlerNotFound(f"{path} did not return a callable handler")
    return handler


# ---------- shared scoring ----------
def _findings(payload: Mapping[str, Any]) -> List[str]:
    out, seen = [], set()
    for entry in payload.get("findings") or []:
        text = entry.get("text") if isinstance(entry, dict) else str(entry)
        text = (text or "").strip()
        if text and text.lower() not in seen:
            seen.add(text.lower())
            out.append(text)
    return out


def profile_score(payload: Mapping[str, Any]) -> int:
    """0-10 completeness score for a research profile."""
    score = 0
    if payload.get("website_url"):
        score += 2
    if EMAIL_RE.match(payload.get("contact_email") or ""):
        score += 2
    if payload.get("contact_name"):
        score += 1
    score += min(5, len(_findings(payload)))
    return min(10, score)


def draft_payload(item: QueueItem, research: Mapping[str, Any], quality: float) -> Dict[str, Any]:
    return {
        "contact_email": research.get("contact_email"),
        "contact_name": research.get("contact_name"),
        "website_url": research.get("website_url"),
        "findings": list(research.get("findings") or []),
        "research_quality": quality,
        "research_id": item.id,
    }


def rescore_research(item: QueueItem, new_data: Mapping[str, List[Any]]) -> float:
    merged = dict(item.payload)
    findings = list(merged.get("findings") or [])
    for source, records in new_data.items():
        findings.extend({"source": source, "text": str(r)} for r in records)
    merged["findings"] = findings
    return float(profile_score(merged))


# ---------- stages ----------
def discovery(cfg: Mapping[str, str]) -> Handler:
    def handle(item: QueueItem):
        website = item.get("website_url")
        if not website:
            raise ValidationError("No website URL provided")
        if item.company_name.strip().lower() in PLACEHOLDER_NAMES or "Website" in website:
            raise ValidationError("Placeholder data")
        parsed = urlparse(website)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"Invalid URL format: {website}")
        payload = dict(item.payload)
        payload["website_url"] = website
        return Advance(payload=payload)
    return handle


def research(cfg: Mapping[str, str]) -> Handler:
    def handle(item: QueueItem):
        score = float(profile_score(item.payload))
        return Scored(
            score,
            payload=draft_payload(item, item.payload, score),
            fields={"current_quality": score},
        )
    return handle


RED_FLAGS = [
    re.compile(p, re.I) for p in (
        r"\bsynerg", r"\bleverage\b", r"\bgame.?changer", r"\bcutting.?edge",
        r"\bi hope this (email|message) finds you", r"\btouch base\b",
    )
]


def _word_count(text: str) -> int:
    return len([w for w in re.split(r"\s+", text or "") if w])


def review_draft(subject: str, body: str, findings: Iterable[str]) -> int:
    """Local 1-10 review of a drafted email."""
    score = 5.0
    if not subject or len(subject) < 5:
        score -= 2
    elif len(subject) > 60:
        score -= 1
    else:
        score += 0.5
    if re.search(r"\d", subject or "") or re.search(r"specific|your|their|\w+'s", subject or "", re.I):
        score += 1
    if not body or len(body) < 50:
        score -= 2
    words = _word_count(body)
    if words > 150 or words < 30:
        score -= 1
    else:
        score += 0.5
    for pattern in RED_FLAGS:
        if pattern.search(body or "") or pattern.search(subject or ""):
            score -= 1
    first_sentence = re.split(r"[.!?]", body or "")[0].strip()
    if re.match(r"^(I|My|We|Our)\s", first_sentence, re.I):
        score -= 1
    else:
        score += 1
    lowered = (body or "").lower()
    if any(f.lower()[:40] in lowered for f in findings if f):
        score += 1.5
    last_line = (body or "").strip().splitlines()[-1:]
    if last_line and last_line[0].strip().endswith("?"):
        score += 0.5
    return int(max(1, min(10, math.floor(score + 0.5))))


def compose_draft(item: QueueItem) -> Dict[str, str]:
    payload = item.payload
    company = item.company_name or "your team"
    name = (payload.get("contact_name") or "").split(" ")[0] or "there"
    findings = _findings(payload)
    # Rotate the hook on redrafts so a retry produces a different email.
    hook = findings[item.attempts % len(findings)] if findings else None
    subject = f"Quick question about {company}'s operations"
    lines = [f"Hi {name},", ""]
    if hook:
        lines.append(f"Saw that {hook.rstrip('.')}. Teams at that stage often find manual "
                     "hand-offs between tools start eating into the week.")
    else:
        lines.append(f"{company} looks like it is growing, and teams at that stage often find "
                     "manual hand-offs between tools start eating into the week.")
    lines += [
        "",
        "We help operations teams automate the repetitive parts of those workflows so "
        "people can spend their time on customers instead.",
        "",
        "Would a short call next week to compare notes be useful?",
    ]
    return {"subject": subject, "body": "\n".join(lines)}


def drafting(cfg: Mapping[str, str]) -> Handler:
    def handle(item: QueueItem):
        to_email = item.payload.get("contact_email")
        if not to_email or not EMAIL_RE.match(to_email):
            raise ValidationError("No valid contact email to draft for")
        draft = compose_draft(item)
        score = float(review_draft(draft["subject"], draft["body"], _findings(item.payload)))
        return Scored(
            score,
            payload={
                "to_email": to_email,
                "subject": draft["subject"],
                "body": draft["body"],
                "research_quality": item.payload.get("research_quality"),
                "draft_id": item.id,
            },
            fields={"quality": score, "subject": draft["subject"], "body": draft["body"]},
        )
    return handle


def delivery(cfg: Mapping[str, str]) -> Handler:
    """Dry-run sender: records the delivery without a mail transport."""
    def handle(item: QueueItem):
        to_email = item.payload.get("to_email")
        if not to_email:
            raise ValidationError("Email has no recipient")
        logger.info("email_delivered", mode="dry-run", item_id=item.id,
                    to=to_email, subject=item.payload.get("subject"))
        return Advance(fields={"delivered_at": now_iso(), "delivery_mode": "dry-run"})
    return handle


BOUNCE_PATTERNS = [
    re.compile(r"mailer.?daemon|mail.?delivery.?failed|undeliverable|delivery.?status|failure.?notice", re.I),
    re.compile(r"\b55[0-4]\s"),
    re.compile(r"permanent.?failure|hard.?bounce", re.I),
]
UNSUBSCRIBE_PATTERNS = [
    re.compile(r"unsubscribe|opt.?out", re.I),
    re.compile(r"removed.{0,20}list|no.?longer.{0,20}mail", re.I),
]
CATEGORY_PATTERNS = [
    ("OUT_OF_OFFICE", re.compile(r"out of (the )?office|on vacation|auto.?reply", re.I)),
    ("NOT_INTERESTED", re.compile(r"not interested|no thanks|no thank you|not a fit", re.I)),
    ("INTERESTED", re.compile(r"interested|let'?s (talk|chat|connect)|sounds good|book a (call|time)", re.I)),
    ("QUESTION", re.compile(r"\?")),
]


def classify_reply(subject: str, body: str) -> str:
    text = f"{subject or ''} {body or ''}"
    if any(p.search(text) for p in BOUNCE_PATTERNS):
        return "BOUNCE"
    if any(p.search(text) for p in UNSUBSCRIBE_PATTERNS):
        return "UNSUBSCRIBE"
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return "OTHER"


def replies(cfg: Mapping[str, str]) -> Handler:
    def handle(item: QueueItem):
        category = classify_reply(item.payload.get("subject"), item.payload.get("body"))
        logger.info("reply_classified", item_id=item.id,
                    sender=item.payload.get("from_email"), category=category)
        return Advance(fields={"category": category, "analyzed_at": now_iso()})
    return handle
