from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.database import as_utc
from app.logging_config import get_logger
from app.models import Conversation
from app.schemas.webhook import WebhookEvent

logger = get_logger("conversation_service")

HISTORY_LIMIT = 10
PENDING_RESULT_MAX_AGE = timedelta(minutes=5)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_conversation(db: Session, tenant_id: str, visitor_id: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.visitor_id == visitor_id)
        .first()
    )


def _visitor_details(event: WebhookEvent) -> dict:
    visitor = event.visitor
    if not visitor:
        return {}
    details = {
        "email": visitor.email,
        "country": visitor.country,
        "countryCode": visitor.country_code,
        "os": visitor.os,
        "departmentId": visitor.department_id,
        "channel": visitor.channel,
        "language": visitor.language,
        "timeZone": visitor.time_zone,
    }
    return {key: value for key, value in details.items() if value is not None}


def get_or_create_conversation(
    db: Session,
    tenant_id: str,
    visitor_id: str,
    event: Optional[WebhookEvent] = None,
    default_screen_name: Optional[str] = None,
) -> Conversation:
    """Find the visitor's conversation or create one. Visitor details are captured only at creation."""
    conversation = get_conversation(db, tenant_id, visitor_id)

    if not conversation:
        now = _now()
        conversation = Conversation(
            tenant_id=tenant_id,
            visitor_id=visitor_id,
            history=[],
            visitor_details=_visitor_details(event) if event else {},
            request_info={
                "appId": event.request.app_id if event and event.request else None,
                "requestId": event.request_id if event else None,
            },
            clarification_attempts=0,
            resolved_parameters={},
            pending_result_consumed=False,
            created_at=now,
            last_activity_at=now,
        )
        db.add(conversation)
        logger.info("Created conversation", extra={"context": {"tenant_id": tenant_id, "visitor_id": visitor_id}})

    if event is not None:
        # Chat handles change per chat session; keep the latest for proactive push.
        if event.visitor and event.visitor.active_conversation_id:
            conversation.active_conversation_id = event.visitor.active_conversation_id
        screen_name = event.screen_name or default_screen_name
        if screen_name:
            conversation.screen_name = screen_name

    db.flush()
    return conversation


def append_message(
    db: Session,
    conversation: Conversation,
    role: str,
    text: str,
    limit: int = HISTORY_LIMIT,
) -> None:
    """Append to history, evicting the oldest entries beyond ``limit``."""
    now = _now()
    history = list(conversation.history or [])
    history.append({"role": role, "text": text, "timestamp": now.isoformat()})
    # Reassign so the JSON column is marked dirty.
    conversation.history = history[-limit:]
    conversation.last_activity_at = now
    db.flush()


def get_last_turns(conversation: Conversation, turns: int = 2) -> str:
    """Flatten the last ``turns`` user/bot pairs into a transcript."""
    if turns <= 0:
        return ""
    last_messages = (conversation.history or [])[-(turns * 2):]
    return "\n".join(f"{msg.get('role')}: {msg.get('text')}" for msg in last_messages)


def reset_clarification_attempts(db: Session, conversation: Conversation) -> None:
    conversation.clarification_attempts = 0
    db.flush()


def increment_clarification_attempts(db: Session, conversation: Conversation) -> int:
    conversation.clarification_attempts = (conversation.clarification_attempts or 0) + 1
    db.flush()
    return conversation.clarification_attempts


def set_pending_result(db: Session, conversation: Conversation, text: str) -> None:
    """Store a background result for the next turn, replacing any earlier one."""
    conversation.pending_result_text = text
    conversation.pending_result_at = _now()
    conversation.pending_result_consumed = False
    db.flush()
    logger.info(
        "Stored pending result",
        extra={"context": {"tenant_id": conversation.tenant_id, "visitor_id": conversation.visitor_id}},
    )


def consume_pending_result(
    db: Session,
    conversation: Conversation,
    max_age: timedelta = PENDING_RESULT_MAX_AGE,
) -> Optional[str]:
    """Return and mark consumed an unconsumed result no older than ``max_age``.

    Stale results are marked consumed as well so they can never surface later.
    """
    if not conversation.pending_result_text or conversation.pending_result_consumed:
        return None

    created_at = as_utc(conversation.pending_result_at)
    conversation.pending_result_consumed = True
    db.flush()

    if created_at is None or _now() - created_at > max_age:
        logger.info(
            "Discarded expired pending result",
            extra={"context": {"tenant_id": conversation.tenant_id, "visitor_id": conversation.visitor_id}},
        )
        return None

    return conversation.pending_result_text


def set_reply_override(db: Session, conversation: Conversation, text: str) -> None:
    conversation.pending_reply_override = text
    db.flush()


def pop_reply_override(db: Session, conversation: Conversation) -> Optional[str]:
    text = conversation.pending_reply_override
    if not text:
        return None
    conversation.pending_reply_override = None
    db.flush()
    return text


def set_resolved_parameter(db: Session, conversation: Conversation, name: str, value: str) -> None:
    """Add or refine a discovered fact. Keys are never removed."""
    resolved = dict(conversation.resolved_parameters or {})
    resolved[name] = str(value)
    conversation.resolved_parameters = resolved
    db.flush()
