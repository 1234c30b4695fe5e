from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.schemas.webhook import ReplyOverrideRequest, SessionParamsRequest, WebhookEvent, WebhookResponse
from app.services.conversation_service import get_conversation, set_reply_override
from app.services.session_cache import SessionCache, get_session_cache
from app.services.turn_coordinator import APOLOGY_MESSAGE, TurnCoordinator, get_turn_coordinator

logger = get_logger("webhook")

router = APIRouter(prefix="/chatbot", tags=["chatbot"])


async def _parse_webhook_event(http_request: Request) -> WebhookEvent | None:
    try:
        payload = await http_request.json()
    except Exception as e:
        logger.warning(f"Webhook body is not JSON: {e}")
        return None
    if not isinstance(payload, dict):
        logger.warning("Webhook body is not an object")
        return None
    try:
        return WebhookEvent.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Webhook body rejected: {e}")
        return None


@router.post("/webhook")
async def handle_webhook(
    http_request: Request,
    coordinator: TurnCoordinator = Depends(get_turn_coordinator),
):
    """Chat platform bot webhook. Always answers 200 so the platform never retries on our errors."""
    event = await _parse_webhook_event(http_request)
    if event is None:
        return WebhookResponse.of(APOLOGY_MESSAGE).model_dump()

    logger.info(
        f"Webhook received: handler={event.handler}",
        extra={
            "context": {
                "request_id": event.request_id,
                "tenant_id": event.tenant_id,
                "visitor_id": event.visitor_id,
            }
        },
    )
    return await coordinator.handle(event)


@router.post("/session")
async def store_session_params(
    request: SessionParamsRequest,
    session_cache: SessionCache = Depends(get_session_cache),
):
    """Park visitor parameters until the visitor opens the chat."""
    stored = await session_cache.store_temp_params(request.email, request.custom_params)
    if not stored:
        raise HTTPException(status_code=503, detail="Session store unavailable")
    return {"success": True, "email": request.email, "expires_in": session_cache.temp_ttl_seconds}


@router.post("/conversations/{tenant_id}/{visitor_id}/reply")
def set_conversation_reply(
    tenant_id: str,
    visitor_id: str,
    request: ReplyOverrideRequest,
    db: Session = Depends(get_db),
):
    """Queue an operator-written reply for the visitor's next message."""
    conversation = get_conversation(db, tenant_id, visitor_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    set_reply_override(db, conversation, request.text)
    db.commit()
    logger.info("Reply override set", extra={"context": {"tenant_id": tenant_id, "visitor_id": visitor_id}})
    return {"success": True}
