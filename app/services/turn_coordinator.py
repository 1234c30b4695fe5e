import asyncio
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.logging_config import conversation_logger, get_logger
from app.models import Conversation
from app.schemas.webhook import WebhookEvent, WebhookResponse
from app.services.conversation_service import (
    append_message,
    consume_pending_result,
    get_conversation,
    get_or_create_conversation,
    pop_reply_override,
    set_pending_result,
)
from app.services.dedup_service import RequestDeduplicator
from app.services.executor_service import ActionExecutor
from app.services.greeting_service import generate_greeting
from app.services.llm import LLMProvider, get_llm_provider
from app.services.lock_service import ConversationLock
from app.services.pipeline_service import IDENTIFY_FAILURE_MESSAGE, MessagePipeline
from app.services.platform_service import PlatformMessenger
from app.services.redis_client import get_redis
from app.services.resolver_service import ParameterAutoResolver
from app.services.retrieval_service import CandidateRetriever
from app.services.session_cache import SessionCache, build_session_params, get_session_cache

logger = get_logger("turn_coordinator")

INTERIM_MESSAGE = "I'm working on it, give me a moment..."
BUSY_MESSAGE = "Please wait, I'm still processing your previous message..."
APOLOGY_MESSAGE = "Sorry, something went wrong. Please try again."
UNHANDLED_EVENT_MESSAGE = "I received your message."


class TurnCoordinator:
    """
    Bounded-latency handling of inbound chat events.

    A message turn runs its pipeline as a task raced against
    ``deadline_seconds``. If the pipeline loses, the visitor gets an interim
    reply and a supervised continuation keeps the lock until the result has
    been pushed or stored as a pending result. The pipeline task is never
    cancelled by the deadline.
    """

    def __init__(
        self,
        pipeline: MessagePipeline,
        lock: ConversationLock,
        deduplicator: RequestDeduplicator,
        session_cache: SessionCache,
        messenger: Optional[PlatformMessenger],
        llm: Optional[LLMProvider] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        deadline_seconds: float = 4.0,
        pending_result_max_age: timedelta = timedelta(minutes=5),
    ):
        self.pipeline = pipeline
        self.lock = lock
        self.deduplicator = deduplicator
        self.session_cache = session_cache
        self.messenger = messenger
        self.llm = llm
        self.session_factory = session_factory
        self.deadline_seconds = deadline_seconds
        self.pending_result_max_age = pending_result_max_age
        self._background: set[asyncio.Task] = set()

    @property
    def background_count(self) -> int:
        return len(self._background)

    async def handle(self, event: WebhookEvent) -> dict[str, Any]:
        """Response body for one webhook delivery. Never raises."""
        if event.is_validation_ping:
            return {"status": "ok"}

        try:
            if await self.deduplicator.is_duplicate(event.request_id):
                return {}

            if event.handler == "trigger":
                text = await self.handle_trigger(event)
            elif event.handler == "message" and event.message and event.message.type == "text":
                text = await self.handle_message(event)
            else:
                text = UNHANDLED_EVENT_MESSAGE
        except Exception as e:
            logger.error(
                f"Webhook handling failed: {e}",
                exc_info=True,
                extra={"context": {"request_id": event.request_id}},
            )
            text = APOLOGY_MESSAGE

        return WebhookResponse.of(text).model_dump()

    async def handle_trigger(self, event: WebhookEvent) -> str:
        """Chat opened: record visitor parameters and greet. No lock."""
        tenant_id = event.tenant_id
        visitor_id = event.visitor_id
        visitor = event.visitor

        if tenant_id and visitor_id:
            temp_params = await self.session_cache.get_temp_params(visitor.email if visitor else None)
            params = build_session_params(
                temp_params,
                visitor.custom_info if visitor else None,
                visitor.info if visitor else None,
                (event.session or {}).get("variables"),
                tenant_id,
            )
            chat_id = (event.chat or {}).get("id") or (visitor.active_conversation_id if visitor else None)
            await self.session_cache.store_session(tenant_id, visitor_id, params, chat_id)

            db = self.session_factory()
            try:
                get_or_create_conversation(
                    db, tenant_id, visitor_id, event, default_screen_name=settings.salesiq_screen_name
                )
                db.commit()
            finally:
                db.close()

        visitor_name = (visitor.model_extra or {}).get("name") if visitor else None
        return await generate_greeting(self.llm, visitor_name, timeout_seconds=settings.greeting_timeout_seconds)

    async def handle_message(self, event: WebhookEvent) -> str:
        tenant_id = event.tenant_id
        visitor_id = event.visitor_id
        if not tenant_id or not visitor_id:
            logger.error("Message event without tenant or visitor id")
            return IDENTIFY_FAILURE_MESSAGE
        log = conversation_logger(logger, tenant_id, visitor_id)

        if not await self.lock.acquire(tenant_id, visitor_id):
            log.info("Conversation busy")
            return BUSY_MESSAGE

        try:
            stored = self.take_stored_reply(tenant_id, visitor_id, event.message_text)
        except Exception:
            await self.lock.release(tenant_id, visitor_id)
            raise
        if stored is not None:
            await self.lock.release(tenant_id, visitor_id)
            log.info("Delivered stored reply, pipeline bypassed")
            return stored

        task = asyncio.create_task(self.run_pipeline(event))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.deadline_seconds)
        except asyncio.CancelledError:
            self.continue_in_background(task, event)
            raise

        if task in done:
            await self.lock.release(tenant_id, visitor_id)
            return task.result()

        log.info("Deadline passed, continuing in background", context={"deadline": self.deadline_seconds})
        self.continue_in_background(task, event)
        return INTERIM_MESSAGE

    def take_stored_reply(self, tenant_id: str, visitor_id: str, text: str) -> Optional[str]:
        """Reply override first, then a fresh pending result. Either one answers this turn."""
        db = self.session_factory()
        try:
            conversation = get_conversation(db, tenant_id, visitor_id)
            if conversation is None:
                return None

            override = pop_reply_override(db, conversation)
            if override:
                append_message(db, conversation, "user", text, limit=settings.history_limit)
                append_message(db, conversation, "bot", override, limit=settings.history_limit)
                db.commit()
                return override

            pending = consume_pending_result(db, conversation, max_age=self.pending_result_max_age)
            if pending:
                # Already in history as the reply to the earlier turn.
                append_message(db, conversation, "user", text, limit=settings.history_limit)
            db.commit()
            return pending
        finally:
            db.close()

    async def run_pipeline(self, event: WebhookEvent) -> str:
        try:
            return await self.pipeline.process(event)
        except Exception as e:
            logger.error(
                f"Pipeline failed: {e}",
                exc_info=True,
                extra={"context": {"tenant_id": event.tenant_id, "visitor_id": event.visitor_id}},
            )
            return APOLOGY_MESSAGE

    def continue_in_background(self, task: asyncio.Task, event: WebhookEvent) -> None:
        continuation = asyncio.create_task(self.deliver_late_result(task, event))
        self._background.add(continuation)
        continuation.add_done_callback(self._background.discard)

    async def deliver_late_result(self, task: asyncio.Task, event: WebhookEvent) -> None:
        """Await the pipeline, push its reply, fall back to a pending result. Always releases the lock."""
        tenant_id = event.tenant_id
        visitor_id = event.visitor_id
        log = conversation_logger(logger, tenant_id, visitor_id)
        try:
            text = await task
            db = self.session_factory()
            try:
                conversation = get_conversation(db, tenant_id, visitor_id)
                if await self.push(db, conversation, event, text):
                    log.info("Late result pushed")
                    return

                if conversation is None:
                    log.error("No conversation to store the pending result on")
                    return
                set_pending_result(db, conversation, text)
                db.commit()
            finally:
                db.close()
        except Exception as e:
            log.error(f"Background delivery failed: {e}", exc_info=True)
        finally:
            await self.lock.release(tenant_id, visitor_id)

    async def push(self, db: Session, conversation: Optional[Conversation], event: WebhookEvent, text: str) -> bool:
        """Proactive delivery of a late reply. Any failure, raised or returned, counts as not delivered."""
        if self.messenger is None:
            return False
        screen_name = (conversation.screen_name if conversation else None) or settings.salesiq_screen_name
        chat_id = (conversation.active_conversation_id if conversation else None) or (
            event.visitor.active_conversation_id if event.visitor else None
        )
        log = conversation_logger(logger, event.tenant_id, event.visitor_id)
        try:
            result = await self.messenger.send_operator_message(db, screen_name, chat_id, text)
        except Exception as e:
            log.error(f"Push raised, storing pending result: {e}", exc_info=True)
            db.rollback()
            return False
        if not result.ok:
            log.info(f"Push failed, storing pending result: {result.error_code}")
        return result.ok

    async def drain(self, timeout_seconds: float = 30.0) -> None:
        """Wait for in-flight continuations on shutdown."""
        if not self._background:
            return
        logger.info(f"Waiting for {self.background_count} background turns")
        await asyncio.wait(set(self._background), timeout=timeout_seconds)


_turn_coordinator: Optional[TurnCoordinator] = None


def get_turn_coordinator() -> TurnCoordinator:
    """Process-wide coordinator wired from settings."""
    global _turn_coordinator
    if _turn_coordinator is None:
        llm = get_llm_provider()
        redis_client = get_redis()
        session_cache = get_session_cache()
        retriever = CandidateRetriever()
        executor = ActionExecutor(
            timeout_seconds=settings.action_timeout_seconds,
            retry_delay_seconds=settings.action_retry_delay_seconds,
        )
        resolver = ParameterAutoResolver(retriever, executor, llm, session_cache, top_k=settings.resolver_top_k)
        _turn_coordinator = TurnCoordinator(
            pipeline=MessagePipeline(retriever, executor, resolver, llm),
            lock=ConversationLock(ttl_seconds=settings.lock_ttl_seconds, redis_client=redis_client),
            deduplicator=RequestDeduplicator(ttl_seconds=settings.dedup_ttl_seconds, redis_client=redis_client),
            session_cache=session_cache,
            messenger=PlatformMessenger(retry_delay_seconds=settings.action_retry_delay_seconds),
            llm=llm,
            deadline_seconds=settings.response_deadline_seconds,
            pending_result_max_age=timedelta(seconds=settings.pending_result_max_age_seconds),
        )
    return _turn_coordinator
