import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from app.schemas.webhook import WebhookEvent
from app.services.conversation_service import get_conversation
from app.services.dedup_service import RequestDeduplicator
from app.services.greeting_service import FALLBACK_GREETING
from app.services.lock_service import ConversationLock
from app.services.result import Result
from app.services.session_cache import SessionCache
from app.services.turn_coordinator import (
    APOLOGY_MESSAGE,
    BUSY_MESSAGE,
    INTERIM_MESSAGE,
    UNHANDLED_EVENT_MESSAGE,
    TurnCoordinator,
)


class GatedPipeline:
    """Pipeline double that answers immediately or waits for ``release()``."""

    def __init__(self, reply="Great! I executed GET /orders successfully.", gated=False, error=None):
        self.reply = reply
        self.error = error
        self.calls = 0
        self.finished = False
        self._gate = asyncio.Event()
        if not gated:
            self._gate.set()

    def release(self):
        self._gate.set()

    async def process(self, event):
        self.calls += 1
        await self._gate.wait()
        self.finished = True
        if self.error:
            raise self.error
        return self.reply


def reply_text(response):
    return response["replies"][0]["text"]


@pytest.fixture
def messenger():
    messenger = Mock()
    messenger.send_operator_message = AsyncMock(return_value=Result.success(True))
    return messenger


@pytest.fixture
def build_coordinator(session_factory, fake_redis, messenger):
    def build(pipeline, deadline_seconds=0.05):
        return TurnCoordinator(
            pipeline=pipeline,
            lock=ConversationLock(),
            deduplicator=RequestDeduplicator(ttl_seconds=60),
            session_cache=SessionCache(redis_client=fake_redis),
            messenger=messenger,
            llm=None,
            session_factory=session_factory,
            deadline_seconds=deadline_seconds,
        )

    return build


class TestEventRouting:
    @pytest.mark.asyncio
    async def test_validation_ping(self, build_coordinator):
        pipeline = GatedPipeline()
        coordinator = build_coordinator(pipeline)

        assert await coordinator.handle(WebhookEvent.model_validate({"handler": "ping"})) == {"status": "ok"}
        assert await coordinator.handle(WebhookEvent.model_validate({})) == {"status": "ok"}
        assert pipeline.calls == 0

    @pytest.mark.asyncio
    async def test_duplicate_delivery_dropped(self, build_coordinator, make_event):
        pipeline = GatedPipeline()
        coordinator = build_coordinator(pipeline)
        event = WebhookEvent.model_validate(make_event(request_id="req-dup"))

        first = await coordinator.handle(event)
        second = await coordinator.handle(event)

        assert reply_text(first) == pipeline.reply
        assert second == {}
        assert pipeline.calls == 1

    @pytest.mark.asyncio
    async def test_unhandled_event(self, build_coordinator, make_event):
        coordinator = build_coordinator(GatedPipeline())
        event = WebhookEvent.model_validate(make_event(message={"type": "file"}))

        assert reply_text(await coordinator.handle(event)) == UNHANDLED_EVENT_MESSAGE


class TestDeadlineRace:
    @pytest.mark.asyncio
    async def test_fast_pipeline_reply_returned_verbatim(self, build_coordinator, make_event):
        pipeline = GatedPipeline(reply="Found 3 result(s).")
        coordinator = build_coordinator(pipeline, deadline_seconds=1.0)

        response = await coordinator.handle(WebhookEvent.model_validate(make_event()))

        assert reply_text(response) == "Found 3 result(s)."
        assert coordinator.lock.is_held("org-1", "ada@example.com") is False
        assert coordinator.background_count == 0

    @pytest.mark.asyncio
    async def test_slow_pipeline_gets_interim_and_keeps_lock(self, build_coordinator, make_event, messenger, conversation):
        pipeline = GatedPipeline(gated=True)
        coordinator = build_coordinator(pipeline)

        response = await coordinator.handle(WebhookEvent.model_validate(make_event()))

        assert reply_text(response) == INTERIM_MESSAGE
        assert coordinator.lock.is_held("org-1", "ada@example.com") is True
        assert coordinator.background_count == 1

        pipeline.release()
        await coordinator.drain(timeout_seconds=1.0)

        assert pipeline.finished is True
        assert coordinator.lock.is_held("org-1", "ada@example.com") is False
        messenger.send_operator_message.assert_awaited_once()
        args = messenger.send_operator_message.await_args.args
        assert args[1:] == ("acme", "chat-1", pipeline.reply)

    @pytest.mark.asyncio
    async def test_concurrent_turn_gets_busy_notice(self, build_coordinator, make_event, conversation):
        pipeline = GatedPipeline(gated=True)
        coordinator = build_coordinator(pipeline)

        first = await coordinator.handle(WebhookEvent.model_validate(make_event(request_id="req-1")))
        second = await coordinator.handle(WebhookEvent.model_validate(make_event("again?", request_id="req-2")))

        assert reply_text(first) == INTERIM_MESSAGE
        assert reply_text(second) == BUSY_MESSAGE
        assert pipeline.calls == 1

        pipeline.release()
        await coordinator.drain(timeout_seconds=1.0)

    @pytest.mark.asyncio
    async def test_pipeline_error_becomes_apology(self, build_coordinator, make_event):
        coordinator = build_coordinator(GatedPipeline(error=RuntimeError("boom")), deadline_seconds=1.0)

        response = await coordinator.handle(WebhookEvent.model_validate(make_event()))

        assert reply_text(response) == APOLOGY_MESSAGE
        assert coordinator.lock.is_held("org-1", "ada@example.com") is False

    @pytest.mark.asyncio
    async def test_raising_push_falls_back_to_pending_result(
        self, build_coordinator, make_event, messenger, conversation, session_factory
    ):
        messenger.send_operator_message.side_effect = ValueError("token endpoint sent html")
        pipeline = GatedPipeline(reply="late answer", gated=True)
        coordinator = build_coordinator(pipeline)

        await coordinator.handle(WebhookEvent.model_validate(make_event()))
        pipeline.release()
        await coordinator.drain(timeout_seconds=1.0)

        assert coordinator.lock.is_held("org-1", "ada@example.com") is False
        check = session_factory()
        try:
            stored = get_conversation(check, "org-1", "ada@example.com")
            assert stored.pending_result_text == "late answer"
            assert stored.pending_result_consumed is False
        finally:
            check.close()


class TestPendingResults:
    @pytest.mark.asyncio
    async def test_failed_push_stored_and_delivered_next_turn(
        self, build_coordinator, make_event, messenger, conversation, session_factory
    ):
        messenger.send_operator_message.return_value = Result.failure("closed", "conversation_closed")
        pipeline = GatedPipeline(gated=True)
        coordinator = build_coordinator(pipeline)

        await coordinator.handle(WebhookEvent.model_validate(make_event(request_id="req-1")))
        pipeline.release()
        await coordinator.drain(timeout_seconds=1.0)

        response = await coordinator.handle(WebhookEvent.model_validate(make_event("any news?", request_id="req-2")))

        assert reply_text(response) == pipeline.reply
        assert pipeline.calls == 1

        check = session_factory()
        try:
            stored = get_conversation(check, "org-1", "ada@example.com")
            assert stored.pending_result_consumed is True
            assert stored.history[-1]["text"] == "any news?"
        finally:
            check.close()

    @pytest.mark.asyncio
    async def test_stale_pending_result_not_delivered(self, build_coordinator, make_event, conversation, db):
        conversation.pending_result_text = "old news"
        conversation.pending_result_at = datetime.now(timezone.utc) - timedelta(minutes=6)
        conversation.pending_result_consumed = False
        db.commit()
        pipeline = GatedPipeline(reply="fresh answer")
        coordinator = build_coordinator(pipeline, deadline_seconds=1.0)

        response = await coordinator.handle(WebhookEvent.model_validate(make_event()))

        assert reply_text(response) == "fresh answer"
        assert pipeline.calls == 1

    @pytest.mark.asyncio
    async def test_reply_override_delivered_before_pending_result(
        self, build_coordinator, make_event, conversation, db
    ):
        conversation.pending_reply_override = "An operator has your ticket."
        conversation.pending_result_text = "Great! Done."
        conversation.pending_result_at = datetime.now(timezone.utc)
        db.commit()
        pipeline = GatedPipeline()
        coordinator = build_coordinator(pipeline)

        first = await coordinator.handle(WebhookEvent.model_validate(make_event(request_id="req-1")))
        second = await coordinator.handle(WebhookEvent.model_validate(make_event(request_id="req-2")))

        assert reply_text(first) == "An operator has your ticket."
        assert reply_text(second) == "Great! Done."
        assert pipeline.calls == 0


class TestTrigger:
    @pytest.mark.asyncio
    async def test_trigger_stores_session_and_greets(self, build_coordinator, fake_redis, session_factory):
        coordinator = build_coordinator(GatedPipeline())
        await coordinator.session_cache.store_temp_params("ada@example.com", {"plan": "enterprise"})
        event = WebhookEvent.model_validate(
            {
                "handler": "trigger",
                "request": {"id": "req-t"},
                "org_id": "org-1",
                "visitor": {
                    "email": "ada@example.com",
                    "active_conversation_id": "chat-1",
                    "custom_info": {"plan": "pro", "seats": 4},
                },
            }
        )

        response = await coordinator.handle(event)

        assert reply_text(response) == FALLBACK_GREETING
        session = await coordinator.session_cache.get_session("org-1", "ada@example.com")
        assert session["plan"] == "enterprise"
        assert session["seats"] == 4
        assert session["chatId"] == "chat-1"

        check = session_factory()
        try:
            assert get_conversation(check, "org-1", "ada@example.com") is not None
        finally:
            check.close()


class TestStoredRepliesUnderLock:
    @pytest.mark.asyncio
    async def test_override_waits_for_running_turn(
        self, build_coordinator, make_event, conversation, db, session_factory
    ):
        pipeline = GatedPipeline(gated=True)
        coordinator = build_coordinator(pipeline)
        await coordinator.handle(WebhookEvent.model_validate(make_event(request_id="req-1")))

        conversation.pending_reply_override = "operator says hi"
        db.commit()
        busy = await coordinator.handle(WebhookEvent.model_validate(make_event("hello?", request_id="req-2")))

        assert reply_text(busy) == BUSY_MESSAGE
        check = session_factory()
        try:
            assert get_conversation(check, "org-1", "ada@example.com").pending_reply_override == "operator says hi"
        finally:
            check.close()

        pipeline.release()
        await coordinator.drain(timeout_seconds=1.0)
        delivered = await coordinator.handle(WebhookEvent.model_validate(make_event("hello?", request_id="req-3")))

        assert reply_text(delivered) == "operator says hi"
        assert coordinator.lock.is_held("org-1", "ada@example.com") is False
        check = session_factory()
        try:
            history = [m["text"] for m in get_conversation(check, "org-1", "ada@example.com").history]
            assert history[-2:] == ["hello?", "operator says hi"]
        finally:
            check.close()
