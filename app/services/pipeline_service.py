from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.logging_config import conversation_logger, get_logger
from app.models import Conversation
from app.schemas.decision import Decision
from app.schemas.webhook import WebhookEvent
from app.services.conversation_service import (
    append_message,
    get_last_turns,
    get_or_create_conversation,
    increment_clarification_attempts,
    reset_clarification_attempts,
)
from app.services.decision_policy import (
    CounterEffect,
    TurnAction,
    next_step,
    resolvable_missing,
)
from app.services.decision_service import decide_endpoint
from app.services.executor_service import ActionExecutor, format_api_response
from app.services.greeting_service import generate_greeting, is_greeting
from app.services.llm import LLMProvider
from app.services.resolver_service import ParameterAutoResolver
from app.services.retrieval_service import Candidate, CandidateRetriever, tenant_has_endpoints

logger = get_logger("pipeline_service")

IDENTIFY_FAILURE_MESSAGE = "Sorry, I'm having trouble identifying you. Please try again."
NO_DOCS_MESSAGE = "I don't have any API documentation configured yet. Please upload your API spec first."
NO_MATCH_MESSAGE = "I didn't find a matching action for that. Can you rephrase or try something else?"
CONVERSATIONAL_MESSAGE = "I understand you're asking a question. How can I help you with that?"
UNCLEAR_DECISION_MESSAGE = "I'm not sure I understood that. Could you tell me a bit more about what you'd like to do?"
FALLBACK_MESSAGE = (
    "I'm having trouble understanding exactly what you need. "
    "Could you try rephrasing your request more specifically?"
)


def is_candidate(endpoint_id: Optional[str], candidates: List[Candidate]) -> bool:
    return endpoint_id is not None and any(c.endpoint.endpoint_id == endpoint_id for c in candidates)


def missing_parameters_message(decision: Decision) -> str:
    if decision.clarification_question:
        return decision.clarification_question
    names = " and ".join(decision.missing_parameters)
    return f"I can help with that, but I need a bit more info. Could you provide your {names}?"


def clarification_message(decision: Decision) -> str:
    if decision.clarification_question:
        return decision.clarification_question
    return f"I think you want to {decision.reasoning}, but I'm not entirely sure. Can you please clarify?"


class MessagePipeline:
    """
    One turn's work: greeting check, retrieval, decision, resolution and
    execution. Returns the reply text and records the exchange in history.

    Opens its own database session so it can outlive the webhook request.
    Errors propagate; the turn coordinator turns them into an apology.
    """

    def __init__(
        self,
        retriever: CandidateRetriever,
        executor: ActionExecutor,
        resolver: ParameterAutoResolver,
        llm: Optional[LLMProvider],
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.retriever = retriever
        self.executor = executor
        self.resolver = resolver
        self.llm = llm
        self.session_factory = session_factory

    async def process(self, event: WebhookEvent) -> str:
        tenant_id = event.tenant_id
        visitor_id = event.visitor_id
        if not tenant_id or not visitor_id:
            logger.error("Missing tenant or visitor id on message event")
            return IDENTIFY_FAILURE_MESSAGE

        db = self.session_factory()
        try:
            conversation = get_or_create_conversation(
                db, tenant_id, visitor_id, event, default_screen_name=settings.salesiq_screen_name
            )
            db.commit()

            text = event.message_text
            reply = await self.reply_for(db, conversation, event, text)

            append_message(db, conversation, "user", text, limit=settings.history_limit)
            append_message(db, conversation, "bot", reply, limit=settings.history_limit)
            db.commit()
            return reply
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def reply_for(self, db: Session, conversation: Conversation, event: WebhookEvent, text: str) -> str:
        log = conversation_logger(logger, conversation.tenant_id, conversation.visitor_id)

        if is_greeting(text):
            log.info("Greeting detected, skipping retrieval")
            visitor_name = (event.visitor.model_extra or {}).get("name") if event.visitor else None
            return await generate_greeting(self.llm, visitor_name, timeout_seconds=settings.greeting_timeout_seconds)

        if not tenant_has_endpoints(db, conversation.tenant_id):
            log.warning("Tenant has no endpoint corpus")
            return NO_DOCS_MESSAGE

        history = get_last_turns(conversation, settings.history_turns)
        query = f"{history}\nuser: {text}" if history else text
        candidates = await self.retriever.find_candidates(
            db, query, conversation.tenant_id, top_k=settings.candidate_top_k
        )
        if not candidates:
            log.info("No candidate endpoints")
            reset_clarification_attempts(db, conversation)
            return NO_MATCH_MESSAGE

        result = await decide_endpoint(self.llm, text, history, candidates)
        if result.failed_with("llm_unavailable"):
            log.error("Decision skipped, LLM provider not configured")
            return UNCLEAR_DECISION_MESSAGE
        if not result.ok:
            log.warning(f"No usable decision: {result.error_code}")
            return UNCLEAR_DECISION_MESSAGE
        decision = result.value

        step = next_step(
            decision,
            conversation.clarification_attempts or 0,
            confidence_threshold=settings.confidence_threshold,
            max_attempts=settings.max_clarification_attempts,
        )
        if step.action == TurnAction.RESOLVE:
            await self.resolve_missing(db, conversation, decision)
            step = next_step(
                decision,
                conversation.clarification_attempts or 0,
                resolution_attempted=True,
                confidence_threshold=settings.confidence_threshold,
                max_attempts=settings.max_clarification_attempts,
            )

        if step.action == TurnAction.EXECUTE and not is_candidate(decision.endpoint_id, candidates):
            log.warning(f"Decision would execute unknown endpoint {decision.endpoint_id!r}")
            return UNCLEAR_DECISION_MESSAGE

        if step.counter == CounterEffect.RESET:
            reset_clarification_attempts(db, conversation)
        elif step.counter == CounterEffect.INCREMENT:
            increment_clarification_attempts(db, conversation)
        db.commit()

        log.info(
            "Turn step",
            context={"action": step.action.value, "attempts": conversation.clarification_attempts},
        )

        if step.action == TurnAction.CONVERSATIONAL:
            return CONVERSATIONAL_MESSAGE
        if step.action == TurnAction.ASK_MISSING:
            return missing_parameters_message(decision)
        if step.action == TurnAction.CLARIFY:
            return clarification_message(decision)
        if step.action == TurnAction.FALLBACK:
            return FALLBACK_MESSAGE

        execution = await self.executor.execute(db, conversation.tenant_id, decision.endpoint_id, decision.parameters)
        return format_api_response(execution)

    async def resolve_missing(self, db: Session, conversation: Conversation, decision: Decision) -> None:
        """Fill resolvable missing parameters in place. Unresolved ones stay missing."""
        email = (conversation.visitor_details or {}).get("email")
        for name in resolvable_missing(decision):
            value = await self.resolver.resolve_user_id(db, conversation, email)
            if value:
                decision.parameters[name] = value
                decision.missing_parameters = [p for p in decision.missing_parameters if p != name]
