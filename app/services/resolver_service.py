from typing import Any, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Conversation
from app.schemas.decision import ResolverSelection
from app.services.conversation_service import set_resolved_parameter
from app.services.executor_service import ActionExecutor
from app.services.llm import LLMProvider, parse_json_object
from app.services.retrieval_service import Candidate, CandidateRetriever
from app.services.session_cache import SessionCache

logger = get_logger("resolver_service")

USER_BY_EMAIL_QUERY = "Get user profile by email address, find customer by email"

IDENTITY_FIELDS = ("userId", "user_id", "id", "ID", "customerId", "customer_id", "uuid", "UUID", "uid", "UID")
NESTED_IDENTITY_KEYS = ("user", "customer")

RESOLVER_SELECTION_PROMPT = """You are selecting an endpoint that can RESOLVE a user's identity BY EMAIL.

CANDIDATE ENDPOINTS:
{endpoints}

YOUR TASK:
Select the endpoint that:
1. Accepts "email" as a parameter
2. Returns user profile or user details
3. Will likely contain "userId" or "id" in the response

RESPOND IN THIS EXACT JSON FORMAT:
{{
  "is_resolver": true/false,
  "endpoint_id": "endpoint_id_here" or null,
  "reasoning": "brief explanation"
}}

IMPORTANT:
- Set is_resolver to true ONLY if you're confident this endpoint can resolve user identity by email.
- If none of the endpoints match, set is_resolver to false."""


def extract_identity(data: Any) -> Optional[str]:
    """Pull an identifier out of a resolver response."""
    if data is None or data == "":
        return None
    if isinstance(data, str):
        return data
    if isinstance(data, list):
        return extract_identity(data[0]) if data else None
    if not isinstance(data, dict):
        return None

    for name in IDENTITY_FIELDS:
        if data.get(name):
            return str(data[name])

    for key in NESTED_IDENTITY_KEYS:
        nested = data.get(key)
        if isinstance(nested, dict):
            for name in IDENTITY_FIELDS:
                if nested.get(name):
                    return str(nested[name])
    return None


def format_resolver_candidates(candidates: List[Candidate]) -> str:
    lines = []
    for idx, candidate in enumerate(candidates, 1):
        endpoint = candidate.endpoint
        params = ", ".join(
            f"{p.get('name')}{'*' if p.get('required') else ''}" for p in endpoint.parameters or [] if p.get("name")
        )
        lines.append(
            f"{idx}. {endpoint.label}\n"
            f"   ID: {endpoint.endpoint_id}\n"
            f"   Description: {endpoint.summary or endpoint.description or 'No description'}\n"
            f"   Parameters: {params or 'None'}"
        )
    return "\n\n".join(lines)


class ParameterAutoResolver:
    """
    Fill a missing ``userId`` from the visitor's email.

    Looks in the Redis mirror, then the conversation's durable map, and only
    then calls a resolver endpoint picked from the tenant's own API. Every
    failure resolves to ``None``; the caller asks the visitor instead.
    """

    def __init__(
        self,
        retriever: CandidateRetriever,
        executor: ActionExecutor,
        llm: Optional[LLMProvider],
        session_cache: SessionCache,
        top_k: int = 3,
    ):
        self.retriever = retriever
        self.executor = executor
        self.llm = llm
        self.session_cache = session_cache
        self.top_k = top_k

    async def cached_value(self, conversation: Conversation, name: str) -> Optional[str]:
        """Durable record first; the Redis mirror only fills in when it has nothing."""
        durable = (conversation.resolved_parameters or {}).get(name)
        if durable:
            return str(durable)
        mirrored = await self.session_cache.get_resolved_parameters(conversation.tenant_id, conversation.visitor_id)
        if mirrored and mirrored.get(name):
            return str(mirrored[name])
        return None

    async def find_resolver_endpoint(self, db: Session, tenant_id: str) -> Optional[Candidate]:
        candidates = await self.retriever.find_candidates(db, USER_BY_EMAIL_QUERY, tenant_id, top_k=self.top_k)
        if not candidates or self.llm is None:
            return None

        messages = [{"role": "user", "content": RESOLVER_SELECTION_PROMPT.format(
            endpoints=format_resolver_candidates(candidates)
        )}]
        response = await self.llm.generate(messages, temperature=0.0, json_mode=True)
        payload = parse_json_object(response.content)
        if payload is None:
            logger.warning("Resolver selection output is not JSON")
            return None
        try:
            selection = ResolverSelection.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Resolver selection output rejected: {e}")
            return None

        if not selection.is_resolver or not selection.endpoint_id:
            return None
        return next((c for c in candidates if c.endpoint.endpoint_id == selection.endpoint_id), None)

    async def resolve_user_id(self, db: Session, conversation: Conversation, email: Optional[str]) -> Optional[str]:
        context = {"tenant_id": conversation.tenant_id, "visitor_id": conversation.visitor_id}
        try:
            cached = await self.cached_value(conversation, "userId")
            if cached:
                logger.info("Resolved userId from cache", extra={"context": context})
                return cached

            if not email:
                return None

            resolver = await self.find_resolver_endpoint(db, conversation.tenant_id)
            if resolver is None:
                logger.info("No resolver endpoint found", extra={"context": context})
                return None

            result = await self.executor.execute(
                db, conversation.tenant_id, resolver.endpoint.endpoint_id, {"email": email}
            )
            if not result.success:
                logger.info(f"Resolver call failed: {result.error_code}", extra={"context": context})
                return None

            user_id = extract_identity(result.data)
            if not user_id:
                logger.info("Could not extract userId from resolver response", extra={"context": context})
                return None

            set_resolved_parameter(db, conversation, "userId", user_id)
            db.commit()
            await self.session_cache.set_resolved_parameter(
                conversation.tenant_id, conversation.visitor_id, "userId", user_id
            )
            logger.info("Resolved userId", extra={"context": context})
            return user_id
        except Exception as e:
            logger.error(f"userId resolution failed: {e}", extra={"context": context})
            return None
