from typing import List, Optional

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.decision import Decision
from app.services.llm import LLMProvider, parse_json_object
from app.services.result import Result
from app.services.retrieval_service import Candidate

logger = get_logger("decision_service")

DECISION_SYSTEM_PROMPT = "You are an API decision agent. You answer only with a single JSON object."

DECISION_PROMPT = """Analyze the user's message and decide whether to call an API endpoint.

CONVERSATION HISTORY:
{history}

USER MESSAGE:
"{message}"

TOP CANDIDATE ENDPOINTS:
{endpoints}

YOUR TASK:
1. Decide if the user wants to perform an API action
2. If yes, select the MOST APPROPRIATE endpoint from the candidates above
3. Extract ALL required parameters from the user message and history
4. Identify any MISSING required parameters
5. Provide a confidence score (0.0 to 1.0)

RESPOND IN THIS EXACT JSON FORMAT:
{{
  "call_api": true/false,
  "endpoint_id": "endpoint_id_here" or null,
  "parameters": {{"param_name": "value"}},
  "missing_parameters": ["param_name"],
  "clarification_question": "Question to ask user if params are missing or confidence is low",
  "confidence": 0.0-1.0,
  "reasoning": "brief explanation"
}}

IMPORTANT:
- If required parameters are missing, set "call_api" to true but list them in "missing_parameters".
- In "clarification_question", ask specifically for the missing information (e.g. "Could you provide your User ID?").
- Set "call_api" to false if the user is just asking questions or chatting.
- Confidence reflects how certain you are about the endpoint match, NOT whether you have all params."""


class DecisionParseError(Exception):
    """Reasoning output was not a valid decision object."""


def format_candidates(candidates: List[Candidate]) -> str:
    lines = []
    for idx, candidate in enumerate(candidates, 1):
        endpoint = candidate.endpoint
        required = ", ".join(endpoint.required_parameter_names) or "None"
        lines.append(
            f"{idx}. {endpoint.label}\n"
            f"   ID: {endpoint.endpoint_id}\n"
            f"   Description: {endpoint.summary or endpoint.description or 'No description'}\n"
            f"   Required params: {required}\n"
            f"   Score: {candidate.score:.3f}"
        )
    return "\n\n".join(lines)


def build_decision_messages(message: str, history: str, candidates: List[Candidate]) -> list[dict]:
    prompt = DECISION_PROMPT.format(
        history=history or "None",
        message=message,
        endpoints=format_candidates(candidates),
    )
    return [
        {"role": "system", "content": DECISION_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def parse_decision(content: str, candidates: Optional[List[Candidate]] = None) -> Decision:
    payload = parse_json_object(content)
    if payload is None:
        raise DecisionParseError("Reasoning output is not a JSON object")
    try:
        decision = Decision.model_validate(payload)
    except ValidationError as exc:
        raise DecisionParseError(f"Reasoning output does not match decision shape: {exc}") from exc

    if decision.act_intended and candidates is not None and not decision.missing_parameters:
        known_ids = {c.endpoint.endpoint_id for c in candidates}
        if decision.endpoint_id not in known_ids:
            raise DecisionParseError(f"Decision picked unknown endpoint {decision.endpoint_id!r}")
    return decision


async def decide_endpoint(
    llm: Optional[LLMProvider],
    message: str,
    history: str,
    candidates: List[Candidate],
) -> Result[Decision]:
    """Ask the reasoning service which candidate (if any) to call."""
    if llm is None:
        return Result.failure("LLM provider not configured", "llm_unavailable")

    try:
        response = await llm.generate(
            build_decision_messages(message, history, candidates),
            temperature=0.0,
            json_mode=True,
        )
        decision = parse_decision(response.content, candidates)
    except DecisionParseError as e:
        logger.warning(f"Decision output rejected: {e}")
        return Result.failure(str(e), "malformed_decision")
    except Exception as e:
        logger.error(f"Decision call failed: {e}")
        return Result.failure(str(e), "decision_error")

    logger.info(
        "Decision",
        extra={
            "context": {
                "act_intended": decision.act_intended,
                "endpoint_id": decision.endpoint_id,
                "missing": decision.missing_parameters,
                "confidence": decision.confidence,
            }
        },
    )
    return Result.success(decision)
