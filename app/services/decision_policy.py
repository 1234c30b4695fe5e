from dataclasses import dataclass
from enum import Enum

from app.schemas.decision import Decision

CONFIDENCE_THRESHOLD = 0.8
MAX_CLARIFICATION_ATTEMPTS = 2

# Missing parameter name -> visitor fact it can be resolved from.
RESOLVABLE_PARAMETERS = {
    "userId": "email",
}


class TurnAction(str, Enum):
    CONVERSATIONAL = "conversational"  # not an API request
    RESOLVE = "resolve"  # missing params, some of them auto-resolvable
    ASK_MISSING = "ask_missing"  # missing params nobody can fill in but the visitor
    EXECUTE = "execute"
    CLARIFY = "clarify"  # low confidence, attempts remain
    FALLBACK = "fallback"  # low confidence, attempts exhausted


class CounterEffect(str, Enum):
    RESET = "reset"
    INCREMENT = "increment"
    KEEP = "keep"


@dataclass(frozen=True)
class PolicyStep:
    action: TurnAction
    counter: CounterEffect


def resolvable_missing(decision: Decision) -> list[str]:
    return [name for name in decision.missing_parameters if name in RESOLVABLE_PARAMETERS]


def next_step(
    decision: Decision,
    clarification_attempts: int,
    *,
    resolution_attempted: bool = False,
    confidence_threshold: float = CONFIDENCE_THRESHOLD,
    max_attempts: int = MAX_CLARIFICATION_ATTEMPTS,
) -> PolicyStep:
    """Decide what the turn does with a decision.

    Called once with the raw decision and, if that returns RESOLVE, again with
    ``resolution_attempted=True`` after the resolver filled what it could.
    """
    if not decision.act_intended:
        return PolicyStep(TurnAction.CONVERSATIONAL, CounterEffect.RESET)

    if decision.missing_parameters:
        if not resolution_attempted and resolvable_missing(decision):
            return PolicyStep(TurnAction.RESOLVE, CounterEffect.KEEP)
        return PolicyStep(TurnAction.ASK_MISSING, CounterEffect.INCREMENT)

    if decision.confidence >= confidence_threshold:
        return PolicyStep(TurnAction.EXECUTE, CounterEffect.RESET)

    if clarification_attempts < max_attempts:
        return PolicyStep(TurnAction.CLARIFY, CounterEffect.INCREMENT)

    return PolicyStep(TurnAction.FALLBACK, CounterEffect.RESET)
