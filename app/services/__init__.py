from app.services.decision_policy import CounterEffect, PolicyStep, TurnAction, next_step
from app.services.result import Result
from app.services.turn_coordinator import TurnCoordinator, get_turn_coordinator

__all__ = [
    "CounterEffect",
    "PolicyStep",
    "Result",
    "TurnAction",
    "TurnCoordinator",
    "get_turn_coordinator",
    "next_step",
]
