from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class Decision(BaseModel):
    """Structured output of the reasoning call for one turn. Never persisted."""

    act_intended: bool = Field(default=False, validation_alias=AliasChoices("call_api", "act_intended", "actIntended"))
    endpoint_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("endpoint_id", "endpointId"))
    parameters: dict[str, Any] = Field(default_factory=dict)
    missing_parameters: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("missing_parameters", "missingParameters"),
    )
    clarification_question: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("clarification_question", "clarificationQuestion"),
    )
    confidence: float = 0.0
    reasoning: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.0
        return min(max(value, 0.0), 1.0)

    @field_validator("parameters", mode="before")
    @classmethod
    def _parameters_as_dict(cls, value):
        return value if isinstance(value, dict) else {}

    @field_validator("missing_parameters", mode="before")
    @classmethod
    def _missing_as_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(item) for item in value if item]

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning_as_str(cls, value):
        return value if isinstance(value, str) else ""


class ResolverSelection(BaseModel):
    is_resolver: bool = False
    endpoint_id: Optional[str] = None
    reasoning: str = ""
