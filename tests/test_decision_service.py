import json
from unittest.mock import AsyncMock, Mock

import pytest

from app.models import ApiEndpoint
from app.services.decision_service import (
    DecisionParseError,
    build_decision_messages,
    decide_endpoint,
    parse_decision,
)
from app.services.llm import LLMProviderError, LLMResponse
from app.services.retrieval_service import Candidate


def candidate(endpoint_id="list_orders", score=0.91):
    endpoint = ApiEndpoint(
        tenant_id="org-1",
        endpoint_id=endpoint_id,
        method="get",
        path="/users/{userId}/orders",
        summary="List a user's orders",
        parameters=[{"name": "userId", "in": "path", "required": True}],
    )
    return Candidate(endpoint=endpoint, score=score)


def llm_returning(content):
    llm = Mock()
    llm.generate = AsyncMock(return_value=LLMResponse(content=content, model="test"))
    return llm


class TestParseDecision:
    def test_parses_plain_json(self):
        content = json.dumps(
            {
                "call_api": True,
                "endpoint_id": "list_orders",
                "parameters": {"userId": "u-1"},
                "missing_parameters": [],
                "confidence": 0.92,
                "reasoning": "list orders",
            }
        )
        decision = parse_decision(content, [candidate()])

        assert decision.act_intended is True
        assert decision.parameters == {"userId": "u-1"}
        assert decision.confidence == 0.92

    def test_parses_fenced_json(self):
        content = '```json\n{"call_api": false, "confidence": 0.3}\n```'
        decision = parse_decision(content)
        assert decision.act_intended is False

    def test_confidence_clamped(self):
        assert parse_decision('{"call_api": false, "confidence": 7}').confidence == 1.0
        assert parse_decision('{"call_api": false, "confidence": "high"}').confidence == 0.0

    def test_non_json_rejected(self):
        with pytest.raises(DecisionParseError):
            parse_decision("I think you should call list_orders")

    def test_unknown_endpoint_rejected(self):
        content = '{"call_api": true, "endpoint_id": "delete_everything", "confidence": 0.99}'
        with pytest.raises(DecisionParseError):
            parse_decision(content, [candidate()])

    def test_unknown_endpoint_allowed_while_parameters_missing(self):
        content = '{"call_api": true, "endpoint_id": null, "missing_parameters": ["userId"], "confidence": 0.5}'
        decision = parse_decision(content, [candidate()])
        assert decision.missing_parameters == ["userId"]


class TestBuildDecisionMessages:
    def test_prompt_lists_candidates(self):
        messages = build_decision_messages("show my orders", "", [candidate()])
        prompt = messages[-1]["content"]

        assert "GET /users/{userId}/orders" in prompt
        assert "ID: list_orders" in prompt
        assert "Required params: userId" in prompt
        assert "Score: 0.910" in prompt
        assert "CONVERSATION HISTORY:\nNone" in prompt


class TestDecideEndpoint:
    @pytest.mark.asyncio
    async def test_success(self):
        llm = llm_returning('{"call_api": true, "endpoint_id": "list_orders", "confidence": 0.9}')

        result = await decide_endpoint(llm, "show my orders", "", [candidate()])

        assert result.ok is True
        assert result.value.endpoint_id == "list_orders"
        assert llm.generate.await_args.kwargs["json_mode"] is True

    @pytest.mark.asyncio
    async def test_malformed_output_is_failure(self):
        result = await decide_endpoint(llm_returning("not json"), "show my orders", "", [candidate()])
        assert result.ok is False
        assert result.error_code == "malformed_decision"

    @pytest.mark.asyncio
    async def test_provider_error_is_failure(self):
        llm = Mock()
        llm.generate = AsyncMock(side_effect=LLMProviderError("timeout"))

        result = await decide_endpoint(llm, "show my orders", "", [candidate()])

        assert result.ok is False
        assert result.error_code == "decision_error"

    @pytest.mark.asyncio
    async def test_missing_provider(self):
        result = await decide_endpoint(None, "show my orders", "", [candidate()])
        assert result.error_code == "llm_unavailable"
