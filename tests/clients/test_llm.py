"""Tests for the LLM code generator and scorer."""

import json
from datetime import datetime
from types import SimpleNamespace

import pytest

from remedy.clients.base import ExecutionResult, GenerationRequest
from remedy.clients.llm import LLMCodeGenerator, LLMScorer, LLMTemplateMixin
from remedy.error_handling import GenerationFailure
from remedy.plans.models import (
    FormatStandardizationParams,
    PlanStatus,
    RiskLevel,
    SourceType,
    TransformationKind,
    TransformationPlan,
)


class FakeClient:
    """Stands in for RemedyClient; replies with queued message contents."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def chat(self, messages, model=None, temperature=0.2, json_mode=False):
        self.prompts.append(messages[-1]["content"])
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(content=reply)


@pytest.fixture
def request_():
    return GenerationRequest(
        plan_id="plan-1",
        kind=TransformationKind.FORMAT_STANDARDIZATION,
        target_asset="customers",
        target_column="email",
        description="Lowercase customer emails",
        parameters=FormatStandardizationParams(target_format="lowercase"),
        iteration_number=1,
    )


@pytest.fixture
def plan():
    now = datetime(2025, 3, 1, 9, 0, 0)
    return TransformationPlan(
        plan_id="plan-1",
        source_type=SourceType.MANUAL,
        source_id=None,
        target_asset="customers",
        target_column="email",
        kind=TransformationKind.FORMAT_STANDARDIZATION,
        description="Lowercase customer emails",
        parameters=FormatStandardizationParams(),
        generated_code=None,
        rollback_code=None,
        affected_columns=["email"],
        estimated_row_count=None,
        risk_level=RiskLevel.LOW,
        iteration_count=0,
        max_iterations=3,
        final_accuracy=None,
        accuracy_threshold=0.95,
        status=PlanStatus.ITERATING,
        failure_reason=None,
        requested_by="alice",
        version=2,
        active_operation="iteration",
        operation_started_at=now,
        created_at=now,
        updated_at=now,
    )


def test_parse_json_response_handles_code_fences():
    content = 'Here you go:\n```json\n{"code": "UPDATE t SET a = 1"}\n```'

    assert LLMTemplateMixin._parse_json_response(content) == {"code": "UPDATE t SET a = 1"}


def test_parse_json_response_rejects_prose():
    with pytest.raises(ValueError):
        LLMTemplateMixin._parse_json_response("I could not do that.")


@pytest.mark.asyncio
async def test_generator_returns_code_and_rollback(request_):
    client = FakeClient(
        json.dumps(
            {
                "code": " UPDATE {{ target }} SET email = lower(email) ",
                "rollback_code": "",
                "affected_columns": [],
                "explanation": "Lowercases emails",
            }
        )
    )
    generator = LLMCodeGenerator(client)

    result = await generator.generate(request_)

    assert result.code == "UPDATE {{ target }} SET email = lower(email)"
    assert result.rollback_code is None
    assert result.affected_columns == ["email"]
    assert "Lowercase customer emails" in client.prompts[0]
    assert "{{ target }}" in client.prompts[0]


@pytest.mark.asyncio
async def test_generator_prompt_carries_feedback(request_):
    request_.iteration_number = 2
    request_.previous_code = "UPDATE {{ target }} SET email = upper(email)"
    request_.issues_found = ["Emails are uppercase"]
    client = FakeClient('{"code": "UPDATE {{ target }} SET email = lower(email)"}')

    await LLMCodeGenerator(client).generate(request_)

    assert "Previous attempt (iteration 1)" in client.prompts[0]
    assert "Emails are uppercase" in client.prompts[0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        "no json here",
        '{"code": ""}',
        RuntimeError("connection reset"),
    ],
)
async def test_generator_failures(request_, reply):
    with pytest.raises(GenerationFailure):
        await LLMCodeGenerator(FakeClient(reply)).generate(request_)


@pytest.mark.asyncio
async def test_scorer_never_exceeds_rule_based_accuracy(plan):
    client = FakeClient('{"accuracy": 1.0, "notes": "Looks great", "issues_found": []}')
    result = ExecutionResult(rows_succeeded=9, rows_failed=1, failures=[{"email": "X"}])

    evaluation = await LLMScorer(client).score(plan, result)

    assert evaluation.accuracy == 0.9
    assert evaluation.notes == "Looks great"
    assert any("1 of 10" in issue for issue in evaluation.issues_found)


@pytest.mark.asyncio
async def test_scorer_falls_back_on_bad_reply(plan):
    client = FakeClient('{"accuracy": 7}')
    result = ExecutionResult(rows_succeeded=4, rows_failed=0)

    evaluation = await LLMScorer(client).score(plan, result)

    assert evaluation.accuracy == 1.0
    assert "4/4 sample rows passed" in evaluation.notes
