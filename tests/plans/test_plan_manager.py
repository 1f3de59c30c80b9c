"""Tests for PlanManager."""

import pytest

from remedy.core.config import SettingsManager
from remedy.database import DatabaseManager
from remedy.error_handling import ConflictError, NotFoundError, PlanStateError, ValidationError
from remedy.plans.manager import PlanManager
from remedy.plans.models import (
    ApprovalStatus,
    DeduplicationParams,
    PlanStatus,
    RiskLevel,
    SourceType,
    TransformationKind,
)


class TestCreatePlan:
    def test_creates_draft_with_defaults(self, manager, make_plan):
        plan = make_plan()

        assert plan.status == PlanStatus.DRAFT
        assert plan.version == 1
        assert plan.iteration_count == 0
        assert plan.max_iterations == 3
        assert plan.accuracy_threshold == 0.95
        assert plan.risk_level == RiskLevel.LOW
        assert plan.affected_columns == ["email"]
        assert manager.ledger.get_plan(plan.plan_id).parameters == plan.parameters

    def test_risk_follows_transformation_kind(self, make_plan):
        plan = make_plan(
            kind=TransformationKind.DEDUPLICATION,
            parameters=DeduplicationParams(key_columns=["email"]),
        )
        assert plan.risk_level == RiskLevel.HIGH

    def test_resolves_trigger_references(self, make_plan):
        plan = make_plan(
            source_type=SourceType.ISSUE,
            source_id="DQ-17",
            description="Fix {{ trigger.issue.title }} ({{ trigger.issue.count }} rows)",
            trigger={"issue": {"title": "mixed-case emails", "count": 412}},
        )
        assert plan.description == "Fix mixed-case emails (412 rows)"

    def test_validation_rule_placeholders_survive(self, make_plan):
        from remedy.plans.models import FormatStandardizationParams

        plan = make_plan(
            parameters=FormatStandardizationParams(
                validation_rule="{{ column }} = lower({{ column }})"
            )
        )
        assert plan.parameters.validation_rule == "{{ column }} = lower({{ column }})"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"target_asset": "customers; DROP TABLE users"},
            {"target_column": "email address"},
            {"description": "   "},
            {"requested_by": ""},
            {"accuracy_threshold": 1.5},
            {"max_iterations": 0},
        ],
    )
    def test_rejects_invalid_requests(self, make_plan, overrides):
        with pytest.raises(ValidationError):
            make_plan(**overrides)


@pytest.mark.asyncio
async def test_run_plan_iterates_until_approved(manager, scorer, make_plan):
    plan = make_plan(risk_level=RiskLevel.LOW)
    scorer.accuracies = [0.7, 0.99]

    result = await manager.run_plan(plan.plan_id)

    assert result.status == PlanStatus.APPROVED
    assert result.iteration_count == 2


@pytest.mark.asyncio
async def test_run_iteration_without_generator(ledger, gate, engine, dispatcher, settings, make_request):
    manager = PlanManager(ledger, gate, engine, dispatcher, settings)
    plan = manager.create_plan(make_request())

    with pytest.raises(ValidationError):
        await manager.run_iteration(plan.plan_id)


@pytest.mark.asyncio
async def test_decide_approval_accepts_strings(manager, make_plan):
    plan = make_plan(risk_level=RiskLevel.MEDIUM)
    await manager.run_iteration(plan.plan_id)
    approval = await manager.request_approval(plan.plan_id)

    with pytest.raises(ValidationError):
        await manager.decide_approval(approval.approval_id, "maybe", "bob")

    decided = await manager.decide_approval(approval.approval_id, "APPROVE", "bob")
    assert decided.status == ApprovalStatus.APPROVED


@pytest.mark.asyncio
async def test_cancel_closes_open_approval(manager, notifier, make_plan):
    plan = make_plan(risk_level=RiskLevel.HIGH)
    await manager.run_iteration(plan.plan_id)
    approval = await manager.request_approval(plan.plan_id)

    cancelled = await manager.cancel_plan(plan.plan_id, "dana", "Fixed upstream")

    assert cancelled.status == PlanStatus.CANCELLED
    assert cancelled.failure_reason == "Cancelled by dana: Fixed upstream"
    closed = manager.ledger.get_approval(approval.approval_id)
    assert closed.status == ApprovalStatus.REJECTED
    assert closed.comment == "Fixed upstream"
    assert "plan_cancelled" in notifier.templates


@pytest.mark.asyncio
async def test_cancel_refuses_terminal_and_busy_plans(manager, make_plan):
    plan = make_plan()
    manager.ledger.claim(plan.plan_id, "iteration", allowed={PlanStatus.DRAFT})
    with pytest.raises(ConflictError):
        await manager.cancel_plan(plan.plan_id, "dana")

    other = make_plan()
    await manager.cancel_plan(other.plan_id, "dana")
    with pytest.raises(PlanStateError):
        await manager.cancel_plan(other.plan_id, "dana")


@pytest.mark.asyncio
async def test_get_plan_returns_history(manager, scorer, make_plan):
    plan = make_plan(risk_level=RiskLevel.MEDIUM)
    scorer.accuracies = [0.5, 0.98]
    await manager.run_plan(plan.plan_id)

    details = await manager.get_plan(plan.plan_id)

    assert [i.iteration_number for i in details.iterations] == [1, 2]
    assert details.pending_approval is not None
    assert details.latest_iteration.accuracy == 0.98
    assert details.to_dict()["approvals"][0]["status"] == "pending"


@pytest.mark.asyncio
async def test_get_plan_unknown_id(manager):
    with pytest.raises(NotFoundError):
        await manager.get_plan("missing")


@pytest.mark.asyncio
async def test_list_plans_filters_and_counts(manager, make_plan):
    draft = make_plan()
    make_plan(target_asset="orders", target_column="status")
    cancelled = make_plan()
    await manager.cancel_plan(cancelled.plan_id, "dana")

    listing = await manager.list_plans(target_asset="customers")
    assert {p.plan_id for p in listing.plans} == {draft.plan_id, cancelled.plan_id}
    assert listing.counts["draft"] == 1
    assert listing.counts["cancelled"] == 1
    assert listing.counts["approved"] == 0
    assert listing.total == 2

    drafts = await manager.list_plans(status=PlanStatus.DRAFT)
    assert len(drafts.plans) == 2


@pytest.mark.asyncio
async def test_preview_shows_sampled_rows_and_risk(manager, make_plan):
    plan = make_plan(
        kind=TransformationKind.OUTLIER_CORRECTION,
        target_column="amount",
        parameters=None,
        estimated_row_count=25_000,
    )
    await manager.run_iteration(plan.plan_id)

    preview = await manager.get_preview(plan.plan_id)

    assert preview.risk_level == RiskLevel.MEDIUM
    assert preview.affected_row_count == 25_000
    assert preview.sample_before[0]["email"] == "A@X.COM"
    assert preview.sample_after[0]["email"] == "a@x.com"
    assert preview.reversible
    assert "Outlier correction overwrites measured values" in preview.risk_factors
    assert "Affects 25,000 rows" in preview.risk_factors


def test_from_settings_without_api_key(tmp_path, monkeypatch):
    monkeypatch.delenv("REMEDY_API_KEY", raising=False)
    monkeypatch.delenv("REMEDY_NOTIFICATION_WEBHOOK_URL", raising=False)
    settings_manager = SettingsManager(tmp_path / "settings")

    with DatabaseManager(tmp_path / "system.db", tmp_path / "user.db") as db_manager:
        manager = PlanManager.from_settings(settings_manager, db_manager)
        assert manager.controller is None
        assert manager.client is None
        assert manager.engine.snapshots is not None
