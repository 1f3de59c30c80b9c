"""Tests for the approval gate."""

import pytest

from remedy.core.config import EngineSettings
from remedy.error_handling import (
    AlreadyDecidedError,
    ApprovalExpired,
    PlanStateError,
    ValidationError,
)
from remedy.plans.approval import (
    ApprovalGate,
    AutoApprovalDecision,
    AutoApprovalPolicy,
    DefaultAutoApprovalPolicy,
)
from remedy.plans.models import ApprovalStatus, Decision, PlanStatus, RiskLevel


class ApproveEverything(AutoApprovalPolicy):
    def evaluate(self, plan):
        return AutoApprovalDecision(True, "approve everything")


async def ready_plan(manager, make_plan, **overrides):
    """A plan that passed iteration and waits for an approval request."""
    plan = make_plan(**overrides)
    await manager.run_iteration(plan.plan_id)
    return manager.ledger.get_plan(plan.plan_id)


@pytest.mark.asyncio
async def test_low_risk_plan_is_auto_approved(gate, ledger, manager, notifier, make_plan):
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.LOW)
    assert plan.status == PlanStatus.PENDING_APPROVAL

    approval = await gate.request_approval(plan.plan_id)

    assert approval.status == ApprovalStatus.APPROVED
    assert approval.auto_approved
    assert approval.reviewed_by is None
    assert "Met auto-approve criteria" in approval.auto_approve_reason
    assert ledger.get_plan(plan.plan_id).status == PlanStatus.APPROVED
    assert "auto_approved" in notifier.templates


@pytest.mark.asyncio
async def test_critical_plan_is_never_auto_approved(ledger, dispatcher, settings, manager, make_plan):
    gate = ApprovalGate(ledger, dispatcher, settings, policy=ApproveEverything())
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.CRITICAL)

    approval = await gate.request_approval(plan.plan_id)

    assert approval.status == ApprovalStatus.PENDING
    assert not approval.auto_approved
    assert ledger.get_plan(plan.plan_id).status == PlanStatus.PENDING_APPROVAL


@pytest.mark.asyncio
async def test_medium_risk_plan_waits_for_reviewer(gate, manager, notifier, make_plan):
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.MEDIUM)

    approval = await gate.request_approval(plan.plan_id)

    assert approval.status == ApprovalStatus.PENDING
    assert approval.expires_at == approval.created_at + gate.window
    context = notifier.context_for("approval_requested")
    assert context["approval_id"] == approval.approval_id


@pytest.mark.asyncio
async def test_request_approval_returns_open_approval(gate, manager, make_plan):
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.HIGH)

    first = await gate.request_approval(plan.plan_id)
    second = await gate.request_approval(plan.plan_id)

    assert first.approval_id == second.approval_id


@pytest.mark.asyncio
async def test_request_approval_requires_generated_code(gate, make_plan):
    plan = make_plan()

    with pytest.raises(PlanStateError):
        await gate.request_approval(plan.plan_id)


@pytest.mark.asyncio
async def test_reviewer_approves(gate, ledger, manager, notifier, make_plan):
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.MEDIUM)
    approval = await gate.request_approval(plan.plan_id)

    decided = await gate.decide(approval.approval_id, Decision.APPROVE, "bob", "Looks right")

    assert decided.status == ApprovalStatus.APPROVED
    assert decided.reviewed_by == "bob"
    assert decided.reviewed_at is not None
    assert ledger.get_plan(plan.plan_id).status == PlanStatus.APPROVED
    assert notifier.context_for("approval_decided")["decision"] == "approved"


@pytest.mark.asyncio
async def test_second_decision_is_rejected(gate, manager, make_plan):
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.MEDIUM)
    approval = await gate.request_approval(plan.plan_id)
    await gate.decide(approval.approval_id, Decision.APPROVE, "bob")

    with pytest.raises(AlreadyDecidedError):
        await gate.decide(approval.approval_id, Decision.REJECT, "carol", "Too risky")


@pytest.mark.asyncio
async def test_rejection_requires_a_reason(gate, ledger, manager, make_plan):
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.MEDIUM)
    approval = await gate.request_approval(plan.plan_id)

    with pytest.raises(ValidationError):
        await gate.decide(approval.approval_id, Decision.REJECT, "bob")
    assert ledger.get_approval(approval.approval_id).is_pending

    rejected = await gate.decide(
        approval.approval_id, Decision.REJECT, "bob", "Strips valid plus-addresses"
    )
    assert rejected.status == ApprovalStatus.REJECTED
    assert rejected.comment == "Strips valid plus-addresses"
    assert ledger.get_plan(plan.plan_id).status == PlanStatus.REJECTED


@pytest.mark.asyncio
async def test_unreviewed_approval_expires_on_read(
    ledger, dispatcher, manager, notifier, clock, make_plan
):
    manager.gate = ApprovalGate(
        ledger, dispatcher, EngineSettings(approval_window_hours=1)
    )
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.MEDIUM)
    approval = await manager.request_approval(plan.plan_id)

    clock.advance(hours=1, seconds=1)
    expired = await manager.get_approval(approval.approval_id)

    assert expired.status == ApprovalStatus.EXPIRED
    assert expired.reviewed_at is None
    assert ledger.get_plan(plan.plan_id).status == PlanStatus.EXPIRED
    assert "approval_expired" in notifier.templates


@pytest.mark.asyncio
async def test_decision_after_expiry_fails(gate, ledger, manager, clock, make_plan):
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.MEDIUM)
    approval = await gate.request_approval(plan.plan_id)

    clock.advance(hours=25)
    with pytest.raises(ApprovalExpired):
        await gate.decide(approval.approval_id, Decision.APPROVE, "bob")

    assert ledger.get_approval(approval.approval_id).status == ApprovalStatus.EXPIRED
    assert ledger.get_plan(plan.plan_id).status == PlanStatus.EXPIRED


@pytest.mark.asyncio
async def test_expired_plan_can_request_a_new_approval(gate, ledger, manager, clock, make_plan):
    plan = await ready_plan(manager, make_plan, risk_level=RiskLevel.MEDIUM)
    first = await gate.request_approval(plan.plan_id)
    clock.advance(hours=25)
    await gate.expire_overdue()

    second = await gate.request_approval(plan.plan_id)

    assert second.approval_id != first.approval_id
    assert second.status == ApprovalStatus.PENDING
    assert ledger.get_plan(plan.plan_id).status == PlanStatus.PENDING_APPROVAL
    statuses = [a.status for a in ledger.services.approvals.list_approvals(plan.plan_id)]
    assert statuses.count(ApprovalStatus.PENDING) == 1


@pytest.mark.asyncio
async def test_expire_overdue_sweeps_every_plan(gate, manager, clock, make_plan):
    plans = [
        await ready_plan(manager, make_plan, risk_level=RiskLevel.HIGH) for _ in range(2)
    ]
    for plan in plans:
        await gate.request_approval(plan.plan_id)

    assert await gate.expire_overdue() == []
    clock.advance(hours=24, seconds=1)

    expired = await gate.expire_overdue()
    assert {a.plan_id for a in expired} == {p.plan_id for p in plans}
    assert await gate.expire_overdue() == []


def test_default_policy_explains_refusals(make_plan):
    policy = DefaultAutoApprovalPolicy()
    plan = make_plan(risk_level=RiskLevel.MEDIUM)

    decision = policy.evaluate(plan)

    assert not decision.approved
    assert "medium" in decision.reason
