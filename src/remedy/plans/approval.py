"""Approval gate: human or policy sign-off between iteration and execution."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta

from remedy.core.config import EngineSettings
from remedy.error_handling import (
    AlreadyDecidedError,
    ApprovalExpired,
    ConflictError,
    ErrorContext,
    PlanStateError,
    ValidationError,
)
from remedy.plans.ledger import PlanLedger
from remedy.plans.models import (
    Approval,
    ApprovalStatus,
    Decision,
    PlanStatus,
    RiskLevel,
    TransformationPlan,
    new_id,
)
from remedy.plans.notifications import NotificationDispatcher, plan_context

logger = logging.getLogger(__name__)


@dataclass
class AutoApprovalDecision:
    approved: bool
    reason: str


class AutoApprovalPolicy(ABC):
    """Decides whether a plan may skip human review."""

    @abstractmethod
    def evaluate(self, plan: TransformationPlan) -> AutoApprovalDecision:
        """Evaluate a plan that is waiting for approval."""


class DefaultAutoApprovalPolicy(AutoApprovalPolicy):
    """Auto-approve low-risk plans whose sample accuracy met their threshold."""

    def evaluate(self, plan: TransformationPlan) -> AutoApprovalDecision:
        if plan.risk_level != RiskLevel.LOW:
            return AutoApprovalDecision(
                False, f"{plan.risk_level.value} risk plans need a reviewer"
            )
        if plan.final_accuracy is None:
            return AutoApprovalDecision(False, "No sample accuracy recorded")
        if plan.final_accuracy < plan.accuracy_threshold:
            return AutoApprovalDecision(
                False,
                f"Sample accuracy {plan.final_accuracy:.1%} is below the "
                f"{plan.accuracy_threshold:.0%} threshold",
            )
        return AutoApprovalDecision(
            True,
            f"Met auto-approve criteria (low risk, {plan.final_accuracy:.1%} sample "
            f"accuracy >= {plan.accuracy_threshold:.0%} threshold)",
        )


class ApprovalGate:
    """Opens, decides and expires approvals.

    Expiry is checked lazily on every request and decision, and by the
    optional background sweeper. All paths go through the same guarded
    ``pending -> *`` update, so whichever runs first wins and the others see
    the approval as already decided.
    """

    def __init__(
        self,
        ledger: PlanLedger,
        dispatcher: NotificationDispatcher,
        settings: EngineSettings,
        policy: AutoApprovalPolicy | None = None,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.settings = settings
        self.policy = policy or DefaultAutoApprovalPolicy()

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.settings.approval_window_hours)

    def evaluate_auto_approval(self, plan: TransformationPlan) -> bool:
        """Whether ``plan`` qualifies for auto-approval.

        Critical-risk plans never do, whatever the configured policy says.
        """
        if plan.risk_level == RiskLevel.CRITICAL or plan.final_accuracy is None:
            return False
        return self.policy.evaluate(plan).approved

    async def request_approval(self, plan_id: str) -> Approval:
        """Return the plan's open approval, or open a new one.

        A plan in ``expired`` re-enters review here. When the auto-approval
        policy accepts the plan the new approval is decided immediately.

        Raises:
            PlanStateError: If the plan is neither awaiting approval nor expired
        """
        await self.expire_overdue(plan_id)

        plan = self.ledger.get_plan(plan_id)
        if plan.status == PlanStatus.PENDING_APPROVAL:
            existing = self.ledger.pending_approval(plan_id)
            if existing is not None:
                return existing
        elif plan.status != PlanStatus.EXPIRED:
            raise PlanStateError(
                f"Plan {plan_id} is '{plan.status.value}'; approval can only be "
                "requested once iteration produced code",
                context=ErrorContext(operation="request_approval", plan_id=plan_id),
            )

        now = self.ledger.now()
        approval = Approval(
            approval_id=new_id(),
            plan_id=plan_id,
            status=ApprovalStatus.PENDING,
            reviewed_by=None,
            reviewed_at=None,
            comment=None,
            auto_approved=False,
            auto_approve_reason=None,
            expires_at=now + self.window,
            created_at=now,
        )
        plan = self.ledger.open_approval(
            plan, approval, status=PlanStatus.PENDING_APPROVAL
        )

        if self.evaluate_auto_approval(plan):
            reason = self.policy.evaluate(plan).reason
            resolved, plan = self.ledger.resolve_approval(
                plan,
                approval,
                ApprovalStatus.APPROVED,
                reviewed_by=None,
                auto_approved=True,
                auto_approve_reason=reason,
                status=PlanStatus.APPROVED,
            )
            if resolved is None:
                return self.ledger.get_approval(approval.approval_id)
            await self.dispatcher.notify(
                "auto_approved", **plan_context(plan), reason=reason
            )
            return resolved

        await self.dispatcher.notify(
            "approval_requested",
            **plan_context(plan),
            approval_id=approval.approval_id,
            expires_at=approval.expires_at,
        )
        return approval

    async def decide(
        self,
        approval_id: str,
        decision: Decision,
        reviewer: str,
        comment: str | None = None,
    ) -> Approval:
        """Record a reviewer's decision.

        Raises:
            NotFoundError: If the approval does not exist
            AlreadyDecidedError: If the approval is no longer pending
            ApprovalExpired: If the approval passed its expiry; it and its plan
                are moved to ``expired`` before raising
            ValidationError: If a rejection has no comment
        """
        context = ErrorContext(operation="decide", approval_id=approval_id)
        approval = self.ledger.get_approval(approval_id)
        context.plan_id = approval.plan_id

        if not approval.is_pending:
            raise AlreadyDecidedError(
                f"Approval {approval_id} was already {approval.status.value}",
                context=context,
            )

        if approval.is_overdue(self.ledger.now()):
            await self._expire(approval)
            raise ApprovalExpired(
                f"Approval {approval_id} expired at {approval.expires_at.isoformat()}; "
                "request a new approval",
                context=context,
            )

        if not reviewer:
            raise ValidationError("A reviewer is required", context=context)
        if decision == Decision.REJECT and not (comment and comment.strip()):
            raise ValidationError("Rejecting a plan requires a reason", context=context)

        plan = self.ledger.get_plan(approval.plan_id)
        if decision == Decision.APPROVE:
            outcome, plan_status = ApprovalStatus.APPROVED, PlanStatus.APPROVED
        else:
            outcome, plan_status = ApprovalStatus.REJECTED, PlanStatus.REJECTED

        resolved, plan = self.ledger.resolve_approval(
            plan,
            approval,
            outcome,
            reviewed_by=reviewer,
            comment=comment,
            status=plan_status,
        )
        if resolved is None:
            raise AlreadyDecidedError(
                f"Approval {approval_id} was decided concurrently", context=context
            )

        await self.dispatcher.notify(
            "approval_decided",
            **plan_context(plan),
            decision=outcome.value,
            reviewer=reviewer,
            comment=comment,
        )
        return resolved

    async def expire_overdue(self, plan_id: str | None = None) -> list[Approval]:
        """Expire pending approvals past their deadline.

        Args:
            plan_id: Only look at this plan's approvals; all plans when None

        Returns:
            The approvals this call expired
        """
        now = self.ledger.now()
        if plan_id is None:
            overdue = self.ledger.overdue_approvals(now)
        else:
            pending = self.ledger.pending_approval(plan_id)
            overdue = [pending] if pending and pending.is_overdue(now) else []

        expired = []
        for approval in overdue:
            try:
                resolved = await self._expire(approval)
            except ConflictError as e:
                logger.warning(f"Could not expire approval {approval.approval_id}: {e}")
                continue
            if resolved is not None:
                expired.append(resolved)
        return expired

    async def _expire(self, approval: Approval) -> Approval | None:
        plan = self.ledger.get_plan(approval.plan_id)
        changes = {}
        if plan.status == PlanStatus.PENDING_APPROVAL:
            changes["status"] = PlanStatus.EXPIRED

        resolved, plan = self.ledger.resolve_approval(
            plan, approval, ApprovalStatus.EXPIRED, reviewed_by=None, **changes
        )
        if resolved is None:
            return None

        await self.dispatcher.notify(
            "approval_expired",
            **plan_context(plan),
            approval_id=approval.approval_id,
            expires_at=approval.expires_at,
        )
        return resolved
