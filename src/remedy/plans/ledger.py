"""Plan ledger: the durable record of every plan and its history."""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from remedy.database.services.container import ServiceContainer
from remedy.error_handling import (
    ConflictError,
    ErrorContext,
    NotFoundError,
    PlanStateError,
)
from remedy.plans.models import (
    Approval,
    ApprovalStatus,
    ExecutionLog,
    Iteration,
    LineageRecord,
    PlanDetails,
    PlanListing,
    PlanStatus,
    RollbackRecord,
    Snapshot,
    TransformationPlan,
    utc_now,
)
from remedy.plans.state import CODE_REQUIRED_STATES, ensure_transition

logger = logging.getLogger(__name__)


class PlanLedger:
    """Single writer for plans, iterations, approvals and execution logs.

    History rows are append-only. The plan row is the only mutable record and
    every change to it is a compare-and-swap on its ``version`` column; a
    caller holding a stale plan gets ConflictError instead of overwriting a
    concurrent change. History appends share a transaction with the plan
    update that accompanies them, so a lost swap leaves no orphan rows.

    Long-running operations (an iteration, an execution) additionally claim
    the plan by setting ``active_operation``. A claim older than the lease is
    considered abandoned and may be taken over.
    """

    def __init__(
        self,
        services: ServiceContainer,
        clock: Callable[[], datetime] = utc_now,
        lease_seconds: float = 900.0,
    ):
        self.services = services
        self.clock = clock
        self.lease = timedelta(seconds=lease_seconds)

    def now(self) -> datetime:
        return self.clock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_plan(self, plan_id: str) -> TransformationPlan | None:
        return self.services.plans.get_plan(plan_id)

    def get_plan(self, plan_id: str) -> TransformationPlan:
        """Get a plan or raise NotFoundError."""
        plan = self.services.plans.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(
                f"Plan {plan_id} not found",
                context=ErrorContext(operation="get_plan", plan_id=plan_id),
            )
        return plan

    def get_details(self, plan_id: str) -> PlanDetails:
        plan = self.get_plan(plan_id)
        return PlanDetails(
            plan=plan,
            iterations=self.services.iterations.list_iterations(plan_id),
            approvals=self.services.approvals.list_approvals(plan_id),
            logs=self.services.execution_logs.list_logs(plan_id),
            rollbacks=self.services.execution_logs.list_rollbacks(plan_id),
        )

    def list_plans(
        self,
        status: PlanStatus | None = None,
        target_asset: str | None = None,
        limit: int | None = None,
    ) -> PlanListing:
        """Filtered plans plus counts by status across the same asset filter."""
        return PlanListing(
            plans=self.services.plans.list_plans(status, target_asset, limit),
            counts=self.services.plans.count_by_status(target_asset),
        )

    def list_iterations(self, plan_id: str) -> list[Iteration]:
        return self.services.iterations.list_iterations(plan_id)

    def get_approval(self, approval_id: str) -> Approval:
        """Get an approval or raise NotFoundError."""
        approval = self.services.approvals.get_approval(approval_id)
        if approval is None:
            raise NotFoundError(
                f"Approval {approval_id} not found",
                context=ErrorContext(operation="get_approval", approval_id=approval_id),
            )
        return approval

    def pending_approval(self, plan_id: str) -> Approval | None:
        return self.services.approvals.get_pending_approval(plan_id)

    def latest_approval(
        self, plan_id: str, status: ApprovalStatus | None = None
    ) -> Approval | None:
        return self.services.approvals.get_latest_approval(plan_id, status)

    def overdue_approvals(self, now: datetime) -> list[Approval]:
        return self.services.approvals.list_overdue(now)

    def get_log(self, log_id: str) -> ExecutionLog:
        """Get an execution log or raise NotFoundError."""
        log = self.services.execution_logs.get_log(log_id)
        if log is None:
            raise NotFoundError(
                f"Execution log {log_id} not found",
                context=ErrorContext(operation="get_log", execution_log_id=log_id),
            )
        return log

    def list_logs(self, plan_id: str) -> list[ExecutionLog]:
        return self.services.execution_logs.list_logs(plan_id)

    def list_rollbacks(self, plan_id: str) -> list[RollbackRecord]:
        return self.services.execution_logs.list_rollbacks(plan_id)

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        return self.services.lineage.get_snapshot(snapshot_id)

    def list_lineage(self, target_asset: str) -> list[LineageRecord]:
        return self.services.lineage.list_lineage(target_asset)

    # ------------------------------------------------------------------
    # Plan writes
    # ------------------------------------------------------------------

    def create_plan(self, plan: TransformationPlan) -> TransformationPlan:
        self.services.plans.create_plan(plan)
        logger.info(
            f"Created plan {plan.plan_id} ({plan.kind.value}) on {plan.target_asset}"
        )
        return plan

    def update_plan(
        self, plan: TransformationPlan, operation: str, **changes: Any
    ) -> TransformationPlan:
        """Compare-and-swap the plan's summary fields.

        Raises:
            PlanStateError: If the status change is not a permitted transition
            ConflictError: If the plan changed since ``plan`` was read
        """
        return self._swap(plan, changes, operation)

    def claim(
        self,
        plan_id: str,
        operation: str,
        allowed: Iterable[PlanStatus],
        status: PlanStatus | None = None,
    ) -> TransformationPlan:
        """Claim a plan for a long-running operation.

        Raises:
            PlanStateError: If the plan is not in one of ``allowed``
            ConflictError: If another operation holds a live claim
        """
        plan = self.get_plan(plan_id)
        allowed = frozenset(allowed)
        if plan.status not in allowed:
            raise PlanStateError(
                f"Cannot start {operation} on plan {plan_id} in status "
                f"'{plan.status.value}'",
                context=ErrorContext(operation=operation, plan_id=plan_id),
            )

        if plan.active_operation:
            if not self.lease_expired(plan):
                raise ConflictError(
                    f"Plan {plan_id} is busy with {plan.active_operation}",
                    context=ErrorContext(operation=operation, plan_id=plan_id),
                )
            logger.warning(
                f"Taking over stale {plan.active_operation} claim on plan {plan_id} "
                f"(started {plan.operation_started_at})"
            )

        changes: dict[str, Any] = {
            "active_operation": operation,
            "operation_started_at": self.now(),
        }
        if status is not None:
            changes["status"] = status
        return self._swap(plan, changes, operation)

    def release(
        self, plan: TransformationPlan, operation: str, **changes: Any
    ) -> TransformationPlan:
        """Drop the plan's claim, applying ``changes`` in the same swap."""
        changes.update(active_operation=None, operation_started_at=None)
        return self._swap(plan, changes, operation)

    def lease_expired(self, plan: TransformationPlan) -> bool:
        if plan.operation_started_at is None:
            return True
        return self.now() - plan.operation_started_at > self.lease

    # ------------------------------------------------------------------
    # History appends
    # ------------------------------------------------------------------

    def record_iteration(
        self, plan: TransformationPlan, iteration: Iteration, **changes: Any
    ) -> TransformationPlan:
        """Append an iteration and release the iteration claim atomically."""
        changes.update(
            iteration_count=iteration.iteration_number,
            active_operation=None,
            operation_started_at=None,
        )
        with self.services.db_manager.system_transaction():
            self.services.iterations.append_iteration(iteration)
            updated = self._swap(plan, changes, "iteration")

        logger.info(
            f"Plan {plan.plan_id} iteration {iteration.iteration_number}: "
            f"success={iteration.success} accuracy={iteration.accuracy}"
        )
        return updated

    def open_approval(
        self, plan: TransformationPlan, approval: Approval, **changes: Any
    ) -> TransformationPlan:
        """Append a pending approval.

        The plan row is swapped even when nothing else changes, so two callers
        racing to open an approval cannot both succeed.
        """
        with self.services.db_manager.system_transaction():
            self.services.approvals.create_approval(approval)
            updated = self._swap(plan, changes, "request_approval")

        logger.info(
            f"Opened approval {approval.approval_id} for plan {plan.plan_id} "
            f"(expires {approval.expires_at.isoformat()})"
        )
        return updated

    def resolve_approval(
        self,
        plan: TransformationPlan,
        approval: Approval,
        outcome: ApprovalStatus,
        reviewed_by: str | None,
        comment: str | None = None,
        auto_approved: bool = False,
        auto_approve_reason: str | None = None,
        **changes: Any,
    ) -> tuple[Approval | None, TransformationPlan]:
        """Close a pending approval and apply the matching plan change.

        Returns:
            ``(approval, plan)``; approval is None when it was no longer
            pending, in which case nothing was written
        """
        reviewed_at = self.now() if outcome != ApprovalStatus.EXPIRED else None
        with self.services.db_manager.system_transaction():
            resolved = self.services.approvals.resolve_pending(
                approval.approval_id,
                outcome,
                reviewed_by,
                reviewed_at,
                comment,
                auto_approved,
                auto_approve_reason,
            )
            if resolved is None:
                return None, plan
            updated = self._swap(plan, changes, f"approval_{outcome.value}")

        logger.info(
            f"Approval {approval.approval_id} for plan {plan.plan_id} "
            f"-> {outcome.value}" + (" (auto)" if auto_approved else "")
        )
        return resolved, updated

    def record_snapshot(self, snapshot: Snapshot) -> None:
        self.services.lineage.record_snapshot(snapshot)

    def record_execution(
        self,
        plan: TransformationPlan,
        log: ExecutionLog,
        rollback: RollbackRecord | None = None,
        lineage: LineageRecord | None = None,
        **changes: Any,
    ) -> TransformationPlan:
        """Append an execution log (plus rollback and lineage) and release the claim."""
        changes.update(active_operation=None, operation_started_at=None)
        with self.services.db_manager.system_transaction():
            self.services.execution_logs.append_log(log)
            if rollback is not None:
                self.services.execution_logs.append_rollback(rollback)
            if lineage is not None:
                self.services.lineage.record_lineage(lineage)
            updated = self._swap(plan, changes, "execution")

        logger.info(
            f"Plan {plan.plan_id} execution {log.log_id}: {log.status.value} "
            f"({log.rows_succeeded} succeeded, {log.rows_failed} failed)"
        )
        return updated

    def record_rollback(
        self,
        plan: TransformationPlan,
        rollback: RollbackRecord,
        lineage: LineageRecord | None = None,
        **changes: Any,
    ) -> TransformationPlan:
        """Append a rollback record for a previous execution."""
        with self.services.db_manager.system_transaction():
            self.services.execution_logs.append_rollback(rollback)
            if lineage is not None:
                self.services.lineage.record_lineage(lineage)
            updated = self._swap(plan, changes, "rollback")

        logger.info(
            f"Rollback {rollback.rollback_id} of execution "
            f"{rollback.execution_log_id}: {rollback.status.value}"
        )
        return updated

    # ------------------------------------------------------------------

    def _swap(
        self, plan: TransformationPlan, changes: dict[str, Any], operation: str
    ) -> TransformationPlan:
        context = ErrorContext(operation=operation, plan_id=plan.plan_id)

        status = changes.get("status")
        if status is not None and status != plan.status:
            ensure_transition(plan.status, status, plan.plan_id)

        iteration_count = changes.get("iteration_count", plan.iteration_count)
        if iteration_count > plan.max_iterations:
            raise PlanStateError(
                f"Plan {plan.plan_id} has no iterations left "
                f"({plan.max_iterations} allowed)",
                context=context,
            )

        new_status = status or plan.status
        code = changes.get("generated_code", plan.generated_code)
        if new_status in CODE_REQUIRED_STATES and not code:
            raise PlanStateError(
                f"Plan {plan.plan_id} cannot enter '{new_status.value}' "
                "without generated code",
                context=context,
            )

        updated = self.services.plans.compare_and_swap(
            plan.plan_id, plan.version, changes, self.now()
        )
        if updated is None:
            raise ConflictError(
                f"Plan {plan.plan_id} was modified concurrently during {operation}",
                context=context,
            )

        if status is not None and status != plan.status:
            logger.info(
                f"Plan {plan.plan_id}: {plan.status.value} -> {status.value} "
                f"({operation})"
            )
        return updated
