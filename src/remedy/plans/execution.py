"""Execution engine: apply approved code to the full target asset."""

import asyncio
import logging
import time
from datetime import datetime
from typing import NoReturn

from remedy.clients.base import (
    ExecutionResult,
    FullScope,
    SandboxExecutor,
    SnapshotStore,
)
from remedy.core.config import EngineSettings
from remedy.error_handling import (
    AlreadyExecutedError,
    ConflictError,
    ErrorContext,
    ExecutionConflict,
    FullExecutionFailure,
    PartialExecutionFailure,
    PlanStateError,
    RollbackFailure,
    ValidationError,
)
from remedy.plans.ledger import PlanLedger
from remedy.plans.models import (
    ApprovalStatus,
    ExecutionLog,
    ExecutionStatus,
    LineageRecord,
    PlanStatus,
    RollbackRecord,
    RollbackStatus,
    RollbackTrigger,
    Snapshot,
    SourceType,
    TransformationPlan,
    new_id,
)
from remedy.plans.notifications import NotificationDispatcher, plan_context
from remedy.utils.validation import quote_sql_identifier

logger = logging.getLogger(__name__)

# A plan in one of these has already had its single execution attempt
EXECUTED_STATES = frozenset(
    {PlanStatus.EXECUTING, PlanStatus.COMPLETED, PlanStatus.ROLLED_BACK}
)


class ExecutionEngine:
    """Runs an approved plan once against the full target.

    Before mutating anything the target is captured through the snapshot
    store (when one is configured). Executor errors and row failures above
    the partial-failure tolerance fail the plan and trigger an automatic
    rollback: the snapshot is restored when there is one, otherwise the
    plan's rollback code is run. A rollback that fails is escalated as
    RollbackFailure and announced on the alert channel.
    """

    def __init__(
        self,
        ledger: PlanLedger,
        executor: SandboxExecutor,
        dispatcher: NotificationDispatcher,
        settings: EngineSettings,
        snapshots: SnapshotStore | None = None,
    ):
        self.ledger = ledger
        self.executor = executor
        self.dispatcher = dispatcher
        self.settings = settings
        self.snapshots = snapshots

    def is_reversible(self, plan: TransformationPlan) -> bool:
        return self.snapshots is not None or bool(plan.rollback_code)

    async def execute(self, plan_id: str, executed_by: str) -> ExecutionLog:
        """Apply an approved plan.

        Returns:
            The execution log of a successful (or within-tolerance partial) run

        Raises:
            AlreadyExecutedError: If the plan was executed before
            ExecutionConflict: If another caller is executing the plan
            PlanStateError: If the plan is not approved
            FullExecutionFailure: Executor error; changes were rolled back
            PartialExecutionFailure: Too many failed rows; changes were rolled back
            RollbackFailure: The automatic rollback failed
        """
        context = ErrorContext(operation="execute", plan_id=plan_id)
        if not executed_by:
            raise ValidationError("executed_by is required", context=context)

        plan = self.ledger.get_plan(plan_id)
        self._ensure_not_executed(plan, context)

        try:
            plan = self.ledger.claim(
                plan_id,
                "execution",
                allowed={PlanStatus.APPROVED},
                status=PlanStatus.EXECUTING,
            )
        except ConflictError as e:
            raise ExecutionConflict(
                f"Plan {plan_id} is being executed by another caller",
                context=context,
                original_error=e,
            ) from e

        approval = self.ledger.latest_approval(plan_id, ApprovalStatus.APPROVED)
        approval_id = approval.approval_id if approval else None
        context.approval_id = approval_id

        log_id = new_id()
        context.execution_log_id = log_id
        started_at = self.ledger.now()
        started = time.monotonic()

        logger.info(f"Executing plan {plan_id} on {plan.target_asset} ({log_id})")

        snapshot: Snapshot | None = None
        if self.snapshots is not None:
            try:
                snapshot = await self._capture(plan)
            except Exception as e:
                error = f"Could not snapshot {plan.target_asset}: {e}"
                log = self._log(
                    plan, log_id, approval_id, None, started_at, started,
                    ExecutionResult.failed(error), ExecutionStatus.FAILED, executed_by,
                )
                plan = self.ledger.record_execution(
                    plan, log, status=PlanStatus.FAILED, failure_reason=error
                )
                await self.dispatcher.notify(
                    "plan_failed", **plan_context(plan), reason=error
                )
                raise FullExecutionFailure(error, log=log, context=context) from e

        scope = FullScope(
            target_asset=plan.target_asset,
            target_column=plan.target_column,
            validation_rule=plan.parameters.effective_validation_rule(
                plan.target_column
            ),
            variables=self._variables(snapshot),
        )

        try:
            result = await self._run(plan.generated_code, scope)
        except asyncio.CancelledError:
            logger.warning(f"Execution of plan {plan_id} was cancelled; rolling back")
            log = self._log(
                plan, log_id, approval_id, snapshot, started_at, started,
                ExecutionResult.failed("Execution was cancelled"),
                ExecutionStatus.FAILED, executed_by,
            )
            rollback = await self._rollback(
                plan, log_id, snapshot, RollbackTrigger.AUTOMATIC, executed_by
            )
            self.ledger.record_execution(
                plan,
                log,
                rollback=rollback,
                status=PlanStatus.FAILED,
                failure_reason=_failure_reason("Execution was cancelled", rollback),
            )
            raise

        status = self._classify(result)
        log = self._log(
            plan, log_id, approval_id, snapshot, started_at, started,
            result, status, executed_by,
        )

        if status == ExecutionStatus.SUCCESS or (
            status == ExecutionStatus.PARTIAL
            and log.failure_fraction <= self.settings.partial_failure_tolerance
        ):
            return await self._complete(plan, log)

        await self._fail(plan, log, result, snapshot, executed_by, context)

    async def rollback_execution(self, log_id: str, requested_by: str) -> RollbackRecord:
        """Manually revert a completed execution.

        Raises:
            NotFoundError: If the execution log does not exist
            PlanStateError: If the plan is not completed
            RollbackFailure: If the rollback failed
        """
        context = ErrorContext(
            operation="rollback_execution", execution_log_id=log_id
        )
        if not requested_by:
            raise ValidationError("requested_by is required", context=context)

        log = self.ledger.get_log(log_id)
        context.plan_id = log.plan_id
        plan = self.ledger.get_plan(log.plan_id)
        if plan.status != PlanStatus.COMPLETED or log.status == ExecutionStatus.FAILED:
            raise PlanStateError(
                f"Only the execution of a completed plan can be rolled back; plan "
                f"{plan.plan_id} is '{plan.status.value}'",
                context=context,
            )

        plan = self.ledger.claim(plan.plan_id, "rollback", allowed={PlanStatus.COMPLETED})
        snapshot = self.ledger.get_snapshot(log.snapshot_id) if log.snapshot_id else None
        rollback = await self._rollback(
            plan, log.log_id, snapshot, RollbackTrigger.MANUAL, requested_by
        )

        if rollback.succeeded:
            plan = self.ledger.record_rollback(
                plan,
                rollback,
                lineage=self._lineage(plan, log.log_id, "reverted_by"),
                status=PlanStatus.ROLLED_BACK,
                active_operation=None,
                operation_started_at=None,
            )
            await self.dispatcher.notify(
                "rollback_completed",
                **plan_context(plan),
                execution_log_id=log.log_id,
                requested_by=requested_by,
                rollback_method=rollback.method,
            )
            return rollback

        plan = self.ledger.record_rollback(
            plan,
            rollback,
            failure_reason=f"Manual rollback failed: {rollback.error_message}. "
            "Manual intervention required",
            active_operation=None,
            operation_started_at=None,
        )
        await self._alert_rollback_failed(plan, log, rollback)
        raise RollbackFailure(
            f"Rollback of execution {log.log_id} failed: {rollback.error_message}",
            log=log,
            rollback=rollback,
            context=context,
        )

    # ------------------------------------------------------------------

    def _ensure_not_executed(self, plan: TransformationPlan, context: ErrorContext) -> None:
        executed = plan.status in EXECUTED_STATES or (
            plan.status == PlanStatus.FAILED and self.ledger.list_logs(plan.plan_id)
        )
        if executed:
            raise AlreadyExecutedError(
                f"Plan {plan.plan_id} was already executed "
                f"(status '{plan.status.value}')",
                context=context,
            )
        if plan.status != PlanStatus.APPROVED:
            raise PlanStateError(
                f"Plan {plan.plan_id} must be approved before execution; it is "
                f"'{plan.status.value}'",
                context=context,
            )

    async def _capture(self, plan: TransformationPlan) -> Snapshot:
        checkpoint = await asyncio.wait_for(
            self.snapshots.capture(plan.target_asset, plan.plan_id),
            timeout=self.settings.executor_timeout,
        )
        snapshot = Snapshot(
            snapshot_id=new_id(),
            plan_id=plan.plan_id,
            target_asset=plan.target_asset,
            backup_table=checkpoint.reference,
            row_count=checkpoint.row_count,
            created_at=self.ledger.now(),
        )
        self.ledger.record_snapshot(snapshot)
        return snapshot

    @staticmethod
    def _variables(snapshot: Snapshot | None) -> dict[str, str]:
        if snapshot is None:
            return {}
        return {"snapshot": quote_sql_identifier(snapshot.backup_table)}

    async def _run(self, code: str, scope: FullScope) -> ExecutionResult:
        try:
            return await asyncio.wait_for(
                self.executor.run(code, scope),
                timeout=self.settings.executor_timeout,
            )
        except TimeoutError:
            return ExecutionResult.failed(
                f"Execution timed out after {self.settings.executor_timeout} seconds"
            )
        except Exception as e:
            return ExecutionResult.failed(f"Executor failed: {e}")

    @staticmethod
    def _classify(result: ExecutionResult) -> ExecutionStatus:
        if not result.ok:
            return ExecutionStatus.FAILED
        if result.rows_failed == 0:
            return ExecutionStatus.SUCCESS
        return ExecutionStatus.PARTIAL

    def _log(
        self,
        plan: TransformationPlan,
        log_id: str,
        approval_id: str | None,
        snapshot: Snapshot | None,
        started_at: datetime,
        started: float,
        result: ExecutionResult,
        status: ExecutionStatus,
        executed_by: str,
    ) -> ExecutionLog:
        return ExecutionLog(
            log_id=log_id,
            plan_id=plan.plan_id,
            approval_id=approval_id,
            snapshot_id=snapshot.snapshot_id if snapshot else None,
            started_at=started_at,
            completed_at=self.ledger.now(),
            duration_ms=int((time.monotonic() - started) * 1000),
            rows_affected=result.rows_affected,
            rows_succeeded=result.rows_succeeded,
            rows_failed=result.rows_failed,
            status=status,
            error_message=result.error,
            executed_by=executed_by,
            lineage_recorded=False,
        )

    def _lineage(
        self, plan: TransformationPlan, log_id: str, relation: str
    ) -> LineageRecord:
        return LineageRecord(
            lineage_id=new_id(),
            plan_id=plan.plan_id,
            execution_log_id=log_id,
            target_asset=plan.target_asset,
            target_column=plan.target_column,
            affected_columns=list(plan.affected_columns),
            relation=relation,
            created_at=self.ledger.now(),
        )

    async def _complete(self, plan: TransformationPlan, log: ExecutionLog) -> ExecutionLog:
        log.lineage_recorded = True
        plan = self.ledger.record_execution(
            plan,
            log,
            lineage=self._lineage(plan, log.log_id, "transformed_by"),
            status=PlanStatus.COMPLETED,
        )

        await self.dispatcher.notify(
            "execution_completed",
            **plan_context(plan),
            execution_log_id=log.log_id,
            status=log.status.value,
            rows_succeeded=log.rows_succeeded,
            rows_failed=log.rows_failed,
            duration_ms=log.duration_ms,
        )
        if plan.source_type == SourceType.ISSUE and plan.source_id:
            await self.dispatcher.notify("source_resolved", **plan_context(plan))
        return log

    async def _fail(
        self,
        plan: TransformationPlan,
        log: ExecutionLog,
        result: ExecutionResult,
        snapshot: Snapshot | None,
        executed_by: str,
        context: ErrorContext,
    ) -> NoReturn:
        if log.status == ExecutionStatus.FAILED:
            problem = f"Execution failed: {result.error}"
            failure_cls = FullExecutionFailure
        else:
            problem = (
                f"{log.rows_failed} of {log.rows_succeeded + log.rows_failed} rows "
                f"failed validation ({log.failure_fraction:.1%} > "
                f"{self.settings.partial_failure_tolerance:.1%} tolerance)"
            )
            failure_cls = PartialExecutionFailure

        logger.warning(f"Plan {plan.plan_id}: {problem}; rolling back")
        rollback = await self._rollback(
            plan, log.log_id, snapshot, RollbackTrigger.AUTOMATIC, executed_by
        )
        plan = self.ledger.record_execution(
            plan,
            log,
            rollback=rollback,
            status=PlanStatus.FAILED,
            failure_reason=_failure_reason(problem, rollback),
        )

        if not rollback.succeeded:
            await self._alert_rollback_failed(plan, log, rollback)
            raise RollbackFailure(
                f"{problem}. Rollback failed: {rollback.error_message}",
                log=log,
                rollback=rollback,
                context=context,
            )

        await self.dispatcher.notify(
            "execution_failed",
            **plan_context(plan),
            execution_log_id=log.log_id,
            error=log.error_message,
            rollback_method=rollback.method,
        )
        raise failure_cls(problem, log=log, rollback=rollback, context=context)

    async def _rollback(
        self,
        plan: TransformationPlan,
        log_id: str,
        snapshot: Snapshot | None,
        trigger: RollbackTrigger,
        requested_by: str,
    ) -> RollbackRecord:
        method: str | None = None
        error: str | None = None
        try:
            if snapshot is not None and self.snapshots is not None:
                method = "snapshot"
                await asyncio.wait_for(
                    self.snapshots.restore(plan.target_asset, snapshot.backup_table),
                    timeout=self.settings.executor_timeout,
                )
            elif plan.rollback_code:
                method = "rollback_code"
                result = await asyncio.wait_for(
                    self.executor.run(
                        plan.rollback_code,
                        FullScope(
                            target_asset=plan.target_asset,
                            target_column=plan.target_column,
                        ),
                    ),
                    timeout=self.settings.executor_timeout,
                )
                if not result.ok:
                    error = result.error
            else:
                error = "No snapshot or rollback code available"
        except TimeoutError:
            error = f"Rollback timed out after {self.settings.executor_timeout} seconds"
        except Exception as e:
            error = str(e) or type(e).__name__

        if error is None:
            logger.info(f"Rolled back execution {log_id} of plan {plan.plan_id} ({method})")
        else:
            logger.critical(
                f"Rollback of execution {log_id} on {plan.target_asset} failed: {error}"
            )

        return RollbackRecord(
            rollback_id=new_id(),
            plan_id=plan.plan_id,
            execution_log_id=log_id,
            snapshot_id=snapshot.snapshot_id if snapshot else None,
            trigger=trigger,
            method=method,
            status=RollbackStatus.SUCCEEDED if error is None else RollbackStatus.FAILED,
            error_message=error,
            requested_by=requested_by,
            created_at=self.ledger.now(),
        )

    async def _alert_rollback_failed(
        self, plan: TransformationPlan, log: ExecutionLog, rollback: RollbackRecord
    ) -> None:
        await self.dispatcher.notify(
            "rollback_failed",
            **plan_context(plan),
            execution_log_id=log.log_id,
            error=rollback.error_message,
            snapshot_id=rollback.snapshot_id,
        )


def _failure_reason(problem: str, rollback: RollbackRecord) -> str:
    if rollback.succeeded:
        return f"{problem}. Changes were rolled back using {rollback.method}"
    return (
        f"{problem}. Rollback failed: {rollback.error_message}. "
        "Manual intervention required"
    )
