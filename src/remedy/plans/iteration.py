"""Iteration controller: the generate -> execute-on-sample -> evaluate loop."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from remedy.clients.base import (
    CodeGenerator,
    GenerationRequest,
    GenerationResult,
    SampleScope,
    SandboxExecutor,
    Scorer,
)
from remedy.core.config import MAX_SAMPLE_SIZE, EngineSettings
from remedy.error_handling import ErrorContext, PlanStateError
from remedy.plans.ledger import PlanLedger
from remedy.plans.models import (
    Iteration,
    PlanStatus,
    RiskLevel,
    TransformationPlan,
    new_id,
)
from remedy.plans.notifications import NotificationDispatcher, plan_context

logger = logging.getLogger(__name__)

# Risk levels whose best-effort code may still go to a human when the
# iteration budget runs out
BEST_EFFORT_RISKS = frozenset({RiskLevel.LOW, RiskLevel.MEDIUM})


@dataclass
class _Attempt:
    iteration: Iteration
    affected_columns: list[str] = field(default_factory=list)


class IterationController:
    """Runs single iterations of a plan's refinement loop and decides what
    happens next.

    Generator, executor and scorer errors never escape: they are recorded as
    a failed iteration that still consumes one slot of the budget. Only
    ledger errors (conflicts, invalid state) propagate to the caller.
    """

    def __init__(
        self,
        ledger: PlanLedger,
        generator: CodeGenerator,
        executor: SandboxExecutor,
        scorer: Scorer,
        dispatcher: NotificationDispatcher,
        settings: EngineSettings,
    ):
        self.ledger = ledger
        self.generator = generator
        self.executor = executor
        self.scorer = scorer
        self.dispatcher = dispatcher
        self.settings = settings

    async def run_iteration(self, plan_id: str) -> Iteration:
        """Run the next iteration of a plan.

        Raises:
            PlanStateError: If the plan is not in draft/iterating or has no
                iterations left
            ConflictError: If another iteration is already running
        """
        plan = self.ledger.get_plan(plan_id)
        if plan.iteration_count >= plan.max_iterations:
            raise PlanStateError(
                f"Plan {plan_id} has used all {plan.max_iterations} iterations",
                context=ErrorContext(operation="run_iteration", plan_id=plan_id),
            )

        plan = self.ledger.claim(
            plan_id,
            "iteration",
            allowed={PlanStatus.DRAFT, PlanStatus.ITERATING},
            status=PlanStatus.ITERATING,
        )
        number = plan.iteration_count + 1
        history = self.ledger.list_iterations(plan_id)
        started_at = self.ledger.now()
        started = time.monotonic()

        logger.info(f"Plan {plan_id}: starting iteration {number}/{plan.max_iterations}")

        try:
            attempt = await self._attempt(plan, number, history, started_at, started)
        except asyncio.CancelledError:
            iteration = self._failed(
                plan, number, started_at, started, "Iteration was cancelled"
            )
            self._record(plan, _Attempt(iteration), history)
            raise

        updated = self._record(plan, attempt, history)
        if updated.status == PlanStatus.FAILED:
            await self.dispatcher.notify(
                "plan_failed",
                **plan_context(updated),
                reason=updated.failure_reason,
            )
        return attempt.iteration

    async def _attempt(
        self,
        plan: TransformationPlan,
        number: int,
        history: list[Iteration],
        started_at: datetime,
        started: float,
    ) -> _Attempt:
        request = self._build_request(plan, number, history)
        deadline = self.generator.deadline(self.settings.generator_timeout)

        try:
            generation: GenerationResult = await asyncio.wait_for(
                self.generator.generate(request), timeout=deadline
            )
        except TimeoutError:
            return _Attempt(
                self._failed(
                    plan,
                    number,
                    started_at,
                    started,
                    f"Code generation timed out after {deadline:g} seconds",
                )
            )
        except Exception as e:
            logger.warning(f"Plan {plan.plan_id} iteration {number}: generation failed: {e}")
            return _Attempt(
                self._failed(
                    plan, number, started_at, started, f"Code generation failed: {e}"
                )
            )

        scope = SampleScope(
            target_asset=plan.target_asset,
            size=min(self.settings.sample_size, MAX_SAMPLE_SIZE),
            target_column=plan.target_column,
            validation_rule=plan.parameters.effective_validation_rule(
                plan.target_column
            ),
        )

        error: str | None = None
        try:
            result = await asyncio.wait_for(
                self.executor.run(generation.code, scope),
                timeout=self.settings.executor_timeout,
            )
        except TimeoutError:
            error = (
                f"Sample execution timed out after "
                f"{self.settings.executor_timeout} seconds"
            )
        except Exception as e:
            error = f"Sample execution failed: {e}"
        else:
            if not result.ok:
                error = f"Sample execution failed: {result.error}"

        if error is not None:
            logger.warning(f"Plan {plan.plan_id} iteration {number}: {error}")
            return _Attempt(
                self._failed(
                    plan,
                    number,
                    started_at,
                    started,
                    error,
                    generation=generation,
                    sample_size=scope.size,
                )
            )

        try:
            evaluation = await self.scorer.score(plan, result)
        except Exception as e:
            logger.warning(f"Plan {plan.plan_id} iteration {number}: scoring failed: {e}")
            return _Attempt(
                self._failed(
                    plan,
                    number,
                    started_at,
                    started,
                    f"Scoring failed: {e}",
                    generation=generation,
                    sample_size=scope.size,
                )
            )

        meets = (
            evaluation.accuracy is not None
            and evaluation.accuracy >= plan.accuracy_threshold
        )
        iteration = Iteration(
            iteration_id=new_id(),
            plan_id=plan.plan_id,
            iteration_number=number,
            code=generation.code,
            rollback_code=generation.rollback_code,
            started_at=started_at,
            completed_at=self.ledger.now(),
            execution_time_ms=_elapsed_ms(started),
            sample_size=result.rows_checked,
            success=True,
            accuracy=evaluation.accuracy,
            meets_threshold=meets,
            evaluation_notes=evaluation.notes,
            issues_found=evaluation.issues_found,
            improvements_suggested=evaluation.improvements_suggested,
            sample_before=result.sample_before,
            sample_after=result.sample_after,
        )
        return _Attempt(iteration, generation.affected_columns)

    def _build_request(
        self, plan: TransformationPlan, number: int, history: list[Iteration]
    ) -> GenerationRequest:
        request = GenerationRequest(
            plan_id=plan.plan_id,
            kind=plan.kind,
            target_asset=plan.target_asset,
            target_column=plan.target_column,
            description=plan.description,
            parameters=plan.parameters,
            iteration_number=number,
        )
        if history:
            previous = history[-1]
            request.previous_code = previous.code
            request.previous_error = previous.error_message
            request.issues_found = list(previous.issues_found)
            request.improvements_suggested = list(previous.improvements_suggested)
        return request

    def _failed(
        self,
        plan: TransformationPlan,
        number: int,
        started_at: datetime,
        started: float,
        error: str,
        generation: GenerationResult | None = None,
        sample_size: int = 0,
    ) -> Iteration:
        return Iteration(
            iteration_id=new_id(),
            plan_id=plan.plan_id,
            iteration_number=number,
            code=generation.code if generation else None,
            rollback_code=generation.rollback_code if generation else None,
            started_at=started_at,
            completed_at=self.ledger.now(),
            execution_time_ms=_elapsed_ms(started),
            sample_size=sample_size,
            success=False,
            accuracy=None,
            meets_threshold=False,
            evaluation_notes="",
            issues_found=[error],
            improvements_suggested=[],
            sample_before=[],
            sample_after=[],
            error_message=error,
        )

    def _record(
        self, plan: TransformationPlan, attempt: _Attempt, history: list[Iteration]
    ) -> TransformationPlan:
        changes = self._next_state(plan, attempt, history)
        return self.ledger.record_iteration(plan, attempt.iteration, **changes)

    def _next_state(
        self, plan: TransformationPlan, attempt: _Attempt, history: list[Iteration]
    ) -> dict[str, Any]:
        """Summary-field changes that follow from the latest iteration."""
        iteration = attempt.iteration
        count = iteration.iteration_number

        if iteration.meets_threshold:
            return {
                "status": PlanStatus.PENDING_APPROVAL,
                "generated_code": iteration.code,
                "rollback_code": iteration.rollback_code,
                "affected_columns": attempt.affected_columns or plan.affected_columns,
                "final_accuracy": iteration.accuracy,
            }

        successful = [i for i in [*history, iteration] if i.success and i.code]

        if count < plan.max_iterations:
            changes: dict[str, Any] = {"status": PlanStatus.ITERATING}
            if iteration.success:
                changes.update(
                    generated_code=iteration.code,
                    rollback_code=iteration.rollback_code,
                    affected_columns=attempt.affected_columns or plan.affected_columns,
                )
            return changes

        if successful and plan.risk_level in BEST_EFFORT_RISKS:
            best = max(
                successful,
                key=lambda i: (i.accuracy if i.accuracy is not None else -1.0, i.iteration_number),
            )
            logger.info(
                f"Plan {plan.plan_id}: budget exhausted, submitting best effort "
                f"from iteration {best.iteration_number} (accuracy {best.accuracy})"
            )
            changes = {
                "status": PlanStatus.PENDING_APPROVAL,
                "generated_code": best.code,
                "rollback_code": best.rollback_code,
                "final_accuracy": best.accuracy,
            }
            if best is iteration and attempt.affected_columns:
                changes["affected_columns"] = attempt.affected_columns
            return changes

        if successful:
            reason = (
                f"{plan.risk_level.value} risk plan did not reach the "
                f"{plan.accuracy_threshold:.0%} accuracy threshold in "
                f"{plan.max_iterations} iteration(s)"
            )
        else:
            reason = (
                f"No iteration succeeded in {plan.max_iterations} attempt(s)"
            )
        return {
            "status": PlanStatus.FAILED,
            "failure_reason": f"{reason}. Last iteration: {_diagnostics(iteration)}",
        }


def _diagnostics(iteration: Iteration) -> str:
    if iteration.error_message:
        return iteration.error_message
    parts = [iteration.evaluation_notes, *iteration.issues_found]
    return "; ".join(part for part in parts if part) or "no diagnostics"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

