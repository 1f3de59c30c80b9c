"""Tests for the iteration controller."""

import asyncio

import pytest

from remedy.clients.base import CodeGenerator, ExecutionResult, GenerationResult
from remedy.error_handling import ConflictError, GenerationFailure, PlanStateError
from remedy.plans.models import PlanStatus, RiskLevel


@pytest.mark.asyncio
async def test_plan_reaches_pending_approval_once_threshold_is_met(
    controller, ledger, scorer, make_plan
):
    plan = make_plan(max_iterations=3)
    scorer.accuracies = [0.80, 0.97]

    first = await controller.run_iteration(plan.plan_id)
    assert first.iteration_number == 1
    assert first.accuracy == 0.80
    assert not first.meets_threshold
    assert ledger.get_plan(plan.plan_id).status == PlanStatus.ITERATING

    second = await controller.run_iteration(plan.plan_id)
    assert second.meets_threshold

    updated = ledger.get_plan(plan.plan_id)
    assert updated.status == PlanStatus.PENDING_APPROVAL
    assert updated.iteration_count == 2
    assert updated.final_accuracy == 0.97
    assert updated.generated_code == second.code
    assert updated.active_operation is None

    with pytest.raises(PlanStateError):
        await controller.run_iteration(plan.plan_id)
    assert len(ledger.list_iterations(plan.plan_id)) == 2


@pytest.mark.asyncio
async def test_critical_plan_fails_when_budget_runs_out(
    controller, ledger, scorer, notifier, make_plan
):
    plan = make_plan(max_iterations=2, risk_level=RiskLevel.CRITICAL)
    scorer.accuracies = [0.50, 0.60]

    await controller.run_iteration(plan.plan_id)
    await controller.run_iteration(plan.plan_id)

    failed = ledger.get_plan(plan.plan_id)
    assert failed.status == PlanStatus.FAILED
    assert failed.iteration_count == 2
    assert "did not reach" in failed.failure_reason
    assert "Last iteration" in failed.failure_reason
    assert "plan_failed" in notifier.templates


@pytest.mark.asyncio
async def test_low_risk_plan_submits_best_effort_when_budget_runs_out(
    controller, ledger, scorer, make_plan
):
    plan = make_plan(max_iterations=2, risk_level=RiskLevel.LOW)
    scorer.accuracies = [0.90, 0.80]

    first = await controller.run_iteration(plan.plan_id)
    await controller.run_iteration(plan.plan_id)

    updated = ledger.get_plan(plan.plan_id)
    assert updated.status == PlanStatus.PENDING_APPROVAL
    assert updated.final_accuracy == 0.90
    assert updated.generated_code == first.code


@pytest.mark.asyncio
async def test_generator_errors_consume_an_iteration(
    controller, ledger, generator, make_plan
):
    plan = make_plan(max_iterations=2)
    generator.outcomes = [
        GenerationFailure("model unavailable"),
        GenerationFailure("model unavailable"),
    ]

    first = await controller.run_iteration(plan.plan_id)
    assert not first.success
    assert "Code generation failed" in first.error_message
    assert first.code is None

    await controller.run_iteration(plan.plan_id)
    failed = ledger.get_plan(plan.plan_id)
    assert failed.status == PlanStatus.FAILED
    assert failed.iteration_count == 2
    assert failed.failure_reason.startswith("No iteration succeeded")


@pytest.mark.asyncio
async def test_sample_error_is_recorded_and_fed_back(
    controller, executor, generator, make_plan
):
    plan = make_plan()
    executor.sample_results = [ExecutionResult.failed("Binder Error: column emial")]

    failed = await controller.run_iteration(plan.plan_id)
    assert not failed.success
    assert "Binder Error" in failed.error_message
    assert failed.code is not None

    await controller.run_iteration(plan.plan_id)
    retry_request = generator.requests[-1]
    assert retry_request.iteration_number == 2
    assert retry_request.previous_code == failed.code
    assert "Binder Error" in retry_request.previous_error


@pytest.mark.asyncio
async def test_feedback_from_previous_evaluation_reaches_generator(
    controller, generator, scorer, make_plan
):
    plan = make_plan()
    scorer.accuracies = [0.5, 0.99]

    await controller.run_iteration(plan.plan_id)
    await controller.run_iteration(plan.plan_id)

    assert generator.requests[0].has_feedback is False
    assert generator.requests[1].issues_found == ["Some rows kept uppercase"]
    assert generator.requests[1].improvements_suggested == ["Trim whitespace too"]


@pytest.mark.asyncio
async def test_iteration_count_never_exceeds_budget(
    controller, ledger, scorer, make_plan
):
    plan = make_plan(max_iterations=3, risk_level=RiskLevel.HIGH)
    scorer.accuracies = [0.1, 0.2, 0.3, 0.4]

    for _ in range(5):
        try:
            await controller.run_iteration(plan.plan_id)
        except PlanStateError:
            break

    final = ledger.get_plan(plan.plan_id)
    assert final.iteration_count == 3
    assert final.iteration_count <= final.max_iterations
    assert len(ledger.list_iterations(plan.plan_id)) == 3


@pytest.mark.asyncio
async def test_generator_timeout_fails_the_iteration(
    ledger, generator, executor, scorer, dispatcher, settings, make_plan
):
    from remedy.plans.iteration import IterationController

    settings.generator_timeout = 0.05
    controller = IterationController(
        ledger, generator, executor, scorer, dispatcher, settings
    )
    generator.block = asyncio.Event()
    plan = make_plan()

    iteration = await controller.run_iteration(plan.plan_id)

    assert not iteration.success
    assert "timed out" in iteration.error_message
    assert ledger.get_plan(plan.plan_id).active_operation is None


@pytest.mark.asyncio
async def test_concurrent_iteration_is_rejected(controller, ledger, generator, make_plan):
    plan = make_plan()
    generator.block = asyncio.Event()

    task = asyncio.create_task(controller.run_iteration(plan.plan_id))
    await generator.started.wait()

    with pytest.raises(ConflictError):
        await controller.run_iteration(plan.plan_id)

    generator.block.set()
    iteration = await task
    assert iteration.iteration_number == 1
    assert len(ledger.list_iterations(plan.plan_id)) == 1


@pytest.mark.asyncio
async def test_cancelled_iteration_is_recorded_and_releases_claim(
    controller, ledger, generator, make_plan
):
    plan = make_plan()
    generator.block = asyncio.Event()

    task = asyncio.create_task(controller.run_iteration(plan.plan_id))
    await generator.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    updated = ledger.get_plan(plan.plan_id)
    assert updated.iteration_count == 1
    assert updated.active_operation is None
    [iteration] = ledger.list_iterations(plan.plan_id)
    assert iteration.error_message == "Iteration was cancelled"


@pytest.mark.asyncio
async def test_stale_claim_is_taken_over(controller, ledger, clock, make_plan):
    plan = make_plan()
    ledger.claim(plan.plan_id, "iteration", allowed={PlanStatus.DRAFT})

    with pytest.raises(ConflictError):
        await controller.run_iteration(plan.plan_id)

    clock.advance(seconds=601)
    iteration = await controller.run_iteration(plan.plan_id)
    assert iteration.iteration_number == 1


@pytest.mark.asyncio
async def test_generation_attempt_that_times_out_is_retried(
    ledger, executor, scorer, dispatcher, settings, make_plan
):
    from remedy.clients.retry import RetryingCodeGenerator, RetryPolicy
    from remedy.plans.iteration import IterationController

    async def no_sleep(delay):
        pass

    class StallsOnce(CodeGenerator):
        def __init__(self):
            self.calls = 0

        async def generate(self, request):
            self.calls += 1
            if self.calls == 1:
                await asyncio.Event().wait()
            return GenerationResult(
                code="UPDATE {{ target }} SET email = lower(email)",
                affected_columns=["email"],
            )

    settings.generator_timeout = 0.05
    stalling = StallsOnce()
    retrying = RetryingCodeGenerator(
        stalling, RetryPolicy(sleep=no_sleep, attempt_timeout=0.05)
    )
    controller = IterationController(
        ledger, retrying, executor, scorer, dispatcher, settings
    )
    plan = make_plan()

    iteration = await controller.run_iteration(plan.plan_id)

    assert stalling.calls == 2
    assert iteration.success
    assert iteration.code.startswith("UPDATE")
