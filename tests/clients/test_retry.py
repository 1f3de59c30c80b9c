"""Tests for the retrying generator and executor wrappers."""

import asyncio
import logging

import pytest

from remedy.clients.base import (
    CodeGenerator,
    ExecutionResult,
    GenerationResult,
    SampleScope,
    SandboxExecutor,
)
from remedy.clients.retry import RetryingCodeGenerator, RetryingSandboxExecutor, RetryPolicy
from remedy.error_handling import GenerationFailure


class FlakyGenerator(CodeGenerator):
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    async def generate(self, request):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("connection reset")
        return GenerationResult(code="UPDATE {{ target }} SET a = 1")


class FlakyExecutor(SandboxExecutor):
    def __init__(self, failures, result=None):
        self.failures = failures
        self.result = result or ExecutionResult(rows_succeeded=1)
        self.calls = 0

    async def run(self, code, scope):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("executor down")
        return self.result


class StallingGenerator(CodeGenerator):
    """Hangs on its first call and answers on later ones."""

    def __init__(self):
        self.calls = 0

    async def generate(self, request):
        self.calls += 1
        if self.calls == 1:
            await asyncio.Event().wait()
        return GenerationResult(code="UPDATE {{ target }} SET a = 1")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return RetryPolicy(max_retries=2, initial_delay=1.0, max_delay=8.0, sleep=fake_sleep)


def test_backoff_is_capped():
    policy = RetryPolicy(initial_delay=1.0, max_delay=3.0)
    assert [policy.delay(n) for n in range(4)] == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_generator_recovers_after_transient_errors(policy, sleeps):
    inner = FlakyGenerator(failures=2)

    result = await RetryingCodeGenerator(inner, policy).generate(None)

    assert result.code.startswith("UPDATE")
    assert inner.calls == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_generator_gives_up(policy):
    inner = FlakyGenerator(failures=5)

    with pytest.raises(GenerationFailure) as exc_info:
        await RetryingCodeGenerator(inner, policy).generate(None)

    assert inner.calls == 3
    assert "after 3 attempts" in str(exc_info.value)


@pytest.mark.asyncio
async def test_executor_errors_become_failed_results(policy):
    inner = FlakyExecutor(failures=5)

    result = await RetryingSandboxExecutor(inner, policy).run(
        "SELECT 1", SampleScope(target_asset="t", size=1)
    )

    assert not result.ok
    assert "executor down" in result.error


@pytest.mark.asyncio
async def test_sql_errors_are_not_retried(policy):
    inner = FlakyExecutor(failures=0, result=ExecutionResult.failed("Parser Error"))

    result = await RetryingSandboxExecutor(inner, policy).run(
        "SELEC 1", SampleScope(target_asset="t", size=1)
    )

    assert result.error == "Parser Error"
    assert inner.calls == 1


@pytest.mark.asyncio
async def test_executor_failure_is_logged_with_traceback(policy, caplog):
    inner = FlakyExecutor(failures=5)

    with caplog.at_level(logging.WARNING, logger="remedy.clients.retry"):
        await RetryingSandboxExecutor(inner, policy).run(
            "SELECT 1", SampleScope(target_asset="t", size=1)
        )

    record = caplog.records[-1]
    assert "gave up after 3 attempts" in record.getMessage()
    assert isinstance(record.exc_info[1], ConnectionError)


@pytest.mark.asyncio
async def test_last_error_is_reraised_unchanged(policy):
    error = ConnectionError("still down")

    async def always_fails():
        raise error

    with pytest.raises(ConnectionError) as exc_info:
        await policy.call("Ping", always_fails)

    assert exc_info.value is error


@pytest.mark.asyncio
async def test_stalled_attempt_is_cut_off_and_retried(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    inner = StallingGenerator()
    policy = RetryPolicy(max_retries=2, sleep=fake_sleep, attempt_timeout=0.05)

    result = await RetryingCodeGenerator(inner, policy).generate(None)

    assert result.code.startswith("UPDATE")
    assert inner.calls == 2
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_stalled_attempts_exhaust_retries(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    class AlwaysStalls(CodeGenerator):
        async def generate(self, request):
            await asyncio.Event().wait()

    policy = RetryPolicy(max_retries=1, sleep=fake_sleep, attempt_timeout=0.05)

    with pytest.raises(GenerationFailure) as exc_info:
        await RetryingCodeGenerator(AlwaysStalls(), policy).generate(None)

    assert "after 2 attempts: TimeoutError" in str(exc_info.value)


def test_deadline_covers_every_attempt_and_backoff():
    policy = RetryPolicy(max_retries=2, initial_delay=1.0, max_delay=8.0)

    assert RetryingCodeGenerator(FlakyGenerator(0), policy).deadline(10.0) == 33.0
    assert FlakyGenerator(0).deadline(10.0) == 10.0
