"""Retrying decorators for the generator and executor capabilities."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from remedy.clients.base import (
    CodeGenerator,
    ExecutionResult,
    ExecutionScope,
    GenerationRequest,
    GenerationResult,
    SandboxExecutor,
)
from remedy.error_handling import GenerationFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Bounded retries with exponential backoff.

    With ``attempt_timeout`` set, each attempt is cut off after that many
    seconds and the timeout counts as a failed attempt.
    """

    def __init__(
        self,
        max_retries: int = 2,
        initial_delay: float = 1.0,
        max_delay: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        attempt_timeout: float | None = None,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.sleep = sleep
        self.attempt_timeout = attempt_timeout

    def delay(self, attempt: int) -> float:
        return min(self.initial_delay * (2**attempt), self.max_delay)

    def budget(self, attempt_timeout: float) -> float:
        """Worst-case duration of every attempt plus the backoff between them."""
        attempts = self.max_retries + 1
        backoff = sum(self.delay(n) for n in range(self.max_retries))
        return attempt_timeout * attempts + backoff

    async def call(self, label: str, func: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                if self.attempt_timeout is None:
                    return await func()
                return await asyncio.wait_for(func(), timeout=self.attempt_timeout)
            except Exception as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.delay(attempt)
                logger.warning(
                    f"{label} attempt {attempt + 1}/{self.max_retries + 1} "
                    f"failed: {str(e) or type(e).__name__}. Retrying in {delay:.1f}s"
                )
                await self.sleep(delay)
                attempt += 1


class RetryingCodeGenerator(CodeGenerator):
    """Retries a generator that raises; the last failure is re-raised."""

    def __init__(self, inner: CodeGenerator, policy: RetryPolicy | None = None):
        self.inner = inner
        self.policy = policy or RetryPolicy()

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        try:
            return await self.policy.call(
                "Code generation", lambda: self.inner.generate(request)
            )
        except GenerationFailure:
            raise
        except Exception as e:
            raise GenerationFailure(
                f"Code generation failed after {self.policy.max_retries + 1} "
                f"attempts: {str(e) or type(e).__name__}",
                original_error=e,
            ) from e

    def deadline(self, attempt_timeout: float) -> float:
        per_attempt = self.policy.attempt_timeout or attempt_timeout
        return self.policy.budget(self.inner.deadline(per_attempt))


class RetryingSandboxExecutor(SandboxExecutor):
    """Retries executor transport failures.

    Results carrying an ``error`` are returned as-is; re-running code that
    failed on the data would fail the same way.
    """

    def __init__(self, inner: SandboxExecutor, policy: RetryPolicy | None = None):
        self.inner = inner
        self.policy = policy or RetryPolicy()

    async def run(self, code: str, scope: ExecutionScope) -> ExecutionResult:
        try:
            return await self.policy.call(
                "Sandbox execution", lambda: self.inner.run(code, scope)
            )
        except Exception as e:
            logger.warning(
                f"Sandbox execution on {scope.target_asset} gave up after "
                f"{self.policy.max_retries + 1} attempts",
                exc_info=e,
            )
            return ExecutionResult.failed(
                f"Executor unavailable after {self.policy.max_retries + 1} "
                f"attempts: {e}"
            )
