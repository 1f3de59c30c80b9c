"""Capabilities the plan engine consumes: generation, sandbox execution,
scoring, snapshots and notifications.

The engine depends only on these abstract classes; concrete clients live
beside this module and tests supply in-memory fakes.
"""

import abc
from dataclasses import dataclass, field
from typing import Any

from remedy.plans.models import (
    TransformationKind,
    TransformationParams,
    TransformationPlan,
)


@dataclass(frozen=True)
class SampleScope:
    """Run against a bounded sample of the target; never touches the real rows."""

    target_asset: str
    size: int
    target_column: str | None = None
    validation_rule: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)

    @property
    def is_sample(self) -> bool:
        return True


@dataclass(frozen=True)
class FullScope:
    """Run against the entire target asset."""

    target_asset: str
    target_column: str | None = None
    validation_rule: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)

    @property
    def is_sample(self) -> bool:
        return False


ExecutionScope = SampleScope | FullScope


@dataclass
class GenerationRequest:
    """Everything the generator needs to propose (or refine) code."""

    plan_id: str
    kind: TransformationKind
    target_asset: str
    target_column: str | None
    description: str
    parameters: TransformationParams
    iteration_number: int
    previous_code: str | None = None
    previous_error: str | None = None
    issues_found: list[str] = field(default_factory=list)
    improvements_suggested: list[str] = field(default_factory=list)

    @property
    def has_feedback(self) -> bool:
        return bool(
            self.previous_error or self.issues_found or self.improvements_suggested
        )


@dataclass
class GenerationResult:
    code: str
    rollback_code: str | None = None
    affected_columns: list[str] = field(default_factory=list)
    explanation: str = ""


@dataclass
class ExecutionResult:
    """Row counts and samples reported by the executor.

    ``error`` is set for an executor-level failure, in which case no rows
    were applied.
    """

    rows_affected: int = 0
    rows_succeeded: int = 0
    rows_failed: int = 0
    sample_before: list[dict[str, Any]] = field(default_factory=list)
    sample_after: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def rows_checked(self) -> int:
        return self.rows_succeeded + self.rows_failed

    @classmethod
    def failed(cls, error: str) -> "ExecutionResult":
        return cls(error=error)


@dataclass
class Evaluation:
    """Scoring of one sample run."""

    accuracy: float | None
    notes: str = ""
    issues_found: list[str] = field(default_factory=list)
    improvements_suggested: list[str] = field(default_factory=list)


@dataclass
class Checkpoint:
    """Reference to a stored copy of a target asset."""

    reference: str
    row_count: int


class CodeGenerator(abc.ABC):
    @abc.abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Propose transformation code.

        Raises:
            GenerationFailure: If the generator is unreachable or its output
                is unusable
        """

    def deadline(self, attempt_timeout: float) -> float:
        """Longest time one ``generate`` call may take.

        ``attempt_timeout`` bounds a single request to the generator.
        Wrappers that make several requests per call widen it.
        """
        return attempt_timeout


class SandboxExecutor(abc.ABC):
    @abc.abstractmethod
    async def run(self, code: str, scope: ExecutionScope) -> ExecutionResult:
        """Run ``code`` against ``scope``.

        SQL errors are reported through ``ExecutionResult.error``. Exceptions
        are reserved for transport failures.
        """


class Scorer(abc.ABC):
    @abc.abstractmethod
    async def score(
        self, plan: TransformationPlan, result: ExecutionResult
    ) -> Evaluation:
        """Score a successful sample run."""


class SnapshotStore(abc.ABC):
    @abc.abstractmethod
    async def capture(self, target_asset: str, label: str) -> Checkpoint:
        """Copy the target asset before it is mutated."""

    @abc.abstractmethod
    async def restore(self, target_asset: str, reference: str) -> None:
        """Replace the target asset's rows with a captured copy."""


class Notifier(abc.ABC):
    @abc.abstractmethod
    async def send(self, channel: str, template: str, context: dict[str, Any]) -> None:
        """Deliver a named notification template rendered with ``context``."""
