"""Shared fixtures for remedy tests: an in-memory ledger, a controllable
clock and scripted fakes for every external capability."""

import asyncio
from datetime import datetime, timedelta

import pytest

from remedy.clients.base import (
    Checkpoint,
    CodeGenerator,
    Evaluation,
    ExecutionResult,
    GenerationResult,
    Notifier,
    SandboxExecutor,
    Scorer,
    SnapshotStore,
)
from remedy.core.config import EngineSettings
from remedy.database import DatabaseManager
from remedy.database.services.container import ServiceContainer
from remedy.plans.approval import ApprovalGate
from remedy.plans.execution import ExecutionEngine
from remedy.plans.iteration import IterationController
from remedy.plans.ledger import PlanLedger
from remedy.plans.manager import PlanManager
from remedy.plans.models import (
    FormatStandardizationParams,
    SourceType,
    TransformationKind,
    TransformationRequest,
)
from remedy.plans.notifications import NotificationDispatcher


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class ScriptedGenerator(CodeGenerator):
    """Returns queued results (or raises queued exceptions) in order.

    With an empty queue every call produces a numbered UPDATE statement.
    """

    def __init__(self):
        self.outcomes: list = []
        self.requests = []
        self.block: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def generate(self, request):
        self.requests.append(request)
        self.started.set()
        if self.block is not None:
            await self.block.wait()
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return GenerationResult(
            code=(
                "UPDATE {{ target }} SET email = lower(email) "
                f"-- v{request.iteration_number}"
            ),
            rollback_code="UPDATE {{ target }} SET email = upper(email)",
            affected_columns=["email"],
            explanation="Lowercase every email",
        )


class ScriptedExecutor(SandboxExecutor):
    """Sample runs succeed with a small before/after sample; full runs return
    queued results, defaulting to 100 clean rows.

    Setting ``block`` holds every full run until the event is set.
    """

    def __init__(self):
        self.sample_results: list = []
        self.full_results: list = []
        self.calls = []
        self.block: asyncio.Event | None = None
        self.full_run_started = asyncio.Event()

    @property
    def full_calls(self):
        return [(code, scope) for code, scope in self.calls if not scope.is_sample]

    async def run(self, code, scope):
        self.calls.append((code, scope))
        if not scope.is_sample:
            self.full_run_started.set()
            if self.block is not None:
                await self.block.wait()
        queue = self.sample_results if scope.is_sample else self.full_results
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if scope.is_sample:
            return ExecutionResult(
                rows_affected=2,
                rows_succeeded=2,
                sample_before=[{"id": 1, "email": "A@X.COM"}, {"id": 2, "email": "b@x.com"}],
                sample_after=[{"id": 1, "email": "a@x.com"}, {"id": 2, "email": "b@x.com"}],
            )
        return ExecutionResult(rows_affected=100, rows_succeeded=100)


class ScriptedScorer(Scorer):
    """Reports queued accuracies; 0.99 once the queue is empty."""

    def __init__(self):
        self.accuracies: list[float | None] = []

    async def score(self, plan, result):
        accuracy = self.accuracies.pop(0) if self.accuracies else 0.99
        issues = [] if accuracy is not None and accuracy >= 1.0 else ["Some rows kept uppercase"]
        return Evaluation(
            accuracy=accuracy,
            notes=f"accuracy {accuracy}",
            issues_found=issues,
            improvements_suggested=["Trim whitespace too"] if issues else [],
        )


class FakeSnapshotStore(SnapshotStore):
    def __init__(self):
        self.captures: list[tuple[str, str]] = []
        self.restores: list[tuple[str, str]] = []
        self.fail_capture = False
        self.fail_restore = False

    async def capture(self, target_asset, label):
        if self.fail_capture:
            raise RuntimeError("disk full")
        reference = f"remedy_snapshot_{len(self.captures) + 1}"
        self.captures.append((target_asset, reference))
        return Checkpoint(reference=reference, row_count=100)

    async def restore(self, target_asset, reference):
        if self.fail_restore:
            raise RuntimeError("backup table is gone")
        self.restores.append((target_asset, reference))


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = False

    @property
    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]

    def context_for(self, template: str) -> dict:
        return next(context for _, name, context in self.sent if name == template)

    async def send(self, channel, template, context):
        if self.fail:
            raise RuntimeError("webhook unreachable")
        self.sent.append((channel, template, context))


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 0, 0))


@pytest.fixture
def db_manager():
    """Create an in-memory database manager for testing."""
    with DatabaseManager(":memory:") as manager:
        yield manager


@pytest.fixture
def ledger(db_manager, clock):
    return PlanLedger(ServiceContainer(db_manager), clock=clock, lease_seconds=600)


@pytest.fixture
def settings():
    return EngineSettings(
        accuracy_threshold=0.95,
        max_iterations=3,
        sample_size=100,
        approval_window_hours=24,
        generator_timeout=5.0,
        executor_timeout=5.0,
    )


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def scorer():
    return ScriptedScorer()


@pytest.fixture
def snapshots():
    return FakeSnapshotStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier, timeout=1.0)


@pytest.fixture
def controller(ledger, generator, executor, scorer, dispatcher, settings):
    return IterationController(ledger, generator, executor, scorer, dispatcher, settings)


@pytest.fixture
def gate(ledger, dispatcher, settings):
    return ApprovalGate(ledger, dispatcher, settings)


@pytest.fixture
def engine(ledger, executor, dispatcher, settings, snapshots):
    return ExecutionEngine(ledger, executor, dispatcher, settings, snapshots)


@pytest.fixture
def manager(ledger, gate, engine, dispatcher, settings, controller):
    return PlanManager(
        ledger=ledger,
        gate=gate,
        engine=engine,
        dispatcher=dispatcher,
        settings=settings,
        controller=controller,
    )


@pytest.fixture
def make_request():
    """Build a request for lowercasing customers.email, with overrides."""

    def _make(**overrides) -> TransformationRequest:
        values = {
            "source_type": SourceType.MANUAL,
            "target_asset": "customers",
            "target_column": "email",
            "kind": TransformationKind.FORMAT_STANDARDIZATION,
            "description": "Lowercase customer emails",
            "requested_by": "alice",
            "parameters": FormatStandardizationParams(
                target_format="lowercase", pattern="[a-z0-9@._-]+"
            ),
        }
        values.update(overrides)
        return TransformationRequest(**values)

    return _make


@pytest.fixture
def make_plan(manager, make_request):
    def _make(**overrides):
        return manager.create_plan(make_request(**overrides))

    return _make
