"""Clients for the capabilities the plan engine consumes."""

from remedy.clients.base import (
    Checkpoint,
    CodeGenerator,
    Evaluation,
    ExecutionResult,
    ExecutionScope,
    FullScope,
    GenerationRequest,
    GenerationResult,
    Notifier,
    SampleScope,
    SandboxExecutor,
    Scorer,
    SnapshotStore,
)

__all__ = [
    "Checkpoint",
    "CodeGenerator",
    "Evaluation",
    "ExecutionResult",
    "ExecutionScope",
    "FullScope",
    "GenerationRequest",
    "GenerationResult",
    "Notifier",
    "SampleScope",
    "SandboxExecutor",
    "Scorer",
    "SnapshotStore",
]
