"""Transformation plans: models, lifecycle and the engine that drives them."""

from remedy.plans.models import (
    Approval,
    ApprovalStatus,
    Decision,
    ExecutionLog,
    ExecutionStatus,
    Iteration,
    PlanStatus,
    RiskLevel,
    SourceType,
    TransformationKind,
    TransformationPlan,
    TransformationRequest,
)

# The engine modules import the clients, which import the models; load them
# lazily to keep ``remedy.plans`` importable from the clients package
__all__ = [
    "Approval",
    "ApprovalStatus",
    "Decision",
    "ExecutionLog",
    "ExecutionStatus",
    "Iteration",
    "PlanStatus",
    "RiskLevel",
    "SourceType",
    "TransformationKind",
    "TransformationPlan",
    "TransformationRequest",
    "PlanManager",
    "ApprovalGate",
    "ExecutionEngine",
    "IterationController",
    "PlanLedger",
]


def __getattr__(name: str):
    """Lazy import for the engine components to avoid circular imports."""
    if name == "PlanManager":
        from remedy.plans.manager import PlanManager

        return PlanManager
    elif name == "ApprovalGate":
        from remedy.plans.approval import ApprovalGate

        return ApprovalGate
    elif name == "ExecutionEngine":
        from remedy.plans.execution import ExecutionEngine

        return ExecutionEngine
    elif name == "IterationController":
        from remedy.plans.iteration import IterationController

        return IterationController
    elif name == "PlanLedger":
        from remedy.plans.ledger import PlanLedger

        return PlanLedger
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
