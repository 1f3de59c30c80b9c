"""Plan lifecycle state machine."""

from remedy.error_handling import ErrorContext, PlanStateError
from remedy.plans.models import PlanStatus

TERMINAL_STATES = frozenset(
    {
        PlanStatus.COMPLETED,
        PlanStatus.REJECTED,
        PlanStatus.CANCELLED,
        PlanStatus.FAILED,
        PlanStatus.ROLLED_BACK,
    }
)

# Cancellation is layered on top of this table by ``can_transition``
TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.DRAFT: frozenset({PlanStatus.ITERATING}),
    PlanStatus.ITERATING: frozenset(
        {PlanStatus.ITERATING, PlanStatus.PENDING_APPROVAL, PlanStatus.FAILED}
    ),
    PlanStatus.PENDING_APPROVAL: frozenset(
        {PlanStatus.APPROVED, PlanStatus.REJECTED, PlanStatus.EXPIRED}
    ),
    # An expired plan re-enters review only through a fresh approval request
    PlanStatus.EXPIRED: frozenset({PlanStatus.PENDING_APPROVAL}),
    PlanStatus.APPROVED: frozenset({PlanStatus.EXECUTING}),
    PlanStatus.EXECUTING: frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED}),
    PlanStatus.COMPLETED: frozenset({PlanStatus.ROLLED_BACK}),
    PlanStatus.REJECTED: frozenset(),
    PlanStatus.FAILED: frozenset(),
    PlanStatus.CANCELLED: frozenset(),
    PlanStatus.ROLLED_BACK: frozenset(),
}

# Statuses an operator may cancel from. Executing plans must finish (or roll
# back) first.
CANCELLABLE_STATES = frozenset(
    status
    for status in PlanStatus
    if status not in TERMINAL_STATES and status != PlanStatus.EXECUTING
)

# Past ``iterating``: generated code must be present
CODE_REQUIRED_STATES = frozenset(
    {
        PlanStatus.PENDING_APPROVAL,
        PlanStatus.APPROVED,
        PlanStatus.EXPIRED,
        PlanStatus.EXECUTING,
        PlanStatus.COMPLETED,
        PlanStatus.ROLLED_BACK,
    }
)


def can_transition(current: PlanStatus, target: PlanStatus) -> bool:
    """Whether the lifecycle permits moving from ``current`` to ``target``."""
    if target == PlanStatus.CANCELLED:
        return current in CANCELLABLE_STATES
    return target in TRANSITIONS[current]


def ensure_transition(
    current: PlanStatus, target: PlanStatus, plan_id: str | None = None
) -> None:
    """Raise PlanStateError unless ``current -> target`` is permitted."""
    if not can_transition(current, target):
        raise PlanStateError(
            f"Plan cannot move from '{current.value}' to '{target.value}'",
            context=ErrorContext(operation="transition", plan_id=plan_id),
        )
