"""Transformation plan data models and types."""

import json
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

from remedy.utils.validation import quote_sql_identifier, quote_sql_literal


def utc_now() -> datetime:
    """Current time as naive UTC, the representation stored in the ledger."""
    return datetime.now(UTC).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class PlanStatus(Enum):
    """Transformation plan lifecycle status."""

    DRAFT = "draft"
    ITERATING = "iterating"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class RiskLevel(Enum):
    """Blast radius / reversibility classification of a plan."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SourceType(Enum):
    """What requested the fix."""

    ISSUE = "issue"
    QUALITY_RULE = "quality_rule"
    MANUAL = "manual"
    CHAT = "chat"
    AGENT = "agent"


class TransformationKind(Enum):
    """Supported transformation kinds."""

    FORMAT_STANDARDIZATION = "format_standardization"
    NULL_REMEDIATION = "null_remediation"
    REFERENTIAL_FIX = "referential_fix"
    DEDUPLICATION = "deduplication"
    OUTLIER_CORRECTION = "outlier_correction"
    CLASSIFICATION = "classification"
    CUSTOM = "custom"


class ApprovalStatus(Enum):
    """Approval request status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Decision(Enum):
    """Reviewer decision on an approval request."""

    APPROVE = "approve"
    REJECT = "reject"


class ExecutionStatus(Enum):
    """Outcome of a full-dataset execution."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RollbackTrigger(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class RollbackStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value) if value else default
    return value


def _parse_datetime(value: Any, field_name: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise ValueError(f"Invalid {field_name} type: {type(value)}")


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Kind-specific parameters
# ---------------------------------------------------------------------------


@dataclass
class TransformationParams:
    """Parameters passed to the code generator, tagged by transformation kind.

    ``validation_rule`` is an optional SQL predicate that a correctly
    transformed row satisfies. When absent, each kind derives its own rule
    from its parameters (see ``default_validation_rule``). Keys a kind does
    not know about are kept in ``extra`` and passed through untouched.
    """

    kind: ClassVar[TransformationKind] = TransformationKind.CUSTOM

    validation_rule: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def default_validation_rule(self, column: str | None) -> str | None:
        return None

    def effective_validation_rule(self, column: str | None) -> str | None:
        return self.validation_rule or self.default_validation_rule(column)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        extra = data.pop("extra")
        data = {key: value for key, value in data.items() if value not in (None, [])}
        data.update(extra)
        return data


@dataclass
class FormatStandardizationParams(TransformationParams):
    kind: ClassVar[TransformationKind] = TransformationKind.FORMAT_STANDARDIZATION

    target_format: str | None = None
    pattern: str | None = None

    def default_validation_rule(self, column: str | None) -> str | None:
        if not column or not self.pattern:
            return None
        return (
            f"regexp_full_match(CAST({quote_sql_identifier(column)} AS VARCHAR), "
            f"{quote_sql_literal(self.pattern)})"
        )


@dataclass
class NullRemediationParams(TransformationParams):
    kind: ClassVar[TransformationKind] = TransformationKind.NULL_REMEDIATION

    strategy: str = "default_value"
    fill_value: Any = None

    def default_validation_rule(self, column: str | None) -> str | None:
        if not column:
            return None
        return f"{quote_sql_identifier(column)} IS NOT NULL"


@dataclass
class ReferentialFixParams(TransformationParams):
    kind: ClassVar[TransformationKind] = TransformationKind.REFERENTIAL_FIX

    reference_table: str | None = None
    reference_column: str | None = None
    fallback_value: Any = None

    def default_validation_rule(self, column: str | None) -> str | None:
        if not column or not self.reference_table or not self.reference_column:
            return None
        return (
            f"{quote_sql_identifier(column)} IN ("
            f"SELECT {quote_sql_identifier(self.reference_column)} "
            f"FROM {quote_sql_identifier(self.reference_table)})"
        )


@dataclass
class DeduplicationParams(TransformationParams):
    kind: ClassVar[TransformationKind] = TransformationKind.DEDUPLICATION

    key_columns: list[str] = field(default_factory=list)
    keep: str = "first"


@dataclass
class OutlierCorrectionParams(TransformationParams):
    kind: ClassVar[TransformationKind] = TransformationKind.OUTLIER_CORRECTION

    lower_bound: float | None = None
    upper_bound: float | None = None
    method: str = "clip"

    def default_validation_rule(self, column: str | None) -> str | None:
        if not column or (self.lower_bound is None and self.upper_bound is None):
            return None
        quoted = quote_sql_identifier(column)
        clauses = []
        if self.lower_bound is not None:
            clauses.append(f"{quoted} >= {float(self.lower_bound)}")
        if self.upper_bound is not None:
            clauses.append(f"{quoted} <= {float(self.upper_bound)}")
        return " AND ".join(clauses)


@dataclass
class ClassificationParams(TransformationParams):
    kind: ClassVar[TransformationKind] = TransformationKind.CLASSIFICATION

    categories: list[str] = field(default_factory=list)
    default_category: str | None = None

    def default_validation_rule(self, column: str | None) -> str | None:
        if not column or not self.categories:
            return None
        allowed = ", ".join(quote_sql_literal(c) for c in self.categories)
        return f"{quote_sql_identifier(column)} IN ({allowed})"


@dataclass
class CustomParams(TransformationParams):
    kind: ClassVar[TransformationKind] = TransformationKind.CUSTOM


PARAMS_BY_KIND: dict[TransformationKind, type[TransformationParams]] = {
    cls.kind: cls
    for cls in (
        FormatStandardizationParams,
        NullRemediationParams,
        ReferentialFixParams,
        DeduplicationParams,
        OutlierCorrectionParams,
        ClassificationParams,
        CustomParams,
    )
}


def parse_parameters(
    kind: TransformationKind, data: dict[str, Any] | None
) -> TransformationParams:
    """Build the parameter object for ``kind`` from a plain mapping.

    Raises:
        ValueError: If a known field has the wrong shape
    """
    params_cls = PARAMS_BY_KIND[kind]
    known = {f.name for f in fields(params_cls)} - {"extra"}
    data = dict(data or {})

    kwargs = {key: data.pop(key) for key in list(data) if key in known}
    for list_field in ("key_columns", "categories"):
        if list_field in kwargs and not isinstance(kwargs[list_field], list):
            raise ValueError(f"Parameter '{list_field}' must be a list")
    for bound in ("lower_bound", "upper_bound"):
        if kwargs.get(bound) is not None:
            try:
                kwargs[bound] = float(kwargs[bound])
            except (TypeError, ValueError) as e:
                raise ValueError(f"Parameter '{bound}' must be numeric") from e

    return params_cls(extra=data, **kwargs)


# ---------------------------------------------------------------------------
# Requests and aggregates
# ---------------------------------------------------------------------------


@dataclass
class TransformationRequest:
    """A request to create a transformation plan."""

    source_type: SourceType
    target_asset: str
    kind: TransformationKind
    description: str
    requested_by: str
    source_id: str | None = None
    target_column: str | None = None
    parameters: TransformationParams | None = None
    risk_level: RiskLevel | None = None
    accuracy_threshold: float | None = None
    max_iterations: int | None = None
    affected_columns: list[str] | None = None
    estimated_row_count: int | None = None
    # Payload of the automation that triggered the fix; referenced from the
    # description and string parameters as {{ trigger.<path> }}
    trigger: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransformationRequest":
        """Create a request from a plain mapping (CLI / API payloads)."""
        kind = TransformationKind(data.get("kind") or data["transformation_kind"])
        risk = data.get("risk_level")
        return cls(
            source_type=SourceType(data.get("source_type", "manual")),
            source_id=data.get("source_id"),
            target_asset=data["target_asset"],
            target_column=data.get("target_column"),
            kind=kind,
            description=data["description"],
            requested_by=data["requested_by"],
            parameters=parse_parameters(kind, data.get("parameters")),
            risk_level=RiskLevel(risk) if risk else None,
            accuracy_threshold=data.get("accuracy_threshold"),
            max_iterations=data.get("max_iterations"),
            affected_columns=data.get("affected_columns"),
            estimated_row_count=data.get("estimated_row_count"),
            trigger=data.get("trigger"),
        )


@dataclass
class TransformationPlan:
    """The aggregate root: one proposed data-quality fix."""

    plan_id: str
    source_type: SourceType
    source_id: str | None
    target_asset: str
    target_column: str | None
    kind: TransformationKind
    description: str
    parameters: TransformationParams
    generated_code: str | None
    rollback_code: str | None
    affected_columns: list[str]
    estimated_row_count: int | None
    risk_level: RiskLevel
    iteration_count: int
    max_iterations: int
    final_accuracy: float | None
    accuracy_threshold: float
    status: PlanStatus
    failure_reason: str | None
    requested_by: str
    version: int
    active_operation: str | None
    operation_started_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        from remedy.plans.state import TERMINAL_STATES

        return self.status in TERMINAL_STATES

    @property
    def iterations_remaining(self) -> int:
        return max(self.max_iterations - self.iteration_count, 0)

    def to_dict(self) -> dict[str, Any]:
        """Convert plan to a JSON-friendly dictionary."""
        return {
            "plan_id": self.plan_id,
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "target_asset": self.target_asset,
            "target_column": self.target_column,
            "kind": self.kind.value,
            "description": self.description,
            "parameters": self.parameters.to_dict(),
            "generated_code": self.generated_code,
            "rollback_code": self.rollback_code,
            "affected_columns": list(self.affected_columns),
            "estimated_row_count": self.estimated_row_count,
            "risk_level": self.risk_level.value,
            "iteration_count": self.iteration_count,
            "max_iterations": self.max_iterations,
            "final_accuracy": self.final_accuracy,
            "accuracy_threshold": self.accuracy_threshold,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "requested_by": self.requested_by,
            "version": self.version,
            "active_operation": self.active_operation,
            "operation_started_at": _isoformat(self.operation_started_at),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransformationPlan":
        """Create plan from a dictionary (database row or ``to_dict`` output)."""
        kind = TransformationKind(data.get("kind") or data["transformation_kind"])
        return cls(
            plan_id=data.get("plan_id") or data["id"],
            source_type=SourceType(data["source_type"]),
            source_id=data.get("source_id"),
            target_asset=data["target_asset"],
            target_column=data.get("target_column"),
            kind=kind,
            description=data["description"],
            parameters=parse_parameters(kind, _load_json(data.get("parameters"), {})),
            generated_code=data.get("generated_code"),
            rollback_code=data.get("rollback_code"),
            affected_columns=_load_json(data.get("affected_columns"), []),
            estimated_row_count=data.get("estimated_row_count"),
            risk_level=RiskLevel(data["risk_level"]),
            iteration_count=data["iteration_count"],
            max_iterations=data["max_iterations"],
            final_accuracy=data.get("final_accuracy"),
            accuracy_threshold=data["accuracy_threshold"],
            status=PlanStatus(data["status"]),
            failure_reason=data.get("failure_reason"),
            requested_by=data["requested_by"],
            version=data["version"],
            active_operation=data.get("active_operation"),
            operation_started_at=_parse_datetime(
                data.get("operation_started_at"), "operation_started_at"
            ),
            created_at=_parse_datetime(data["created_at"], "created_at"),
            updated_at=_parse_datetime(data["updated_at"], "updated_at"),
        )


@dataclass
class Iteration:
    """One generate -> execute-on-sample -> evaluate attempt. Immutable."""

    iteration_id: str
    plan_id: str
    iteration_number: int
    code: str | None
    rollback_code: str | None
    started_at: datetime
    completed_at: datetime
    execution_time_ms: int
    sample_size: int
    success: bool
    accuracy: float | None
    meets_threshold: bool
    evaluation_notes: str
    issues_found: list[str]
    improvements_suggested: list[str]
    sample_before: list[dict[str, Any]]
    sample_after: list[dict[str, Any]]
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = _isoformat(self.started_at)
        data["completed_at"] = _isoformat(self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Iteration":
        return cls(
            iteration_id=data.get("iteration_id") or data["id"],
            plan_id=data["plan_id"],
            iteration_number=data["iteration_number"],
            code=data.get("code"),
            rollback_code=data.get("rollback_code"),
            started_at=_parse_datetime(data["started_at"], "started_at"),
            completed_at=_parse_datetime(data["completed_at"], "completed_at"),
            execution_time_ms=data["execution_time_ms"],
            sample_size=data["sample_size"],
            success=bool(data["success"]),
            accuracy=data.get("accuracy"),
            meets_threshold=bool(data["meets_threshold"]),
            evaluation_notes=data.get("evaluation_notes") or "",
            issues_found=_load_json(data.get("issues_found"), []),
            improvements_suggested=_load_json(data.get("improvements_suggested"), []),
            sample_before=_load_json(data.get("sample_before"), []),
            sample_after=_load_json(data.get("sample_after"), []),
            error_message=data.get("error_message"),
        )


@dataclass
class Approval:
    """A request to authorize execution of a plan."""

    approval_id: str
    plan_id: str
    status: ApprovalStatus
    reviewed_by: str | None
    reviewed_at: datetime | None
    comment: str | None
    auto_approved: bool
    auto_approve_reason: str | None
    expires_at: datetime
    created_at: datetime

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def is_overdue(self, now: datetime) -> bool:
        """A pending approval past its expiry that nobody decided on."""
        return self.is_pending and now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["reviewed_at"] = _isoformat(self.reviewed_at)
        data["expires_at"] = _isoformat(self.expires_at)
        data["created_at"] = _isoformat(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Approval":
        return cls(
            approval_id=data.get("approval_id") or data["id"],
            plan_id=data["plan_id"],
            status=ApprovalStatus(data["status"]),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=_parse_datetime(data.get("reviewed_at"), "reviewed_at"),
            comment=data.get("comment"),
            auto_approved=bool(data.get("auto_approved")),
            auto_approve_reason=data.get("auto_approve_reason"),
            expires_at=_parse_datetime(data["expires_at"], "expires_at"),
            created_at=_parse_datetime(data["created_at"], "created_at"),
        )


@dataclass
class ExecutionLog:
    """Record of one apply-to-production attempt. Immutable."""

    log_id: str
    plan_id: str
    approval_id: str | None
    snapshot_id: str | None
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    rows_affected: int
    rows_succeeded: int
    rows_failed: int
    status: ExecutionStatus
    error_message: str | None
    executed_by: str
    lineage_recorded: bool

    @property
    def failure_fraction(self) -> float:
        total = self.rows_succeeded + self.rows_failed
        return self.rows_failed / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["started_at"] = _isoformat(self.started_at)
        data["completed_at"] = _isoformat(self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionLog":
        return cls(
            log_id=data.get("log_id") or data["id"],
            plan_id=data["plan_id"],
            approval_id=data.get("approval_id"),
            snapshot_id=data.get("snapshot_id"),
            started_at=_parse_datetime(data["started_at"], "started_at"),
            completed_at=_parse_datetime(data["completed_at"], "completed_at"),
            duration_ms=data["duration_ms"],
            rows_affected=data["rows_affected"],
            rows_succeeded=data["rows_succeeded"],
            rows_failed=data["rows_failed"],
            status=ExecutionStatus(data["status"]),
            error_message=data.get("error_message"),
            executed_by=data["executed_by"],
            lineage_recorded=bool(data["lineage_recorded"]),
        )


@dataclass
class RollbackRecord:
    """A rollback attempt against an execution. Immutable."""

    rollback_id: str
    plan_id: str
    execution_log_id: str
    snapshot_id: str | None
    trigger: RollbackTrigger
    method: str | None  # "rollback_code" or "snapshot"
    status: RollbackStatus
    error_message: str | None
    requested_by: str
    created_at: datetime

    @property
    def succeeded(self) -> bool:
        return self.status == RollbackStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["trigger"] = self.trigger.value
        data["status"] = self.status.value
        data["created_at"] = _isoformat(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RollbackRecord":
        return cls(
            rollback_id=data.get("rollback_id") or data["id"],
            plan_id=data["plan_id"],
            execution_log_id=data["execution_log_id"],
            snapshot_id=data.get("snapshot_id"),
            trigger=RollbackTrigger(data["trigger"]),
            method=data.get("method"),
            status=RollbackStatus(data["status"]),
            error_message=data.get("error_message"),
            requested_by=data["requested_by"],
            created_at=_parse_datetime(data["created_at"], "created_at"),
        )


@dataclass
class Snapshot:
    """Rollback checkpoint of a target asset taken before execution."""

    snapshot_id: str
    plan_id: str
    target_asset: str
    backup_table: str
    row_count: int
    created_at: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        return cls(
            snapshot_id=data.get("snapshot_id") or data["id"],
            plan_id=data["plan_id"],
            target_asset=data["target_asset"],
            backup_table=data["backup_table"],
            row_count=data["row_count"],
            created_at=_parse_datetime(data["created_at"], "created_at"),
        )


@dataclass
class LineageRecord:
    """Links a transformed asset to the plan that produced (or reverted) it."""

    lineage_id: str
    plan_id: str
    execution_log_id: str
    target_asset: str
    target_column: str | None
    affected_columns: list[str]
    relation: str  # "transformed_by" or "reverted_by"
    created_at: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineageRecord":
        return cls(
            lineage_id=data.get("lineage_id") or data["id"],
            plan_id=data["plan_id"],
            execution_log_id=data["execution_log_id"],
            target_asset=data["target_asset"],
            target_column=data.get("target_column"),
            affected_columns=_load_json(data.get("affected_columns"), []),
            relation=data["relation"],
            created_at=_parse_datetime(data["created_at"], "created_at"),
        )


@dataclass
class PlanDetails:
    """A plan together with its full append-only history."""

    plan: TransformationPlan
    iterations: list[Iteration]
    approvals: list[Approval]
    logs: list[ExecutionLog]
    rollbacks: list[RollbackRecord]

    @property
    def latest_iteration(self) -> Iteration | None:
        return self.iterations[-1] if self.iterations else None

    @property
    def pending_approval(self) -> Approval | None:
        return next((a for a in self.approvals if a.is_pending), None)

    def to_dict(self) -> dict[str, Any]:
        data = self.plan.to_dict()
        data["iterations"] = [i.to_dict() for i in self.iterations]
        data["approvals"] = [a.to_dict() for a in self.approvals]
        data["logs"] = [log.to_dict() for log in self.logs]
        data["rollbacks"] = [r.to_dict() for r in self.rollbacks]
        return data


@dataclass
class PlanListing:
    """Filtered plans plus aggregate counts by status for dashboards."""

    plans: list[TransformationPlan]
    counts: dict[str, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())


@dataclass
class PlanPreview:
    """What a reviewer sees before approving a plan."""

    plan: TransformationPlan
    affected_row_count: int | None
    sample_before: list[dict[str, Any]]
    sample_after: list[dict[str, Any]]
    risk_level: RiskLevel
    risk_factors: list[str]
    iterations: list[Iteration]
    reversible: bool
