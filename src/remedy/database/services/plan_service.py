"""Service for the transformation plan aggregate rows."""

from datetime import datetime
from enum import Enum
from typing import Any

from ...plans.models import PlanStatus, TransformationPlan
from ..base import DatabaseError
from .base import BaseService

# Summary fields that may change after creation; everything else is fixed
MUTABLE_COLUMNS = frozenset(
    {
        "generated_code",
        "rollback_code",
        "affected_columns",
        "iteration_count",
        "final_accuracy",
        "status",
        "failure_reason",
        "active_operation",
        "operation_started_at",
    }
)


class PlanService(BaseService):
    """Service for managing plan rows in the system database.

    Handles operations on the transformation_plans table including:
    - Plan creation and lookup
    - Filtered listing and aggregate counts by status
    - Versioned compare-and-swap updates of the summary fields
    """

    def create_plan(self, plan: TransformationPlan) -> None:
        """Insert a new plan row.

        Raises:
            DatabaseError: If plan creation fails
        """
        try:
            sql = """
            INSERT INTO transformation_plans (
                id, source_type, source_id, target_asset, target_column,
                transformation_kind, description, parameters, generated_code,
                rollback_code, affected_columns, estimated_row_count, risk_level,
                iteration_count, max_iterations, final_accuracy,
                accuracy_threshold, status, failure_reason, requested_by,
                version, active_operation, operation_started_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                      ?, ?, ?, ?, ?)
            """
            params = [
                plan.plan_id,
                plan.source_type.value,
                plan.source_id,
                plan.target_asset,
                plan.target_column,
                plan.kind.value,
                plan.description,
                self._dump(plan.parameters.to_dict()),
                plan.generated_code,
                plan.rollback_code,
                self._dump(plan.affected_columns),
                plan.estimated_row_count,
                plan.risk_level.value,
                plan.iteration_count,
                plan.max_iterations,
                plan.final_accuracy,
                plan.accuracy_threshold,
                plan.status.value,
                plan.failure_reason,
                plan.requested_by,
                plan.version,
                plan.active_operation,
                plan.operation_started_at,
                plan.created_at,
                plan.updated_at,
            ]
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to create plan {plan.plan_id}: {e}") from e

    def get_plan(self, plan_id: str) -> TransformationPlan | None:
        """Get a plan by its ID.

        Returns:
            TransformationPlan if found, None otherwise

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                "SELECT * FROM transformation_plans WHERE id = ?", [plan_id]
            )
            if result.empty():
                return None
            return TransformationPlan.from_dict(result.first())
        except Exception as e:
            raise DatabaseError(f"Failed to get plan {plan_id}: {e}") from e

    def list_plans(
        self,
        status: PlanStatus | None = None,
        target_asset: str | None = None,
        limit: int | None = None,
    ) -> list[TransformationPlan]:
        """List plans, newest first, optionally filtered.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            sql = "SELECT * FROM transformation_plans"
            conditions, params = self._filters(status, target_asset)
            if conditions:
                sql += " WHERE " + " AND ".join(conditions)
            sql += " ORDER BY created_at DESC, id"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(int(limit))

            result = self._system_query(sql, params)
            return [TransformationPlan.from_dict(row) for row in result.rows]
        except Exception as e:
            raise DatabaseError(f"Failed to list plans: {e}") from e

    def count_by_status(self, target_asset: str | None = None) -> dict[str, int]:
        """Count plans per status. Every status is present, zero when unused.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            sql = "SELECT status, COUNT(*) AS n FROM transformation_plans"
            conditions, params = self._filters(None, target_asset)
            if conditions:
                sql += " WHERE " + " AND ".join(conditions)
            sql += " GROUP BY status"

            counts = {status.value: 0 for status in PlanStatus}
            for row in self._system_query(sql, params).rows:
                counts[row["status"]] = int(row["n"])
            return counts
        except Exception as e:
            raise DatabaseError(f"Failed to count plans by status: {e}") from e

    def compare_and_swap(
        self,
        plan_id: str,
        expected_version: int,
        changes: dict[str, Any],
        updated_at: datetime,
    ) -> TransformationPlan | None:
        """Apply ``changes`` only if the row still has ``expected_version``.

        The version is incremented on success.

        Returns:
            The updated plan, or None when another writer got there first

        Raises:
            DatabaseError: If the update fails or names an immutable column
        """
        unknown = set(changes) - MUTABLE_COLUMNS
        if unknown:
            raise DatabaseError(
                f"Cannot update immutable plan columns: {', '.join(sorted(unknown))}"
            )

        try:
            assignments = [f"{column} = ?" for column in changes]
            params = [self._column_value(value) for value in changes.values()]

            sql = f"""
            UPDATE transformation_plans SET
                {", ".join(assignments + ["version = version + 1", "updated_at = ?"])}
            WHERE id = ? AND version = ?
            RETURNING *
            """
            params.extend([updated_at, plan_id, expected_version])

            result = self._system_query(sql, params)
            if result.empty():
                return None
            return TransformationPlan.from_dict(result.first())
        except Exception as e:
            raise DatabaseError(f"Failed to update plan {plan_id}: {e}") from e

    def _column_value(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, list | dict):
            return self._dump(value)
        return value

    @staticmethod
    def _filters(
        status: PlanStatus | None, target_asset: str | None
    ) -> tuple[list[str], list[Any]]:
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if target_asset is not None:
            conditions.append("target_asset = ?")
            params.append(target_asset)
        return conditions, params
