"""Service for execution logs and rollback records."""

from ...plans.models import ExecutionLog, RollbackRecord
from ..base import DatabaseError
from .base import BaseService


class ExecutionLogService(BaseService):
    """Appends and reads transformation_logs and transformation_rollbacks rows.

    Both tables are append-only.
    """

    def append_log(self, log: ExecutionLog) -> None:
        """Append an execution log.

        Raises:
            DatabaseError: If the insert fails
        """
        try:
            sql = """
            INSERT INTO transformation_logs (
                id, plan_id, approval_id, snapshot_id, started_at, completed_at,
                duration_ms, rows_affected, rows_succeeded, rows_failed, status,
                error_message, executed_by, lineage_recorded
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """
            params = [
                log.log_id,
                log.plan_id,
                log.approval_id,
                log.snapshot_id,
                log.started_at,
                log.completed_at,
                log.duration_ms,
                log.rows_affected,
                log.rows_succeeded,
                log.rows_failed,
                log.status.value,
                log.error_message,
                log.executed_by,
                log.lineage_recorded,
            ]
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to append execution log {log.log_id}: {e}") from e

    def get_log(self, log_id: str) -> ExecutionLog | None:
        """Get an execution log by ID.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                "SELECT * FROM transformation_logs WHERE id = ?", [log_id]
            )
            if result.empty():
                return None
            return ExecutionLog.from_dict(result.first())
        except Exception as e:
            raise DatabaseError(f"Failed to get execution log {log_id}: {e}") from e

    def list_logs(self, plan_id: str) -> list[ExecutionLog]:
        """Execution logs of a plan, oldest first.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_logs
                WHERE plan_id = ?
                ORDER BY started_at, id
                """,
                [plan_id],
            )
            return [ExecutionLog.from_dict(row) for row in result.rows]
        except Exception as e:
            raise DatabaseError(
                f"Failed to list execution logs for plan {plan_id}: {e}"
            ) from e

    def append_rollback(self, rollback: RollbackRecord) -> None:
        """Append a rollback record.

        Raises:
            DatabaseError: If the insert fails
        """
        try:
            sql = """
            INSERT INTO transformation_rollbacks (
                id, plan_id, execution_log_id, snapshot_id, trigger, method,
                status, error_message, requested_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """
            params = [
                rollback.rollback_id,
                rollback.plan_id,
                rollback.execution_log_id,
                rollback.snapshot_id,
                rollback.trigger.value,
                rollback.method,
                rollback.status.value,
                rollback.error_message,
                rollback.requested_by,
                rollback.created_at,
            ]
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(
                f"Failed to append rollback {rollback.rollback_id}: {e}"
            ) from e

    def list_rollbacks(self, plan_id: str) -> list[RollbackRecord]:
        """Rollback attempts of a plan, oldest first.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_rollbacks
                WHERE plan_id = ?
                ORDER BY created_at, id
                """,
                [plan_id],
            )
            return [RollbackRecord.from_dict(row) for row in result.rows]
        except Exception as e:
            raise DatabaseError(
                f"Failed to list rollbacks for plan {plan_id}: {e}"
            ) from e
