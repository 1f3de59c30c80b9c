"""Service for the append-only iteration history."""

from ...plans.models import Iteration
from ..base import DatabaseError
from .base import BaseService


class IterationService(BaseService):
    """Appends and reads rows of the transformation_iterations table."""

    def append_iteration(self, iteration: Iteration) -> None:
        """Append an iteration. ``(plan_id, iteration_number)`` is unique.

        Raises:
            DatabaseError: If the insert fails (including a duplicate number)
        """
        try:
            sql = """
            INSERT INTO transformation_iterations (
                id, plan_id, iteration_number, code, rollback_code, started_at,
                completed_at, execution_time_ms, sample_size, success, accuracy,
                meets_threshold, evaluation_notes, issues_found,
                improvements_suggested, sample_before, sample_after, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """
            params = [
                iteration.iteration_id,
                iteration.plan_id,
                iteration.iteration_number,
                iteration.code,
                iteration.rollback_code,
                iteration.started_at,
                iteration.completed_at,
                iteration.execution_time_ms,
                iteration.sample_size,
                iteration.success,
                iteration.accuracy,
                iteration.meets_threshold,
                iteration.evaluation_notes,
                self._dump(iteration.issues_found),
                self._dump(iteration.improvements_suggested),
                self._dump(iteration.sample_before),
                self._dump(iteration.sample_after),
                iteration.error_message,
            ]
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(
                f"Failed to append iteration {iteration.iteration_number} "
                f"for plan {iteration.plan_id}: {e}"
            ) from e

    def list_iterations(self, plan_id: str) -> list[Iteration]:
        """All iterations of a plan ordered by iteration number.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_iterations
                WHERE plan_id = ?
                ORDER BY iteration_number
                """,
                [plan_id],
            )
            return [Iteration.from_dict(row) for row in result.rows]
        except Exception as e:
            raise DatabaseError(
                f"Failed to list iterations for plan {plan_id}: {e}"
            ) from e
