"""Service for approval requests."""

from datetime import datetime

from ...plans.models import Approval, ApprovalStatus
from ..base import DatabaseError
from .base import BaseService


class ApprovalService(BaseService):
    """Service for the transformation_approvals table.

    Approvals are created ``pending`` and leave that status exactly once.
    Every status change is guarded by ``status = 'pending'`` so that a
    decision and an expiry sweep can never both win.
    """

    def create_approval(self, approval: Approval) -> None:
        """Insert a new approval row.

        Raises:
            DatabaseError: If the insert fails
        """
        try:
            sql = """
            INSERT INTO transformation_approvals (
                id, plan_id, status, reviewed_by, reviewed_at, comment,
                auto_approved, auto_approve_reason, expires_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """
            params = [
                approval.approval_id,
                approval.plan_id,
                approval.status.value,
                approval.reviewed_by,
                approval.reviewed_at,
                approval.comment,
                approval.auto_approved,
                approval.auto_approve_reason,
                approval.expires_at,
                approval.created_at,
            ]
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(
                f"Failed to create approval {approval.approval_id}: {e}"
            ) from e

    def get_approval(self, approval_id: str) -> Approval | None:
        """Get an approval by ID.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                "SELECT * FROM transformation_approvals WHERE id = ?", [approval_id]
            )
            if result.empty():
                return None
            return Approval.from_dict(result.first())
        except Exception as e:
            raise DatabaseError(f"Failed to get approval {approval_id}: {e}") from e

    def get_pending_approval(self, plan_id: str) -> Approval | None:
        """The open approval of a plan, if any.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_approvals
                WHERE plan_id = ? AND status = ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                [plan_id, ApprovalStatus.PENDING.value],
            )
            if result.empty():
                return None
            return Approval.from_dict(result.first())
        except Exception as e:
            raise DatabaseError(
                f"Failed to get pending approval for plan {plan_id}: {e}"
            ) from e

    def get_latest_approval(
        self, plan_id: str, status: ApprovalStatus | None = None
    ) -> Approval | None:
        """Most recent approval of a plan, optionally with a given status.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            sql = "SELECT * FROM transformation_approvals WHERE plan_id = ?"
            params: list = [plan_id]
            if status is not None:
                sql += " AND status = ?"
                params.append(status.value)
            sql += " ORDER BY created_at DESC, reviewed_at DESC LIMIT 1"

            result = self._system_query(sql, params)
            if result.empty():
                return None
            return Approval.from_dict(result.first())
        except Exception as e:
            raise DatabaseError(
                f"Failed to get latest approval for plan {plan_id}: {e}"
            ) from e

    def list_approvals(self, plan_id: str) -> list[Approval]:
        """Approval history of a plan, oldest first.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_approvals
                WHERE plan_id = ?
                ORDER BY created_at, id
                """,
                [plan_id],
            )
            return [Approval.from_dict(row) for row in result.rows]
        except Exception as e:
            raise DatabaseError(
                f"Failed to list approvals for plan {plan_id}: {e}"
            ) from e

    def resolve_pending(
        self,
        approval_id: str,
        status: ApprovalStatus,
        reviewed_by: str | None,
        reviewed_at: datetime | None,
        comment: str | None = None,
        auto_approved: bool = False,
        auto_approve_reason: str | None = None,
    ) -> Approval | None:
        """Move a pending approval to a terminal status.

        Returns:
            The updated approval, or None if it was no longer pending

        Raises:
            DatabaseError: If the update fails
        """
        try:
            result = self._system_query(
                """
                UPDATE transformation_approvals SET
                    status = ?, reviewed_by = ?, reviewed_at = ?, comment = ?,
                    auto_approved = ?, auto_approve_reason = ?
                WHERE id = ? AND status = ?
                RETURNING *
                """,
                [
                    status.value,
                    reviewed_by,
                    reviewed_at,
                    comment,
                    auto_approved,
                    auto_approve_reason,
                    approval_id,
                    ApprovalStatus.PENDING.value,
                ],
            )
            if result.empty():
                return None
            return Approval.from_dict(result.first())
        except Exception as e:
            raise DatabaseError(
                f"Failed to resolve approval {approval_id}: {e}"
            ) from e

    def list_overdue(self, now: datetime) -> list[Approval]:
        """Pending approvals whose expiry is strictly before ``now``.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_approvals
                WHERE status = ? AND expires_at < ?
                ORDER BY expires_at
                """,
                [ApprovalStatus.PENDING.value, now],
            )
            return [Approval.from_dict(row) for row in result.rows]
        except Exception as e:
            raise DatabaseError(f"Failed to list overdue approvals: {e}") from e
