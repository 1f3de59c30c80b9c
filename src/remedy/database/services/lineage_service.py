"""Service for snapshot metadata and lineage records."""

from ...plans.models import LineageRecord, Snapshot
from ..base import DatabaseError
from .base import BaseService


class LineageService(BaseService):
    """Service for transformation_snapshots and lineage_records.

    Snapshots are the rollback checkpoints taken before an execution; lineage
    records link a transformed asset to the plan that changed it.
    """

    def record_snapshot(self, snapshot: Snapshot) -> None:
        """Persist snapshot metadata.

        Raises:
            DatabaseError: If the insert fails
        """
        try:
            self._system_execute(
                """
                INSERT INTO transformation_snapshots (
                    id, plan_id, target_asset, backup_table, row_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    snapshot.snapshot_id,
                    snapshot.plan_id,
                    snapshot.target_asset,
                    snapshot.backup_table,
                    snapshot.row_count,
                    snapshot.created_at,
                ],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to record snapshot {snapshot.snapshot_id}: {e}"
            ) from e

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        """Get snapshot metadata by ID.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                "SELECT * FROM transformation_snapshots WHERE id = ?", [snapshot_id]
            )
            if result.empty():
                return None
            return Snapshot.from_dict(result.first())
        except Exception as e:
            raise DatabaseError(f"Failed to get snapshot {snapshot_id}: {e}") from e

    def record_lineage(self, record: LineageRecord) -> None:
        """Append a lineage record.

        Raises:
            DatabaseError: If the insert fails
        """
        try:
            self._system_execute(
                """
                INSERT INTO lineage_records (
                    id, plan_id, execution_log_id, target_asset, target_column,
                    affected_columns, relation, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    record.lineage_id,
                    record.plan_id,
                    record.execution_log_id,
                    record.target_asset,
                    record.target_column,
                    self._dump(record.affected_columns),
                    record.relation,
                    record.created_at,
                ],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to record lineage for plan {record.plan_id}: {e}"
            ) from e

    def list_lineage(self, target_asset: str) -> list[LineageRecord]:
        """Lineage history of an asset, oldest first.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query(
                """
                SELECT * FROM lineage_records
                WHERE target_asset = ?
                ORDER BY created_at, id
                """,
                [target_asset],
            )
            return [LineageRecord.from_dict(row) for row in result.rows]
        except Exception as e:
            raise DatabaseError(
                f"Failed to list lineage for asset {target_asset}: {e}"
            ) from e
