"""Service container for centralized database service management."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from remedy.database.manager import DatabaseManager

from remedy.database.services.approval_service import ApprovalService
from remedy.database.services.execution_log_service import ExecutionLogService
from remedy.database.services.iteration_service import IterationService
from remedy.database.services.lineage_service import LineageService
from remedy.database.services.plan_service import PlanService


class ServiceContainer:
    """Central container for all remedy database services.

    Services are initialized lazily on first access.
    """

    def __init__(self, db_manager: "DatabaseManager"):
        """Initialize ServiceContainer with database manager.

        Args:
            db_manager: DatabaseManager instance for database access
        """
        self.db_manager = db_manager

        self._plan_service = None
        self._iteration_service = None
        self._approval_service = None
        self._execution_log_service = None
        self._lineage_service = None

    @property
    def plans(self) -> PlanService:
        """Get the plan service."""
        if self._plan_service is None:
            self._plan_service = PlanService(self.db_manager)
        return self._plan_service

    @property
    def iterations(self) -> IterationService:
        """Get the iteration service."""
        if self._iteration_service is None:
            self._iteration_service = IterationService(self.db_manager)
        return self._iteration_service

    @property
    def approvals(self) -> ApprovalService:
        """Get the approval service."""
        if self._approval_service is None:
            self._approval_service = ApprovalService(self.db_manager)
        return self._approval_service

    @property
    def execution_logs(self) -> ExecutionLogService:
        """Get the execution log and rollback service."""
        if self._execution_log_service is None:
            self._execution_log_service = ExecutionLogService(self.db_manager)
        return self._execution_log_service

    @property
    def lineage(self) -> LineageService:
        """Get the snapshot and lineage service."""
        if self._lineage_service is None:
            self._lineage_service = LineageService(self.db_manager)
        return self._lineage_service

    def close(self) -> None:
        """Close database connections."""
        self.db_manager.close()
