"""Database services for remedy."""

from remedy.database.services.approval_service import ApprovalService
from remedy.database.services.base import BaseService
from remedy.database.services.container import ServiceContainer
from remedy.database.services.execution_log_service import ExecutionLogService
from remedy.database.services.iteration_service import IterationService
from remedy.database.services.lineage_service import LineageService
from remedy.database.services.plan_service import PlanService

__all__ = [
    "BaseService",
    "ServiceContainer",
    "PlanService",
    "IterationService",
    "ApprovalService",
    "ExecutionLogService",
    "LineageService",
]
