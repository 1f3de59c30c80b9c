"""Plan manager: the operations exposed to the CLI and surrounding services."""

import logging

from remedy.clients.base import Notifier
from remedy.clients.duckdb_executor import DuckDBSandboxExecutor, DuckDBSnapshotStore
from remedy.clients.llm import LLMCodeGenerator, LLMScorer
from remedy.clients.notifier import LoggingNotifier, WebhookNotifier
from remedy.clients.retry import RetryingCodeGenerator, RetryingSandboxExecutor
from remedy.core.client import RemedyClient
from remedy.core.config import EngineSettings, SettingsManager
from remedy.database.manager import DatabaseManager
from remedy.database.services.container import ServiceContainer
from remedy.error_handling import (
    ConflictError,
    ErrorContext,
    PlanStateError,
    ValidationError,
)
from remedy.plans.approval import ApprovalGate, AutoApprovalPolicy
from remedy.plans.execution import ExecutionEngine
from remedy.plans.iteration import IterationController
from remedy.plans.ledger import PlanLedger
from remedy.plans.models import (
    Approval,
    ApprovalStatus,
    Decision,
    ExecutionLog,
    Iteration,
    PlanDetails,
    PlanListing,
    PlanPreview,
    PlanStatus,
    RollbackRecord,
    TransformationPlan,
    TransformationRequest,
    new_id,
    parse_parameters,
)
from remedy.plans.notifications import NotificationDispatcher, plan_context
from remedy.plans.risk import assess_risk, risk_factors
from remedy.plans.state import can_transition
from remedy.plans.sweeper import ApprovalExpirySweeper
from remedy.templating import LayeredContext, TemplateResolver
from remedy.utils.validation import (
    validate_asset_name,
    validate_fraction,
    validate_positive_int,
    validate_sql_identifier,
)

logger = logging.getLogger(__name__)


class PlanManager:
    """Creates plans and drives them through iteration, approval and execution.

    Reads expire overdue approvals before returning, so a caller never sees
    an approval stuck in ``pending`` past its deadline.
    """

    def __init__(
        self,
        ledger: PlanLedger,
        gate: ApprovalGate,
        engine: ExecutionEngine,
        dispatcher: NotificationDispatcher,
        settings: EngineSettings,
        controller: IterationController | None = None,
        resolver: TemplateResolver | None = None,
        client: RemedyClient | None = None,
    ):
        self.ledger = ledger
        self.gate = gate
        self.engine = engine
        self.dispatcher = dispatcher
        self.settings = settings
        self.controller = controller
        self.resolver = resolver or TemplateResolver(clock=ledger.clock)
        self.client = client

    @classmethod
    def from_settings(
        cls,
        settings_manager: SettingsManager | None = None,
        db_manager: DatabaseManager | None = None,
        policy: AutoApprovalPolicy | None = None,
        notifier: Notifier | None = None,
    ) -> "PlanManager":
        """Wire the engine from user settings.

        Iteration is only available when an API key is configured; every
        other operation works without one.

        Raises:
            ValidationError: If a configured value is invalid
        """
        settings_manager = settings_manager or SettingsManager()
        settings = settings_manager.get_engine_settings()
        db_manager = db_manager or DatabaseManager(
            settings_manager.get_system_database_path(),
            settings_manager.get_user_database_path(),
        )

        ledger = PlanLedger(
            ServiceContainer(db_manager),
            lease_seconds=settings.operation_lease_seconds,
        )
        if notifier is None:
            if settings.notification_webhook_url:
                notifier = WebhookNotifier(settings.notification_webhook_url)
            else:
                notifier = LoggingNotifier()
        dispatcher = NotificationDispatcher(notifier)
        executor = RetryingSandboxExecutor(DuckDBSandboxExecutor(db_manager))

        client = None
        controller = None
        api_key = settings_manager.get_api_key()
        if api_key:
            client = RemedyClient(
                api_key=api_key,
                model=settings_manager.get_current_model(),
                base_url=settings_manager.get_base_url(),
            )
            controller = IterationController(
                ledger,
                RetryingCodeGenerator(
                    LLMCodeGenerator(client, timeout=settings.generator_timeout)
                ),
                executor,
                LLMScorer(client, timeout=settings.generator_timeout),
                dispatcher,
                settings,
            )
        else:
            logger.info("No API key configured; code generation is unavailable")

        return cls(
            ledger=ledger,
            gate=ApprovalGate(ledger, dispatcher, settings, policy),
            engine=ExecutionEngine(
                ledger, executor, dispatcher, settings, DuckDBSnapshotStore(db_manager)
            ),
            dispatcher=dispatcher,
            settings=settings,
            controller=controller,
            client=client,
        )

    # ------------------------------------------------------------------
    # Plan lifecycle
    # ------------------------------------------------------------------

    def create_plan(self, request: TransformationRequest) -> TransformationPlan:
        """Validate a request and record it as a draft plan.

        The description and string parameters may reference the triggering
        payload as ``{{ trigger.<path> }}``; they are resolved here, once.

        Raises:
            ValidationError: If the request is malformed
        """
        validate_asset_name(request.target_asset)
        if request.target_column:
            validate_sql_identifier(request.target_column, context="target column")
        if not request.description or not request.description.strip():
            raise ValidationError("A plan needs a description")
        if not request.requested_by:
            raise ValidationError("requested_by is required")

        threshold = validate_fraction(
            request.accuracy_threshold
            if request.accuracy_threshold is not None
            else self.settings.accuracy_threshold,
            "accuracy_threshold",
        )
        max_iterations = validate_positive_int(
            request.max_iterations
            if request.max_iterations is not None
            else self.settings.max_iterations,
            "max_iterations",
        )

        parameters = request.parameters or parse_parameters(request.kind, None)
        context = LayeredContext(
            trigger=request.trigger or {}, params=parameters.to_dict()
        )
        # Validation rules keep their {{ target }} / {{ column }} placeholders
        # until execution
        data = parameters.to_dict()
        rule = data.pop("validation_rule", None)
        data = self.resolver.resolve_deep(data, context)
        if rule:
            data["validation_rule"] = rule
        try:
            parameters = parse_parameters(request.kind, data)
        except ValueError as e:
            raise ValidationError(f"Invalid parameters: {e}") from e

        now = self.ledger.now()
        plan = TransformationPlan(
            plan_id=new_id(),
            source_type=request.source_type,
            source_id=request.source_id,
            target_asset=request.target_asset,
            target_column=request.target_column,
            kind=request.kind,
            description=self.resolver.resolve(request.description, context),
            parameters=parameters,
            generated_code=None,
            rollback_code=None,
            affected_columns=list(
                request.affected_columns
                or ([request.target_column] if request.target_column else [])
            ),
            estimated_row_count=request.estimated_row_count,
            risk_level=request.risk_level or assess_risk(request.kind),
            iteration_count=0,
            max_iterations=max_iterations,
            final_accuracy=None,
            accuracy_threshold=threshold,
            status=PlanStatus.DRAFT,
            failure_reason=None,
            requested_by=request.requested_by,
            version=1,
            active_operation=None,
            operation_started_at=None,
            created_at=now,
            updated_at=now,
        )
        return self.ledger.create_plan(plan)

    async def run_iteration(self, plan_id: str) -> Iteration:
        """Run the plan's next generate / sample / evaluate iteration."""
        if self.controller is None:
            raise ValidationError(
                "Code generation is not configured; set REMEDY_API_KEY",
                context=ErrorContext(operation="run_iteration", plan_id=plan_id),
            )
        return await self.controller.run_iteration(plan_id)

    async def run_plan(self, plan_id: str) -> TransformationPlan:
        """Iterate until the plan leaves the refinement loop, then request
        approval if it is ready for review."""
        plan = self.ledger.get_plan(plan_id)
        while (
            plan.status in (PlanStatus.DRAFT, PlanStatus.ITERATING)
            and plan.iterations_remaining > 0
        ):
            await self.run_iteration(plan_id)
            plan = self.ledger.get_plan(plan_id)

        if plan.status == PlanStatus.PENDING_APPROVAL:
            await self.request_approval(plan_id)
            plan = self.ledger.get_plan(plan_id)
        return plan

    async def request_approval(self, plan_id: str) -> Approval:
        return await self.gate.request_approval(plan_id)

    async def decide_approval(
        self,
        approval_id: str,
        decision: Decision | str,
        reviewer: str,
        comment: str | None = None,
    ) -> Approval:
        if isinstance(decision, str):
            try:
                decision = Decision(decision.lower())
            except ValueError as e:
                raise ValidationError(
                    f"Unknown decision '{decision}'; expected approve or reject"
                ) from e
        return await self.gate.decide(approval_id, decision, reviewer, comment)

    async def execute(self, plan_id: str, executed_by: str) -> ExecutionLog:
        return await self.engine.execute(plan_id, executed_by)

    async def rollback_execution(
        self, log_id: str, requested_by: str
    ) -> RollbackRecord:
        return await self.engine.rollback_execution(log_id, requested_by)

    async def cancel_plan(
        self, plan_id: str, operator: str, reason: str | None = None
    ) -> TransformationPlan:
        """Cancel a plan that has not started executing.

        An open approval is closed as rejected with the cancellation reason.

        Raises:
            PlanStateError: If the plan is terminal or executing
            ConflictError: If an iteration is running on the plan
        """
        context = ErrorContext(operation="cancel_plan", plan_id=plan_id)
        if not operator:
            raise ValidationError("operator is required", context=context)

        plan = self.ledger.get_plan(plan_id)
        if not can_transition(plan.status, PlanStatus.CANCELLED):
            raise PlanStateError(
                f"Plan {plan_id} cannot be cancelled in status '{plan.status.value}'",
                context=context,
            )
        if plan.active_operation and not self.ledger.lease_expired(plan):
            raise ConflictError(
                f"Plan {plan_id} is busy with {plan.active_operation}", context=context
            )

        failure_reason = f"Cancelled by {operator}" + (f": {reason}" if reason else "")
        changes = {
            "status": PlanStatus.CANCELLED,
            "failure_reason": failure_reason,
            "active_operation": None,
            "operation_started_at": None,
        }

        pending = self.ledger.pending_approval(plan_id)
        if pending is not None:
            resolved, plan = self.ledger.resolve_approval(
                plan,
                pending,
                ApprovalStatus.REJECTED,
                reviewed_by=operator,
                comment=reason or "Plan cancelled",
                **changes,
            )
            if resolved is None:
                raise ConflictError(
                    f"Approval {pending.approval_id} was decided while cancelling",
                    context=context,
                )
        else:
            plan = self.ledger.update_plan(plan, "cancel_plan", **changes)

        await self.dispatcher.notify(
            "plan_cancelled", **plan_context(plan), operator=operator, reason=reason
        )
        return plan

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_plan(self, plan_id: str) -> PlanDetails:
        """A plan with its iterations, approvals, execution logs and rollbacks."""
        await self.gate.expire_overdue(plan_id)
        return self.ledger.get_details(plan_id)

    async def get_approval(self, approval_id: str) -> Approval:
        approval = self.ledger.get_approval(approval_id)
        if approval.is_overdue(self.ledger.now()):
            await self.gate.expire_overdue(approval.plan_id)
            approval = self.ledger.get_approval(approval_id)
        return approval

    async def list_plans(
        self,
        status: PlanStatus | None = None,
        target_asset: str | None = None,
        limit: int | None = None,
    ) -> PlanListing:
        """Plans matching the filter, newest first, with counts by status."""
        await self.gate.expire_overdue()
        return self.ledger.list_plans(status, target_asset, limit)

    async def get_preview(self, plan_id: str) -> PlanPreview:
        """What a reviewer needs to judge a plan before approving it."""
        details = await self.get_plan(plan_id)
        plan = details.plan
        sampled = next(
            (
                iteration
                for iteration in reversed(details.iterations)
                if iteration.success and iteration.code == plan.generated_code
            ),
            None,
        )
        return PlanPreview(
            plan=plan,
            affected_row_count=plan.estimated_row_count,
            sample_before=sampled.sample_before if sampled else [],
            sample_after=sampled.sample_after if sampled else [],
            risk_level=plan.risk_level,
            risk_factors=risk_factors(plan),
            iterations=details.iterations,
            reversible=self.engine.is_reversible(plan),
        )

    async def expire_overdue(self) -> list[Approval]:
        return await self.gate.expire_overdue()

    def sweeper(self) -> ApprovalExpirySweeper:
        return ApprovalExpirySweeper(self.gate, self.settings.sweep_interval_seconds)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
        self.ledger.services.close()
