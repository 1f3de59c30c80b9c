"""Command-line interface for remedy."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import yaml
from dotenv import load_dotenv
from rich.logging import RichHandler

from remedy.core.config import SettingsManager
from remedy.database.base import DatabaseError
from remedy.error_handling import RemedyError, ValidationError, error_handler
from remedy.plans.manager import PlanManager
from remedy.plans.models import (
    Approval,
    PlanDetails,
    PlanStatus,
    TransformationPlan,
    TransformationRequest,
)
from remedy.ui.printer import Printer, format_value, styled_status

# Load environment variables
load_dotenv()

T = TypeVar("T")

printer = Printer()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity")
@click.option(
    "--settings-dir",
    default=None,
    type=click.Path(file_okay=False),
    help="Settings directory (default ~/.remedy)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, settings_dir: str | None):
    """remedy - iterate, approve and apply data-quality fixes."""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("settings_dir", settings_dir)

    if not verbose:
        settings_dir = ctx.obj["settings_dir"]
        settings_manager = SettingsManager(settings_dir) if settings_dir else SettingsManager()
        verbose = settings_manager.get_verbose_mode()
    _configure_logging(verbose)


def _manager(ctx: click.Context) -> PlanManager:
    """The PlanManager for this invocation, built from settings on first use."""
    if ctx.obj.get("manager") is None:
        settings_dir = ctx.obj.get("settings_dir")
        ctx.obj["manager"] = PlanManager.from_settings(
            SettingsManager(settings_dir) if settings_dir else None
        )
        ctx.obj["owns_manager"] = True
    return ctx.obj["manager"]


def _run(ctx: click.Context, operation: Callable[[PlanManager], Awaitable[T]]) -> T:
    """Run an async manager operation, turning engine errors into exit code 1."""

    async def runner() -> T:
        manager = _manager(ctx)
        try:
            return await operation(manager)
        finally:
            if ctx.obj.get("owns_manager"):
                await manager.close()

    try:
        return asyncio.run(runner())
    except (RemedyError, DatabaseError) as e:
        printer.show_error(error_handler.handle_error(e))
        ctx.exit(1)


def _load_request(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(f"Could not parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a mapping")
    return data


def _target(plan: TransformationPlan) -> str:
    if plan.target_column:
        return f"{plan.target_asset}.{plan.target_column}"
    return plan.target_asset


def _show_plan(plan: TransformationPlan) -> None:
    printer.show_key_values(
        f"Plan {plan.plan_id}",
        [
            ("Status", styled_status(plan.status.value)),
            ("Kind", plan.kind.value),
            ("Target", _target(plan)),
            ("Description", plan.description),
            ("Risk", plan.risk_level.value),
            ("Iterations", f"{plan.iteration_count}/{plan.max_iterations}"),
            ("Accuracy", plan.final_accuracy),
            ("Threshold", plan.accuracy_threshold),
            ("Source", f"{plan.source_type.value} {plan.source_id or ''}".strip()),
            ("Requested by", plan.requested_by),
            ("Failure", plan.failure_reason),
        ],
    )


def _show_approval(approval: Approval) -> None:
    printer.show_key_values(
        f"Approval {approval.approval_id}",
        [
            ("Plan", approval.plan_id),
            ("Status", approval.status.value),
            ("Auto-approved", "yes" if approval.auto_approved else "no"),
            ("Reason", approval.auto_approve_reason),
            ("Reviewed by", approval.reviewed_by),
            ("Comment", approval.comment),
            ("Expires", approval.expires_at.strftime("%Y-%m-%d %H:%M UTC")),
        ],
    )


def _show_details(details: PlanDetails) -> None:
    _show_plan(details.plan)
    printer.show_table(
        "Iterations",
        ["#", "Success", "Accuracy", "Sample", "Notes"],
        [
            [
                str(i.iteration_number),
                "yes" if i.success else "no",
                format_value(i.accuracy),
                str(i.sample_size),
                i.error_message or i.evaluation_notes or "-",
            ]
            for i in details.iterations
        ],
    )
    if details.approvals:
        printer.show_table(
            "Approvals",
            ["ID", "Status", "Reviewer", "Expires"],
            [
                [
                    a.approval_id,
                    a.status.value + (" (auto)" if a.auto_approved else ""),
                    a.reviewed_by or "-",
                    a.expires_at.strftime("%Y-%m-%d %H:%M"),
                ]
                for a in details.approvals
            ],
        )
    if details.logs:
        printer.show_table(
            "Executions",
            ["ID", "Status", "Succeeded", "Failed", "Lineage"],
            [
                [
                    log.log_id,
                    log.status.value,
                    str(log.rows_succeeded),
                    str(log.rows_failed),
                    "yes" if log.lineage_recorded else "no",
                ]
                for log in details.logs
            ],
        )
    if details.rollbacks:
        printer.show_table(
            "Rollbacks",
            ["Execution", "Trigger", "Method", "Status"],
            [
                [r.execution_log_id, r.trigger.value, r.method or "-", r.status.value]
                for r in details.rollbacks
            ],
        )
    printer.show_code("Generated code", details.plan.generated_code)


# ---------------------------------------------------------------------------
# Plan lifecycle
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--requested-by", default=None, help="Override the requester")
@click.pass_context
def create(ctx: click.Context, request_file: Path, requested_by: str | None):
    """Create a draft plan from a YAML or JSON request file."""

    async def operation(manager: PlanManager) -> TransformationPlan:
        data = _load_request(request_file)
        if requested_by:
            data["requested_by"] = requested_by
        try:
            request = TransformationRequest.from_dict(data)
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Invalid plan request: {e}") from e
        return manager.create_plan(request)

    plan = _run(ctx, operation)
    printer.show_success(f"Created plan {plan.plan_id}")
    _show_plan(plan)


@cli.command()
@click.argument("plan_id")
@click.pass_context
def iterate(ctx: click.Context, plan_id: str):
    """Run one generate / sample / evaluate iteration."""
    iteration = _run(ctx, lambda m: m.run_iteration(plan_id))
    if iteration.success:
        printer.show_success(
            f"Iteration {iteration.iteration_number}: accuracy "
            f"{format_value(iteration.accuracy)}"
            + (" (meets threshold)" if iteration.meets_threshold else "")
        )
    else:
        printer.show_warning(
            f"Iteration {iteration.iteration_number} failed: {iteration.error_message}"
        )


@cli.command()
@click.argument("plan_id")
@click.pass_context
def run(ctx: click.Context, plan_id: str):
    """Iterate until the plan is ready for review, then request approval."""
    plan = _run(ctx, lambda m: m.run_plan(plan_id))
    _show_plan(plan)


@cli.command("request-approval")
@click.argument("plan_id")
@click.pass_context
def request_approval(ctx: click.Context, plan_id: str):
    """Open an approval request for a plan (or show the open one)."""
    approval = _run(ctx, lambda m: m.request_approval(plan_id))
    if approval.auto_approved:
        printer.show_success(f"Plan {plan_id} was auto-approved")
    else:
        printer.show_success(f"Approval {approval.approval_id} is pending")
    _show_approval(approval)


@cli.command()
@click.argument("approval_id")
@click.option("--reviewer", required=True, help="Who is approving")
@click.option("--comment", default=None, help="Optional comment")
@click.pass_context
def approve(ctx: click.Context, approval_id: str, reviewer: str, comment: str | None):
    """Approve a pending approval."""
    approval = _run(
        ctx, lambda m: m.decide_approval(approval_id, "approve", reviewer, comment)
    )
    printer.show_success(f"Approved plan {approval.plan_id}")


@cli.command()
@click.argument("approval_id")
@click.option("--reviewer", required=True, help="Who is rejecting")
@click.option("--reason", required=True, help="Why the plan is rejected")
@click.pass_context
def reject(ctx: click.Context, approval_id: str, reviewer: str, reason: str):
    """Reject a pending approval."""
    approval = _run(
        ctx, lambda m: m.decide_approval(approval_id, "reject", reviewer, reason)
    )
    printer.show_success(f"Rejected plan {approval.plan_id}")


@cli.command()
@click.argument("plan_id")
@click.option("--by", "executed_by", required=True, help="Who is executing")
@click.pass_context
def execute(ctx: click.Context, plan_id: str, executed_by: str):
    """Apply an approved plan to the full target asset."""
    log = _run(ctx, lambda m: m.execute(plan_id, executed_by))
    printer.show_success(
        f"Execution {log.log_id} {log.status.value}: {log.rows_succeeded} row(s) "
        f"succeeded, {log.rows_failed} failed"
    )


@cli.command()
@click.argument("log_id")
@click.option("--by", "requested_by", required=True, help="Who is rolling back")
@click.pass_context
def rollback(ctx: click.Context, log_id: str, requested_by: str):
    """Revert a completed execution."""
    record = _run(ctx, lambda m: m.rollback_execution(log_id, requested_by))
    printer.show_success(f"Rolled back execution {log_id} using {record.method}")


@cli.command()
@click.argument("plan_id")
@click.option("--operator", required=True, help="Who is cancelling")
@click.option("--reason", default=None, help="Why the plan is cancelled")
@click.pass_context
def cancel(ctx: click.Context, plan_id: str, operator: str, reason: str | None):
    """Cancel a plan that has not started executing."""
    plan = _run(ctx, lambda m: m.cancel_plan(plan_id, operator, reason))
    printer.show_success(f"Cancelled plan {plan.plan_id}")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("plan_id")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_context
def show(ctx: click.Context, plan_id: str, as_json: bool):
    """Show a plan with its full history."""
    details = _run(ctx, lambda m: m.get_plan(plan_id))
    if as_json:
        click.echo(json.dumps(details.to_dict(), indent=2, default=str))
        return
    _show_details(details)


@cli.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in PlanStatus]),
    default=None,
    help="Only plans in this status",
)
@click.option("--asset", default=None, help="Only plans on this target asset")
@click.option("--limit", default=50, show_default=True, help="Maximum plans to show")
@click.pass_context
def list_plans(ctx: click.Context, status: str | None, asset: str | None, limit: int):
    """List plans with counts by status."""
    listing = _run(
        ctx,
        lambda m: m.list_plans(PlanStatus(status) if status else None, asset, limit),
    )
    printer.show_table(
        "Plans",
        ["ID", "Status", "Kind", "Target", "Iter", "Accuracy"],
        [
            [
                plan.plan_id,
                styled_status(plan.status.value),
                plan.kind.value,
                plan.target_asset,
                f"{plan.iteration_count}/{plan.max_iterations}",
                format_value(plan.final_accuracy),
            ]
            for plan in listing.plans
        ],
    )
    summary = ", ".join(
        f"{name}={count}" for name, count in listing.counts.items() if count
    )
    printer.show_info(f"{listing.total} plan(s)" + (f": {summary}" if summary else ""))


@cli.command()
@click.argument("plan_id")
@click.pass_context
def preview(ctx: click.Context, plan_id: str):
    """Show what a reviewer needs before approving a plan."""
    result = _run(ctx, lambda m: m.get_preview(plan_id))
    _show_plan(result.plan)
    printer.show_key_values(
        "Preview",
        [
            ("Affected rows", result.affected_row_count),
            ("Risk", result.risk_level.value),
            ("Reversible", "yes" if result.reversible else "no"),
        ],
    )
    for factor in result.risk_factors:
        printer.show_warning(factor)
    printer.show_rows("Sample before", result.sample_before)
    printer.show_rows("Sample after", result.sample_after)
    printer.show_code("Generated code", result.plan.generated_code)
    printer.show_code("Rollback code", result.plan.rollback_code)


@cli.command()
@click.argument("approval_id")
@click.pass_context
def approval(ctx: click.Context, approval_id: str):
    """Show an approval (expiring it if overdue)."""
    _show_approval(_run(ctx, lambda m: m.get_approval(approval_id)))


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--once", is_flag=True, help="Run a single sweep and exit")
@click.pass_context
def sweep(ctx: click.Context, once: bool):
    """Expire overdue approvals, once or periodically until interrupted."""

    async def operation(manager: PlanManager) -> int:
        sweeper = manager.sweeper()
        if once:
            return await sweeper.sweep_once()
        await sweeper.start()
        try:
            while sweeper.running:
                await asyncio.sleep(1.0)
        finally:
            await sweeper.stop()
        return 0

    try:
        expired = _run(ctx, operation)
    except KeyboardInterrupt:
        printer.show_info("Sweeper stopped")
        return
    printer.show_success(f"Expired {expired} approval(s)")


@cli.command()
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.pass_context
def config(ctx: click.Context, key: str | None, value: str | None):
    """Show settings, or set KEY to VALUE in the user settings file."""
    settings_dir = ctx.obj.get("settings_dir")
    settings_manager = SettingsManager(settings_dir) if settings_dir else SettingsManager()

    if key is None:
        settings = settings_manager.load_user_settings()
        printer.show_key_values(
            "Settings",
            [
                (name, "********" if name == "apiKey" else value)
                for name, value in sorted(settings.items())
            ],
        )
        return

    if value is None:
        raise click.UsageError("VALUE is required when KEY is given")

    parsed: Any = value
    if key in ("maxIterations", "sampleSize"):
        try:
            parsed = int(value)
        except ValueError as e:
            raise click.BadParameter(f"{key} must be an integer") from e

    try:
        settings_manager.update_user_setting(key, parsed)
    except ValidationError as e:
        printer.show_error(error_handler.handle_error(e))
        ctx.exit(1)
    printer.show_success(f"Saved {key}")
