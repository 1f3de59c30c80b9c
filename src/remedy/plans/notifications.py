"""Notification templates and best-effort dispatch."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from remedy.plans.models import TransformationPlan
from remedy.templating import LayeredContext, TemplateResolver

if TYPE_CHECKING:
    from remedy.clients.base import Notifier

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "transformations"
ALERT_CHANNEL = "alerts"

# name -> (subject, body); rendered against the context passed to notify()
TEMPLATES: dict[str, tuple[str, str]] = {
    "approval_requested": (
        "Approval needed: {{ kind }} on {{ target_asset }}",
        "Plan {{ plan_id }} ({{ description | truncate_text(120) }}) reached "
        "{{ final_accuracy | default_if_empty('n/a') }} accuracy after "
        "{{ iteration_count }} iteration(s). Risk: {{ risk_level | uppercase }}. "
        "Review before {{ expires_at | date('%Y-%m-%d %H:%M') }} UTC.",
    ),
    "auto_approved": (
        "Auto-approved: {{ kind }} on {{ target_asset }}",
        "Plan {{ plan_id }} was approved automatically: {{ reason }}",
    ),
    "approval_decided": (
        "Plan {{ decision }}: {{ kind }} on {{ target_asset }}",
        "{{ reviewer }} {{ decision }} plan {{ plan_id }}."
        "{% if comment %} Comment: {{ comment }}{% endif %}",
    ),
    "approval_expired": (
        "Approval expired: {{ kind }} on {{ target_asset }}",
        "Nobody reviewed plan {{ plan_id }} before {{ expires_at | date('%Y-%m-%d %H:%M') }} "
        "UTC. Request a new approval to continue.",
    ),
    "plan_failed": (
        "Plan failed: {{ kind }} on {{ target_asset }}",
        "Plan {{ plan_id }} failed after {{ iteration_count }} iteration(s): "
        "{{ reason | truncate_text(300) }}",
    ),
    "plan_cancelled": (
        "Plan cancelled: {{ kind }} on {{ target_asset }}",
        "{{ operator }} cancelled plan {{ plan_id }}: {{ reason | default_if_empty('no reason given') }}",
    ),
    "execution_completed": (
        "Transformation applied to {{ target_asset }}",
        "Plan {{ plan_id }} {{ status }}: {{ rows_succeeded }} row(s) succeeded, "
        "{{ rows_failed }} failed in {{ duration_ms }} ms.",
    ),
    "execution_failed": (
        "Transformation rolled back on {{ target_asset }}",
        "Plan {{ plan_id }} failed on the full dataset ({{ error | default_if_empty('row failures over tolerance') }}). "
        "Changes were reverted using {{ rollback_method }}.",
    ),
    "rollback_failed": (
        "MANUAL INTERVENTION REQUIRED: rollback failed on {{ target_asset }}",
        "Plan {{ plan_id }} execution {{ execution_log_id }} could not be reverted: "
        "{{ error }}. The target asset may be partially transformed."
        "{% if snapshot_id %} Snapshot {{ snapshot_id }} is available for manual restore.{% endif %}",
    ),
    "rollback_completed": (
        "Transformation reverted on {{ target_asset }}",
        "{{ requested_by }} rolled back execution {{ execution_log_id }} of plan "
        "{{ plan_id }} using {{ rollback_method }}.",
    ),
    "source_resolved": (
        "Issue {{ source_id }} resolved",
        "Plan {{ plan_id }} fixed {{ target_asset }}"
        "{% if target_column %}.{{ target_column }}{% endif %} for issue {{ source_id }}.",
    ),
}

ALERT_TEMPLATES = frozenset({"rollback_failed"})

_resolver = TemplateResolver()


def render_notification(template: str, context: dict[str, Any]) -> tuple[str, str]:
    """Render a named template into ``(subject, body)``.

    Raises:
        KeyError: If the template name is unknown
    """
    subject, body = TEMPLATES[template]
    layered = LayeredContext(params=context)
    return _resolver.resolve(subject, layered), _resolver.resolve(body, layered)


class NotificationDispatcher:
    """Sends notifications without ever blocking or failing plan progression."""

    def __init__(self, notifier: "Notifier | None", timeout: float = 10.0):
        self.notifier = notifier
        self.timeout = timeout

    async def notify(self, template: str, **context: Any) -> bool:
        """Send a notification; failures are logged and reported as False."""
        if self.notifier is None:
            return False

        channel = ALERT_CHANNEL if template in ALERT_TEMPLATES else DEFAULT_CHANNEL
        try:
            await asyncio.wait_for(
                self.notifier.send(channel, template, context), timeout=self.timeout
            )
            return True
        except TimeoutError:
            logger.warning(
                f"Notification {template} timed out after {self.timeout} seconds"
            )
        except Exception as e:
            logger.warning(f"Notification {template} failed: {e}")
        return False


def plan_context(plan: TransformationPlan) -> dict[str, Any]:
    """Template variables describing a plan."""
    return {
        "plan_id": plan.plan_id,
        "kind": plan.kind.value,
        "target_asset": plan.target_asset,
        "target_column": plan.target_column,
        "description": plan.description,
        "risk_level": plan.risk_level.value,
        "iteration_count": plan.iteration_count,
        "final_accuracy": plan.final_accuracy,
        "source_type": plan.source_type.value,
        "source_id": plan.source_id,
    }
