"""Template/context resolver.

Renders ``{{ path }}`` references against a layered context made of the
trigger payload, outputs of earlier steps and static parameters. Used for
plan descriptions, generation prompts, notification bodies and the
placeholders inside generated SQL.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from remedy.plans.models import utc_now

logger = logging.getLogger(__name__)


@dataclass
class LayeredContext:
    """Lookup layers for template references.

    Bare names resolve with precedence steps > trigger > params. Each layer is
    also reachable by prefix, e.g. ``trigger.issue.id`` or ``steps.generate.code``.
    """

    trigger: dict[str, Any] = field(default_factory=dict)
    steps: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)

    def as_mapping(self) -> dict[str, Any]:
        mapping: dict[str, Any] = {}
        mapping.update(self.params)
        mapping.update(self.trigger)
        mapping.update(self.steps)
        mapping.update(trigger=self.trigger, steps=self.steps, params=self.params)
        return mapping

    def with_step(self, name: str, output: Any) -> "LayeredContext":
        """A copy with one more step output recorded."""
        return LayeredContext(
            trigger=self.trigger, steps={**self.steps, name: output}, params=self.params
        )


def _is_missing(value: Any) -> bool:
    return isinstance(value, jinja2.Undefined) or value is None


def _uppercase(value: Any) -> str:
    return "" if _is_missing(value) else str(value).upper()


def _lowercase(value: Any) -> str:
    return "" if _is_missing(value) else str(value).lower()


def _truncate_text(value: Any, length: int = 100) -> str:
    text = "" if _is_missing(value) else str(value)
    if len(text) <= length:
        return text
    return text[: max(length - 3, 0)] + "..."


def _default_if_empty(value: Any, default: Any = "") -> Any:
    if _is_missing(value) or value == "" or value == [] or value == {}:
        return default
    return value


def _json(value: Any) -> str:
    if isinstance(value, jinja2.Undefined):
        return "null"
    return json.dumps(value, default=str)


def _first_item(value: Any) -> Any:
    if _is_missing(value) or not isinstance(value, list | tuple) or not value:
        return ""
    return value[0]


def _last_item(value: Any) -> Any:
    if _is_missing(value) or not isinstance(value, list | tuple) or not value:
        return ""
    return value[-1]


def _count(value: Any) -> int:
    if _is_missing(value):
        return 0
    if isinstance(value, list | tuple | dict | str):
        return len(value)
    return 1


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _date(value: Any, fmt: str = "%Y-%m-%d") -> str:
    parsed = _as_datetime(value)
    if parsed is None:
        return "" if _is_missing(value) else str(value)
    return parsed.strftime(fmt)


class TemplateResolver:
    """Renders templates against a LayeredContext in a Jinja2 sandbox."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self.env = SandboxedEnvironment(
            undefined=jinja2.ChainableUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            finalize=lambda value: "" if value is None else value,
        )
        self.env.filters.update(
            uppercase=_uppercase,
            lowercase=_lowercase,
            truncate_text=_truncate_text,
            default_if_empty=_default_if_empty,
            json=_json,
            first_item=_first_item,
            last_item=_last_item,
            count=_count,
            date=_date,
            relative=self._relative,
        )

    def _relative(self, value: Any) -> str:
        parsed = _as_datetime(value)
        if parsed is None:
            return "" if _is_missing(value) else str(value)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(UTC).replace(tzinfo=None)

        seconds = int((self.clock() - parsed).total_seconds())
        suffix = "ago" if seconds >= 0 else "from now"
        seconds = abs(seconds)
        for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
            if seconds >= size:
                amount = seconds // size
                return f"{amount} {unit}{'s' if amount != 1 else ''} {suffix}"
        return "just now"

    def resolve(self, template: str, context: LayeredContext) -> str:
        """Render ``template``; missing references render as an empty string.

        A template that fails to parse or render is returned unchanged.
        """
        if "{{" not in template and "{%" not in template:
            return template
        try:
            return self.env.from_string(template).render(context.as_mapping())
        except jinja2.TemplateError as e:
            logger.warning(f"Could not resolve template {template[:80]!r}: {e}")
            return template

    def resolve_deep(self, value: Any, context: LayeredContext) -> Any:
        """Resolve every string inside nested dicts and lists."""
        if isinstance(value, str):
            return self.resolve(value, context)
        if isinstance(value, dict):
            return {key: self.resolve_deep(item, context) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_deep(item, context) for item in value]
        return value


_default_resolver = TemplateResolver()


def resolve(template: str, context: LayeredContext) -> str:
    """Render a template with the module-level resolver."""
    return _default_resolver.resolve(template, context)


def resolve_deep(value: Any, context: LayeredContext) -> Any:
    return _default_resolver.resolve_deep(value, context)
