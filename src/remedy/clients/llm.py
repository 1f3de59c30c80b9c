"""LLM-backed code generator and scorer.

Prompts are Jinja2 templates under ``clients/templates``; the model is asked
to answer with a single JSON object.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import jinja2

from remedy.clients.base import (
    CodeGenerator,
    Evaluation,
    ExecutionResult,
    GenerationRequest,
    GenerationResult,
    Scorer,
)
from remedy.clients.scoring import PassRateScorer
from remedy.core.client import RemedyClient
from remedy.error_handling import ErrorContext, GenerationFailure
from remedy.plans.models import TransformationPlan

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"


def _plain(value: Any) -> Any:
    """Round-trip through JSON so templates only see JSON-native values."""
    return json.loads(json.dumps(value, default=str))


class LLMTemplateMixin:
    """Jinja2 prompt rendering and JSON response parsing."""

    _env: jinja2.Environment | None = None

    def _render_template(self, template_name: str, context: dict[str, Any]) -> str:
        if self._env is None:
            self._env = jinja2.Environment(
                loader=jinja2.FileSystemLoader(TEMPLATE_DIR),
                trim_blocks=True,
                lstrip_blocks=True,
            )
        return self._env.get_template(template_name).render(**context)

    @staticmethod
    def _parse_json_response(content: str) -> dict[str, Any]:
        """Extract the JSON object from a response, tolerating code fences.

        Raises:
            ValueError: If no JSON object can be parsed
        """
        text = content.strip()
        if "```" in text:
            start = text.find("```") + 3
            if text[start:].startswith("json"):
                start += 4
            end = text.find("```", start)
            text = text[start:end] if end != -1 else text[start:]

        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end == -1:
            raise ValueError("Response does not contain a JSON object")

        data = json.loads(text[start : end + 1])
        if not isinstance(data, dict):
            raise ValueError("Response JSON is not an object")
        return data


class LLMCodeGenerator(LLMTemplateMixin, CodeGenerator):
    """Generates DuckDB SQL for a transformation request."""

    def __init__(self, client: RemedyClient, timeout: float = 90.0):
        self.client = client
        self.timeout = timeout

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        context = ErrorContext(
            operation="generate",
            plan_id=request.plan_id,
            iteration_number=request.iteration_number,
        )
        prompt = self._render_template(
            "generate_code.j2",
            {
                "description": request.description,
                "kind": request.kind.value,
                "target_asset": request.target_asset,
                "target_column": request.target_column,
                "parameters": _plain(request.parameters.to_dict()),
                "iteration_number": request.iteration_number,
                "previous_code": request.previous_code,
                "previous_error": request.previous_error,
                "issues_found": request.issues_found,
                "improvements_suggested": request.improvements_suggested,
            },
        )

        try:
            message = await asyncio.wait_for(
                self.client.chat(
                    [{"role": "user", "content": prompt}], json_mode=True
                ),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            raise GenerationFailure(
                f"Code generation timed out after {self.timeout} seconds",
                context=context,
                original_error=e,
            ) from e
        except Exception as e:
            raise GenerationFailure(
                f"Code generator unreachable: {e}", context=context, original_error=e
            ) from e

        try:
            data = self._parse_json_response(message.content or "")
        except ValueError as e:
            raise GenerationFailure(
                f"Code generator returned invalid output: {e}",
                context=context,
                original_error=e,
            ) from e

        code = data.get("code")
        if not isinstance(code, str) or not code.strip():
            raise GenerationFailure(
                "Code generator returned no code", context=context
            )

        rollback_code = data.get("rollback_code")
        affected = data.get("affected_columns") or []
        if not affected and request.target_column:
            affected = [request.target_column]

        return GenerationResult(
            code=code.strip(),
            rollback_code=rollback_code.strip()
            if isinstance(rollback_code, str) and rollback_code.strip()
            else None,
            affected_columns=[str(column) for column in affected],
            explanation=str(data.get("explanation") or ""),
        )


class LLMScorer(LLMTemplateMixin, Scorer):
    """Reviews sample runs with an LLM on top of rule-based validation.

    The rule-based pass rate is the fallback whenever the model does not
    produce a usable judgement.
    """

    def __init__(self, client: RemedyClient, timeout: float = 90.0):
        self.client = client
        self.timeout = timeout
        self.fallback = PassRateScorer()

    async def score(
        self, plan: TransformationPlan, result: ExecutionResult
    ) -> Evaluation:
        baseline = await self.fallback.score(plan, result)

        prompt = self._render_template(
            "score_sample.j2",
            {
                "description": plan.description,
                "kind": plan.kind.value,
                "target_asset": plan.target_asset,
                "target_column": plan.target_column,
                "rows_succeeded": result.rows_succeeded,
                "rows_checked": result.rows_checked,
                "sample_before": _plain(result.sample_before),
                "sample_after": _plain(result.sample_after),
                "failures": _plain(result.failures),
            },
        )

        try:
            message = await asyncio.wait_for(
                self.client.chat(
                    [{"role": "user", "content": prompt}], json_mode=True
                ),
                timeout=self.timeout,
            )
            data = self._parse_json_response(message.content or "")
            accuracy = float(data["accuracy"])
            if not 0.0 <= accuracy <= 1.0:
                raise ValueError(f"accuracy {accuracy} out of range")
        except Exception as e:
            logger.warning(f"LLM review of plan {plan.plan_id} failed: {e}")
            return baseline

        # Rule-based failures are hard evidence; never score above them
        if baseline.accuracy is not None:
            accuracy = min(accuracy, baseline.accuracy)

        return Evaluation(
            accuracy=accuracy,
            notes=str(data.get("notes") or baseline.notes),
            issues_found=baseline.issues_found + list(data.get("issues_found") or []),
            improvements_suggested=baseline.improvements_suggested
            + list(data.get("improvements_suggested") or []),
        )
