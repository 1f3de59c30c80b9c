"""Default scoring of sample runs."""

import json

from remedy.clients.base import Evaluation, ExecutionResult, Scorer
from remedy.plans.models import TransformationPlan


class PassRateScorer(Scorer):
    """Accuracy is the fraction of checked sample rows that passed validation."""

    async def score(
        self, plan: TransformationPlan, result: ExecutionResult
    ) -> Evaluation:
        total = result.rows_checked
        if total == 0:
            return Evaluation(
                accuracy=None,
                notes="Sample was empty; nothing to validate",
                issues_found=["No rows were available in the sample"],
            )

        accuracy = result.rows_succeeded / total
        issues: list[str] = []
        improvements: list[str] = []

        if result.rows_failed:
            issues.append(
                f"{result.rows_failed} of {total} sample rows failed validation"
            )
            for row in result.failures[:3]:
                issues.append(f"Failing row: {json.dumps(row, default=str)}")
            improvements.append(
                "Handle the failing rows shown above so they satisfy the "
                "expected result"
            )

        notes = (
            f"{result.rows_succeeded}/{total} sample rows passed "
            f"({accuracy:.1%}, threshold {plan.accuracy_threshold:.0%})"
        )
        return Evaluation(
            accuracy=accuracy,
            notes=notes,
            issues_found=issues,
            improvements_suggested=improvements,
        )
