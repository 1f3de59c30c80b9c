"""Risk assessment for transformation plans."""

from remedy.plans.models import RiskLevel, TransformationKind, TransformationPlan

# Kinds that delete rows or run arbitrary code carry the most blast radius
_KIND_RISK = {
    TransformationKind.DEDUPLICATION: RiskLevel.HIGH,
    TransformationKind.CUSTOM: RiskLevel.HIGH,
    TransformationKind.REFERENTIAL_FIX: RiskLevel.MEDIUM,
    TransformationKind.OUTLIER_CORRECTION: RiskLevel.MEDIUM,
}

LARGE_ROW_COUNT = 10_000


def assess_risk(kind: TransformationKind) -> RiskLevel:
    """Default risk level for a transformation kind."""
    return _KIND_RISK.get(kind, RiskLevel.LOW)


def risk_factors(plan: TransformationPlan) -> list[str]:
    """Human-readable reasons behind a plan's risk, shown in the preview."""
    factors: list[str] = []

    if plan.kind == TransformationKind.DEDUPLICATION:
        factors.append("Deduplication removes rows from the target asset")
    elif plan.kind == TransformationKind.CUSTOM:
        factors.append("Custom transformation logic has not been templated")
    elif plan.kind == TransformationKind.REFERENTIAL_FIX:
        factors.append("Referential fixes change foreign key values")
    elif plan.kind == TransformationKind.OUTLIER_CORRECTION:
        factors.append("Outlier correction overwrites measured values")

    if plan.estimated_row_count and plan.estimated_row_count > LARGE_ROW_COUNT:
        factors.append(f"Affects {plan.estimated_row_count:,} rows")

    if not plan.rollback_code:
        factors.append("No rollback code; reverting relies on the snapshot")

    if plan.final_accuracy is not None and plan.final_accuracy < plan.accuracy_threshold:
        factors.append(
            f"Sample accuracy {plan.final_accuracy:.1%} is below the "
            f"{plan.accuracy_threshold:.0%} threshold"
        )

    if len(plan.affected_columns) > 1:
        factors.append(f"Touches {len(plan.affected_columns)} columns")

    return factors
