# =============================================================================
# Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes returned to callers of the budget and diagnostics operations.
#
# DESIGN DECISION: Separate response models from ledger records.
# Records carry integer micro-dollars; responses expose dollars, which is
# what dashboards and admin tooling display.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, Field


class BudgetStatus(BaseModel):
    """Spend position of the current budget epoch."""

    limit: float = Field(description="MAX_AI_BUDGET in USD (0 = unlimited)")
    spent: float = Field(description="USD spent since the last reset")
    remaining: float = Field(description="max(0, limit - spent)")
    percent_used: float = Field(
        description="spent / limit * 100, or 0 when no limit is configured",
    )
    last_reset: datetime | None = Field(
        default=None,
        description="Timestamp of the most recent reset event, if any",
    )


class HealthCheckResult(BaseModel):
    """Outcome of one diagnostic sub-check."""

    name: str
    status: str = Field(description="OK, FAILURE or SKIPPED")
    latency_ms: int = 0
    detail: str | None = None
    error: str | None = None


class HealthReport(BaseModel):
    """Aggregated diagnostics. `status` is OK only when nothing failed."""

    status: str
    version: str
    checks: list[HealthCheckResult] = Field(default_factory=list)
