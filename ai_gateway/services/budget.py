# =============================================================================
# Budget Tracker — Spend Ceiling Enforcement & Cost Recording
# =============================================================================
#
# Two responsibilities, called on either side of every provider request:
#
#   BEFORE: check_budget_strict()  — raise BudgetExceeded if the epoch's
#           spend has reached MAX_AI_BUDGET. No network call happens.
#   AFTER:  track_usage()          — resolve the model's rate, run the
#           guardrail, price the call, append one ledger row.
#
# BUDGET EPOCH:
# Spend is summed from the latest `reset` budget event forward (or from the
# beginning of time when no reset exists). A reset never deletes ledger
# rows; it only moves the epoch boundary.
#
# DESIGN DECISION: Ledger write failures are logged and swallowed.
# The provider call has already succeeded and been paid for; failing the
# caller's request would not un-spend the money. The ERROR log carries the
# full entry so the row can be reconciled by hand. There is no retry.
#
# DESIGN DECISION: check-then-write is not atomic. N concurrent calls that
# all pass the check can overshoot the ceiling by up to N in-flight calls.
# The ceiling is a circuit breaker, not an exact cap.
#
# DESIGN DECISION: Guardrail violations are NOT swallowed. They propagate
# out of track_usage() even though the provider call already happened,
# because a model above the price ceiling must stop the workflow.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from ai_gateway.config import Settings, get_settings
from ai_gateway.errors import BudgetExceeded
from ai_gateway.models.responses import BudgetStatus
from ai_gateway.services.ledger import (
    BudgetEventRecord,
    BudgetEventStore,
    CostLedgerStore,
    CostLogEntry,
)
from ai_gateway.services.pricing import GuardrailConfig, calculate_cost_micros
from ai_gateway.services.pricing_cache import PricingResolver

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BudgetTracker:
    """
    Enforces the global AI spending limit and records usage.

    Args:
        cost_store: Where cost rows are appended and summed.
        event_store: Where budget resets are recorded. Usually the same
            object as cost_store.
        pricing: Rate resolver (static + dynamic Workers AI pricing).
        settings: Source of MAX_AI_BUDGET and guardrail thresholds.
        clock: Timestamp source for new rows.
    """

    def __init__(
        self,
        cost_store: CostLedgerStore,
        event_store: BudgetEventStore,
        pricing: PricingResolver | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._costs = cost_store
        self._events = event_store
        self._pricing = pricing or PricingResolver(settings=self._settings)
        self._guardrails = GuardrailConfig.from_settings(self._settings)
        self._clock = clock

    @property
    def limit(self) -> float:
        return self._settings.max_ai_budget

    @property
    def guardrails(self) -> GuardrailConfig:
        return self._guardrails

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    async def track_usage(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        session_id: str | None = None,
        document_id: str | None = None,
        workflow_name: str | None = None,
        cache_read_tokens: int = 0,
        cache_write_tokens: int = 0,
        cache_lifetime: str = "5m",
        provider: str | None = None,
    ) -> int:
        """
        Price a completed call and append it to the ledger.

        Returns:
            The cost in micro-dollars.

        Raises:
            GuardrailViolation: If the model's rate exceeds the ceiling.
                Raised before anything is written.
        """
        rate = await self._pricing.resolve_rate(model, provider)
        cost_micros = calculate_cost_micros(
            model,
            rate,
            input_tokens,
            output_tokens,
            cache_read_tokens=cache_read_tokens,
            cache_write_tokens=cache_write_tokens,
            cache_lifetime=cache_lifetime,
            guardrails=self._guardrails,
        )

        entry = CostLogEntry(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_micros=cost_micros,
            session_id=session_id,
            document_id=document_id,
            workflow_name=workflow_name,
            timestamp=self._clock(),
        )
        try:
            await self._costs.insert_cost(entry)
        except Exception:
            logger.exception("Failed to write AI cost log entry: %r", entry)
            return cost_micros

        logger.debug(
            "Tracked %s: %d in / %d out = %d micros (rate=%s)",
            model, input_tokens, output_tokens, cost_micros, rate.id,
        )
        return cost_micros

    # -------------------------------------------------------------------------
    # Spend
    # -------------------------------------------------------------------------

    async def get_last_reset(self) -> datetime | None:
        event = await self._events.latest_event("reset")
        return event.timestamp if event is not None else None

    async def get_current_spend(self) -> float:
        """USD spent since the latest reset, excluding ignored sessions."""
        since = await self.get_last_reset()
        micros = await self._costs.sum_cost_since(since)
        return micros / 1_000_000

    async def check_budget_strict(self) -> None:
        """
        Raise if the current epoch's spend has reached the limit.

        A limit of 0 or less disables enforcement.

        Raises:
            BudgetExceeded: When spend >= MAX_AI_BUDGET.
        """
        limit = self.limit
        if limit <= 0:
            return

        spent = await self.get_current_spend()
        if spent >= limit:
            logger.error(
                "AI budget exceeded: limit=$%.2f spent=$%.6f", limit, spent
            )
            raise BudgetExceeded(limit, spent)

    async def reset_budget(self, note: str | None = None) -> BudgetEventRecord:
        """Start a new budget epoch. Ledger rows are kept."""
        event = BudgetEventRecord(
            message=note or "Manual Reset",
            event_type="reset",
            threshold=0.0,
            current_spend=0.0,
            timestamp=self._clock(),
        )
        await self._events.insert_event(event)
        logger.info("AI budget reset: %s", event.message)
        return event

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    async def get_budget_status(self) -> BudgetStatus:
        limit = self.limit
        last_reset = await self.get_last_reset()
        spent = (await self._costs.sum_cost_since(last_reset)) / 1_000_000
        return BudgetStatus(
            limit=limit,
            spent=spent,
            remaining=max(0.0, limit - spent),
            percent_used=(spent / limit) * 100 if limit > 0 else 0.0,
            last_reset=last_reset,
        )

    async def get_transactions(
        self, limit: int = 50, offset: int = 0
    ) -> list[CostLogEntry]:
        """Ledger rows from non-ignored sessions, newest first."""
        return await self._costs.list_costs(limit=limit, offset=offset)
