# =============================================================================
# Gateway Errors
# =============================================================================
#
# Two families:
#
#   GatewayHalt        — the call must not proceed and must not be retried.
#   ├── GuardrailViolation  (model price above the configured ceiling)
#   └── BudgetExceeded      (epoch spend has reached MAX_AI_BUDGET)
#
#   Recoverable        — the caller may retry or fall back.
#   ├── ProviderCallError          (network / provider / auth failure)
#   ├── StructuredOutputParseError (model returned non-JSON or no tool call)
#   └── GatewayConfigError         (missing key, account id, gateway name)
#
# DESIGN DECISION: Halting errors are never wrapped by the router. Code that
# catches ProviderCallError for retries can therefore never swallow a
# budget or guardrail stop by accident.
#
# Pricing fetch failures and ledger write failures are not exceptions at
# all: they are logged by the component that hit them and execution
# continues.
# =============================================================================

from __future__ import annotations


class GatewayError(Exception):
    """Base class for every error raised by the gateway."""

    retryable: bool = False


# ---------------------------------------------------------------------------
# Halting errors
# ---------------------------------------------------------------------------


class GatewayHalt(GatewayError):
    """A policy stop. Propagates unchanged through every layer."""


class GuardrailViolation(GatewayHalt):
    """Raised when a model's per-1M-token price exceeds the ceiling."""

    def __init__(
        self,
        model_id: str,
        price: float,
        threshold: float,
        kind: str,
    ) -> None:
        self.model_id = model_id
        self.price = price
        self.threshold = threshold
        self.kind = kind
        super().__init__(
            f"COST GUARDRAIL TRIGGERED: Model '{model_id}' costs ${price}/M "
            f"for {kind}, which exceeds your safety limit of ${threshold}/M."
        )


class BudgetExceeded(GatewayHalt):
    """Raised when spend in the current budget epoch has reached the limit."""

    def __init__(self, limit: float, spent: float) -> None:
        self.limit = limit
        self.spent = spent
        super().__init__(
            f"AI Budget Exceeded: Limit ${limit:.2f}, Used ${spent:.4f}. "
            "Please reset budget to continue."
        )


# ---------------------------------------------------------------------------
# Recoverable errors
# ---------------------------------------------------------------------------


class ProviderCallError(GatewayError):
    """A provider request failed (transport, HTTP status, SDK error)."""

    retryable = True

    def __init__(
        self,
        provider: str,
        model: str,
        cause: BaseException | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{provider} call failed for model '{model}'{detail}")


class StructuredOutputParseError(GatewayError):
    """The model's structured response could not be parsed."""

    def __init__(self, message: str, raw: str | None = None) -> None:
        self.raw = raw
        if raw is not None:
            excerpt = raw if len(raw) <= 200 else raw[:200] + "..."
            message = f"{message} (raw: {excerpt!r})"
        super().__init__(message)


class GatewayConfigError(GatewayError, ValueError):
    """Required configuration (API key, account id, gateway name) is missing."""
