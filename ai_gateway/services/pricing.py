# =============================================================================
# Pricing Registry — Static Rates, Guardrails & Cost Calculation
# =============================================================================
#
# Maps model ids → USD per 1M tokens (input, output, long-context tier,
# cache read/write). Every billed call passes through calculate_cost_micros()
# which runs the guardrail check FIRST, then prices the call.
#
# DESIGN DECISION: Rates stored as USD per 1M tokens (the unit every
# provider publishes). One token at $X/M costs X micro-dollars, so
#   cost_micros = tokens * rate_per_m
# needs no division at all. The sum is computed in Decimal on the string
# form of each rate and rounded UP once, so 100 tokens at $0.15/M is
# exactly 15 micros, never 15.000000000000002 → 16.
#
# DESIGN DECISION: Unknown models price at ZERO (workers-ai-fallback)
# rather than None. The ledger must always get a row, and the only models
# that reach the fallback are platform-native models without catalog
# pricing, which are free or near-free.
#
# DESIGN DECISION: Long-context tier is selected by input size alone
# (> 200,000 tokens), the threshold every tiered provider uses.
#
# Source: Provider pricing pages as of February 2026.
# Update PRICING_CATALOG when prices change.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, Decimal

from ai_gateway.errors import GuardrailViolation

logger = logging.getLogger(__name__)

LONG_CONTEXT_THRESHOLD = 200_000

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelRate:
    """Per-1M-token prices for a model (USD)."""

    id: str
    provider: str                       # anthropic | google | openai | cloudflare
    name: str
    input: float
    output: float
    input_long: float | None = None     # Active when input tokens > 200K
    output_long: float | None = None
    cache_read: float = 0.0
    cache_write_5m: float | None = None  # Anthropic only
    cache_write_1h: float | None = None  # Anthropic only
    is_preview: bool = False

    def input_rate(self, is_long_context: bool) -> float:
        if is_long_context and self.input_long:
            return self.input_long
        return self.input

    def output_rate(self, is_long_context: bool) -> float:
        if is_long_context and self.output_long:
            return self.output_long
        return self.output


@dataclass(frozen=True)
class GuardrailConfig:
    """Price ceilings (USD per 1M tokens) and the models exempt from them."""

    max_input_price_per_m: float = 10.00
    max_output_price_per_m: float = 30.00
    allowlist: frozenset[str] = field(
        default_factory=lambda: frozenset({"gpt-4o", "gemini-3-pro-preview"})
    )

    @classmethod
    def from_settings(cls, settings) -> GuardrailConfig:
        return cls(
            max_input_price_per_m=settings.guardrail_max_input_per_m,
            max_output_price_per_m=settings.guardrail_max_output_per_m,
            allowlist=frozenset(settings.guardrail_allowlist),
        )


DEFAULT_GUARDRAILS = GuardrailConfig()


@dataclass(frozen=True)
class CostBreakdown:
    """Itemised cost of one call, in micro-dollars (unrounded)."""

    input: Decimal
    output: Decimal
    cache: Decimal
    is_long_context: bool

    @property
    def total_micros(self) -> int:
        total = self.input + self.output + self.cache
        return int(total.to_integral_value(rounding=ROUND_CEILING))

    @property
    def total_usd(self) -> float:
        return self.total_micros / 1_000_000


# ---------------------------------------------------------------------------
# Pricing Catalog
# ---------------------------------------------------------------------------

_CATALOG_ENTRIES: tuple[ModelRate, ...] = (
    # --- Anthropic ---
    ModelRate(
        "claude-opus-4.6", "anthropic", "Claude Opus 4.6", 5.00, 25.00,
        input_long=10.00, output_long=37.50,
        cache_write_5m=6.25, cache_write_1h=10.00, cache_read=0.50,
    ),
    ModelRate(
        "claude-opus-4.5", "anthropic", "Claude Opus 4.5", 5.00, 25.00,
        cache_write_5m=6.25, cache_write_1h=10.00, cache_read=0.50,
    ),
    ModelRate(
        "claude-opus-4.1", "anthropic", "Claude Opus 4.1", 15.00, 75.00,
        cache_write_5m=18.75, cache_write_1h=30.00, cache_read=1.50,
    ),
    ModelRate(
        "claude-sonnet-4.5", "anthropic", "Claude Sonnet 4.5", 3.00, 15.00,
        input_long=6.00, output_long=22.50,
        cache_write_5m=3.75, cache_write_1h=6.00, cache_read=0.30,
    ),
    ModelRate(
        "claude-sonnet-3.7", "anthropic", "Claude Sonnet 3.7", 3.00, 15.00,
        cache_write_5m=3.75, cache_write_1h=6.00, cache_read=0.30,
    ),
    ModelRate(
        "claude-haiku-4.5", "anthropic", "Claude Haiku 4.5", 1.00, 5.00,
        cache_write_5m=1.25, cache_write_1h=2.00, cache_read=0.10,
    ),
    ModelRate(
        "claude-haiku-3.5", "anthropic", "Claude Haiku 3.5", 0.80, 4.00,
        cache_write_5m=1.00, cache_write_1h=1.60, cache_read=0.08,
    ),
    # --- Google ---
    ModelRate(
        "gemini-3-pro-preview", "google", "Gemini 3 Pro (Preview)", 2.00, 12.00,
        input_long=4.00, output_long=18.00, cache_read=0.20, is_preview=True,
    ),
    ModelRate(
        "gemini-3-flash-preview", "google", "Gemini 3 Flash (Preview)", 0.50, 3.00,
        cache_read=0.05, is_preview=True,
    ),
    ModelRate(
        "gemini-2.5-pro", "google", "Gemini 2.5 Pro", 1.25, 10.00,
        input_long=2.50, output_long=15.00, cache_read=0.125,
    ),
    ModelRate(
        "gemini-2.5-flash", "google", "Gemini 2.5 Flash", 0.30, 2.50,
        cache_read=0.03,
    ),
    ModelRate(
        "gemini-2.5-flash-lite", "google", "Gemini 2.5 Flash-Lite", 0.10, 0.40,
        cache_read=0.01,
    ),
    # --- OpenAI ---
    ModelRate("o1", "openai", "o1", 15.00, 60.00, cache_read=7.50),
    ModelRate("o1-mini", "openai", "o1-mini", 1.10, 4.40, cache_read=0.55),
    ModelRate("gpt-4o", "openai", "GPT-4o", 2.50, 10.00, cache_read=1.25),
    ModelRate("gpt-4o-mini", "openai", "GPT-4o mini", 0.15, 0.60, cache_read=0.075),
    # --- Cloudflare Workers AI ---
    ModelRate(
        "@cf/meta/llama-3.3-70b-instruct-fp8-fast", "cloudflare",
        "Llama 3.3 70B (fp8 fast)", 0.30, 0.60,
    ),
    ModelRate(
        "@cf/meta/llama-3.1-8b-instruct", "cloudflare",
        "Llama 3.1 8B", 0.06, 0.06,
    ),
)

PRICING_CATALOG: dict[str, ModelRate] = {r.id: r for r in _CATALOG_ENTRIES}

FALLBACK_RATE = ModelRate(
    id="workers-ai-fallback",
    provider="cloudflare",
    name="Workers AI Default",
    input=0.0,
    output=0.0,
)

# ---------------------------------------------------------------------------
# Aliases
# ---------------------------------------------------------------------------
# Substring → catalog id. When several keys match, the LONGEST wins, so
# "gpt-4o-mini-2024-07-18" prices as gpt-4o-mini, not gpt-4o, and
# "o1-mini" never falls into "o1". A bare family name ("opus", "sonnet",
# "haiku") maps to the most expensive member of that family.
# ---------------------------------------------------------------------------

MODEL_ALIASES: dict[str, str] = {
    "gpt-4.1-mini": "gpt-4o-mini",
    "gpt-4o-mini": "gpt-4o-mini",
    "gpt-5-mini": "gpt-4o-mini",
    "gpt-4o": "gpt-4o",
    "o1-mini": "o1-mini",
    "o1": "o1",
    # Anthropic
    "opus": "claude-opus-4.1",
    "sonnet": "claude-sonnet-4.5",
    "claude-3-7-sonnet": "claude-sonnet-3.7",
    "claude-3-5-sonnet": "claude-sonnet-3.7",
    "haiku": "claude-haiku-4.5",
    "claude-3-5-haiku": "claude-haiku-3.5",
    # Google
    "gemini-3-pro": "gemini-3-pro-preview",
    "gemini-3-flash": "gemini-3-flash-preview",
    "gemini-2.5-pro": "gemini-2.5-pro",
    "gemini-2.5-flash": "gemini-2.5-flash",
    "gemini-2.5-flash-lite": "gemini-2.5-flash-lite",
}

ROUTING_PREFIXES = (
    "openai/",
    "anthropic/",
    "google-ai-studio/",
    "gemini/",
    "workers-ai/",
    "models/",
)

_DATE_SUFFIX = re.compile(r"-(?:\d{8}|latest)$")
_DASHED_VERSION = re.compile(r"(\d)-(\d)$")


def strip_routing_prefix(model_id: str) -> str:
    """'google-ai-studio/models/gemini-2.5-pro' → 'gemini-2.5-pro'."""
    stripped = True
    while stripped:
        stripped = False
        for prefix in ROUTING_PREFIXES:
            if model_id.startswith(prefix):
                model_id = model_id[len(prefix):]
                stripped = True
    return model_id


def _canonical_id(model_id: str) -> str:
    """'claude-sonnet-4-5-20250929' → 'claude-sonnet-4.5'."""
    name = _DATE_SUFFIX.sub("", strip_routing_prefix(model_id).lower())
    return _DASHED_VERSION.sub(r"\1.\2", name)


def lookup_static_rate(model_id: str) -> ModelRate | None:
    """
    Resolve a model id against the static catalog.

    Order: exact id, id without routing prefix / date suffix, alias table,
    then the "openai/ prefix → gpt-4o-mini" rule. Returns None when the
    model is not statically priced.
    """
    rate = PRICING_CATALOG.get(model_id)
    if rate is not None:
        return rate

    bare = strip_routing_prefix(model_id)
    for candidate in (bare, _canonical_id(model_id)):
        rate = PRICING_CATALOG.get(candidate)
        if rate is not None:
            return rate

    matches = [key for key in MODEL_ALIASES if key in bare.lower()]
    if matches:
        return PRICING_CATALOG[MODEL_ALIASES[max(matches, key=len)]]

    if model_id.startswith("openai/"):
        return PRICING_CATALOG["gpt-4o-mini"]
    return None


def get_pricing(model_id: str) -> ModelRate:
    """Static rate for a model, or the zero-cost fallback."""
    return lookup_static_rate(model_id) or FALLBACK_RATE


# ---------------------------------------------------------------------------
# Guardrail
# ---------------------------------------------------------------------------


def is_long_context(input_tokens: int) -> bool:
    return input_tokens > LONG_CONTEXT_THRESHOLD


def guard_check(
    model_id: str,
    rate: ModelRate,
    is_long_context: bool = False,
    config: GuardrailConfig = DEFAULT_GUARDRAILS,
) -> None:
    """
    Refuse models priced above the configured ceilings.

    Allowlisted ids (checked against both the requested id and the rate id)
    pass unconditionally. The input price is checked before the output price.

    Raises:
        GuardrailViolation: If either effective rate exceeds its ceiling.
    """
    if model_id in config.allowlist or rate.id in config.allowlist:
        return

    input_price = rate.input_rate(is_long_context)
    if input_price > config.max_input_price_per_m:
        raise GuardrailViolation(
            model_id, input_price, config.max_input_price_per_m, "input"
        )

    output_price = rate.output_rate(is_long_context)
    if output_price > config.max_output_price_per_m:
        raise GuardrailViolation(
            model_id, output_price, config.max_output_price_per_m, "output"
        )


# ---------------------------------------------------------------------------
# Cost Calculation
# ---------------------------------------------------------------------------


def _micros(tokens: int, rate_per_m: float) -> Decimal:
    return Decimal(tokens) * Decimal(str(rate_per_m))


def estimate_cost_breakdown(
    model_id: str,
    rate: ModelRate,
    input_tokens: int,
    output_tokens: int,
    cache_read_tokens: int = 0,
    cache_write_tokens: int = 0,
    cache_lifetime: str = "5m",
    guardrails: GuardrailConfig = DEFAULT_GUARDRAILS,
) -> CostBreakdown:
    """
    Price one call after enforcing the guardrail.

    Args:
        model_id: Model id as requested (used for the allowlist check).
        rate: Resolved rate for the model.
        input_tokens: Prompt tokens, excluding cache reads.
        output_tokens: Completion tokens.
        cache_read_tokens: Tokens served from the provider's prompt cache.
            Google doubles the read rate in long-context mode.
        cache_write_tokens: Tokens written to the prompt cache. Billed for
            Anthropic only, at the 1h or 5m write rate.
        cache_lifetime: "5m" (default) or "1h".

    Raises:
        GuardrailViolation: Before any arithmetic, if the model is too costly.
    """
    long_context = is_long_context(input_tokens)
    guard_check(model_id, rate, long_context, guardrails)

    cache = Decimal(0)
    if cache_read_tokens:
        read_rate = rate.cache_read or 0.0
        if rate.provider == "google" and long_context:
            read_rate *= 2
        cache += _micros(cache_read_tokens, read_rate)

    if cache_write_tokens and rate.provider == "anthropic":
        if cache_lifetime == "1h":
            write_rate = rate.cache_write_1h or 0.0
        else:
            write_rate = rate.cache_write_5m or 0.0
        cache += _micros(cache_write_tokens, write_rate)

    return CostBreakdown(
        input=_micros(input_tokens, rate.input_rate(long_context)),
        output=_micros(output_tokens, rate.output_rate(long_context)),
        cache=cache,
        is_long_context=long_context,
    )


def calculate_cost_micros(
    model_id: str,
    rate: ModelRate,
    input_tokens: int,
    output_tokens: int,
    cache_read_tokens: int = 0,
    cache_write_tokens: int = 0,
    cache_lifetime: str = "5m",
    guardrails: GuardrailConfig = DEFAULT_GUARDRAILS,
) -> int:
    """Total cost of one call in micro-dollars, rounded up."""
    breakdown = estimate_cost_breakdown(
        model_id,
        rate,
        input_tokens,
        output_tokens,
        cache_read_tokens=cache_read_tokens,
        cache_write_tokens=cache_write_tokens,
        cache_lifetime=cache_lifetime,
        guardrails=guardrails,
    )
    total = breakdown.total_micros
    logger.debug(
        "Priced %s: %d in / %d out → %d micros (long_context=%s)",
        model_id, input_tokens, output_tokens, total, breakdown.is_long_context,
    )
    return total