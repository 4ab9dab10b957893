# =============================================================================
# LLM Router — Single Entry Point for Every AI Call
# =============================================================================
#
# Every text, structured, tool-augmented and embedding request goes through
# LLMRouter, which wraps the provider adapter call in cost governance:
#
#   1. check_budget_strict()   — BudgetExceeded stops the call here
#   2. pre-flight guardrail    — refuse models priced above the ceiling
#                                before paying for a request
#   3. adapter call            — provider / transport failures become
#                                ProviderCallError (retryable)
#   4. track_usage()           — guardrail on the actual usage, then one
#                                ledger row (write failures are logged)
#
# DESIGN DECISION: Halting errors (GatewayHalt) are never wrapped or
# caught here. ProviderCallError is the only thing generate_with_fallback()
# reacts to.
#
# DESIGN DECISION: Adapters are built lazily, one per provider, and cached.
# Building one reads credentials; a router that only ever talks to Workers
# AI never needs an OpenAI key.
#
# ARCHITECTURE:
#   LLMRouter
#   ├── PricingResolver   — static + dynamic rates (owns the TTL cache)
#   ├── BudgetTracker     — ceiling check, cost ledger
#   ├── ProviderAdapter×4 — OpenAI, Anthropic, Gemini, Workers AI
#   └── Embedder          — openai/ compat or Workers AI native
#   get_router()          — lazy singleton reading from settings
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from ai_gateway.config import Settings, get_settings
from ai_gateway.errors import GatewayError, ProviderCallError
from ai_gateway.services.budget import BudgetTracker
from ai_gateway.services.embedder import Embedder
from ai_gateway.services.ledger import SqlLedgerStore
from ai_gateway.services.pricing import guard_check
from ai_gateway.services.pricing_cache import PricingResolver
from ai_gateway.services.providers import (
    AdapterResult,
    GenerationOptions,
    Provider,
    ProviderAdapter,
    StructuredWithToolsResponse,
    TextWithToolsResponse,
    UsageContext,
    create_adapter,
    normalize_provider,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

AdapterCall = Callable[[ProviderAdapter, GenerationOptions], Awaitable[AdapterResult[T]]]


class LLMRouter:
    """
    Provider-agnostic AI calls with budget and guardrail enforcement.

    Args:
        settings: Gateway settings (defaults to the cached instance).
        budget: Budget tracker. Built over a SqlLedgerStore when omitted.
        pricing: Rate resolver. Shared with the budget tracker when both
            are built here.
        adapters: Pre-built adapters by provider (tests, custom clients).
        embedder: Embedding service.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        budget: BudgetTracker | None = None,
        pricing: PricingResolver | None = None,
        adapters: dict[Provider, ProviderAdapter] | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.pricing = pricing or PricingResolver(settings=self._settings)
        if budget is None:
            store = SqlLedgerStore()
            budget = BudgetTracker(store, store, self.pricing, self._settings)
        self.budget = budget
        self._adapters: dict[Provider, ProviderAdapter] = dict(adapters or {})
        self._embedder = embedder

    # -------------------------------------------------------------------------
    # Provider selection
    # -------------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def default_provider(self) -> Provider:
        return normalize_provider(self._settings.ai_default_provider)

    def resolve_provider(self, provider: str | Provider | None = None) -> Provider:
        if provider is None:
            return self.default_provider
        return normalize_provider(provider)

    def get_adapter(self, provider: str | Provider | None = None) -> ProviderAdapter:
        """Cached adapter for a provider, built on first use."""
        resolved = self.resolve_provider(provider)
        if resolved not in self._adapters:
            self._adapters[resolved] = create_adapter(resolved, self._settings)
        return self._adapters[resolved]

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = Embedder(settings=self._settings)
        return self._embedder

    # -------------------------------------------------------------------------
    # Governance wrapper
    # -------------------------------------------------------------------------

    async def _preflight(self, model: str, provider: Provider) -> None:
        await self.budget.check_budget_strict()
        rate = await self.pricing.resolve_rate(model, provider.value)
        guard_check(model, rate, False, self.budget.guardrails)

    async def _track(
        self,
        result: AdapterResult[Any],
        provider: Provider,
        options: GenerationOptions,
        context: UsageContext | None,
    ) -> None:
        ctx = context or UsageContext()
        usage = result.usage
        await self.budget.track_usage(
            result.model,
            usage.input_tokens,
            usage.output_tokens,
            session_id=ctx.session_id,
            document_id=ctx.document_id,
            workflow_name=ctx.workflow_name,
            cache_read_tokens=usage.cache_read_tokens,
            cache_write_tokens=usage.cache_write_tokens,
            cache_lifetime=options.cache_lifetime,
            provider=provider.value,
        )

    async def _execute(
        self,
        operation: str,
        provider: str | Provider | None,
        options: GenerationOptions | None,
        context: UsageContext | None,
        call: AdapterCall[T],
        structured: bool = False,
    ) -> T:
        resolved = self.resolve_provider(provider)
        opts = options or GenerationOptions()
        adapter = self.get_adapter(resolved)
        # Workers AI runs structured and tool calls on its structuring model
        planned_model = adapter.model_for(opts, structured=structured)

        await self._preflight(planned_model, resolved)

        try:
            result = await call(adapter, opts)
        except GatewayError:
            raise
        except Exception as exc:
            logger.error(
                "%s failed (provider=%s, model=%s): %s",
                operation, resolved.value, planned_model, exc,
            )
            raise ProviderCallError(resolved.value, planned_model, exc) from exc

        await self._track(result, resolved, opts, context)
        return result.value

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def generate_text(
        self,
        prompt: str,
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
        context: UsageContext | None = None,
        provider: str | Provider | None = None,
    ) -> str:
        """Plain text completion."""
        return await self._execute(
            "generate_text", provider, options, context,
            lambda adapter, opts: adapter.generate_text(prompt, system_prompt, opts),
        )

    async def generate_structured_response(
        self,
        prompt: str,
        schema: dict[str, Any],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
        context: UsageContext | None = None,
        provider: str | Provider | None = None,
    ) -> dict[str, Any]:
        """
        Completion constrained to a JSON schema.

        Raises:
            StructuredOutputParseError: If the model's output is not a JSON object.
        """
        return await self._execute(
            "generate_structured_response", provider, options, context,
            lambda adapter, opts: adapter.generate_structured(
                prompt, schema, system_prompt, opts,
            ),
            structured=True,
        )

    async def generate_text_with_tools(
        self,
        prompt: str,
        tools: list[dict[str, Any]],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
        context: UsageContext | None = None,
        provider: str | Provider | None = None,
    ) -> TextWithToolsResponse:
        """Text completion that may request tool calls (OpenAI-shaped tools)."""
        return await self._execute(
            "generate_text_with_tools", provider, options, context,
            lambda adapter, opts: adapter.generate_text_with_tools(
                prompt, tools, system_prompt, opts,
            ),
            structured=True,
        )

    async def generate_structured_with_tools(
        self,
        prompt: str,
        schema: dict[str, Any],
        tools: list[dict[str, Any]],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
        context: UsageContext | None = None,
        provider: str | Provider | None = None,
    ) -> StructuredWithToolsResponse:
        """Structured completion that may also request tool calls."""
        return await self._execute(
            "generate_structured_with_tools", provider, options, context,
            lambda adapter, opts: adapter.generate_structured_with_tools(
                prompt, schema, tools, system_prompt, opts,
            ),
            structured=True,
        )

    async def generate_with_fallback(
        self,
        prompt: str,
        system_prompt: str | None = None,
        schema: dict[str, Any] | None = None,
        options: GenerationOptions | None = None,
        context: UsageContext | None = None,
        provider: str | Provider | None = None,
        fallback_model: str | None = None,
        fallback_provider: str | Provider = Provider.WORKERS_AI,
    ) -> str | dict[str, Any]:
        """
        Text (or structured, when `schema` is given) with one fallback attempt.

        Only ProviderCallError triggers the fallback. Budget and guardrail
        stops propagate from the first attempt unchanged.
        """
        async def attempt(
            opts: GenerationOptions | None, target: str | Provider | None,
        ) -> str | dict[str, Any]:
            if schema is not None:
                return await self.generate_structured_response(
                    prompt, schema, system_prompt, opts, context, target,
                )
            return await self.generate_text(prompt, system_prompt, opts, context, target)

        try:
            return await attempt(options, provider)
        except ProviderCallError as exc:
            model = fallback_model or self._settings.fallback_model
            logger.warning(
                "Primary model failed (%s), retrying with fallback %s", exc, model,
            )
            base = options or GenerationOptions()
            fallback_options = GenerationOptions(
                model=model,
                temperature=base.temperature,
                max_tokens=base.max_tokens,
                effort=base.effort,
                cache_lifetime=base.cache_lifetime,
            )
            return await attempt(fallback_options, fallback_provider)

    async def generate_embeddings(
        self,
        texts: str | Sequence[str],
        model: str | None = None,
        context: UsageContext | None = None,
    ) -> list[list[float]]:
        """Embeddings in input order. Billed when the provider reports usage."""
        await self.budget.check_budget_strict()
        resolved_model = self.embedder.resolve_model(model)
        try:
            result = await self.embedder.embed(texts, resolved_model)
        except GatewayError:
            raise
        except Exception as exc:
            logger.error("Embedding failed (model=%s): %s", resolved_model, exc)
            raise ProviderCallError(Provider.WORKERS_AI.value, resolved_model, exc) from exc

        if result.input_tokens:
            ctx = context or UsageContext()
            await self.budget.track_usage(
                result.model,
                result.input_tokens,
                0,
                session_id=ctx.session_id,
                document_id=ctx.document_id,
                workflow_name=ctx.workflow_name,
                provider=Provider.WORKERS_AI.value,
            )
        return result.vectors

    async def generate_embedding(
        self,
        text: str,
        model: str | None = None,
        context: UsageContext | None = None,
    ) -> list[float]:
        vectors = await self.generate_embeddings([text], model, context)
        return vectors[0]

    async def verify_api_key(self, provider: str | Provider | None = None) -> bool:
        """True when the provider accepts the configured credentials."""
        try:
            adapter = self.get_adapter(provider)
        except GatewayError as exc:
            logger.error("Cannot verify %s credentials: %s", provider, exc)
            return False
        return await adapter.verify_api_key()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton — one pricing cache and one set of SDK clients per process
_router: LLMRouter | None = None


def get_router() -> LLMRouter:
    """
    Process-wide router configured from settings.

    Uses the SQL ledger store. Tests and embedding applications that need a
    different store construct LLMRouter directly.
    """
    global _router
    if _router is None:
        _router = LLMRouter()
    return _router
