# =============================================================================
# Unit Tests — LLM Router (governance around adapter calls)
# =============================================================================
#
# Adapters are in-process fakes; the ledger is InMemoryLedgerStore. Each
# test checks what the router does around the call: budget stop, guardrail,
# error wrapping, fallback and billing.
# =============================================================================

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from ai_gateway.config import Settings
from ai_gateway.errors import (
    BudgetExceeded,
    GatewayConfigError,
    GuardrailViolation,
    ProviderCallError,
    StructuredOutputParseError,
)
from ai_gateway.services.budget import BudgetTracker
from ai_gateway.services.embedder import Embedder
from ai_gateway.services.ledger import CostLogEntry, InMemoryLedgerStore
from ai_gateway.services.llm import LLMRouter
from ai_gateway.services.pricing_cache import DynamicPricingCache, PricingResolver
from ai_gateway.services.providers import (
    AdapterResult,
    GenerationOptions,
    Provider,
    StructuredWithToolsResponse,
    TextWithToolsResponse,
    TokenUsage,
    ToolCall,
    ToolFunction,
    UsageContext,
)

SCHEMA = {"type": "object", "properties": {"message": {"type": "string"}}}


def _run(coro):
    return asyncio.run(coro)


class NoCatalog:
    async def fetch_model_prices(self, model_name):
        return None


class FakeAdapter:
    """Records every call; returns canned values or raises `error`."""

    def __init__(
        self,
        provider: Provider = Provider.OPENAI,
        model: str = "gpt-4o-mini",
        text: str = "hello",
        structured: dict | None = None,
        error: Exception | None = None,
        usage: TokenUsage | None = None,
        structuring_model: str | None = None,
    ) -> None:
        self.provider = provider
        self._model = model
        self._structuring_model = structuring_model
        self._text = text
        self._structured = structured if structured is not None else {"message": "hi"}
        self._error = error
        self._usage = usage or TokenUsage(input_tokens=100, output_tokens=50)
        self.calls: list[tuple[str, GenerationOptions | None]] = []

    @property
    def default_model(self) -> str:
        return self._model

    def model_for(self, options, structured=False):
        if options.model:
            return options.model
        if structured and self._structuring_model:
            return self._structuring_model
        return self._model

    def _result(self, kind: str, options: GenerationOptions | None, value):
        self.calls.append((kind, options))
        if self._error is not None:
            raise self._error
        model = self.model_for(options or GenerationOptions(), structured=kind != "text")
        return AdapterResult(value=value, model=model, usage=self._usage)

    async def generate_text(self, prompt, system_prompt=None, options=None):
        return self._result("text", options, self._text)

    async def generate_structured(self, prompt, schema, system_prompt=None, options=None):
        return self._result("structured", options, dict(self._structured))

    async def generate_text_with_tools(self, prompt, tools, system_prompt=None, options=None):
        call = ToolCall(id="call_0", function=ToolFunction(name="lookup", arguments="{}"))
        return self._result("text_tools", options, TextWithToolsResponse("", [call]))

    async def generate_structured_with_tools(
        self, prompt, schema, tools, system_prompt=None, options=None,
    ):
        return self._result(
            "structured_tools", options, StructuredWithToolsResponse(dict(self._structured)),
        )

    async def verify_api_key(self) -> bool:
        return True


def _router(
    adapters: dict | None = None,
    max_budget: float = 0.0,
    embedder: Embedder | None = None,
    **overrides,
):
    values = {"ai_default_provider": "openai", "max_ai_budget": max_budget}
    values.update(overrides)
    settings = Settings(_env_file=None, **values)
    store = InMemoryLedgerStore()
    pricing = PricingResolver(catalog=NoCatalog(), cache=DynamicPricingCache(), settings=settings)
    budget = BudgetTracker(store, store, pricing, settings)
    if adapters is None:
        adapters = {Provider.OPENAI: FakeAdapter()}
    router = LLMRouter(
        settings=settings, budget=budget, pricing=pricing, adapters=adapters, embedder=embedder,
    )
    return router, store


# ---------------------------------------------------------------------------
# Test: Successful calls are billed
# ---------------------------------------------------------------------------


class TestBilling:
    """Every successful call writes exactly one ledger row."""

    def test_structured_call_end_to_end(self):
        router, store = _router()

        result = _run(router.generate_structured_response(
            "Greet", SCHEMA, context=UsageContext(session_id="s1", workflow_name="greeting"),
        ))

        assert result == {"message": "hi"}
        (row,) = store.costs
        assert row.model == "gpt-4o-mini"
        assert row.cost_micros == 45
        assert row.session_id == "s1"
        assert row.workflow_name == "greeting"

    def test_generate_text(self):
        router, store = _router()
        assert _run(router.generate_text("Hi")) == "hello"
        assert len(store.costs) == 1

    def test_text_with_tools(self):
        router, store = _router()
        response = _run(router.generate_text_with_tools("Q", [{"type": "function"}]))
        assert response.tool_calls[0].function.name == "lookup"
        assert len(store.costs) == 1

    def test_structured_with_tools(self):
        router, store = _router()
        response = _run(router.generate_structured_with_tools("Q", SCHEMA, []))
        assert response.result == {"message": "hi"}
        assert len(store.costs) == 1

    def test_cache_usage_billed(self):
        adapter = FakeAdapter(
            usage=TokenUsage(input_tokens=1_000, output_tokens=0, cache_read_tokens=1_000),
        )
        router, store = _router({Provider.OPENAI: adapter})
        _run(router.generate_text("Hi"))
        # 1000 × $0.15/M + 1000 × $0.075/M
        assert store.costs[0].cost_micros == 225

    def test_explicit_provider(self):
        workers = FakeAdapter(Provider.WORKERS_AI, model="@cf/meta/llama-3.1-8b-instruct")
        router, store = _router({Provider.OPENAI: FakeAdapter(), Provider.WORKERS_AI: workers})

        _run(router.generate_text("Hi", provider="worker-ai"))

        assert len(workers.calls) == 1
        assert store.costs[0].model == "@cf/meta/llama-3.1-8b-instruct"


# ---------------------------------------------------------------------------
# Test: Policy stops
# ---------------------------------------------------------------------------


class TestPolicyStops:
    """Budget and guardrail stops happen before the provider is called."""

    def test_budget_exceeded_blocks_call(self):
        adapter = FakeAdapter()
        router, store = _router({Provider.OPENAI: adapter}, max_budget=1.0)
        _run(store.insert_cost(CostLogEntry("gpt-4o-mini", 0, 0, cost_micros=1_500_000)))

        with pytest.raises(BudgetExceeded):
            _run(router.generate_text("Hi"))

        assert adapter.calls == []
        assert len(store.costs) == 1

    def test_expensive_model_blocked_before_call(self):
        adapter = FakeAdapter()
        router, store = _router({Provider.OPENAI: adapter})

        with pytest.raises(GuardrailViolation):
            _run(router.generate_text("Hi", options=GenerationOptions(model="o1")))

        assert adapter.calls == []
        assert store.costs == []

    def test_structured_call_checks_structuring_model(self):
        adapter = FakeAdapter(
            provider=Provider.WORKERS_AI,
            model="@cf/meta/llama-3.1-8b-instruct",
            structuring_model="o1",
        )
        router, store = _router({Provider.WORKERS_AI: adapter})

        with pytest.raises(GuardrailViolation):
            _run(router.generate_structured_response("Hi", {}, provider="workers-ai"))
        assert adapter.calls == []

        _run(router.generate_text("Hi", provider="workers-ai"))
        assert [kind for kind, _ in adapter.calls] == ["text"]
        assert store.costs[0].model == "@cf/meta/llama-3.1-8b-instruct"

    def test_allowlisted_model_passes(self):
        adapter = FakeAdapter()
        router, store = _router(
            {Provider.OPENAI: adapter}, guardrail_max_input_per_m=1.0,
        )
        _run(router.generate_text("Hi", options=GenerationOptions(model="gpt-4o")))
        assert len(store.costs) == 1

    def test_long_context_guardrail_on_actual_usage(self):
        adapter = FakeAdapter(
            model="claude-opus-4.6",
            usage=TokenUsage(input_tokens=250_000, output_tokens=10),
        )
        router, store = _router({Provider.ANTHROPIC: adapter})

        with pytest.raises(GuardrailViolation) as exc_info:
            _run(router.generate_text("Hi", provider="anthropic"))

        assert exc_info.value.kind == "output"
        assert len(adapter.calls) == 1
        assert store.costs == []


# ---------------------------------------------------------------------------
# Test: Error handling
# ---------------------------------------------------------------------------


class TestErrors:
    """Provider failures are wrapped; gateway errors pass through."""

    def test_provider_failure_wrapped(self):
        cause = ConnectionError("connection reset")
        router, store = _router({Provider.OPENAI: FakeAdapter(error=cause)})

        with pytest.raises(ProviderCallError) as exc_info:
            _run(router.generate_text("Hi"))

        assert exc_info.value.retryable is True
        assert exc_info.value.provider == "openai"
        assert exc_info.value.model == "gpt-4o-mini"
        assert exc_info.value.cause is cause
        assert store.costs == []

    def test_parse_error_not_wrapped(self):
        error = StructuredOutputParseError("bad json", raw="nope")
        router, _ = _router({Provider.OPENAI: FakeAdapter(error=error)})

        with pytest.raises(StructuredOutputParseError):
            _run(router.generate_structured_response("Greet", SCHEMA))

    def test_halt_from_adapter_not_wrapped(self):
        error = BudgetExceeded(1.0, 2.0)
        router, _ = _router({Provider.OPENAI: FakeAdapter(error=error)})

        with pytest.raises(BudgetExceeded):
            _run(router.generate_text("Hi"))


# ---------------------------------------------------------------------------
# Test: Fallback
# ---------------------------------------------------------------------------


class TestFallback:
    """One retry on the fallback model, only for provider failures."""

    def _adapters(self, primary_error=None):
        primary = FakeAdapter(error=primary_error)
        fallback = FakeAdapter(
            Provider.WORKERS_AI, model="@cf/meta/llama-3.3-70b-instruct-fp8-fast",
            text="fallback text",
        )
        return primary, fallback, {Provider.OPENAI: primary, Provider.WORKERS_AI: fallback}

    def test_primary_success_skips_fallback(self):
        primary, fallback, adapters = self._adapters()
        router, _ = _router(adapters)

        assert _run(router.generate_with_fallback("Hi")) == "hello"
        assert fallback.calls == []

    def test_falls_back_on_provider_error(self):
        primary, fallback, adapters = self._adapters(RuntimeError("503"))
        router, store = _router(adapters)

        result = _run(router.generate_with_fallback(
            "Hi", options=GenerationOptions(temperature=0.3),
        ))

        assert result == "fallback text"
        (_, options), = fallback.calls
        assert options.model == "@cf/meta/llama-3.1-8b-instruct"
        assert options.temperature == 0.3
        (row,) = store.costs
        assert row.model == "@cf/meta/llama-3.1-8b-instruct"
        # 150 tokens × $0.06/M
        assert row.cost_micros == 9

    def test_fallback_model_override(self):
        primary, fallback, adapters = self._adapters(RuntimeError("503"))
        router, _ = _router(adapters)

        _run(router.generate_with_fallback("Hi", fallback_model="@cf/custom/model"))

        assert fallback.calls[0][1].model == "@cf/custom/model"

    def test_structured_fallback(self):
        primary, fallback, adapters = self._adapters(RuntimeError("503"))
        router, _ = _router(adapters)

        result = _run(router.generate_with_fallback("Greet", schema=SCHEMA))

        assert result == {"message": "hi"}
        assert fallback.calls[0][0] == "structured"

    def test_budget_stop_does_not_fall_back(self):
        primary, fallback, adapters = self._adapters()
        router, store = _router(adapters, max_budget=1.0)
        _run(store.insert_cost(CostLogEntry("gpt-4o-mini", 0, 0, cost_micros=1_500_000)))

        with pytest.raises(BudgetExceeded):
            _run(router.generate_with_fallback("Hi"))

        assert primary.calls == []
        assert fallback.calls == []

    def test_fallback_failure_propagates(self):
        primary = FakeAdapter(error=RuntimeError("503"))
        fallback = FakeAdapter(Provider.WORKERS_AI, error=RuntimeError("also down"))
        router, _ = _router({Provider.OPENAI: primary, Provider.WORKERS_AI: fallback})

        with pytest.raises(ProviderCallError) as exc_info:
            _run(router.generate_with_fallback("Hi"))

        assert exc_info.value.provider == "workers-ai"


# ---------------------------------------------------------------------------
# Test: Embeddings
# ---------------------------------------------------------------------------


def _embedding_client(prompt_tokens: int | None = 10):
    response = SimpleNamespace(
        data=[
            SimpleNamespace(index=1, embedding=[0.2, 0.2]),
            SimpleNamespace(index=0, embedding=[0.1, 0.1]),
        ],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens) if prompt_tokens else None,
    )
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=response)
    return client


def _embedding_router(client, model="openai/text-embedding-3-small", **kwargs):
    settings = Settings(_env_file=None, default_model_embedding=model)
    embedder = Embedder(settings=settings, openai_client=client)
    return _router(embedder=embedder, default_model_embedding=model, **kwargs)


class TestEmbeddings:
    """Embeddings go through the same budget and ledger."""

    def test_vectors_in_input_order_and_billed(self):
        client = _embedding_client()
        router, store = _embedding_router(client)

        vectors = _run(router.generate_embeddings(["a", "b"], context=UsageContext(session_id="s")))

        assert vectors == [[0.1, 0.1], [0.2, 0.2]]
        assert client.embeddings.create.call_args.kwargs == {
            "model": "openai/text-embedding-3-small",
            "input": ["a", "b"],
        }
        (row,) = store.costs
        # 10 tokens × $0.15/M, rounded up
        assert row.cost_micros == 2
        assert row.session_id == "s"

    def test_no_usage_no_row(self):
        router, store = _embedding_router(_embedding_client(prompt_tokens=None))
        _run(router.generate_embeddings(["a", "b"]))
        assert store.costs == []

    def test_single_embedding(self):
        client = _embedding_client()
        client.embeddings.create.return_value = SimpleNamespace(
            data=[SimpleNamespace(index=0, embedding=[0.5])], usage=None,
        )
        router, _ = _embedding_router(client)

        assert _run(router.generate_embedding("a")) == [0.5]

    def test_missing_model_raises(self):
        router, _ = _embedding_router(_embedding_client(), model="")
        with pytest.raises(GatewayConfigError):
            _run(router.generate_embeddings(["a"]))

    def test_budget_checked_first(self):
        client = _embedding_client()
        router, store = _embedding_router(client, max_budget=1.0)
        _run(store.insert_cost(CostLogEntry("x", 0, 0, cost_micros=1_000_000)))

        with pytest.raises(BudgetExceeded):
            _run(router.generate_embeddings(["a"]))

        client.embeddings.create.assert_not_called()

    def test_failure_wrapped(self):
        client = _embedding_client()
        client.embeddings.create.side_effect = RuntimeError("timeout")
        router, _ = _embedding_router(client)

        with pytest.raises(ProviderCallError):
            _run(router.generate_embeddings(["a"]))


# ---------------------------------------------------------------------------
# Test: Adapters & credentials
# ---------------------------------------------------------------------------


class TestAdapters:
    """Lazy adapter construction and key verification."""

    def test_default_provider_from_settings(self):
        router, _ = _router()
        assert router.default_provider is Provider.OPENAI

    def test_adapter_built_once(self):
        router, _ = _router(
            adapters={},
            cloudflare_account_id="acct",
            ai_gateway_name="gw",
            cloudflare_api_token="tok",
        )
        first = router.get_adapter("workers-ai")
        assert router.get_adapter("cloudflare") is first

    def test_verify_api_key(self):
        router, _ = _router()
        assert _run(router.verify_api_key("openai")) is True

    def test_verify_api_key_without_credentials(self):
        router, _ = _router(adapters={}, anthropic_api_key="")
        assert _run(router.verify_api_key("anthropic")) is False
