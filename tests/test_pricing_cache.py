# =============================================================================
# Unit Tests — Dynamic Workers AI Pricing (catalog client, TTL cache, resolver)
# =============================================================================
#
# The catalog HTTP API is replaced with httpx.MockTransport; the resolver is
# driven by a fake catalog and a fake clock so TTL expiry is deterministic.
# =============================================================================

from __future__ import annotations

import asyncio

import httpx
import pytest
from pydantic import ValidationError

from ai_gateway.config import Settings
from ai_gateway.services.pricing import FALLBACK_RATE
from ai_gateway.services.pricing_cache import (
    CatalogPrice,
    CloudflareCatalogClient,
    DynamicPricingCache,
    PricingResolver,
    is_platform_native,
    parse_catalog_prices,
    rate_from_catalog_prices,
)

SCOUT = "@cf/meta/llama-4-scout-17b-16e-instruct"
SCOUT_PRICES = [
    CatalogPrice(unit="per M input tokens", price=0.27, currency="USD"),
    CatalogPrice(unit="per M output tokens", price=0.85, currency="USD"),
]


def _run(coro):
    return asyncio.run(coro)


def _settings(**overrides) -> Settings:
    values = {"cloudflare_account_id": "acct", "cloudflare_api_token": "tok"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeCatalog:
    """Returns canned prices per model and records every lookup."""

    def __init__(self, responses: dict) -> None:
        self.responses = responses
        self.calls: list[str] = []

    async def fetch_model_prices(self, model_name: str):
        self.calls.append(model_name)
        return self.responses.get(model_name)


def _resolver(responses: dict, clock: FakeClock | None = None, ttl: float = 3600):
    catalog = FakeCatalog(responses)
    cache = DynamicPricingCache(ttl_seconds=ttl, clock=clock or FakeClock())
    return PricingResolver(catalog=catalog, cache=cache, settings=_settings()), catalog


# ---------------------------------------------------------------------------
# Test: Price parsing
# ---------------------------------------------------------------------------


class TestParseCatalogPrices:
    """The catalog's "price" property comes as a list or a JSON string."""

    def test_list_value(self):
        prices = parse_catalog_prices(
            [{"unit": "per M input tokens", "price": 0.27, "currency": "USD"}]
        )
        assert prices == [CatalogPrice(unit="per M input tokens", price=0.27, currency="USD")]

    def test_json_string_value(self):
        prices = parse_catalog_prices(
            '[{"unit": "per M output tokens", "price": "0.85", "currency": "USD"}]'
        )
        assert prices[0].price == 0.85

    def test_invalid_json_raises(self):
        with pytest.raises(ValidationError):
            parse_catalog_prices("not json")

    def test_non_list_raises(self):
        with pytest.raises(ValidationError):
            parse_catalog_prices({"unit": "per M input tokens"})

    def test_missing_field_raises(self):
        with pytest.raises(ValidationError):
            parse_catalog_prices([{"unit": "per M input tokens", "currency": "USD"}])

    def test_rate_from_prices(self):
        rate = rate_from_catalog_prices(SCOUT, SCOUT_PRICES)
        assert rate.id == SCOUT
        assert rate.provider == "cloudflare"
        assert rate.input == 0.27
        assert rate.output == 0.85

    def test_rate_from_empty_prices(self):
        assert rate_from_catalog_prices(SCOUT, []) is None


# ---------------------------------------------------------------------------
# Test: Cache
# ---------------------------------------------------------------------------


class TestDynamicPricingCache:
    """One timestamp for the whole cache."""

    def test_empty_cache_is_stale(self):
        cache = DynamicPricingCache(clock=FakeClock())
        assert not cache.is_fresh()
        assert cache.get(SCOUT) is None

    def test_put_then_get(self):
        cache = DynamicPricingCache(clock=FakeClock())
        cache.put(SCOUT, SCOUT_PRICES)
        assert cache.get(SCOUT) == SCOUT_PRICES
        assert SCOUT in cache
        assert len(cache) == 1

    def test_expires_after_ttl(self):
        clock = FakeClock()
        cache = DynamicPricingCache(ttl_seconds=60, clock=clock)
        cache.put(SCOUT, SCOUT_PRICES)
        clock.now = 59
        assert cache.get(SCOUT) == SCOUT_PRICES
        clock.now = 60
        assert cache.get(SCOUT) is None
        assert SCOUT not in cache

    def test_any_put_refreshes_every_entry(self):
        clock = FakeClock()
        cache = DynamicPricingCache(ttl_seconds=60, clock=clock)
        cache.put("a", SCOUT_PRICES)
        clock.now = 50
        cache.put("b", [])
        clock.now = 100
        assert cache.get("a") == SCOUT_PRICES

    def test_empty_list_is_a_hit(self):
        cache = DynamicPricingCache(clock=FakeClock())
        cache.put(SCOUT, [])
        assert cache.get(SCOUT) == []
        assert SCOUT in cache

    def test_clear(self):
        cache = DynamicPricingCache(clock=FakeClock())
        cache.put(SCOUT, SCOUT_PRICES)
        cache.clear()
        assert len(cache) == 0
        assert not cache.is_fresh()


# ---------------------------------------------------------------------------
# Test: Resolver
# ---------------------------------------------------------------------------


class TestPricingResolver:
    """Static first, catalog for platform-native models, zero fallback."""

    def test_dynamic_rate_fetched_once(self):
        resolver, catalog = _resolver({SCOUT: SCOUT_PRICES})

        first = _run(resolver.resolve_rate(SCOUT, "workers-ai"))
        second = _run(resolver.resolve_rate(SCOUT, "workers-ai"))

        assert first.input == 0.27
        assert second.output == 0.85
        assert catalog.calls == [SCOUT]

    def test_refetches_after_ttl(self):
        clock = FakeClock()
        resolver, catalog = _resolver({SCOUT: SCOUT_PRICES}, clock=clock, ttl=3600)

        _run(resolver.resolve_rate(SCOUT, "workers-ai"))
        clock.now = 3601
        _run(resolver.resolve_rate(SCOUT, "workers-ai"))

        assert catalog.calls == [SCOUT, SCOUT]

    def test_injected_empty_cache_is_kept(self):
        cache = DynamicPricingCache(clock=FakeClock())
        resolver = PricingResolver(catalog=FakeCatalog({}), cache=cache, settings=_settings())
        assert resolver.cache is cache

    def test_unpriced_model_cached_as_free(self):
        resolver, catalog = _resolver({SCOUT: []})

        assert _run(resolver.resolve_rate(SCOUT, "workers-ai")) is FALLBACK_RATE
        assert _run(resolver.resolve_rate(SCOUT, "workers-ai")) is FALLBACK_RATE
        assert catalog.calls == [SCOUT]

    def test_failed_fetch_not_cached(self):
        resolver, catalog = _resolver({})

        assert _run(resolver.resolve_rate(SCOUT, "workers-ai")) is FALLBACK_RATE
        _run(resolver.resolve_rate(SCOUT, "workers-ai"))
        assert catalog.calls == [SCOUT, SCOUT]

    def test_static_model_never_fetched(self):
        resolver, catalog = _resolver({})
        rate = _run(resolver.resolve_rate("gpt-4o-mini", "openai"))
        assert rate.id == "gpt-4o-mini"
        assert catalog.calls == []

    def test_non_native_unknown_model_not_fetched(self):
        resolver, catalog = _resolver({})
        assert _run(resolver.resolve_rate("mystery-model", "openai")) is FALLBACK_RATE
        assert catalog.calls == []

    def test_routing_prefix_stripped_before_fetch(self):
        resolver, catalog = _resolver({SCOUT: SCOUT_PRICES})
        rate = _run(resolver.resolve_rate(f"workers-ai/{SCOUT}"))
        assert rate.input == 0.27
        assert catalog.calls == [SCOUT]

    def test_cached_lookup_does_not_fetch(self):
        resolver, catalog = _resolver({SCOUT: SCOUT_PRICES})
        assert resolver.resolve_rate_cached(SCOUT, "workers-ai") is FALLBACK_RATE
        assert catalog.calls == []

    def test_platform_native_detection(self):
        assert is_platform_native(SCOUT)
        assert is_platform_native("some-model", "workers-ai")
        assert not is_platform_native("gpt-4o", "openai")


# ---------------------------------------------------------------------------
# Test: Cloudflare catalog client
# ---------------------------------------------------------------------------


def _catalog_payload(properties: list[dict]) -> dict:
    return {"success": True, "result": [{"name": SCOUT, "properties": properties}]}


def _fetch(handler, settings: Settings | None = None):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = CloudflareCatalogClient(
                settings=settings or _settings(), http_client=http,
            )
            return await client.fetch_model_prices(SCOUT)

    return _run(go())


class TestCloudflareCatalogClient:
    """Catalog search over a mocked HTTP transport."""

    def test_returns_prices(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["search"] = request.url.params["search"]
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(
                200,
                json=_catalog_payload([
                    {"property_id": "context_window", "value": "128000"},
                    {
                        "property_id": "price",
                        "value": [
                            {"unit": "per M input tokens", "price": 0.27, "currency": "USD"},
                            {"unit": "per M output tokens", "price": 0.85, "currency": "USD"},
                        ],
                    },
                ]),
            )

        prices = _fetch(handler)

        assert prices == SCOUT_PRICES
        assert seen["path"] == "/client/v4/accounts/acct/ai/models/search"
        assert seen["search"] == SCOUT
        assert seen["auth"] == "Bearer tok"

    def test_model_not_in_results(self):
        def handler(request):
            return httpx.Response(200, json={"result": [{"name": "@cf/other"}]})

        assert _fetch(handler) == []

    def test_model_without_price_property(self):
        def handler(request):
            return httpx.Response(
                200, json=_catalog_payload([{"property_id": "beta", "value": "true"}]),
            )

        assert _fetch(handler) == []

    def test_malformed_price_returns_none(self):
        def handler(request):
            return httpx.Response(
                200, json=_catalog_payload([{"property_id": "price", "value": "{oops"}]),
            )

        assert _fetch(handler) is None

    def test_tier_missing_price_returns_none(self):
        def handler(request):
            return httpx.Response(
                200,
                json=_catalog_payload([
                    {"property_id": "price", "value": [{"unit": "per M input tokens"}]},
                ]),
            )

        assert _fetch(handler) is None

    def test_http_error_returns_none(self):
        def handler(request):
            return httpx.Response(500, json={"success": False})

        assert _fetch(handler) is None

    def test_transport_error_returns_none(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert _fetch(handler) is None

    def test_missing_credentials_skips_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"result": []})

        result = _fetch(handler, _settings(cloudflare_api_token=""))

        assert result is None
        assert calls == []
