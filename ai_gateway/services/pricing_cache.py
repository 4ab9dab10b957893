# =============================================================================
# Dynamic Pricing — Workers AI Catalog Prices with a TTL Cache
# =============================================================================
#
# Workers AI models are not in the static registry; their prices come from
# the Cloudflare model catalog (`/accounts/{id}/ai/models/search`). This
# module fetches them on demand and keeps them in a process-wide cache.
#
# CACHE SEMANTICS:
# - One `cached_at` timestamp for the WHOLE cache. Any successful fill
#   refreshes it, and once it is older than the TTL (default 1 hour) every
#   entry is treated as stale together.
# - A model found in the catalog with no "price" property is cached as an
#   empty list ("known free") so it is not re-fetched on every call.
# - A malformed price value fails pydantic validation, is logged and is
#   NOT cached.
# - Every fetch failure (no credentials, transport error, HTTP error) is
#   logged and degrades to "no dynamic rate". Nothing here raises.
#
# DESIGN DECISION: The cache is an object with an injectable clock and TTL,
# owned by PricingResolver, which the router owns. Tests build their own
# resolver with a fake clock; production shares the router's instance.
#
# RESOLUTION ORDER (PricingResolver.resolve_rate):
#   1. Static catalog (exact, normalised, aliases)   → pricing.py
#   2. Dynamic catalog (Workers AI / @cf/ models only)
#   3. Zero-cost fallback rate
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ai_gateway.config import Settings, get_settings
from ai_gateway.services.pricing import (
    FALLBACK_RATE,
    ModelRate,
    lookup_static_rate,
    strip_routing_prefix,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class CatalogPrice(BaseModel):
    """One pricing tier as published in the Workers AI catalog."""

    unit: str = Field(description='e.g. "per M input tokens"')
    price: float = Field(description="USD")
    currency: str

    model_config = ConfigDict(frozen=True)


_CATALOG_PRICES = TypeAdapter(list[CatalogPrice])


def parse_catalog_prices(value: Any) -> list[CatalogPrice]:
    """
    Parse the `value` of a catalog "price" property.

    The catalog returns either a list of {unit, price, currency} objects or
    the same list JSON-encoded as a string.

    Raises:
        ValidationError: If the value is not a list of well-formed price tiers.
    """
    if isinstance(value, (str, bytes)):
        return _CATALOG_PRICES.validate_json(value)
    return _CATALOG_PRICES.validate_python(value)


def rate_from_catalog_prices(
    model_id: str, prices: list[CatalogPrice]
) -> ModelRate | None:
    """Build a synthetic rate from catalog tiers (None when no tiers)."""
    if not prices:
        return None
    input_price = next((p.price for p in prices if "input" in p.unit), 0.0)
    output_price = next((p.price for p in prices if "output" in p.unit), 0.0)
    return ModelRate(
        id=model_id,
        provider="cloudflare",
        name=model_id,
        input=input_price,
        output=output_price,
    )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class DynamicPricingCache:
    """Model name → catalog price tiers, expiring as a whole."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, list[CatalogPrice]] = {}
        self._cached_at: float | None = None

    def is_fresh(self) -> bool:
        if self._cached_at is None:
            return False
        return self._clock() - self._cached_at < self._ttl

    def get(self, model_name: str) -> list[CatalogPrice] | None:
        """Cached tiers for a model, or None when missing or stale."""
        if not self.is_fresh():
            return None
        return self._entries.get(model_name)

    def put(self, model_name: str, prices: list[CatalogPrice]) -> None:
        self._entries[model_name] = list(prices)
        self._cached_at = self._clock()

    def clear(self) -> None:
        self._entries.clear()
        self._cached_at = None

    def __contains__(self, model_name: str) -> bool:
        return self.get(model_name) is not None

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Catalog Client
# ---------------------------------------------------------------------------


class CatalogClient(Protocol):
    """Anything that can look up one model's price tiers."""

    async def fetch_model_prices(self, model_name: str) -> list[CatalogPrice] | None:
        """
        Return the model's tiers, [] when the model is unpriced, or None
        when nothing should be cached (lookup failed or data malformed).
        """
        ...


class CloudflareCatalogClient:
    """Workers AI model catalog search over the Cloudflare REST API."""

    def __init__(
        self,
        account_id: str | None = None,
        api_token: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or get_settings()
        self._account_id = account_id or cfg.cloudflare_account_id
        self._api_token = api_token or cfg.cloudflare_api_token
        self._base_url = (base_url or cfg.cloudflare_api_base_url).rstrip("/")
        self._http = http_client

    async def _search(self, model_name: str) -> list[dict[str, Any]]:
        url = f"{self._base_url}/accounts/{self._account_id}/ai/models/search"
        headers = {"Authorization": f"Bearer {self._api_token}"}
        params = {"search": model_name}

        if self._http is not None:
            response = await self._http.get(url, headers=headers, params=params)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(url, headers=headers, params=params)
        response.raise_for_status()
        return response.json().get("result") or []

    async def fetch_model_prices(self, model_name: str) -> list[CatalogPrice] | None:
        if not self._api_token or not self._account_id:
            logger.warning(
                "Missing Cloudflare credentials, skipping dynamic pricing fetch for %s",
                model_name,
            )
            return None

        logger.info("Fetching Workers AI pricing for %s", model_name)
        try:
            results = await self._search(model_name)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to fetch Workers AI pricing for %s: %s", model_name, exc)
            return None

        target = next(
            (m for m in results if isinstance(m, dict) and m.get("name") == model_name),
            None,
        )
        if target is None:
            logger.warning("Model '%s' not found in catalog search results", model_name)
            return []

        price_property = next(
            (
                p for p in target.get("properties") or []
                if isinstance(p, dict) and p.get("property_id") == "price"
            ),
            None,
        )
        if price_property is None:
            logger.info("Model '%s' exists but has no pricing property", model_name)
            return []

        try:
            return parse_catalog_prices(price_property.get("value"))
        except ValidationError as exc:
            logger.error("Failed to parse pricing for '%s': %s", model_name, exc)
            return None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


def is_platform_native(model_id: str, provider: str | None = None) -> bool:
    """True for Workers AI models (`@cf/...` ids or the workers-ai provider)."""
    if provider in ("workers-ai", "worker-ai", "cloudflare"):
        return True
    return strip_routing_prefix(model_id).startswith("@cf/")


class PricingResolver:
    """Resolves a model id to a rate: static → dynamic → zero fallback."""

    def __init__(
        self,
        catalog: CatalogClient | None = None,
        cache: DynamicPricingCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or get_settings()
        self.cache = (
            cache if cache is not None
            else DynamicPricingCache(ttl_seconds=cfg.pricing_cache_ttl_seconds)
        )
        self._catalog = catalog or CloudflareCatalogClient(settings=cfg)

    async def ensure_dynamic_pricing(self, model_name: str) -> None:
        """Fill the cache for one model unless a fresh entry exists."""
        if model_name in self.cache:
            return
        prices = await self._catalog.fetch_model_prices(model_name)
        if prices is None:
            return
        self.cache.put(model_name, prices)
        logger.info("Cached pricing for %s: %s", model_name, prices)

    def resolve_rate_cached(self, model_id: str, provider: str | None = None) -> ModelRate:
        """Resolve using only the static catalog and what is already cached."""
        rate = lookup_static_rate(model_id)
        if rate is not None:
            return rate
        if is_platform_native(model_id, provider):
            name = strip_routing_prefix(model_id)
            dynamic = rate_from_catalog_prices(name, self.cache.get(name) or [])
            if dynamic is not None:
                return dynamic
        return FALLBACK_RATE

    async def resolve_rate(self, model_id: str, provider: str | None = None) -> ModelRate:
        """
        Resolve a model's rate, fetching catalog pricing when needed.

        Only platform-native models trigger a catalog fetch. A failed fetch
        silently yields the zero-cost fallback.
        """
        if lookup_static_rate(model_id) is None and is_platform_native(model_id, provider):
            await self.ensure_dynamic_pricing(strip_routing_prefix(model_id))
        return self.resolve_rate_cached(model_id, provider)
