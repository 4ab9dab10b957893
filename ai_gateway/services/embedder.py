# =============================================================================
# Embedding Service — Workers AI & OpenAI Embeddings via the AI Gateway
# =============================================================================
#
# Two routes, chosen by the model name (DEFAULT_MODEL_EMBEDDING unless the
# caller overrides it):
#
#   "openai/..."  → gateway compat endpoint, AsyncOpenAI `embeddings.create`
#   anything else → Workers AI native run: POST {gateway}/workers-ai/{model}
#                   with {"text": [...]} and vectors in `result.data`
#
# DESIGN DECISION: Results are returned in the SAME ORDER as the input
# texts. The OpenAI path sorts by `index`; the native path returns vectors
# positionally.
#
# DESIGN DECISION: No retry logic here. ProviderCallError from the router
# is retryable and callers decide.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from ai_gateway.config import Settings, get_settings
from ai_gateway.errors import GatewayConfigError
from ai_gateway.services.gateway import (
    GatewayProvider,
    GatewayUseCase,
    gateway_auth_headers,
    resolve_gateway_url,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass
class EmbeddingResult:
    vectors: list[list[float]]
    model: str
    input_tokens: int = 0


class Embedder:
    """
    Generates embeddings for one or many texts.

    Args:
        settings: Source of DEFAULT_MODEL_EMBEDDING and gateway credentials.
        openai_client: AsyncOpenAI-compatible client for `openai/` models.
            Built lazily against the compat endpoint when omitted.
        http_client: httpx client for native Workers AI runs.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        openai_client: Any = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._openai_client = openai_client
        self._http = http_client

    def resolve_model(self, model: str | None = None) -> str:
        resolved = model or self._settings.default_model_embedding
        if not resolved:
            raise GatewayConfigError(
                "DEFAULT_MODEL_EMBEDDING is not set. Configure it in .env"
            )
        return resolved

    def _get_openai_client(self) -> Any:
        """Lazily initialize and cache the compat-endpoint client."""
        if self._openai_client is None:
            from openai import AsyncOpenAI

            api_key = self._settings.cloudflare_api_token
            if not api_key:
                raise GatewayConfigError(
                    "No Cloudflare API token configured. Set CLOUDFLARE_API_TOKEN in .env"
                )
            base_url = resolve_gateway_url(
                GatewayProvider.COMPAT, GatewayUseCase.SDK, settings=self._settings
            )
            self._openai_client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                default_headers=gateway_auth_headers(self._settings) or None,
            )
            logger.info("Initialized embedding client (base_url=%s)", base_url)
        return self._openai_client

    async def _embed_openai(self, texts: list[str], model: str) -> EmbeddingResult:
        client = self._get_openai_client()
        response = await client.embeddings.create(model=model, input=texts)

        vectors: list[list[float]] = [[] for _ in texts]
        for item in sorted(response.data, key=lambda x: x.index):
            vectors[item.index] = list(item.embedding)

        usage = getattr(response, "usage", None)
        input_tokens = (getattr(usage, "prompt_tokens", 0) or 0) if usage else 0
        return EmbeddingResult(vectors=vectors, model=model, input_tokens=input_tokens)

    async def _embed_native(self, texts: list[str], model: str) -> EmbeddingResult:
        url = resolve_gateway_url(
            GatewayProvider.WORKERS_AI,
            GatewayUseCase.NATIVE_RUN,
            model_name=model,
            settings=self._settings,
        )
        headers = {"Authorization": f"Bearer {self._settings.cloudflare_api_token}"}
        headers.update(gateway_auth_headers(self._settings))
        body = {"text": texts}

        if self._http is not None:
            response = await self._http.post(url, headers=headers, json=body)
        else:
            async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
                response = await client.post(url, headers=headers, json=body)
        response.raise_for_status()

        payload = response.json()
        result = payload.get("result", payload) if isinstance(payload, dict) else {}
        data = result.get("data") or []
        if len(data) != len(texts):
            raise ValueError(
                f"Workers AI returned {len(data)} embeddings for {len(texts)} texts"
            )
        return EmbeddingResult(vectors=[list(v) for v in data], model=model)

    async def embed(
        self,
        texts: str | Sequence[str],
        model: str | None = None,
    ) -> EmbeddingResult:
        """
        Embed one text or a batch.

        Raises:
            GatewayConfigError: If no embedding model is configured.
        """
        batch = [texts] if isinstance(texts, str) else list(texts)
        resolved = self.resolve_model(model)
        if not batch:
            return EmbeddingResult(vectors=[], model=resolved)

        logger.info("Embedding %d texts (model=%s)", len(batch), resolved)
        if resolved.startswith("openai/"):
            return await self._embed_openai(batch, resolved)
        return await self._embed_native(batch, resolved)
