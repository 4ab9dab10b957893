# =============================================================================
# Workers AI Adapter — Platform-Native Models via the Compat Endpoint
# =============================================================================
#
# Cloudflare's AI Gateway exposes an OpenAI-compatible "compat" route:
#
#   https://gateway.ai.cloudflare.com/v1/{account}/{gateway}/compat
#
# Any Workers AI model is reachable there as `workers-ai/<model>`, so this
# adapter is the OpenAI adapter with a different endpoint, key (the
# Cloudflare API token) and model naming.
#
# MODEL DEFAULTS:
#   generate_text           → WORKERS_AI_MODEL (llama-3.3-70b fp8-fast)
#   structured / with tools → WORKERS_AI_STRUCTURING_MODEL (llama-4-scout)
#
# REASONING EFFORT:
# `options.effort` maps to OpenAI's `reasoning_effort` only for gpt-oss
# models; other models reject the parameter.
#
# Workers AI models do not honour temperature/max_tokens uniformly, so they
# are only forwarded when the caller sets them explicitly.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from ai_gateway.errors import GatewayConfigError
from ai_gateway.services.gateway import (
    GatewayProvider,
    GatewayUseCase,
    resolve_gateway_url,
    workers_ai_model_name,
)
from ai_gateway.services.providers.base import GenerationOptions, Provider
from ai_gateway.services.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


class WorkersAIProvider(OpenAIProvider):
    """Workers AI models through the gateway's OpenAI-compatible route."""

    provider = Provider.WORKERS_AI

    def _resolve_api_key(self, api_key: str | None) -> str:
        resolved_key = api_key or self._settings.cloudflare_api_token
        if not resolved_key:
            raise GatewayConfigError(
                "No Cloudflare API token configured. Set CLOUDFLARE_API_TOKEN in .env"
            )
        return resolved_key

    def _resolve_base_url(self, base_url: str | None) -> str:
        return base_url or resolve_gateway_url(
            GatewayProvider.COMPAT, GatewayUseCase.SDK, settings=self._settings
        )

    @property
    def structuring_model(self) -> str:
        return self._settings.workers_ai_structuring_model

    def model_for(self, options: GenerationOptions, structured: bool = False) -> str:
        if options.model:
            return options.model
        return self.structuring_model if structured else self._model

    def _wire_model(self, model: str) -> str:
        return workers_ai_model_name(model)

    def _request_kwargs(self, model: str, options: GenerationOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_tokens:
            kwargs["max_tokens"] = options.max_tokens
        if options.effort and "gpt-oss" in model:
            kwargs["reasoning_effort"] = options.effort
        return kwargs

    async def verify_api_key(self) -> bool:
        try:
            await self._client.chat.completions.create(
                model=self._wire_model(self.structuring_model),
                messages=[{"role": "user", "content": "hi"}],
                max_tokens=1,
            )
            return True
        except Exception as exc:
            logger.error("Workers AI key verification failed: %s", exc)
            return False
