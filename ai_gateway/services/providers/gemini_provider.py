# =============================================================================
# Gemini Adapter — generateContent REST via the AI Gateway
# =============================================================================
#
# Talks to Google AI Studio's REST API through the gateway's
# `google-ai-studio` route with httpx:
#
#   POST {gateway}/google-ai-studio/{api_version}/models/{model}:generateContent
#
# The API version (v1 / v1beta) comes from the model family, see
# gateway.gemini_api_version().
#
# AUTH: `x-goog-api-key` when GEMINI_API_KEY is set. With no key, requests
# rely on the gateway's stored provider key (BYOK) and must carry the
# gateway token instead; having neither is a configuration error.
#
# STRUCTURED OUTPUT:
#   generationConfig.responseMimeType = "application/json"
#   generationConfig.responseSchema   = <schema>
#
# TOOLS: functionDeclarations are the `function` objects of OpenAI-shaped
# tools. Gemini function calls carry no ids, so they are numbered
# call_0, call_1, ... in response order.
# =============================================================================

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from ai_gateway.config import Settings, get_settings
from ai_gateway.errors import GatewayConfigError
from ai_gateway.services.gateway import (
    GatewayProvider,
    GatewayUseCase,
    compat_model_name,
    gateway_auth_headers,
    gemini_api_version,
    resolve_gateway_url,
)
from ai_gateway.services.providers.base import (
    AdapterResult,
    GenerationOptions,
    Provider,
    StructuredWithToolsResponse,
    TextWithToolsResponse,
    TokenUsage,
    ToolCall,
    ToolFunction,
    resolve_default_model,
)
from ai_gateway.services.sanitizer import parse_json_output

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


def usage_from_gemini(metadata: dict[str, Any] | None) -> TokenUsage:
    """usageMetadata → TokenUsage. Thinking tokens bill as output."""
    if not metadata:
        return TokenUsage()
    prompt = metadata.get("promptTokenCount", 0) or 0
    cached = metadata.get("cachedContentTokenCount", 0) or 0
    output = (metadata.get("candidatesTokenCount", 0) or 0) + (
        metadata.get("thoughtsTokenCount", 0) or 0
    )
    return TokenUsage(
        input_tokens=max(0, prompt - cached),
        output_tokens=output,
        cache_read_tokens=cached,
    )


class GeminiProvider:
    """Google Gemini through the AI Gateway."""

    provider = Provider.GEMINI

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._model = model or resolve_default_model(self.provider, self._settings)
        self._temperature = self._settings.llm_temperature
        self._max_tokens = self._settings.llm_max_tokens
        self._api_key = api_key or self._settings.gemini_api_key
        self._http = http_client

        if not self._api_key and not self._settings.ai_gateway_token:
            raise GatewayConfigError(
                "No Gemini credentials configured. Set GEMINI_API_KEY, or "
                "AI_GATEWAY_TOKEN with a provider key stored in the gateway"
            )
        logger.info("Initialized GeminiProvider (model=%s)", self._model)

    @property
    def default_model(self) -> str:
        return self._model

    def model_for(self, options: GenerationOptions, structured: bool = False) -> str:
        return compat_model_name(options.model or self._model)

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._api_key:
            headers["x-goog-api-key"] = self._api_key
        headers.update(gateway_auth_headers(self._settings))
        return headers

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        if self._http is not None:
            response = await self._http.post(url, headers=self._headers(), json=body)
        else:
            async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
                response = await client.post(url, headers=self._headers(), json=body)
        response.raise_for_status()
        return response.json()

    async def _generate(
        self,
        prompt: str,
        system_prompt: str | None,
        options: GenerationOptions | None,
        schema: dict[str, Any] | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> tuple[dict[str, Any], str, TokenUsage]:
        opts = options or GenerationOptions()
        model = self.model_for(opts)

        generation_config: dict[str, Any] = {
            "temperature": (
                opts.temperature if opts.temperature is not None else self._temperature
            ),
            "maxOutputTokens": opts.max_tokens or self._max_tokens,
        }
        if schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = schema

        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tools:
            body["tools"] = [
                {"functionDeclarations": [t.get("function", t) for t in tools]}
            ]

        url = resolve_gateway_url(
            GatewayProvider.GOOGLE_AI_STUDIO,
            GatewayUseCase.GENERATE_CONTENT,
            model_name=model,
            settings=self._settings,
        )
        data = await self._post(url, body)
        return data, model, usage_from_gemini(data.get("usageMetadata"))

    @staticmethod
    def _parts(data: dict[str, Any]) -> list[dict[str, Any]]:
        candidates = data.get("candidates") or []
        if not candidates:
            return []
        return (candidates[0].get("content") or {}).get("parts") or []

    @classmethod
    def _text(cls, data: dict[str, Any]) -> str:
        return "".join(
            part["text"]
            for part in cls._parts(data)
            if "text" in part and not part.get("thought")
        )

    @classmethod
    def _tool_calls(cls, data: dict[str, Any]) -> list[ToolCall]:
        calls = [p["functionCall"] for p in cls._parts(data) if "functionCall" in p]
        return [
            ToolCall(
                id=f"call_{index}",
                function=ToolFunction(
                    name=call.get("name") or "unknown",
                    arguments=json.dumps(call.get("args") or {}),
                ),
            )
            for index, call in enumerate(calls)
        ]

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def generate_text(
        self,
        prompt: str,
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[str]:
        data, model, usage = await self._generate(prompt, system_prompt, options)
        return AdapterResult(value=self._text(data), model=model, usage=usage)

    async def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[dict[str, Any]]:
        data, model, usage = await self._generate(
            prompt, system_prompt, options, schema=schema,
        )
        return AdapterResult(
            value=parse_json_output(self._text(data)), model=model, usage=usage,
        )

    async def generate_text_with_tools(
        self,
        prompt: str,
        tools: list[dict[str, Any]],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[TextWithToolsResponse]:
        data, model, usage = await self._generate(
            prompt, system_prompt, options, tools=tools,
        )
        return AdapterResult(
            value=TextWithToolsResponse(
                text=self._text(data), tool_calls=self._tool_calls(data),
            ),
            model=model,
            usage=usage,
        )

    async def generate_structured_with_tools(
        self,
        prompt: str,
        schema: dict[str, Any],
        tools: list[dict[str, Any]],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[StructuredWithToolsResponse]:
        data, model, usage = await self._generate(
            prompt, system_prompt, options, schema=schema, tools=tools,
        )
        text = self._text(data)
        tool_calls = self._tool_calls(data)
        result = {} if (not text and tool_calls) else parse_json_output(text)
        return AdapterResult(
            value=StructuredWithToolsResponse(result=result, tool_calls=tool_calls),
            model=model,
            usage=usage,
        )

    async def verify_api_key(self) -> bool:
        url = resolve_gateway_url(
            GatewayProvider.GOOGLE_AI_STUDIO, settings=self._settings
        )
        url = f"{url}/{gemini_api_version(self._model)}/models/{self._model}"
        try:
            if self._http is not None:
                response = await self._http.get(url, headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS) as client:
                    response = await client.get(url, headers=self._headers())
            response.raise_for_status()
            return True
        except httpx.HTTPError as exc:
            logger.error("Gemini key verification failed: %s", exc)
            return False
