# =============================================================================
# OpenAI Adapter — Chat Completions via the AI Gateway
# =============================================================================
#
# Uses the native AsyncOpenAI SDK with base_url pointed at the gateway's
# `openai` route. The real OpenAI key travels as the SDK's Authorization
# header; the gateway token rides along as `cf-aig-authorization`.
#
# STRUCTURED OUTPUT:
#   response_format = {"type": "json_schema",
#                      "json_schema": {"name": "structured_output",
#                                      "schema": <schema>, "strict": true}}
# The message content is then cleaned (code fences) and parsed.
#
# WorkersAIProvider (workers_ai_provider.py) subclasses this adapter: the
# wire format is identical, only the endpoint, key and model naming differ.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from typing import Any

from ai_gateway.config import Settings, get_settings
from ai_gateway.errors import GatewayConfigError
from ai_gateway.services.gateway import (
    GatewayProvider,
    GatewayUseCase,
    compat_model_name,
    gateway_auth_headers,
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
    build_messages,
    openai_response_format,
    resolve_default_model,
)
from ai_gateway.services.sanitizer import parse_json_output

logger = logging.getLogger(__name__)


def usage_from_openai(usage: Any) -> TokenUsage:
    """Token usage from an OpenAI-shaped `usage` block (cache reads split out)."""
    if usage is None:
        return TokenUsage()
    prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
    completion_tokens = getattr(usage, "completion_tokens", 0) or 0
    details = getattr(usage, "prompt_tokens_details", None)
    cached = (getattr(details, "cached_tokens", 0) or 0) if details is not None else 0
    return TokenUsage(
        input_tokens=max(0, prompt_tokens - cached),
        output_tokens=completion_tokens,
        cache_read_tokens=cached,
    )


class OpenAIProvider:
    """
    OpenAI chat completions through the AI Gateway.

    Constructor kwargs override settings, so tests and one-off callers can
    build an instance without touching the router's singleton.
    """

    provider = Provider.OPENAI

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        settings: Settings | None = None,
        client: Any = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._model = model or resolve_default_model(self.provider, self._settings)
        self._temperature = self._settings.llm_temperature
        self._max_tokens = self._settings.llm_max_tokens

        if client is not None:
            self._client = client
        else:
            self._client = self._build_client(api_key, base_url)

    def _resolve_api_key(self, api_key: str | None) -> str:
        resolved_key = api_key or self._settings.openai_api_key
        if not resolved_key:
            raise GatewayConfigError(
                "No OpenAI API key configured. Set OPENAI_API_KEY in .env"
            )
        return resolved_key

    def _resolve_base_url(self, base_url: str | None) -> str:
        return base_url or resolve_gateway_url(
            GatewayProvider.OPENAI, GatewayUseCase.SDK, settings=self._settings
        )

    def _build_client(self, api_key: str | None, base_url: str | None) -> Any:
        from openai import AsyncOpenAI

        resolved_key = self._resolve_api_key(api_key)
        resolved_base_url = self._resolve_base_url(base_url)
        client = AsyncOpenAI(
            api_key=resolved_key,
            base_url=resolved_base_url,
            default_headers=gateway_auth_headers(self._settings) or None,
        )
        logger.info(
            "Initialized %s (model=%s, base_url=%s)",
            type(self).__name__, self._model, resolved_base_url,
        )
        return client

    @property
    def client(self) -> Any:
        return self._client

    @property
    def default_model(self) -> str:
        return self._model

    # -------------------------------------------------------------------------
    # Hooks overridden by the Workers AI adapter
    # -------------------------------------------------------------------------

    def model_for(self, options: GenerationOptions, structured: bool = False) -> str:
        return options.model or self._model

    def _wire_model(self, model: str) -> str:
        return compat_model_name(model)

    def _request_kwargs(self, model: str, options: GenerationOptions) -> dict[str, Any]:
        return {
            "temperature": (
                options.temperature if options.temperature is not None else self._temperature
            ),
            "max_tokens": options.max_tokens or self._max_tokens,
        }

    def _tool_call_id(self, tool_call: Any) -> str:
        return tool_call.id or f"call_{uuid.uuid4().hex}"

    # -------------------------------------------------------------------------
    # Core request
    # -------------------------------------------------------------------------

    async def _complete(
        self,
        prompt: str,
        system_prompt: str | None,
        options: GenerationOptions | None,
        structured: bool = False,
        **extra: Any,
    ) -> tuple[Any, str, TokenUsage]:
        opts = options or GenerationOptions()
        model = self.model_for(opts, structured=structured)
        response = await self._client.chat.completions.create(
            model=self._wire_model(model),
            messages=build_messages(prompt, system_prompt),
            **self._request_kwargs(model, opts),
            **extra,
        )
        message = response.choices[0].message
        return message, model, usage_from_openai(getattr(response, "usage", None))

    def _tool_calls(self, message: Any) -> list[ToolCall]:
        return [
            ToolCall(
                id=self._tool_call_id(tc),
                function=ToolFunction(
                    name=tc.function.name,
                    arguments=tc.function.arguments or "{}",
                ),
            )
            for tc in (getattr(message, "tool_calls", None) or [])
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
        message, model, usage = await self._complete(prompt, system_prompt, options)
        return AdapterResult(value=message.content or "", model=model, usage=usage)

    async def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[dict[str, Any]]:
        message, model, usage = await self._complete(
            prompt, system_prompt, options, structured=True,
            response_format=openai_response_format(schema),
        )
        return AdapterResult(
            value=parse_json_output(message.content), model=model, usage=usage,
        )

    async def generate_text_with_tools(
        self,
        prompt: str,
        tools: list[dict[str, Any]],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[TextWithToolsResponse]:
        message, model, usage = await self._complete(
            prompt, system_prompt, options, structured=True, tools=tools,
        )
        return AdapterResult(
            value=TextWithToolsResponse(
                text=message.content or "",
                tool_calls=self._tool_calls(message),
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
        message, model, usage = await self._complete(
            prompt, system_prompt, options, structured=True,
            tools=tools, response_format=openai_response_format(schema),
        )
        tool_calls = self._tool_calls(message)
        # A turn that only requests tools carries no JSON yet.
        if not message.content and tool_calls:
            result: dict[str, Any] = {}
        else:
            result = parse_json_output(message.content)
        return AdapterResult(
            value=StructuredWithToolsResponse(result=result, tool_calls=tool_calls),
            model=model,
            usage=usage,
        )

    async def verify_api_key(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except Exception as exc:
            logger.error("OpenAI key verification failed: %s", exc)
            return False
