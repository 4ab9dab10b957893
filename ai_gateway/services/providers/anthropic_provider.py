# =============================================================================
# Anthropic Adapter — Claude via the AI Gateway
# =============================================================================
#
# Native AsyncAnthropic SDK with base_url pointed at the gateway's
# `anthropic` route.
#
# KEY API DIFFERENCES (vs OpenAI):
# - System prompt is a top-level `system=` kwarg, not a message.
# - `max_tokens` is mandatory (default 4096).
# - There is no JSON response mode. Structured output is a FORCED TOOL:
#     tools=[{"name": "structured_output", "input_schema": <schema>}]
#     tool_choice={"type": "tool", "name": "structured_output"}
#   and the tool call's `input` IS the structured result.
# - Tools are {name, description, input_schema}; OpenAI-shaped tools are
#   converted on the way in, tool_use blocks on the way out (arguments
#   JSON-encoded so every adapter returns the same ToolCall shape).
# - Usage reports cache reads and cache writes separately from input.
# =============================================================================

from __future__ import annotations

import json
import logging
from typing import Any

from ai_gateway.config import Settings, get_settings
from ai_gateway.errors import GatewayConfigError, StructuredOutputParseError
from ai_gateway.services.gateway import (
    GatewayProvider,
    GatewayUseCase,
    compat_model_name,
    gateway_auth_headers,
    resolve_gateway_url,
)
from ai_gateway.services.providers.base import (
    STRUCTURED_TOOL_NAME,
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

logger = logging.getLogger(__name__)

STRUCTURED_TOOL_INSTRUCTION = (
    f"You must use the '{STRUCTURED_TOOL_NAME}' tool to output your final answer."
)


def to_anthropic_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """OpenAI function tools → Anthropic tool definitions."""
    converted = []
    for tool in tools:
        fn = tool.get("function", tool)
        converted.append(
            {
                "name": fn["name"],
                "description": fn.get("description") or "",
                "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
            }
        )
    return converted


def structured_tool(schema: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": STRUCTURED_TOOL_NAME,
        "description": "Provide your final answered data here",
        "input_schema": schema,
    }


def usage_from_anthropic(usage: Any) -> TokenUsage:
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        input_tokens=getattr(usage, "input_tokens", 0) or 0,
        output_tokens=getattr(usage, "output_tokens", 0) or 0,
        cache_read_tokens=getattr(usage, "cache_read_input_tokens", 0) or 0,
        cache_write_tokens=getattr(usage, "cache_creation_input_tokens", 0) or 0,
    )


class AnthropicProvider:
    """Anthropic Claude through the AI Gateway."""

    provider = Provider.ANTHROPIC

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
        self._max_tokens = self._settings.llm_max_tokens or 4096

        if client is not None:
            self._client = client
            return

        from anthropic import AsyncAnthropic

        resolved_key = api_key or self._settings.anthropic_api_key
        if not resolved_key:
            raise GatewayConfigError(
                "No Anthropic API key configured. Set ANTHROPIC_API_KEY in .env"
            )
        resolved_base_url = base_url or resolve_gateway_url(
            GatewayProvider.ANTHROPIC, GatewayUseCase.SDK, settings=self._settings
        )
        self._client = AsyncAnthropic(
            api_key=resolved_key,
            base_url=resolved_base_url,
            default_headers=gateway_auth_headers(self._settings) or None,
        )
        logger.info(
            "Initialized AnthropicProvider (model=%s, base_url=%s)",
            self._model, resolved_base_url,
        )

    @property
    def default_model(self) -> str:
        return self._model

    def model_for(self, options: GenerationOptions, structured: bool = False) -> str:
        return compat_model_name(options.model or self._model)

    async def _create(
        self,
        prompt: str,
        system_prompt: str | None,
        options: GenerationOptions | None,
        **extra: Any,
    ) -> tuple[Any, str, TokenUsage]:
        opts = options or GenerationOptions()
        model = self.model_for(opts)
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": opts.max_tokens or self._max_tokens,
            "temperature": (
                opts.temperature if opts.temperature is not None else self._temperature
            ),
        }
        # Anthropic: system prompt is a top-level kwarg, not a message
        if system_prompt:
            kwargs["system"] = system_prompt
        kwargs.update(extra)

        response = await self._client.messages.create(**kwargs)
        return response, model, usage_from_anthropic(getattr(response, "usage", None))

    @staticmethod
    def _text(response: Any) -> str:
        for block in response.content:
            if block.type == "text":
                return block.text
        return ""

    @staticmethod
    def _tool_calls(response: Any, exclude: str | None = None) -> list[ToolCall]:
        return [
            ToolCall(
                id=block.id,
                function=ToolFunction(name=block.name, arguments=json.dumps(block.input)),
            )
            for block in response.content
            if block.type == "tool_use" and block.name != exclude
        ]

    @staticmethod
    def _structured_input(response: Any) -> dict[str, Any] | None:
        for block in response.content:
            if block.type == "tool_use" and block.name == STRUCTURED_TOOL_NAME:
                return dict(block.input or {})
        return None

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def generate_text(
        self,
        prompt: str,
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[str]:
        response, model, usage = await self._create(prompt, system_prompt, options)
        return AdapterResult(value=self._text(response), model=model, usage=usage)

    async def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[dict[str, Any]]:
        response, model, usage = await self._create(
            prompt, system_prompt, options,
            tools=[structured_tool(schema)],
            tool_choice={"type": "tool", "name": STRUCTURED_TOOL_NAME},
        )
        result = self._structured_input(response)
        if result is None:
            raise StructuredOutputParseError(
                "Anthropic response contained no structured_output tool call",
                raw=self._text(response) or None,
            )
        return AdapterResult(value=result, model=model, usage=usage)

    async def generate_text_with_tools(
        self,
        prompt: str,
        tools: list[dict[str, Any]],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[TextWithToolsResponse]:
        response, model, usage = await self._create(
            prompt, system_prompt, options, tools=to_anthropic_tools(tools),
        )
        return AdapterResult(
            value=TextWithToolsResponse(
                text=self._text(response),
                tool_calls=self._tool_calls(response),
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
        system = (
            f"{system_prompt}\n{STRUCTURED_TOOL_INSTRUCTION}"
            if system_prompt
            else STRUCTURED_TOOL_INSTRUCTION
        )
        response, model, usage = await self._create(
            prompt, system, options,
            tools=[*to_anthropic_tools(tools), structured_tool(schema)],
        )
        tool_calls = self._tool_calls(response, exclude=STRUCTURED_TOOL_NAME)
        result = self._structured_input(response)
        if result is None:
            if not tool_calls:
                raise StructuredOutputParseError(
                    "Anthropic response contained neither structured_output nor tool calls",
                    raw=self._text(response) or None,
                )
            result = {}
        return AdapterResult(
            value=StructuredWithToolsResponse(result=result, tool_calls=tool_calls),
            model=model,
            usage=usage,
        )

    async def verify_api_key(self) -> bool:
        try:
            await self._client.messages.create(
                model=self._model,
                max_tokens=1,
                messages=[{"role": "user", "content": "hi"}],
            )
            return True
        except Exception as exc:
            logger.error("Anthropic key verification failed: %s", exc)
            return False
