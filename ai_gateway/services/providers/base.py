# =============================================================================
# Provider Adapter Contract — Shared Types
# =============================================================================
#
# Every backend adapter (OpenAI, Anthropic, Gemini, Workers AI) satisfies
# the ProviderAdapter Protocol and returns AdapterResult, so the router can
# bill and normalise any provider the same way.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Tests pass plain fakes with the right coroutine methods; nothing has to
# inherit from a base class.
#
# DESIGN DECISION: Closed provider set.
# `Provider` is an enum. normalize_provider() maps every accepted alias
# ("worker-ai", "google", "google-ai-studio", ...) onto it, and anything
# unrecognised falls back to Workers AI, the platform default.
#
# TOKEN USAGE CONVENTION:
#   input_tokens       — prompt tokens billed at the input rate (cache
#                        reads EXCLUDED, whatever the provider reports)
#   output_tokens      — completion tokens
#   cache_read_tokens  — prompt tokens served from the provider's cache
#   cache_write_tokens — prompt tokens written to the cache (Anthropic)
# =============================================================================

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from ai_gateway.config import Settings, get_settings

T = TypeVar("T")

STRUCTURED_TOOL_NAME = "structured_output"


class Provider(str, enum.Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    WORKERS_AI = "workers-ai"


_PROVIDER_ALIASES: dict[str, Provider] = {
    "openai": Provider.OPENAI,
    "anthropic": Provider.ANTHROPIC,
    "claude": Provider.ANTHROPIC,
    "gemini": Provider.GEMINI,
    "google": Provider.GEMINI,
    "google-ai-studio": Provider.GEMINI,
    "workers-ai": Provider.WORKERS_AI,
    "worker-ai": Provider.WORKERS_AI,
    "workers_ai": Provider.WORKERS_AI,
    "cloudflare": Provider.WORKERS_AI,
}


def normalize_provider(value: str | Provider | None) -> Provider:
    """Map a provider name or alias onto Provider. Defaults to Workers AI."""
    if isinstance(value, Provider):
        return value
    if not value:
        return Provider.WORKERS_AI
    return _PROVIDER_ALIASES.get(value.strip().lower(), Provider.WORKERS_AI)


def resolve_default_model(
    provider: str | Provider | None,
    settings: Settings | None = None,
) -> str:
    """
    Default model for a provider.

    AI_DEFAULT_MODEL wins when set. Otherwise the per-provider setting is
    used, with retired families coerced to their current equivalent
    (gpt-5* → gpt-4o-mini, gemini-1.5/2.0 → gemini-2.5-flash).
    """
    cfg = settings or get_settings()
    if cfg.ai_default_model:
        return cfg.ai_default_model

    resolved = normalize_provider(provider)
    if resolved is Provider.OPENAI:
        model = cfg.openai_model or "gpt-4o-mini"
        return "gpt-4o-mini" if model.startswith("gpt-5") else model
    if resolved is Provider.GEMINI:
        model = cfg.gemini_model or "gemini-2.5-flash"
        if model.startswith(("gemini-1.5", "gemini-2.0")):
            return "gemini-2.5-flash"
        return model
    if resolved is Provider.ANTHROPIC:
        return cfg.anthropic_model or "claude-sonnet-4-5"
    return cfg.workers_ai_model or "@cf/meta/llama-3.3-70b-instruct-fp8-fast"


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------


@dataclass
class GenerationOptions:
    """Per-call overrides. Unset fields use the adapter's defaults."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    effort: str | None = None          # "low" | "medium" | "high"
    cache_lifetime: str = "5m"         # Anthropic cache write tier


@dataclass
class UsageContext:
    """Attribution written to the cost ledger alongside each call."""

    session_id: str | None = None
    document_id: str | None = None
    workflow_name: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0


@dataclass
class ToolFunction:
    name: str
    arguments: str       # JSON-encoded arguments object


@dataclass
class ToolCall:
    """A tool invocation requested by the model, in OpenAI shape."""

    id: str
    function: ToolFunction
    type: str = "function"


@dataclass
class TextWithToolsResponse:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class StructuredWithToolsResponse:
    result: dict[str, Any]
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class AdapterResult(Generic[T]):
    """Normalised value plus what the router needs to bill the call."""

    value: T
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class ProviderAdapter(Protocol):
    """
    One backend. Tools are given in OpenAI shape:
        {"type": "function", "function": {"name", "description", "parameters"}}
    """

    provider: Provider

    @property
    def default_model(self) -> str:
        ...

    def model_for(self, options: GenerationOptions, structured: bool = False) -> str:
        """Model a call with these options will run on."""
        ...

    async def generate_text(
        self,
        prompt: str,
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[str]:
        ...

    async def generate_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[dict[str, Any]]:
        ...

    async def generate_text_with_tools(
        self,
        prompt: str,
        tools: list[dict[str, Any]],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[TextWithToolsResponse]:
        ...

    async def generate_structured_with_tools(
        self,
        prompt: str,
        schema: dict[str, Any],
        tools: list[dict[str, Any]],
        system_prompt: str | None = None,
        options: GenerationOptions | None = None,
    ) -> AdapterResult[StructuredWithToolsResponse]:
        ...

    async def verify_api_key(self) -> bool:
        """True when the provider accepts the configured credentials."""
        ...


def build_messages(prompt: str, system_prompt: str | None) -> list[dict[str, str]]:
    """OpenAI-style message list: optional system message, then the user prompt."""
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


def openai_response_format(schema: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": STRUCTURED_TOOL_NAME,
            "schema": schema,
            "strict": True,
        },
    }
