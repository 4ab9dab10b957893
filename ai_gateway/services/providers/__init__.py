# =============================================================================
# Provider Adapters
# =============================================================================
#
# ARCHITECTURE:
#   ProviderAdapter (Protocol, base.py)
#   ├── OpenAIProvider     — AsyncOpenAI → gateway /openai
#   │   └── WorkersAIProvider — AsyncOpenAI → gateway /compat, workers-ai/ models
#   ├── AnthropicProvider  — AsyncAnthropic → gateway /anthropic
#   └── GeminiProvider     — httpx REST → gateway /google-ai-studio
#
# create_adapter() maps the closed Provider enum onto these classes.
# =============================================================================

from __future__ import annotations

from ai_gateway.config import Settings
from ai_gateway.services.providers.anthropic_provider import AnthropicProvider
from ai_gateway.services.providers.base import (
    AdapterResult,
    GenerationOptions,
    Provider,
    ProviderAdapter,
    StructuredWithToolsResponse,
    TextWithToolsResponse,
    TokenUsage,
    ToolCall,
    ToolFunction,
    UsageContext,
    normalize_provider,
    resolve_default_model,
)
from ai_gateway.services.providers.gemini_provider import GeminiProvider
from ai_gateway.services.providers.openai_provider import OpenAIProvider
from ai_gateway.services.providers.workers_ai_provider import WorkersAIProvider

ADAPTER_CLASSES: dict[Provider, type] = {
    Provider.OPENAI: OpenAIProvider,
    Provider.ANTHROPIC: AnthropicProvider,
    Provider.GEMINI: GeminiProvider,
    Provider.WORKERS_AI: WorkersAIProvider,
}


def create_adapter(
    provider: str | Provider | None,
    settings: Settings | None = None,
) -> ProviderAdapter:
    """Fresh adapter for a provider name or alias."""
    return ADAPTER_CLASSES[normalize_provider(provider)](settings=settings)


__all__ = [
    "ADAPTER_CLASSES",
    "AdapterResult",
    "AnthropicProvider",
    "GeminiProvider",
    "GenerationOptions",
    "OpenAIProvider",
    "Provider",
    "ProviderAdapter",
    "StructuredWithToolsResponse",
    "TextWithToolsResponse",
    "TokenUsage",
    "ToolCall",
    "ToolFunction",
    "UsageContext",
    "WorkersAIProvider",
    "create_adapter",
    "normalize_provider",
    "resolve_default_model",
]
