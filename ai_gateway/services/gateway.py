# =============================================================================
# AI Gateway URLs — Provider Endpoints Behind Cloudflare AI Gateway
# =============================================================================
#
# Every provider request is proxied through:
#
#   https://gateway.ai.cloudflare.com/v1/{account}/{gateway}/{provider}
#
# and then a use-case specific suffix:
#
#   use case          provider          suffix
#   ───────────────   ───────────────   ──────────────────────────────────────
#   SDK               openai, anthropic (none: SDK appends its own paths)
#   SDK               workers-ai        /v1       (OpenAI-compatible mode)
#   CHAT_COMPLETIONS  openai, compat    /chat/completions
#   CHAT_COMPLETIONS  workers-ai        /v1/chat/completions
#   GENERATE_CONTENT  google-ai-studio  /{api_version}/models/{model}:generateContent
#   NATIVE_RUN        workers-ai        /{model}
#
# Besides the provider's own key, every request carries the gateway token:
#   cf-aig-authorization: Bearer {AI_GATEWAY_TOKEN}
#
# DESIGN DECISION: Gemini API version comes from an explicit prefix table,
# not a guess. Newer families (2.5, 3) are only served on v1beta;
# older GA families (1.0, 1.5, 2.0) are served on v1. Unknown families
# default to v1beta, where Google ships new models first.
# =============================================================================

from __future__ import annotations

import enum
import logging

from ai_gateway.config import Settings, get_settings
from ai_gateway.errors import GatewayConfigError

logger = logging.getLogger(__name__)


class GatewayProvider(str, enum.Enum):
    """Provider slugs understood by the AI Gateway."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE_AI_STUDIO = "google-ai-studio"
    WORKERS_AI = "workers-ai"
    COMPAT = "compat"


class GatewayUseCase(str, enum.Enum):
    SDK = "sdk"
    CHAT_COMPLETIONS = "chat_completions"
    GENERATE_CONTENT = "generate_content"
    NATIVE_RUN = "native_run"


_PROVIDER_ALIASES: dict[str, GatewayProvider] = {
    "openai": GatewayProvider.OPENAI,
    "anthropic": GatewayProvider.ANTHROPIC,
    "google-ai-studio": GatewayProvider.GOOGLE_AI_STUDIO,
    "google": GatewayProvider.GOOGLE_AI_STUDIO,
    "gemini": GatewayProvider.GOOGLE_AI_STUDIO,
    "workers-ai": GatewayProvider.WORKERS_AI,
    "worker-ai": GatewayProvider.WORKERS_AI,
    "cloudflare": GatewayProvider.WORKERS_AI,
    "compat": GatewayProvider.COMPAT,
}

# (model prefix, api version). First match wins.
GEMINI_API_VERSIONS: tuple[tuple[str, str], ...] = (
    ("gemini-3", "v1beta"),
    ("gemini-2.5", "v1beta"),
    ("gemini-2.0", "v1"),
    ("gemini-1.5", "v1"),
    ("gemini-1.0", "v1"),
)
DEFAULT_GEMINI_API_VERSION = "v1beta"

MODEL_ROUTING_PREFIXES = ("openai/", "google-ai-studio/", "gemini/", "anthropic/")


def normalize_gateway_provider(provider: str | GatewayProvider) -> GatewayProvider:
    """Map provider names and aliases to a gateway slug."""
    if isinstance(provider, GatewayProvider):
        return provider
    try:
        return _PROVIDER_ALIASES[provider.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown gateway provider '{provider}'. "
            f"Supported: {sorted(_PROVIDER_ALIASES)}"
        ) from None


def gemini_api_version(model_name: str) -> str:
    name = model_name.removeprefix("models/")
    for prefix, version in GEMINI_API_VERSIONS:
        if name.startswith(prefix):
            return version
    return DEFAULT_GEMINI_API_VERSION


def gateway_base_url(
    provider: str | GatewayProvider,
    settings: Settings | None = None,
) -> str:
    """
    {ai_gateway_base_url}/{account}/{gateway}/{provider}, no trailing slash.

    Raises:
        GatewayConfigError: If the account id or gateway name is missing.
    """
    cfg = settings or get_settings()
    if not cfg.cloudflare_account_id or not cfg.ai_gateway_name:
        raise GatewayConfigError(
            "AI Gateway is not configured. Set CLOUDFLARE_ACCOUNT_ID and "
            "AI_GATEWAY_NAME in .env"
        )
    slug = normalize_gateway_provider(provider).value
    root = cfg.ai_gateway_base_url.rstrip("/")
    return f"{root}/{cfg.cloudflare_account_id}/{cfg.ai_gateway_name}/{slug}".rstrip("/")


def resolve_gateway_url(
    provider: str | GatewayProvider,
    use_case: GatewayUseCase = GatewayUseCase.SDK,
    model_name: str | None = None,
    api_version: str | None = None,
    settings: Settings | None = None,
) -> str:
    """
    Resolve the gateway URL for a provider and use case.

    Args:
        provider: Provider slug or alias ("gemini", "worker-ai", ...).
        use_case: What the URL will be used for (see table above).
        model_name: Required for GENERATE_CONTENT and NATIVE_RUN.
        api_version: Gemini API version override.

    Raises:
        GatewayConfigError: If gateway settings are missing.
        ValueError: If the use case needs a model and none was given.
    """
    slug = normalize_gateway_provider(provider)
    base = gateway_base_url(slug, settings)

    if use_case is GatewayUseCase.SDK:
        if slug is GatewayProvider.WORKERS_AI:
            return f"{base}/v1"
        return base

    if use_case is GatewayUseCase.CHAT_COMPLETIONS:
        if slug is GatewayProvider.WORKERS_AI:
            return f"{base}/v1/chat/completions"
        return f"{base}/chat/completions"

    if not model_name:
        raise ValueError(f"{use_case.value} URLs require a model name")

    if use_case is GatewayUseCase.GENERATE_CONTENT:
        model = model_name.removeprefix("models/")
        version = api_version or gemini_api_version(model)
        return f"{base}/{version}/models/{model}:generateContent"

    # NATIVE_RUN
    return f"{base}/{model_name.lstrip('/')}"


def gateway_auth_headers(settings: Settings | None = None) -> dict[str, str]:
    """The `cf-aig-authorization` header, or {} when no token is configured."""
    cfg = settings or get_settings()
    if not cfg.ai_gateway_token:
        return {}
    return {"cf-aig-authorization": f"Bearer {cfg.ai_gateway_token}"}


def compat_model_name(model: str) -> str:
    """Strip provider routing prefixes. `@cf/` ids pass through untouched."""
    if model.startswith("@cf/"):
        return model
    for prefix in MODEL_ROUTING_PREFIXES:
        if model.startswith(prefix):
            return model[len(prefix):]
    return model


def workers_ai_model_name(model: str) -> str:
    """Model name for the compat endpoint: `workers-ai/` prefixed, once."""
    if model.startswith("workers-ai/"):
        return model
    return f"workers-ai/{model}"
