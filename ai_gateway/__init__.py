# =============================================================================
# AI Cost Gateway
# =============================================================================
#
# Multi-provider AI request gateway. One entry point (LLMRouter) fronts
# four backends (OpenAI, Anthropic, Gemini, Workers AI) routed through a
# Cloudflare AI Gateway, with a hard spend ceiling checked before every
# call and a cost ledger written after it.
# =============================================================================

__version__ = "0.1.0"
