# =============================================================================
# Diagnostics — Gateway Health Check
# =============================================================================
#
# Runs a fixed set of sub-checks and reports each one as OK, FAILURE or
# SKIPPED with its latency. This is the one place where errors are
# collected instead of raised: a failing provider must show up as a
# FAILURE row, never crash the report.
#
#   gateway_config       — account id / gateway name present
#   sanitizer            — clean_json_output strips a fenced payload
#   generate_text        — one short completion
#   generate_structured  — {message: string, number: number} schema
#   generate_embedding   — SKIPPED when no embedding model is configured
#
# Live checks go through the router, so they are budget-checked and billed
# like any other call.
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable

from ai_gateway import __version__
from ai_gateway.models.responses import HealthCheckResult, HealthReport
from ai_gateway.services.llm import LLMRouter
from ai_gateway.services.sanitizer import clean_json_output

logger = logging.getLogger(__name__)

STATUS_OK = "OK"
STATUS_FAILURE = "FAILURE"
STATUS_SKIPPED = "SKIPPED"

HEALTH_SCHEMA = {
    "type": "object",
    "properties": {
        "message": {"type": "string"},
        "number": {"type": "number"},
    },
    "required": ["message", "number"],
    "additionalProperties": False,
}


async def _timed(
    name: str, check: Callable[[], Awaitable[str | None]]
) -> HealthCheckResult:
    start = time.perf_counter()
    try:
        detail = await check()
    except Exception as exc:
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.warning("Health check %s failed: %s", name, exc)
        return HealthCheckResult(
            name=name, status=STATUS_FAILURE, latency_ms=latency_ms, error=str(exc),
        )
    latency_ms = int((time.perf_counter() - start) * 1000)
    return HealthCheckResult(
        name=name, status=STATUS_OK, latency_ms=latency_ms, detail=detail,
    )


async def check_health(router: LLMRouter, live: bool = True) -> HealthReport:
    """
    Run every diagnostic sub-check.

    Args:
        router: Router under test.
        live: When False, provider calls are SKIPPED (config and local
            checks only).
    """
    settings = router.settings
    checks: list[HealthCheckResult] = []

    async def gateway_config() -> str:
        missing = [
            name
            for name, value in (
                ("CLOUDFLARE_ACCOUNT_ID", settings.cloudflare_account_id),
                ("AI_GATEWAY_NAME", settings.ai_gateway_name),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"missing settings: {', '.join(missing)}")
        return f"{settings.cloudflare_account_id}/{settings.ai_gateway_name}"

    async def sanitizer() -> str:
        cleaned = clean_json_output('```json\n{"ok": true}\n```')
        if cleaned != '{"ok": true}':
            raise ValueError(f"unexpected sanitizer output: {cleaned!r}")
        return cleaned

    async def text() -> str:
        reply = await router.generate_text("Reply with the single word: pong")
        if not reply.strip():
            raise ValueError("empty completion")
        return reply[:100]

    async def structured() -> str:
        result = await router.generate_structured_response(
            "Return a short greeting as `message` and the number 42 as `number`.",
            HEALTH_SCHEMA,
        )
        if not isinstance(result.get("message"), str) or not isinstance(
            result.get("number"), (int, float)
        ):
            raise ValueError(f"result does not match schema: {result!r}")
        return str(result)

    async def embedding() -> str:
        vector = await router.generate_embedding("health check")
        if not vector:
            raise ValueError("empty embedding")
        return f"dimensions={len(vector)}"

    checks.append(await _timed("gateway_config", gateway_config))
    checks.append(await _timed("sanitizer", sanitizer))

    if live:
        checks.append(await _timed("generate_text", text))
        checks.append(await _timed("generate_structured", structured))
    else:
        checks.append(HealthCheckResult(name="generate_text", status=STATUS_SKIPPED))
        checks.append(HealthCheckResult(name="generate_structured", status=STATUS_SKIPPED))

    if live and settings.default_model_embedding:
        checks.append(await _timed("generate_embedding", embedding))
    else:
        checks.append(
            HealthCheckResult(
                name="generate_embedding",
                status=STATUS_SKIPPED,
                detail=None if live else "live checks disabled",
            )
        )

    overall = (
        STATUS_FAILURE if any(c.status == STATUS_FAILURE for c in checks) else STATUS_OK
    )
    return HealthReport(status=overall, version=__version__, checks=checks)
