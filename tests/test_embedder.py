# =============================================================================
# Unit Tests — Embedding Service
# =============================================================================
#
# Native Workers AI runs go through httpx.MockTransport; the `openai/` route
# uses a mocked AsyncOpenAI-compatible client.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ai_gateway.config import Settings
from ai_gateway.errors import GatewayConfigError
from ai_gateway.services.embedder import Embedder

BGE = "@cf/baai/bge-base-en-v1.5"


def _run(coro):
    return asyncio.run(coro)


def _settings(**overrides) -> Settings:
    values = {
        "cloudflare_account_id": "acct",
        "ai_gateway_name": "gw",
        "cloudflare_api_token": "cf-token",
        "ai_gateway_token": "gw-tok",
        "default_model_embedding": BGE,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _native_embed(texts, payload, status=200, model=None):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, json=payload)

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            embedder = Embedder(settings=_settings(), http_client=http)
            return await embedder.embed(texts, model)

    return _run(go()), requests


class TestNativeEmbeddings:
    """POST {gateway}/workers-ai/{model} with {"text": [...]}."""

    def test_batch(self):
        payload = {"result": {"shape": [2, 3], "data": [[1, 2, 3], [4, 5, 6]]}, "success": True}
        result, requests = _native_embed(["a", "b"], payload)

        assert result.vectors == [[1, 2, 3], [4, 5, 6]]
        assert result.model == BGE
        assert result.input_tokens == 0

        (request,) = requests
        assert request.url.path == f"/v1/acct/gw/workers-ai/{BGE}"
        assert request.headers["authorization"] == "Bearer cf-token"
        assert request.headers["cf-aig-authorization"] == "Bearer gw-tok"
        assert json.loads(request.content) == {"text": ["a", "b"]}

    def test_single_string(self):
        payload = {"result": {"data": [[0.5, 0.5]]}}
        result, requests = _native_embed("hello", payload)

        assert result.vectors == [[0.5, 0.5]]
        assert json.loads(requests[0].content) == {"text": ["hello"]}

    def test_count_mismatch_raises(self):
        with pytest.raises(ValueError, match="1 embeddings for 2 texts"):
            _native_embed(["a", "b"], {"result": {"data": [[1.0]]}})

    def test_http_error_raises(self):
        with pytest.raises(httpx.HTTPStatusError):
            _native_embed(["a"], {"errors": ["bad"]}, status=400)

    def test_empty_batch_makes_no_request(self):
        result, requests = _native_embed([], {"result": {"data": []}})
        assert result.vectors == []
        assert requests == []


class TestOpenAIEmbeddings:
    """`openai/` models go to the compat endpoint."""

    def test_sorted_by_index(self):
        client = MagicMock()
        client.embeddings.create = AsyncMock(return_value=SimpleNamespace(
            data=[
                SimpleNamespace(index=1, embedding=[2.0]),
                SimpleNamespace(index=0, embedding=[1.0]),
            ],
            usage=SimpleNamespace(prompt_tokens=7),
        ))
        embedder = Embedder(settings=_settings(), openai_client=client)

        result = _run(embedder.embed(["a", "b"], "openai/text-embedding-3-small"))

        assert result.vectors == [[1.0], [2.0]]
        assert result.input_tokens == 7


class TestModelResolution:
    def test_default_from_settings(self):
        assert Embedder(settings=_settings()).resolve_model() == BGE

    def test_override(self):
        assert Embedder(settings=_settings()).resolve_model("@cf/other") == "@cf/other"

    def test_unset_raises(self):
        with pytest.raises(GatewayConfigError, match="DEFAULT_MODEL_EMBEDDING"):
            Embedder(settings=_settings(default_model_embedding="")).resolve_model()
