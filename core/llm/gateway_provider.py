"""Hosted gateway provider (OpenAI-compatible streaming chat completions).

One POST per invocation with ``stream: true``; the response body is an SSE
stream of ``data: {chunk}`` lines terminated by ``data: [DONE]``. Usage is
read from the final chunk (``stream_options.include_usage``). No retries:
HTTP and transport errors propagate to the invocation adapter, which turns
them into a terminal failure for that model.
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping

import httpx

from .exceptions import ModelGenerationError
from .provider import ModelProvider
from .types import (
    ProviderPart,
    ReasoningDelta,
    TextDelta,
    TokenUsage,
    UsageReport,
)

log = logging.getLogger("gateway.provider")

_ERROR_BODY_LIMIT = 300


class GatewayProvider(ModelProvider):
    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_s: float = 55.0,
        catalog: Mapping[str, Any] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._catalog = dict(catalog or {})
        self._client = client
        self._owns_client = client is None

    def _upstream_id(self, model_id: str) -> str:
        entry = self._catalog.get(model_id)
        return getattr(entry, "upstream_id", None) or model_id

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_s, connect=10.0)
            )
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def stream(
        self, model_id: str, messages: List[Dict[str, str]]
    ) -> AsyncIterator[ProviderPart]:
        payload = {
            "model": self._upstream_id(model_id),
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        url = f"{self._base_url}/chat/completions"
        async with self._http().stream(
            "POST", url, json=payload, headers=self._headers()
        ) as resp:
            if resp.status_code >= 400:
                body = (await resp.aread()).decode("utf-8", "replace")
                log.warning(
                    "gateway error model=%s status=%s",
                    model_id,
                    resp.status_code,
                )
                raise ModelGenerationError(
                    f"gateway returned {resp.status_code}: "
                    f"{body[:_ERROR_BODY_LIMIT]}"
                )
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if not data:
                    continue
                if data == "[DONE]":
                    break
                for part in _parse_chunk(data):
                    yield part

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _parse_chunk(data: str) -> List[ProviderPart]:
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError as e:
        raise ModelGenerationError(f"malformed stream chunk: {e}") from e
    err = chunk.get("error")
    if err:
        msg = err.get("message") if isinstance(err, dict) else str(err)
        raise ModelGenerationError(msg or "provider error")
    parts: List[ProviderPart] = []
    for choice in chunk.get("choices") or []:
        delta = choice.get("delta") or {}
        reasoning = delta.get("reasoning") or delta.get("reasoning_content")
        if reasoning:
            parts.append(ReasoningDelta(reasoning))
        content = delta.get("content")
        if content:
            parts.append(TextDelta(content))
    usage = chunk.get("usage")
    if usage:
        parts.append(
            UsageReport(
                TokenUsage(
                    input_tokens=usage.get("prompt_tokens"),
                    output_tokens=usage.get("completion_tokens"),
                )
            )
        )
    return parts


__all__ = ["GatewayProvider"]
