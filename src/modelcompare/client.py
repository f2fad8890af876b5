"""Compare stream client: SSE decoding, local run view, reconciliation.

The live stream is at-most-once: a dropped connection loses whatever was
in flight. ``CompareClient.start_compare`` therefore treats the run detail
endpoint as the source of truth and reconciles against it whenever the
stream ends without ``run_end``.

Local per-model state follows the same monotonic rules as the server:
once a model is ``completed``, ``failed`` or ``canceled`` no later event
changes it (a late ``delta`` after a cancel is ignored).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List

import httpx

log = logging.getLogger("compare.client")

_TERMINAL = {"completed", "failed", "canceled"}


class CompareClientError(Exception):
    """Non-2xx JSON answer of the compare API (``{code, message, cause}``)."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        cause: str | None = None,
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.cause = cause


class SSEDecoder:
    """Incremental ``data:`` frame decoder (frames end with a blank line)."""

    def __init__(self) -> None:
        self._buf = ""

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        self._buf += chunk.replace("\r\n", "\n")
        events: List[Dict[str, Any]] = []
        while "\n\n" in self._buf:
            frame, self._buf = self._buf.split("\n\n", 1)
            data = [
                ln[5:].lstrip(" ")
                for ln in frame.split("\n")
                if ln.startswith("data:")
            ]
            if not data:
                continue
            try:
                events.append(json.loads("\n".join(data)))
            except json.JSONDecodeError:
                log.warning("dropping undecodable frame: %.80s", frame)
        return events


@dataclass
class ModelView:
    model_id: str
    status: str = "pending"
    content: str = ""
    reasoning: str = ""
    usage: Dict[str, Any] | None = None
    error: str | None = None
    server_started_at: str | None = None
    server_completed_at: str | None = None
    inference_time_ms: int | None = None

    @property
    def terminal(self) -> bool:
        return self.status in _TERMINAL


@dataclass
class CompareRunView:
    run_id: str | None = None
    chat_id: str | None = None
    status: str = "running"
    models: Dict[str, ModelView] = field(default_factory=dict)
    finished: bool = False
    reconciled: bool = False

    def _model(self, model_id: str) -> ModelView:
        mv = self.models.get(model_id)
        if mv is None:
            mv = self.models[model_id] = ModelView(model_id)
        return mv

    def apply(self, ev: Dict[str, Any]) -> bool:
        """Apply one stream event; returns False when it was ignored."""
        kind = ev.get("type")
        if kind == "heartbeat":
            return True
        if kind == "run_start":
            self.run_id = ev.get("runId")
            self.chat_id = ev.get("chatId")
            self.models = {m: ModelView(m) for m in ev.get("models", [])}
            return True
        if kind == "run_end":
            self.finished = True
            return True
        model_id = ev.get("modelId")
        if not model_id:
            return False
        mv = self._model(model_id)
        if mv.terminal:
            return False
        if kind == "model_start":
            mv.status = "running"
            mv.server_started_at = ev.get("serverStartedAt")
        elif kind == "delta":
            mv.content += ev.get("textDelta", "")
        elif kind == "reasoning_delta":
            mv.reasoning += ev.get("reasoningDelta", "")
        elif kind == "model_end":
            mv.status = "completed"
            mv.usage = ev.get("usage")
            mv.server_started_at = ev.get("serverStartedAt")
            mv.server_completed_at = ev.get("serverCompletedAt")
            mv.inference_time_ms = ev.get("inferenceTimeMs")
        elif kind == "model_error":
            mv.status = "failed"
            mv.error = ev.get("error")
        else:
            return False
        return True

    def mark_canceled(self, model_id: str | None = None) -> None:
        """Optimistic local cancel (the server confirms via reconcile)."""
        for mid, mv in self.models.items():
            if model_id is None or mid == model_id:
                if not mv.terminal:
                    mv.status = "canceled"

    def reconcile(self, detail: Dict[str, Any]) -> None:
        """Replace local state with the persisted run detail."""
        run = detail.get("run") or {}
        self.run_id = run.get("id", self.run_id)
        self.chat_id = run.get("chatId", self.chat_id)
        self.status = run.get("status", self.status)
        for row in detail.get("results", []):
            mv = self._model(row["modelId"])
            mv.status = row.get("status", mv.status)
            mv.content = row.get("content") or ""
            mv.reasoning = row.get("reasoning") or ""
            mv.usage = row.get("usage")
            mv.error = row.get("error")
            mv.server_started_at = row.get("serverStartedAt")
            mv.server_completed_at = row.get("serverCompletedAt")
            mv.inference_time_ms = row.get("inferenceTimeMs")
        self.reconciled = True


class CompareClient:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        plan: str = "free",
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 75.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout_s
        )
        self._headers = {"X-User-Id": user_id, "X-User-Plan": plan}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CompareClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    @staticmethod
    async def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        await response.aread()
        try:
            body = response.json()
        except ValueError:
            body = {}
        raise CompareClientError(
            response.status_code,
            body.get("code", "unknown"),
            body.get("message", response.text[:200]),
            body.get("cause"),
        )

    async def _json(self, method: str, url: str, **kw) -> Dict[str, Any]:
        response = await self._client.request(
            method, url, headers=self._headers, **kw
        )
        await self._raise_for_error(response)
        return response.json()

    async def start_compare(
        self,
        chat_id: str,
        prompt: str,
        model_ids: List[str],
        run_id: str | None = None,
        on_event: Callable[[Dict[str, Any]], None] | None = None,
    ) -> CompareRunView:
        """Stream one compare run into a local view.

        A stream that ends without ``run_end`` (network drop, server side
        cancel) is reconciled against the persisted run detail.
        """
        view = CompareRunView(run_id=run_id)
        body: Dict[str, Any] = {
            "chatId": chat_id,
            "prompt": prompt,
            "modelIds": list(model_ids),
        }
        if run_id:
            body["runId"] = run_id
        decoder = SSEDecoder()
        try:
            async with self._client.stream(
                "POST",
                "/api/compare/stream",
                json=body,
                headers=self._headers,
            ) as response:
                await self._raise_for_error(response)
                async for chunk in response.aiter_text():
                    for ev in decoder.feed(chunk):
                        view.apply(ev)
                        if on_event is not None:
                            on_event(ev)
        except httpx.TransportError as e:
            log.warning(
                "compare stream interrupted run=%s: %s", view.run_id, e
            )
        if view.finished or view.run_id is None:
            if view.finished:
                view.status = await self._final_status(view)
            return view
        view.reconcile(await self.load_run(view.run_id))
        return view

    async def _final_status(self, view: CompareRunView) -> str:
        try:
            detail = await self.load_run(view.run_id)
        except (httpx.TransportError, CompareClientError) as e:
            log.warning("run status lookup failed run=%s: %s", view.run_id, e)
            return view.status
        return (detail.get("run") or {}).get("status", view.status)

    async def cancel_model(self, run_id: str, model_id: str) -> Dict[str, Any]:
        return await self._json(
            "POST",
            "/api/compare/cancel",
            json={"runId": run_id, "modelId": model_id},
        )

    async def cancel_all(self, run_id: str) -> Dict[str, Any]:
        return await self._json(
            "POST", "/api/compare/cancel", json={"runId": run_id}
        )

    async def load_run(self, run_id: str) -> Dict[str, Any]:
        return await self._json("GET", f"/api/compare/{run_id}")

    async def list_runs(
        self,
        chat_id: str,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"chatId": chat_id}
        if limit is not None:
            params["limit"] = limit
        if cursor:
            params["cursor"] = cursor
        return await self._json("GET", "/api/compare", params=params)

    async def iter_runs(
        self, chat_id: str, page_size: int | None = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Every run of a chat, oldest first, following ``nextCursor``."""
        cursor = None
        while True:
            page = await self.list_runs(chat_id, page_size, cursor)
            for item in page.get("items", []):
                yield item
            cursor = page.get("nextCursor")
            if not page.get("hasMore") or not cursor:
                return


__all__ = [
    "CompareClient",
    "CompareClientError",
    "CompareRunView",
    "ModelView",
    "SSEDecoder",
]
