"""FastAPI application factory for the compare service.

Endpoints: /health, /models and the /api/compare routes. The service graph
(``Container``) is built once per app; its store is opened and the stale
handle sweeper started in the lifespan.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core import metrics
from core.compare.usage import Principal
from core.config import AggregatedConfig, get_config
from core.errors import CompareError
from core.llm.factory import list_models
from core.observability import configure_logging
from modelcompare.api.dependencies import (
    Container,
    build_container,
    get_container,
    get_principal,
)
from modelcompare.api.routes.compare import router as compare_router

log = logging.getLogger("compare.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    c: Container = app.state.container
    cfg = c.config.compare
    await c.store.open()
    stop = asyncio.Event()
    sweeper = asyncio.create_task(
        c.registry.run_sweeper(
            cfg.sweep_interval_s,
            cfg.stale_handle_max_age_s,
            stop,
            on_sweep=c.multiplexer.reap_orphans,
        ),
        name="compare:sweeper",
    )
    try:
        yield
    finally:
        stop.set()
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        # anything still streaming at shutdown is aborted
        for run_id, _ in c.registry.active():
            c.registry.cancel(run_id, reason="shutdown")
        await c.provider.aclose()
        await c.store.close()


def create_app(
    container: Container | None = None,
    config: AggregatedConfig | None = None,
) -> FastAPI:
    cfg = container.config if container is not None else (
        config or get_config()
    )
    configure_logging(cfg.logging)
    app = FastAPI(
        title="Model Compare API",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.container = container or build_container(cfg)

    # Dev CORS (UI on :3000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CompareError)
    async def _compare_error(request: Request, exc: CompareError):
        log.info("request rejected %s: %s", exc.code, exc.message)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        err = CompareError(
            "bad_request:api",
            "Invalid request body",
            cause="; ".join(
                f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}"
                for e in exc.errors()
            ),
        )
        metrics.inc_rejected(err.code)
        return JSONResponse(err.to_payload(), status_code=err.status_code)

    @app.get("/health")
    def health():  # noqa: D401
        return {"status": "ok"}

    @app.get("/models")
    async def models(
        principal: Principal = Depends(get_principal),
        c: Container = Depends(get_container),
    ):  # noqa: D401
        allowed = set(c.usage.entitlements.allowed_models(principal.plan))
        used, quota = await c.usage.usage(principal)
        return {
            "models": [
                {
                    "id": m.id,
                    "supportsReasoning": m.supports_reasoning,
                    "allowed": m.id in allowed,
                }
                for m in list_models(c.config)
            ],
            "plan": principal.plan,
            "maxModels": c.config.compare.max_models,
            "quota": {"used": used, "limit": quota},
        }

    app.include_router(compare_router)

    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):  # noqa: D401
        start = time.time()
        labels = {"route": request.url.path, "method": request.method}
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.time() - start) * 1000.0
            metrics.inc("api_request_total", labels)
            metrics.observe("api_request_latency_ms", duration_ms, labels)
            if response is not None and response.status_code >= 400:
                metrics.inc(
                    "api_request_errors_total",
                    labels | {"status": str(response.status_code)},
                )

    return app


def main() -> None:  # pragma: no cover
    import uvicorn

    uvicorn.run(
        "modelcompare.api.app:create_app",
        factory=True,
        host="127.0.0.1",
        port=8000,
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
