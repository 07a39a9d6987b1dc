from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from settlement_engine.api.admin import router as admin_router
from settlement_engine.core.logging import configure_logging
from settlement_engine.core.observability import PrometheusMetrics
from settlement_engine.services.scheduler import scheduler_lifespan

configure_logging()
logger = logging.getLogger("settlement-engine")


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and record its latency under the route template."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        response.headers["X-Request-ID"] = request_id
        route_path = _route_path(request)
        request.app.state.metrics.observe_http_request(
            path=route_path, method=request.method, elapsed_seconds=elapsed
        )
        logger.info(
            "%s %s -> %s in %.2fms",
            request.method,
            route_path,
            response.status_code,
            elapsed * 1000,
            extra={"request_id": request_id},
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.metrics = PrometheusMetrics.from_env()
    async with scheduler_lifespan(app):
        yield


app = FastAPI(title="Pool Settlement Engine", version="0.1.0", lifespan=lifespan)
app.state.metrics = PrometheusMetrics(enabled=False)
app.add_middleware(RequestContextMiddleware)
app.include_router(admin_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "settlement-engine"}


@app.get("/metrics")
def metrics(request: Request) -> Response:
    return Response(content=request.app.state.metrics.render(), media_type="text/plain; version=0.0.4")
