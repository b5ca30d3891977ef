"""
Proxy under test — forwarding reverse proxy started by the benchmark runtime.
- Listens on its own port and forwards every request to the echo backend.
- One shared httpx.AsyncClient per app, opened/closed with the app lifespan.
- Upstream failures become 502; no retries, no cache, no queue.
- Observability: Prometheus counters/histogram on the default registry,
  published by create_metrics_app() on a port of its own.
"""
import os
import time
import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable, Optional, Tuple

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

BACKEND_HOST = os.getenv("PROXYBENCH_HOST", "127.0.0.1")
_timeout = os.getenv("PROXYBENCH_UPSTREAM_TIMEOUT", "")
UPSTREAM_TIMEOUT = float(_timeout) if _timeout else None
UPSTREAM_MAX_CONNECTIONS = int(os.getenv("PROXYBENCH_MAX_CONNECTIONS", "1000"))

HOP_BY_HOP = frozenset([
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "proxy-connection", "te", "trailer", "transfer-encoding", "upgrade",
])
# httpx recomputes these for the request, Starlette and uvicorn for the response.
REQUEST_SKIP = HOP_BY_HOP | {"host", "content-length"}
RESPONSE_SKIP = HOP_BY_HOP | {"content-length", "content-encoding", "date", "server"}
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

logger = logging.getLogger("proxybench.proxy")

M_REQ_FORWARDED = Counter("proxy_requests_forwarded_total", "Requests forwarded upstream")
M_UPSTREAM_ERRORS = Counter("proxy_upstream_errors_total", "Upstream transport failures")
M_UPSTREAM_LATENCY = Histogram("proxy_upstream_latency_seconds", "Upstream latency")


def filter_headers(headers: Iterable[Tuple[str, str]], skip) -> Dict[str, str]:
    return {k: v for k, v in headers if k.lower() not in skip}


class UpstreamClient:
    def __init__(self, base_url: str, timeout: Optional[float] = UPSTREAM_TIMEOUT):
        limits = httpx.Limits(max_connections=UPSTREAM_MAX_CONNECTIONS,
                              max_keepalive_connections=UPSTREAM_MAX_CONNECTIONS)
        # trust_env=False: the backend is on loopback, never behind an environment proxy.
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, limits=limits, trust_env=False)

    async def forward(self, method: str, path: str, query: str, headers: Dict[str, str], body: bytes) -> httpx.Response:
        url = f"{path}?{query}" if query else path
        resp = await self.client.request(method, url, headers=headers, content=body)
        return resp

    async def aclose(self):
        await self.client.aclose()


class ProxyService:
    def __init__(self, backend_port: int, backend_host: str = BACKEND_HOST):
        self.backend_url = f"http://{backend_host}:{backend_port}"
        self.upstream: Optional[UpstreamClient] = None

    async def start(self):
        if self.upstream is None:
            self.upstream = UpstreamClient(self.backend_url)
            logger.info(f"ProxyService forwarding to {self.backend_url}")

    async def stop(self):
        if self.upstream is not None:
            await self.upstream.aclose()
            self.upstream = None

    async def handle(self, request: Request) -> Response:
        body = await request.body()
        headers = filter_headers(request.headers.items(), REQUEST_SKIP)
        try:
            start = time.perf_counter()
            resp = await self.upstream.forward(request.method, request.url.path, request.url.query, headers, body)
            M_UPSTREAM_LATENCY.observe(time.perf_counter() - start)
        except httpx.HTTPError as e:
            M_UPSTREAM_ERRORS.inc()
            logger.warning(f"Upstream failure for {request.method} {request.url.path}: {e!r}")
            return PlainTextResponse("Bad Gateway", status_code=502)
        M_REQ_FORWARDED.inc()
        return Response(content=resp.content, status_code=resp.status_code,
                        headers=filter_headers(resp.headers.items(), RESPONSE_SKIP))


def create_app(backend_port: int, backend_host: str = BACKEND_HOST) -> FastAPI:
    service = ProxyService(backend_port, backend_host)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="proxybench proxy", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.service = service

    @app.api_route("/{path:path}", methods=ALL_METHODS)
    async def proxy(request: Request, path: str):
        return await service.handle(request)

    return app


def create_metrics_app() -> FastAPI:
    """Separate app for /metrics and /health; the proxy's catch-all stays transparent."""
    app = FastAPI(title="proxybench metrics", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
