"""HTTP front end of the media proxy."""

from __future__ import annotations

import asyncio
import hmac
import time
from contextlib import asynccontextmanager
from ipaddress import ip_address
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse

from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_observability, instrument_fastapi_app
from ..common.settings import ProxySettings
from .access import AccessGate
from .acquirer import Acquirer
from .coordinator import FetchCoordinator, FetchStatus
from .store import ContentStore


LOGGER = structlog.get_logger("tubeproxy.proxy")

POWERED_BY = "YouTube Streamer by Adams"
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("tubeproxy_requests_total", "Total proxy requests"))
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("tubeproxy_bytes_served_total", "Bytes sent to clients"))
EXPIRED_COUNTER = GLOBAL_REGISTRY.register(Counter("tubeproxy_cache_expired_total", "Cache entries removed by the sweep"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "tubeproxy_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0],
        description="Proxy request latency",
    )
)


class ProxyState:
    def __init__(self, settings: ProxySettings) -> None:
        self.settings = settings
        self.gate = AccessGate.from_paths(
            settings.blacklist_path,
            settings.whitelist_path,
            refresh_seconds=settings.address_list_refresh_seconds,
        )
        self.store = ContentStore(settings.storage_path, settings.cache_ttl_seconds)
        self.acquirer = Acquirer(
            settings.downloader_argv,
            chunk_size=settings.read_chunk_bytes,
            shutdown_grace_seconds=settings.process_shutdown_grace_seconds,
        )
        self.coordinator = FetchCoordinator(
            self.gate,
            self.store,
            self.acquirer,
            download_limit=settings.download_limit_bytes,
        )
        self.logger = LOGGER.bind(storage_path=str(settings.storage_path))

    async def sweep_once(self) -> list[str]:
        removed = await self.store.sweep(is_busy=self.coordinator.is_in_flight)
        if removed:
            EXPIRED_COUNTER.inc(len(removed))
        return removed

    async def sweep_forever(self) -> None:
        interval = self.settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_once()
            except Exception:  # noqa: BLE001
                self.logger.exception("cache_sweep_failed")


def request_target(request: Request) -> str:
    """Raw request target: undecoded path plus query string."""

    raw_path = request.scope.get("raw_path") or request.scope.get("path", "/").encode("utf-8")
    target = raw_path.decode("latin-1")
    query = request.scope.get("query_string") or b""
    if query:
        target = f"{target}?{query.decode('latin-1')}"
    return target


def media_headers(identifier: str) -> dict[str, str]:
    return {
        "Content-Disposition": f'attachment; filename="{identifier}.mp3"',
        "Expires": "0",
        "Accept-Ranges": "bytes",
        "Connection": "keep-alive",
        "X-Powered-By": POWERED_BY,
    }


def not_found() -> PlainTextResponse:
    return PlainTextResponse(
        "404",
        status_code=status.HTTP_404_NOT_FOUND,
        media_type="text/plain;charset=utf-8",
        headers={"X-Powered-By": POWERED_BY},
    )


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy_state  # type: ignore[attr-defined]


def require_metrics_access(request: Request, state: ProxyState = Depends(get_state)) -> None:
    """Metrics need the configured bearer token, or a loopback client when none is set."""

    token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
    if token:
        expected = f"Bearer {token}"
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    try:
        loopback = bool(client_host) and ip_address(client_host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def create_app(settings: Optional[ProxySettings] = None) -> FastAPI:
    settings = settings or ProxySettings()
    configure_observability("tubeproxy.proxy", settings)
    state = ProxyState(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state.store.ensure_directory()
        sweeper = asyncio.create_task(state.sweep_forever(), name="cache-sweep")
        state.logger.info("proxy_started", ttl_seconds=settings.cache_ttl_seconds)
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.proxy_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        """Health check for readiness/liveness probes."""
        health = {"status": "healthy", "checks": {}}
        try:
            health["checks"]["writable"] = state.store.is_writable()
        except OSError as exc:
            health["checks"]["writable"] = f"error: {exc}"
        health["checks"]["in_flight"] = len(state.coordinator.in_flight())
        if health["checks"]["writable"] is not True:
            health["status"] = "unhealthy"
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/metrics", response_class=PlainTextResponse, dependencies=[Depends(require_metrics_access)])
    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{path:path}", methods=ALL_METHODS)
    async def fetch_media(request: Request, state: ProxyState = Depends(get_state)) -> Response:
        source = request.client.host if request.client else None
        outcome = await state.coordinator.get(source, request.method, request_target(request))
        if outcome.status is not FetchStatus.FOUND or outcome.payload is None:
            if outcome.error is not None:
                state.logger.info("media_unavailable", identifier=outcome.identifier, kind=outcome.error.kind)
            return not_found()
        BYTES_SERVED_COUNTER.inc(len(outcome.payload))
        return Response(
            content=outcome.payload,
            status_code=status.HTTP_200_OK,
            media_type="audio/mpeg",
            headers=media_headers(outcome.identifier or ""),
        )

    return app
