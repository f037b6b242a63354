"""HTTP trigger server: feed endpoint, health checks and Prometheus metrics."""

import time
import uuid

import httpx
from aiohttp import web
from prometheus_client import REGISTRY
from prometheus_client.openmetrics.exposition import (
    CONTENT_TYPE_LATEST,
    generate_latest,
)

from gtfs_rt_transcoder.hooks import PipelineHooks
from gtfs_rt_transcoder.metrics import get_last_success_timestamp
from gtfs_rt_transcoder.pipeline import FeedPipeline, Invocation
from gtfs_rt_transcoder.runtime import Runtime, claim_cold_start, is_initialized

REQUEST_ID_HEADER = "X-Request-Id"


class TranscoderServer:
    """aiohttp server exposing /feed, /health, /ready and /metrics."""

    def __init__(
        self,
        runtime: Runtime,
        client: httpx.AsyncClient,
        port: int = 8080,
        hooks: PipelineHooks | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            runtime: Initialized process state.
            client: Shared HTTP client for upstream fetches.
            port: Port to listen on.
            hooks: Observability hooks for the pipeline.
        """
        self.runtime = runtime
        self.port = port
        self.pipeline = FeedPipeline(runtime, client, hooks)
        self._start_time = time.time()
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def _get_health_status(self) -> dict[str, object]:
        now = time.time()
        last_success = get_last_success_timestamp()
        return {
            "status": "healthy",
            "uptime_seconds": round(now - self._start_time, 2),
            "root_type": self.runtime.root_type.full_name,
            "schema": self.runtime.registry.source,
            "last_success_seconds_ago": (
                round(now - last_success, 1) if last_success is not None else None
            ),
        }

    async def _handle_feed(self, request: web.Request) -> web.Response:
        """Handle /feed: run one fetch -> decode -> transcode invocation."""
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        invocation = Invocation(request_id=request_id, cold_start=claim_cold_start())
        response = await self.pipeline.invoke(invocation)
        return web.json_response(
            response.body,
            status=response.status_code,
            headers={REQUEST_ID_HEADER: request_id},
        )

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Handle /health endpoint."""
        return web.json_response(self._get_health_status())

    async def _handle_ready(self, _request: web.Request) -> web.Response:
        """Handle /ready endpoint for readiness probes."""
        if not is_initialized():
            return web.json_response(
                {"status": "not_ready", "reason": "runtime_not_initialized"},
                status=503,
            )
        return web.json_response({"status": "ready"})

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        metrics = generate_latest(REGISTRY)  # type: ignore[no-untyped-call]
        # Split content type and charset for aiohttp
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(
            body=metrics,
            content_type=content_type,
            charset="utf-8",
        )

    def create_app(self) -> web.Application:
        """Build the aiohttp application with all routes."""
        app = web.Application()
        app.router.add_get("/feed", self._handle_feed)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/ready", self._handle_ready)
        app.router.add_get("/metrics", self._handle_metrics)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await self._site.start()

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
