"""Health check server for the tenant migration worker.

Provides HTTP health endpoints for Kubernetes probes and monitoring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from tenant_migration_worker.worker import TenantMigrationWorker


class HealthServer:
    """HTTP server for health checks.

    Provides endpoints:
    - /health: Liveness probe (worker is running)
    - /ready: Readiness probe (Kafka clients are connected)
    - /metrics: Counters, active jobs and queue limits in JSON format
    """

    def __init__(
        self,
        worker: TenantMigrationWorker,
        host: str = "0.0.0.0",
        port: int = 8080,
    ) -> None:
        """Initialize health server.

        Args:
            worker: The worker instance
            host: Host to bind to
            port: Port to listen on
        """
        self.worker = worker
        self.host = host
        self.port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/ready", self._ready_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        """Start the health server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

    async def stop(self) -> None:
        """Stop the health server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle /health endpoint (liveness probe)."""
        return web.json_response(
            {
                "status": "healthy",
                "worker_running": self.worker.running,
            }
        )

    async def _ready_handler(self, request: web.Request) -> web.Response:
        """Handle /ready endpoint (readiness probe)."""
        consumer = "connected" if self.worker.consumer is not None else "disconnected"
        producer = "connected" if self.worker.producer is not None else "disconnected"
        is_ready = self.worker.running and consumer == producer == "connected"

        return web.json_response(
            {
                "status": "ready" if is_ready else "not_ready",
                "kafka_consumer": consumer,
                "kafka_producer": producer,
            },
            status=200 if is_ready else 503,
        )

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        """Handle /metrics endpoint."""
        return web.json_response(
            {
                "metrics": self.worker.metrics,
                "active_jobs": dict(self.worker.active_jobs),
                "in_flight_messages": self.worker.offsets.in_flight,
                "queue_limits": self.worker.queue_limits,
                "service": self.worker.settings.service_name,
            }
        )
