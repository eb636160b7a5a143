"""Unit tests for the health server."""

import json
from unittest.mock import MagicMock

import pytest

from tenant_migration_worker.health import HealthServer


@pytest.fixture
def worker():
    worker = MagicMock()
    worker.running = True
    worker.consumer = object()
    worker.producer = object()
    worker.metrics = {"jobs_completed": 2}
    worker.active_jobs = {"job-1": "migration.mail"}
    worker.offsets.in_flight = 1
    worker.queue_limits = {"migration.mail": 10}
    worker.settings.service_name = "tenant-migration-worker"
    return worker


@pytest.mark.asyncio
class TestHealthServer:
    """Test cases for HealthServer handlers."""

    async def test_health(self, worker):
        """Test liveness reports the running flag."""
        response = await HealthServer(worker)._health_handler(MagicMock())

        assert response.status == 200
        assert json.loads(response.body) == {"status": "healthy", "worker_running": True}

    async def test_ready(self, worker):
        """Test readiness when both Kafka clients exist."""
        response = await HealthServer(worker)._ready_handler(MagicMock())

        assert response.status == 200
        assert json.loads(response.body)["status"] == "ready"

    async def test_not_ready_without_producer(self, worker):
        """Test readiness fails before the producer starts."""
        worker.producer = None

        response = await HealthServer(worker)._ready_handler(MagicMock())

        assert response.status == 503
        assert json.loads(response.body)["kafka_producer"] == "disconnected"

    async def test_metrics(self, worker):
        """Test metrics expose counters and active jobs."""
        response = await HealthServer(worker)._metrics_handler(MagicMock())

        body = json.loads(response.body)
        assert body["metrics"] == {"jobs_completed": 2}
        assert body["active_jobs"] == {"job-1": "migration.mail"}
        assert body["in_flight_messages"] == 1

    def test_routes(self, worker):
        """Test the app exposes the probe routes."""
        app = HealthServer(worker).build_app()

        paths = {route.resource.canonical for route in app.router.routes()}
        assert {"/health", "/ready", "/metrics"} <= paths
