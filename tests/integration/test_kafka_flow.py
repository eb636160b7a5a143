"""Integration tests for end-to-end Kafka flows."""

import asyncio
import json
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from tenant_migration_worker.client.storage import InMemoryBackupStorage
from tenant_migration_worker.config import Settings
from tenant_migration_worker.schemas.job import CompletionPolicy, JobKind
from tenant_migration_worker.schemas.results import JobResult, WorkloadResult
from tenant_migration_worker.state import JobStatus
from tenant_migration_worker.store import InMemoryJobStore
from tenant_migration_worker.worker import TenantMigrationWorker


async def consume_one(settings: Settings, topic: str, timeout: float = 30.0) -> Dict[str, Any]:
    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka.bootstrap_servers,
        group_id=f"{topic}-reader",
        auto_offset_reset="earliest",
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
    )
    await consumer.start()
    try:
        msg = await asyncio.wait_for(consumer.getone(), timeout=timeout)
        return msg.value
    finally:
        await consumer.stop()


async def wait_for(predicate, timeout: float = 30.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.2)


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
async def worker(settings: Settings, topics: Dict[str, str], store: InMemoryJobStore):
    """Running worker whose job runner is scripted."""
    worker = TenantMigrationWorker(
        settings,
        store=store,
        storage=InMemoryBackupStorage(),
        credentials=AsyncMock(),
    )
    worker.runner = AsyncMock()
    task = asyncio.create_task(worker.start())

    async def started() -> bool:
        return worker.running and worker.producer is not None

    await wait_for(started)
    try:
        yield worker
    finally:
        worker.running = False
        await asyncio.wait_for(task, timeout=30.0)


@pytest.mark.integration
@pytest.mark.asyncio
class TestKafkaFlow:
    """Integration tests for Kafka message flows."""

    async def test_job_result_is_published(
        self,
        worker: TenantMigrationWorker,
        settings: Settings,
        topics: Dict[str, str],
        kafka_producer: AIOKafkaProducer,
        sample_job_message: Dict[str, Any],
    ):
        """Test a job from the mail queue ends up on the results topic."""
        job_id = sample_job_message["job_id"]
        worker.runner.run.return_value = JobResult(
            job_id=job_id,
            kind=JobKind.MIGRATION,
            status=JobStatus.COMPLETED,
            completion_policy=CompletionPolicy.COMPLETE_WITH_FAILURES,
            workloads=[WorkloadResult(workload="mail", processed=12)],
        )

        await kafka_producer.send_and_wait(topics["mail"], key=job_id, value=sample_job_message)
        result = await consume_one(settings, topics["results"])

        assert result["job_id"] == job_id
        assert result["status"] == "COMPLETED"
        assert result["processed"] == 12
        assert worker.runner.run.call_args.args[0].scope.users == ["alice@source.test"]

    async def test_invalid_job_goes_to_errors(
        self,
        worker: TenantMigrationWorker,
        settings: Settings,
        topics: Dict[str, str],
        kafka_producer: AIOKafkaProducer,
    ):
        """Test a malformed job is reported on the errors topic."""
        await kafka_producer.send_and_wait(topics["files"], key="bad-job", value={"job_id": "bad-job"})
        error = await consume_one(settings, topics["errors"])

        assert error["job_id"] == "bad-job"
        assert error["error"]["type"] == "ValidationError"
        assert error["error"]["retriable"] is False
        worker.runner.run.assert_not_called()

    async def test_control_topic_pauses_job(
        self,
        worker: TenantMigrationWorker,
        topics: Dict[str, str],
        kafka_producer: AIOKafkaProducer,
        store: InMemoryJobStore,
    ):
        """Test a pause request on the control topic updates the job store."""
        store.set_status("job-ctl", JobStatus.RUNNING)

        await kafka_producer.send_and_wait(
            topics["control"], key="job-ctl", value={"job_id": "job-ctl", "action": "pause"}
        )

        async def paused() -> bool:
            return await store.get_status("job-ctl") == JobStatus.PAUSED

        await wait_for(paused)
        assert worker.metrics["control_messages"] == 1
