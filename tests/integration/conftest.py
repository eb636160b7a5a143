"""Shared fixtures for integration tests."""

import json
import uuid
from typing import Any, AsyncGenerator, Dict, Generator

import pytest
from aiokafka import AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from testcontainers.kafka import KafkaContainer

from tenant_migration_worker.config import KafkaConfig, Settings, WorkerConfig


@pytest.fixture(scope="session")
def kafka_container() -> Generator[KafkaContainer, None, None]:
    """Start Kafka container for the test session."""
    with KafkaContainer(image="confluentinc/cp-kafka:7.5.0") as kafka:
        yield kafka


@pytest.fixture
def settings(kafka_container: KafkaContainer) -> Settings:
    """Worker settings pointing at the container with per-test topic names."""
    suffix = uuid.uuid4().hex[:8]
    return Settings(
        kafka=KafkaConfig(
            bootstrap_servers=kafka_container.get_bootstrap_server(),
            consumer_group_id=f"test-worker-{suffix}",
            session_timeout_ms=10000,
            max_poll_interval_ms=300000,
        ),
        worker=WorkerConfig(
            mail_topic=f"migration.mail.{suffix}",
            files_topic=f"migration.files.{suffix}",
            sites_topic=f"migration.sites.{suffix}",
            teams_topic=f"migration.teams.{suffix}",
            backup_topic=f"backup.jobs.{suffix}",
            progress_topic=f"migration.progress.{suffix}",
            results_topic=f"migration.results.{suffix}",
            errors_topic=f"migration.errors.{suffix}",
            control_topic=f"migration.control.{suffix}",
            health_port=0,
            shutdown_grace_seconds=5.0,
        ),
    )


@pytest.fixture
async def topics(settings: Settings) -> Dict[str, str]:
    """Create every topic the worker reads or writes."""
    worker = settings.worker
    names = {
        "mail": worker.mail_topic,
        "files": worker.files_topic,
        "sites": worker.sites_topic,
        "teams": worker.teams_topic,
        "backup": worker.backup_topic,
        "progress": worker.progress_topic,
        "results": worker.results_topic,
        "errors": worker.errors_topic,
        "control": worker.control_topic,
    }
    admin = AIOKafkaAdminClient(bootstrap_servers=settings.kafka.bootstrap_servers)
    await admin.start()
    try:
        await admin.create_topics(
            [NewTopic(name, num_partitions=1, replication_factor=1) for name in names.values()]
        )
    finally:
        await admin.close()
    return names


@pytest.fixture
async def kafka_producer(settings: Settings) -> AsyncGenerator[AIOKafkaProducer, None]:
    """Create a Kafka producer for testing."""
    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka.bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        key_serializer=lambda k: k.encode("utf-8") if k else None,
    )
    await producer.start()
    try:
        yield producer
    finally:
        await producer.stop()


@pytest.fixture
def sample_job_message() -> Dict[str, Any]:
    """Sample mail migration job."""
    return {
        "job_id": f"job-{uuid.uuid4().hex[:8]}",
        "organization_id": "org-1",
        "source_tenant": {"id": "src", "directory_id": "dir-src"},
        "destination_tenant": {"id": "dst", "directory_id": "dir-dst"},
        "workloads": ["mail"],
        "scope": {"users": ["alice@source.test"], "mappings": {"alice@source.test": "alice@dest.test"}},
    }
