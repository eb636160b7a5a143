"""Shared fixtures for unit tests."""

from typing import Optional
from unittest.mock import AsyncMock

import pytest
from fakes import FakeSession

from tenant_migration_worker.client.chunked import ChunkedTransfer
from tenant_migration_worker.client.storage import InMemoryBackupStorage
from tenant_migration_worker.config import GraphAPIConfig
from tenant_migration_worker.processors.base import WorkloadContext
from tenant_migration_worker.schemas.job import JobKind, JobOptions, JobScope, SyncMode, Workload
from tenant_migration_worker.schemas.results import WorkloadResult
from tenant_migration_worker.store import CheckpointManager, InMemoryJobStore
from tenant_migration_worker.utils.cancellation import CancellationToken


@pytest.fixture
def source():
    return FakeSession("source-tenant")


@pytest.fixture
def destination():
    return FakeSession("destination-tenant")


@pytest.fixture
def storage():
    return InMemoryBackupStorage()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def make_context(source, destination, storage, job_store):
    """Factory for WorkloadContext with in-memory collaborators."""

    def _make(
        workload: Workload,
        kind: JobKind = JobKind.MIGRATION,
        scope: Optional[JobScope] = None,
        options: Optional[JobOptions] = None,
        cancel: Optional[CancellationToken] = None,
        mode: SyncMode = SyncMode.FULL,
        run_id: str = "run-1",
        chunked: Optional[ChunkedTransfer] = None,
    ) -> WorkloadContext:
        return WorkloadContext(
            job_id="job-1",
            run_id=run_id,
            kind=kind,
            workload=workload,
            source=source,
            destination=destination if kind == JobKind.MIGRATION else None,
            storage=storage if kind == JobKind.BACKUP else None,
            scope=scope or JobScope(),
            options=options or JobOptions(),
            cancel=cancel or CancellationToken(),
            checkpoints=CheckpointManager(job_store, "job-1", run_id, mode),
            result=WorkloadResult(workload=workload),
            chunked=chunked or ChunkedTransfer(),
            graph=GraphAPIConfig(),
            sleep=AsyncMock(),
        )

    return _make
