"""Execution of one migration or backup job.

The runner claims the job, resolves credentials for both tenants, runs each
requested workload through its processor and reports the outcome:

- a workload that fails as a whole is recorded and the next one runs;
- credential failures, or every workload failing, fail the job (JobError);
- a pause or cancel request stops the run at the next page or workload
  boundary, leaving checkpoints in place for the resumed run.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

import structlog

from .client.chunked import ChunkedTransfer
from .client.session import GraphSession
from .client.storage import BackupStorage
from .config import GraphAPIConfig
from .processors import get_processor
from .processors.base import WorkloadContext, WorkloadProcessor
from .schemas.job import CompletionPolicy, JobKind, JobMessage, TenantRef, Workload
from .schemas.results import JobProgress, JobResult, SnapshotRecord, WorkloadResult, utcnow
from .state import JobStatus
from .store import CheckpointManager, JobStore
from .utils.cancellation import CancellationToken
from .utils.errors import InvalidTransitionError, JobError, MigrationError, ValidationError
from .utils.formatting import format_bytes

ProgressPublisher = Callable[[JobProgress], Awaitable[None]]


class SessionFactory(Protocol):
    async def get_client_for(self, tenant: TenantRef) -> GraphSession:
        ...


class JobRunner:
    """Run jobs against a store, a credential resolver and backup storage."""

    def __init__(
        self,
        store: JobStore,
        credentials: SessionFactory,
        storage: Optional[BackupStorage] = None,
        graph_config: Optional[GraphAPIConfig] = None,
        processors: Optional[Dict[Workload, WorkloadProcessor]] = None,
        publish_progress: Optional[ProgressPublisher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_recorded_errors: int = 500,
    ):
        self.store = store
        self.credentials = credentials
        self.storage = storage
        self.graph_config = graph_config or GraphAPIConfig()
        self.processors = processors
        self.publish_progress = publish_progress
        self.sleep = sleep
        self.max_recorded_errors = max_recorded_errors
        self.chunked = ChunkedTransfer(
            threshold=self.graph_config.chunk_threshold_bytes,
            chunk_size=self.graph_config.chunk_size_bytes,
        )
        self.logger = structlog.get_logger()

    def _processor(self, workload: Workload) -> WorkloadProcessor:
        if self.processors is not None:
            if workload not in self.processors:
                raise ValidationError(f"Unsupported workload: {workload}", field="workloads")
            return self.processors[workload]
        return get_processor(workload)

    async def run(self, job: JobMessage) -> JobResult:
        """Execute one job message.

        Returns:
            JobResult; status is PAUSED or CANCELLED when the run was
            interrupted, otherwise the terminal status written to the store

        Raises:
            JobError: If credentials cannot be resolved or every workload
                failed; the job is marked FAILED first
            InvalidTransitionError: If the job is not in a runnable state
        """
        log = self.logger.bind(job_id=job.job_id, kind=job.kind.value)
        policy = job.options.completion_policy

        status = await self.store.get_status(job.job_id)
        if status in (JobStatus.PAUSED, JobStatus.CANCELLED, JobStatus.COMPLETED):
            log.info("Skipping job that is not runnable", status=status.value)
            return JobResult(
                job_id=job.job_id,
                kind=job.kind,
                status=status,
                completion_policy=policy,
                interrupted=status != JobStatus.COMPLETED,
            )
        if status != JobStatus.RUNNING:
            await self.store.transition(job.job_id, JobStatus.RUNNING)
        else:
            log.info("Resuming job already marked running")

        if job.kind == JobKind.BACKUP and self.storage is None:
            await self.store.transition(job.job_id, JobStatus.FAILED)
            raise JobError("No backup storage configured", job_id=job.job_id)

        started_at = utcnow()
        source, destination = await self._resolve_sessions(job, log)

        cancel = CancellationToken(lambda: self.store.get_status(job.job_id))
        checkpoints = CheckpointManager(self.store, job.job_id, job.effective_run_id, job.sync_mode)
        results: List[WorkloadResult] = []
        interrupted = False

        try:
            for index, workload in enumerate(job.workloads):
                if await cancel.should_stop():
                    interrupted = True
                    break
                result = await self._run_workload(
                    job, index, workload, source, destination, cancel, checkpoints, results, log
                )
                results.append(result)
                await self._flush(job, results, None, index + 1)
                if result.interrupted:
                    interrupted = True
                    break
        finally:
            await source.close()
            if destination is not None:
                await destination.close()

        # A request that arrived after the last page check still wins
        if interrupted or await cancel.should_stop():
            return self._interrupted(job, cancel.reason or JobStatus.PAUSED, results, started_at, log)

        if results and all(r.error for r in results):
            stopped = await self._finish(job.job_id, JobStatus.FAILED)
            if stopped is not None:
                return self._interrupted(job, stopped, results, started_at, log)
            if job.kind == JobKind.BACKUP:
                await self._save_snapshot(job, results, JobStatus.FAILED, started_at)
            log.error("All workloads failed", errors={r.workload.value: r.error for r in results})
            raise JobError(
                "All workloads failed",
                job_id=job.job_id,
                details={"workloads": {r.workload.value: r.error for r in results}},
            )

        job_result = JobResult(
            job_id=job.job_id,
            kind=job.kind,
            status=JobStatus.COMPLETED,
            completion_policy=policy,
            workloads=results,
            snapshot_id=job.effective_run_id if job.kind == JobKind.BACKUP else None,
            started_at=started_at,
            completed_at=utcnow(),
        )
        if policy == CompletionPolicy.FAIL_ON_ITEM_FAILURES and job_result.failed > 0:
            job_result.status = JobStatus.FAILED

        if job.kind == JobKind.BACKUP:
            await self._save_snapshot(job, results, job_result.status, started_at)
        stopped = await self._finish(job.job_id, job_result.status)
        if stopped is not None:
            return self._interrupted(job, stopped, results, started_at, log)

        log.info(
            "Job finished",
            status=job_result.status.value,
            processed=job_result.processed,
            failed=job_result.failed,
            transferred=format_bytes(job_result.bytes_transferred),
        )
        return job_result

    async def _finish(self, job_id: str, status: JobStatus) -> Optional[JobStatus]:
        """Record the terminal status; return the pause/cancel status that beat it, if any.

        Raises:
            InvalidTransitionError: If the job left RUNNING for any other status
        """
        try:
            await self.store.transition(job_id, status)
        except InvalidTransitionError:
            observed = await self.store.get_status(job_id)
            if observed not in CancellationToken.STOP_STATUSES:
                raise
            return observed
        return None

    def _interrupted(
        self,
        job: JobMessage,
        reason: JobStatus,
        results: List[WorkloadResult],
        started_at,
        log,
    ) -> JobResult:
        log.info("Job interrupted", reason=reason.value, workloads_done=len(results))
        return JobResult(
            job_id=job.job_id,
            kind=job.kind,
            status=reason,
            completion_policy=job.options.completion_policy,
            workloads=results,
            interrupted=True,
            snapshot_id=job.effective_run_id if job.kind == JobKind.BACKUP else None,
            started_at=started_at,
        )

    async def _resolve_sessions(self, job: JobMessage, log):
        source = None
        try:
            source = await self.credentials.get_client_for(job.source_tenant)
            destination = None
            if job.kind == JobKind.MIGRATION:
                destination = await self.credentials.get_client_for(job.destination_tenant)
        except MigrationError as e:
            if source is not None:
                await source.close()
            log.error("Credential resolution failed", error=e.message, error_type=type(e).__name__)
            await self.store.transition(job.job_id, JobStatus.FAILED)
            raise JobError(
                f"Credential resolution failed: {e.message}",
                job_id=job.job_id,
                details={"cause": e.to_dict()},
            ) from e
        return source, destination

    async def _run_workload(
        self,
        job: JobMessage,
        index: int,
        workload: Workload,
        source: GraphSession,
        destination: Optional[GraphSession],
        cancel: CancellationToken,
        checkpoints: CheckpointManager,
        finished: List[WorkloadResult],
        log,
    ) -> WorkloadResult:
        result = WorkloadResult(workload=workload)

        async def on_progress(live: WorkloadResult) -> None:
            await self._flush(job, finished + [live], live, index + live.subject_fraction)

        try:
            ctx = WorkloadContext(
                job_id=job.job_id,
                run_id=job.effective_run_id,
                kind=job.kind,
                workload=workload,
                source=source,
                destination=destination,
                storage=self.storage,
                scope=job.scope,
                options=job.options,
                cancel=cancel,
                checkpoints=checkpoints,
                result=result,
                chunked=self.chunked,
                graph=self.graph_config,
                sleep=self.sleep,
                on_progress=on_progress,
                logger=log.bind(workload=workload.value),
            )
            await self._processor(workload).process(ctx)
        except Exception as e:
            log.error(
                "Workload failed",
                workload=workload.value,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=not isinstance(e, MigrationError),
            )
            result.error = getattr(e, "message", None) or str(e)
            result.record_failure(workload.value, e, level="workload")
        return result

    async def _flush(
        self,
        job: JobMessage,
        results: List[WorkloadResult],
        current: Optional[WorkloadResult],
        position: float,
    ) -> None:
        """Persist (and publish) aggregated progress."""
        errors = []
        for r in results:
            room = self.max_recorded_errors - len(errors)
            if room <= 0:
                break
            errors.extend(r.errors[:room])

        total = len(job.workloads) or 1
        progress = JobProgress(
            job_id=job.job_id,
            percent=round(min(100.0, position / total * 100.0), 2),
            processed=sum(r.processed for r in results),
            failed=sum(r.failed for r in results),
            bytes_transferred=sum(r.bytes_transferred for r in results),
            errors=errors,
            current_workload=current.workload if current is not None else None,
        )
        await self.store.update_progress(progress)
        if self.publish_progress is not None:
            await self.publish_progress(progress)

    async def _save_snapshot(
        self,
        job: JobMessage,
        results: List[WorkloadResult],
        status: JobStatus,
        started_at,
    ) -> SnapshotRecord:
        """Write the snapshot manifest and record the snapshot."""
        snapshot_id = job.effective_run_id
        completed_at = utcnow()
        record = SnapshotRecord(
            snapshot_id=snapshot_id,
            backup_job_id=job.job_id,
            backup_type=job.sync_mode,
            storage_path=self.storage.snapshot_key(snapshot_id),
            size_bytes=sum(r.bytes_transferred for r in results),
            total_items=sum(r.processed for r in results),
            failed_items=sum(r.failed for r in results),
            started_at=started_at,
            completed_at=completed_at,
            status=status,
        )
        manifest = record.model_dump(mode="json")
        manifest["source_tenant"] = job.source_tenant.id
        manifest["workloads"] = [r.model_dump(mode="json") for r in results]
        await self.storage.put_json(self.storage.snapshot_key(snapshot_id, "manifest.json"), manifest)
        await self.store.save_snapshot(record)
        return record
