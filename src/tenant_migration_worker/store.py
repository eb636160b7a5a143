"""Job, checkpoint and snapshot persistence.

`JobStore` is the boundary to the job-management database. The in-memory
implementation backs the tests and single-process deployments; the worker
feeds it pause/cancel requests from the control topic.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol

import structlog

from .schemas.job import SyncMode
from .schemas.results import JobProgress, SnapshotRecord
from .state import JobStatus, validate_transition

logger = structlog.get_logger()


class CheckpointSlot(str, Enum):
    """Independent cursor lines kept per (job, workload, subject)."""

    LATEST = "latest"  # Cursor of the most recent full or incremental pass
    BASELINE = "baseline"  # Terminal delta cursor of the last full pass
    DIFFERENTIAL = "differential"  # In-progress cursor of a differential pass


@dataclass(frozen=True)
class CheckpointKey:
    job_id: str
    workload: str
    subject_id: str
    slot: CheckpointSlot = CheckpointSlot.LATEST


@dataclass
class CheckpointRecord:
    cursor: str
    complete: bool  # Terminal delta cursor rather than a next-page cursor
    run_id: str
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class JobStore(Protocol):
    """Persistent store for job status, progress, checkpoints and snapshots."""

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        ...

    async def transition(self, job_id: str, target: JobStatus, actor: str = "engine") -> JobStatus:
        ...

    async def update_progress(self, progress: JobProgress) -> None:
        ...

    async def get_checkpoint(self, key: CheckpointKey) -> Optional[CheckpointRecord]:
        ...

    async def put_checkpoint(self, key: CheckpointKey, record: CheckpointRecord) -> None:
        ...

    async def save_snapshot(self, record: SnapshotRecord) -> None:
        ...


class InMemoryJobStore:
    """Process-local JobStore."""

    def __init__(self):
        self.statuses: Dict[str, JobStatus] = {}
        self.progress: Dict[str, JobProgress] = {}
        self.progress_history: Dict[str, List[JobProgress]] = {}
        self.checkpoints: Dict[CheckpointKey, CheckpointRecord] = {}
        self.snapshots: Dict[str, SnapshotRecord] = {}
        self._lock = asyncio.Lock()

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        return self.statuses.get(job_id)

    def set_status(self, job_id: str, status: JobStatus) -> None:
        """Seed a status without validation (job registration)."""
        self.statuses[job_id] = status

    async def transition(self, job_id: str, target: JobStatus, actor: str = "engine") -> JobStatus:
        """Move a job to `target`, enforcing the actor's transition table.

        Raises:
            InvalidTransitionError: If the move is not allowed
        """
        async with self._lock:
            current = self.statuses.get(job_id, JobStatus.PENDING)
            validate_transition(current, target, actor)
            self.statuses[job_id] = target
        logger.info(
            "Job status changed",
            job_id=job_id,
            previous=current.value,
            status=target.value,
            actor=actor,
        )
        return target

    async def update_progress(self, progress: JobProgress) -> None:
        self.progress[progress.job_id] = progress
        self.progress_history.setdefault(progress.job_id, []).append(progress)

    async def get_checkpoint(self, key: CheckpointKey) -> Optional[CheckpointRecord]:
        return self.checkpoints.get(key)

    async def put_checkpoint(self, key: CheckpointKey, record: CheckpointRecord) -> None:
        self.checkpoints[key] = record

    async def save_snapshot(self, record: SnapshotRecord) -> None:
        self.snapshots[record.snapshot_id] = record


class CheckpointManager:
    """Per-run view of the checkpoint store.

    Decides where an enumeration starts and records cursors as pages
    complete, according to the run's sync mode:

    - a cursor written by this same run is always resumed (redelivery after
      a crash or a pause); a finished pass resumes from its terminal delta
      cursor, so only changes made since are enumerated again
    - full runs otherwise start fresh and, once a pass completes, record
      the terminal cursor both as latest and as the new baseline
    - incremental runs continue from the latest terminal cursor
    - differential runs continue from the baseline and never move it
    """

    def __init__(self, store: JobStore, job_id: str, run_id: str, mode: SyncMode = SyncMode.FULL):
        self.store = store
        self.job_id = job_id
        self.run_id = run_id
        self.mode = mode

    @property
    def write_slot(self) -> CheckpointSlot:
        if self.mode == SyncMode.DIFFERENTIAL:
            return CheckpointSlot.DIFFERENTIAL
        return CheckpointSlot.LATEST

    def _key(self, workload: str, subject_id: str, slot: CheckpointSlot) -> CheckpointKey:
        return CheckpointKey(self.job_id, str(workload), subject_id, slot)

    async def start_cursor(self, workload: str, subject_id: str) -> Optional[str]:
        """Cursor an enumeration should start from, or None for a fresh pass."""
        own = await self.store.get_checkpoint(self._key(workload, subject_id, self.write_slot))
        if own is not None and own.run_id == self.run_id:
            return own.cursor

        if self.mode == SyncMode.FULL:
            return None

        if self.mode == SyncMode.INCREMENTAL:
            latest = own
        else:
            latest = await self.store.get_checkpoint(
                self._key(workload, subject_id, CheckpointSlot.BASELINE)
            )
        if latest is not None and latest.complete:
            return latest.cursor
        return None

    async def save_page(self, workload: str, subject_id: str, next_link: str) -> None:
        """Record the cursor of the page after the one just completed."""
        await self.store.put_checkpoint(
            self._key(workload, subject_id, self.write_slot),
            CheckpointRecord(cursor=next_link, complete=False, run_id=self.run_id),
        )

    async def save_delta(self, workload: str, subject_id: str, delta_link: str) -> None:
        """Record the terminal delta cursor of a finished pass."""
        record = CheckpointRecord(cursor=delta_link, complete=True, run_id=self.run_id)
        await self.store.put_checkpoint(self._key(workload, subject_id, self.write_slot), record)
        if self.mode == SyncMode.FULL:
            await self.store.put_checkpoint(
                self._key(workload, subject_id, CheckpointSlot.BASELINE), record
            )
