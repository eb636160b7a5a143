"""Result and progress schemas produced by the engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar, Literal

from pydantic import BaseModel, Field

from ..state import JobStatus
from .job import CompletionPolicy, JobKind, SyncMode, Workload

ErrorLevel = Literal["item", "container", "workload"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemError(BaseModel):
    """One recorded failure."""

    item_id: str
    message: str
    level: ErrorLevel = "item"
    error_type: str | None = None


class WorkloadResult(BaseModel):
    """Counters accumulated while processing one workload.

    Counters only ever grow; `merge` folds another partial result in.
    """

    MAX_ERRORS: ClassVar[int] = 1000

    workload: Workload
    processed: int = 0
    failed: int = 0
    bytes_transferred: int = 0
    errors: list[ItemError] = Field(default_factory=list)
    interrupted: bool = False
    subjects_total: int = 0
    subjects_done: int = 0
    error: str | None = None  # Set when the whole workload failed

    def record_success(self, bytes_transferred: int = 0) -> None:
        self.processed += 1
        self.bytes_transferred += bytes_transferred

    def record_failure(
        self,
        item_id: str,
        error: Exception | str,
        level: ErrorLevel = "item",
    ) -> None:
        self.failed += 1
        message = getattr(error, "message", None) or str(error)
        error_type = type(error).__name__ if isinstance(error, Exception) else None
        if len(self.errors) < self.MAX_ERRORS:
            self.errors.append(
                ItemError(item_id=item_id, message=message, level=level, error_type=error_type)
            )

    def merge(self, other: "WorkloadResult") -> "WorkloadResult":
        self.processed += other.processed
        self.failed += other.failed
        self.bytes_transferred += other.bytes_transferred
        room = self.MAX_ERRORS - len(self.errors)
        if room > 0:
            self.errors.extend(other.errors[:room])
        self.interrupted = self.interrupted or other.interrupted
        return self

    @property
    def subject_fraction(self) -> float:
        if self.subjects_total <= 0:
            return 0.0
        return min(1.0, self.subjects_done / self.subjects_total)


class JobProgress(BaseModel):
    """Snapshot of a running job's counters."""

    job_id: str
    percent: float = 0.0
    processed: int = 0
    failed: int = 0
    bytes_transferred: int = 0
    errors: list[ItemError] = Field(default_factory=list)
    current_workload: Workload | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class JobResult(BaseModel):
    """Terminal (or interrupted) outcome of one job run."""

    job_id: str
    kind: JobKind
    status: JobStatus
    completion_policy: CompletionPolicy
    workloads: list[WorkloadResult] = Field(default_factory=list)
    interrupted: bool = False
    snapshot_id: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def processed(self) -> int:
        return sum(w.processed for w in self.workloads)

    @property
    def failed(self) -> int:
        return sum(w.failed for w in self.workloads)

    @property
    def bytes_transferred(self) -> int:
        return sum(w.bytes_transferred for w in self.workloads)

    def summary(self) -> dict:
        """Serializable result including totals."""
        data = self.model_dump(mode="json")
        data.update(
            processed=self.processed,
            failed=self.failed,
            bytes_transferred=self.bytes_transferred,
        )
        return data


class SnapshotRecord(BaseModel):
    """Stored description of one backup snapshot."""

    snapshot_id: str
    backup_job_id: str
    backup_type: SyncMode
    storage_path: str
    size_bytes: int = 0
    total_items: int = 0
    failed_items: int = 0
    started_at: datetime
    completed_at: datetime | None = None
    status: JobStatus = JobStatus.RUNNING
