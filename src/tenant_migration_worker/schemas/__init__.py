"""Message, result and progress schemas."""

from .job import (
    CompletionPolicy,
    JobKind,
    JobMessage,
    JobOptions,
    JobScope,
    SyncMode,
    TenantRef,
    Workload,
    parse_job_message,
)
from .results import ItemError, JobProgress, JobResult, SnapshotRecord, WorkloadResult

__all__ = [
    "CompletionPolicy",
    "ItemError",
    "JobKind",
    "JobMessage",
    "JobOptions",
    "JobProgress",
    "JobResult",
    "JobScope",
    "SnapshotRecord",
    "SyncMode",
    "TenantRef",
    "Workload",
    "WorkloadResult",
    "parse_job_message",
]
