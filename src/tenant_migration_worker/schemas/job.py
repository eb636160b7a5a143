"""Job message schemas for the tenant migration worker.

Pydantic models for validating job messages delivered by the queue.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class Workload(str, Enum):
    """Kinds of tenant content a job can move."""

    MAIL = "mail"
    FILES = "files"
    SITES = "sites"
    TEAMS = "teams"


class JobKind(str, Enum):
    MIGRATION = "migration"
    BACKUP = "backup"


class SyncMode(str, Enum):
    """How checkpoints are consulted.

    full: start every enumeration from scratch and record a new baseline
    incremental: continue from the latest terminal delta cursor
    differential: continue from the baseline of the last full pass
    """

    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"


class CompletionPolicy(str, Enum):
    """How item-level failures map onto the terminal job status."""

    COMPLETE_WITH_FAILURES = "complete_with_failures"
    FAIL_ON_ITEM_FAILURES = "fail_on_item_failures"


class TenantRef(BaseModel):
    """Reference to a connected tenant."""

    id: str  # Internal tenant id, also the rate-limit key
    directory_id: str  # Cloud directory id used for token requests
    domain: str | None = None


class JobScope(BaseModel):
    """Which subjects of each workload a job covers."""

    users: list[str] = Field(default_factory=list)
    sites: list[str] = Field(default_factory=list)
    teams: list[str] = Field(default_factory=list)
    all_users: bool = False
    all_sites: bool = False
    all_teams: bool = False
    # Source subject id -> destination subject id; identity when absent
    mappings: dict[str, str] = Field(default_factory=dict)

    def destination_for(self, subject_id: str) -> str:
        return self.mappings.get(subject_id, subject_id)


class JobOptions(BaseModel):
    """Per-job transfer options."""

    job_type: SyncMode = SyncMode.FULL
    completion_policy: CompletionPolicy = CompletionPolicy.COMPLETE_WITH_FAILURES
    conflict_behavior: str = Field(default="rename")  # "rename", "replace", "fail"
    include_calendar: bool = True
    include_contacts: bool = True
    include_lists: bool = True
    include_planner: bool = True
    include_members: bool = True


class JobMessage(BaseModel):
    """A migration or backup job as delivered by the queue."""

    job_id: str
    kind: JobKind = JobKind.MIGRATION
    organization_id: str | None = None
    source_tenant: TenantRef
    destination_tenant: TenantRef | None = None
    workloads: list[Workload] = Field(min_length=1)
    scope: JobScope = Field(default_factory=JobScope)
    options: JobOptions = Field(default_factory=JobOptions)
    run_id: str | None = None  # Snapshot id for backups
    backup_type: SyncMode | None = None

    @model_validator(mode="after")
    def check_destination(self) -> "JobMessage":
        if self.kind == JobKind.MIGRATION and self.destination_tenant is None:
            raise ValueError("Migration jobs require a destination_tenant")
        return self

    @property
    def effective_run_id(self) -> str:
        return self.run_id or self.job_id

    @property
    def sync_mode(self) -> SyncMode:
        if self.kind == JobKind.BACKUP and self.backup_type is not None:
            return self.backup_type
        return self.options.job_type


def parse_job_message(payload: dict[str, Any]) -> JobMessage:
    """Parse and validate a raw job message.

    Args:
        payload: Decoded message body

    Returns:
        Validated JobMessage
    """
    return JobMessage.model_validate(payload)
