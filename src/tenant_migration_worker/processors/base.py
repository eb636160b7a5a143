"""Base abstractions shared by every workload processor.

A processor holds no mutable state of its own: everything a run needs
(sessions, storage, checkpoints, the cancellation token and the live result)
travels in a `WorkloadContext`, so one processor instance serves any number
of concurrent jobs.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Tuple
from urllib.parse import quote

import structlog

from ..client.chunked import ChunkedTransfer
from ..client.paginator import Paginator
from ..client.session import GraphSession
from ..client.storage import BackupStorage
from ..config import GraphAPIConfig
from ..schemas.job import JobKind, JobOptions, JobScope, Workload
from ..schemas.results import WorkloadResult
from ..store import CheckpointManager
from ..utils.cancellation import CancellationToken
from ..utils.errors import ConflictError, MigrationError
from ..utils.rate_limit import ServiceClass

ProgressCallback = Callable[[WorkloadResult], Awaitable[None]]


@dataclass
class TransferItem:
    """One entry of a drive listing."""

    id: str
    name: str
    kind: str  # "container" or "leaf"
    size: int = 0
    drive_id: Optional[str] = None
    parent_id: Optional[str] = None
    mime_type: str = "application/octet-stream"

    @classmethod
    def from_drive_item(cls, item: Dict[str, Any], drive_id: str) -> "TransferItem":
        parent = item.get("parentReference") or {}
        return cls(
            id=item["id"],
            name=item.get("name", item["id"]),
            kind="container" if "folder" in item else "leaf",
            size=int(item.get("size") or 0),
            drive_id=parent.get("driveId") or drive_id,
            parent_id=parent.get("id"),
            mime_type=(item.get("file") or {}).get("mimeType") or "application/octet-stream",
        )

    @property
    def is_container(self) -> bool:
        return self.kind == "container"


@dataclass
class WorkloadContext:
    """Everything one workload run needs."""

    job_id: str
    run_id: str
    kind: JobKind
    workload: Workload
    source: GraphSession
    scope: JobScope
    options: JobOptions
    cancel: CancellationToken
    checkpoints: CheckpointManager
    result: WorkloadResult
    destination: Optional[GraphSession] = None
    storage: Optional[BackupStorage] = None
    chunked: ChunkedTransfer = field(default_factory=ChunkedTransfer)
    graph: GraphAPIConfig = field(default_factory=GraphAPIConfig)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    on_progress: Optional[ProgressCallback] = None
    logger: Any = None

    def __post_init__(self):
        if self.logger is None:
            self.logger = structlog.get_logger().bind(
                job_id=self.job_id, workload=self.workload.value
            )
        if self.is_backup and self.storage is None:
            raise ValueError("Backup runs require a storage backend")
        if not self.is_backup and self.destination is None:
            raise ValueError("Migration runs require a destination session")

    @property
    def is_backup(self) -> bool:
        return self.kind == JobKind.BACKUP

    def backup_key(self, *parts: str) -> str:
        return self.storage.snapshot_key(self.run_id, self.workload.value, *parts)

    async def flush(self) -> None:
        """Report the live result to the runner (progress checkpoint)."""
        if self.on_progress is not None:
            await self.on_progress(self.result)

    async def run_item(self, item_id: str, fn: Callable[[], Awaitable[int]]) -> bool:
        """Transfer one item, recording success or failure.

        `fn` returns the number of bytes moved. A failure is recorded on the
        result and never propagates.
        """
        try:
            moved = await fn()
        except Exception as e:
            self.logger.warning(
                "Item transfer failed",
                item_id=item_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.result.record_failure(item_id, e, level="item")
            return False
        self.result.record_success(moved or 0)
        return True


def odata_quote(value: str) -> str:
    """Escape a string literal for an OData filter."""
    return value.replace("'", "''")


def item_path(name: str) -> str:
    return quote(name, safe="")


class WorkloadProcessor(ABC):
    """Workload-specific traversal and transfer.

    Subclasses enumerate their subjects (mailboxes, drives, sites, teams)
    and process each one. A subject that cannot be set up is recorded as a
    workload-level error and the remaining subjects still run.
    """

    workload: ClassVar[Workload]

    async def process(self, ctx: WorkloadContext) -> WorkloadResult:
        result = ctx.result
        subjects = await self.resolve_subjects(ctx)
        result.subjects_total = len(subjects)
        ctx.logger.info("Processing workload", subjects=len(subjects), kind=ctx.kind.value)

        subject_failures = 0
        for subject_id in subjects:
            if await ctx.cancel.should_stop():
                result.interrupted = True
                break
            try:
                await self.process_subject(ctx, subject_id)
            except MigrationError as e:
                subject_failures += 1
                ctx.logger.error(
                    "Subject setup failed",
                    subject_id=subject_id,
                    error=e.message,
                    error_type=type(e).__name__,
                )
                result.record_failure(subject_id, e, level="workload")
            if result.interrupted:
                break
            result.subjects_done += 1
            await ctx.flush()

        if subjects and subject_failures == len(subjects):
            result.error = f"All {len(subjects)} subjects failed"

        ctx.logger.info(
            "Workload finished",
            processed=result.processed,
            failed=result.failed,
            bytes_transferred=result.bytes_transferred,
            interrupted=result.interrupted,
        )
        return result

    @abstractmethod
    async def resolve_subjects(self, ctx: WorkloadContext) -> List[str]:
        """Ids of the subjects this run covers."""

    @abstractmethod
    async def process_subject(self, ctx: WorkloadContext, subject_id: str) -> None:
        """Transfer everything belonging to one subject."""

    async def _explicit_or_all(
        self,
        ctx: WorkloadContext,
        explicit: List[str],
        enumerate_all: bool,
        url: str,
        params: Dict[str, Any],
    ) -> List[str]:
        if explicit or not enumerate_all:
            return list(explicit)
        paginator = Paginator.page_links(ctx.source, url, params=params)
        return [item["id"] async for item in paginator.items()]

    async def enumerate_users(self, ctx: WorkloadContext) -> List[str]:
        return await self._explicit_or_all(
            ctx,
            ctx.scope.users,
            ctx.scope.all_users,
            "users",
            {"$select": "id,userPrincipalName", "$top": ctx.graph.drive_page_size},
        )

    def paged(
        self,
        ctx: WorkloadContext,
        session: GraphSession,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        service_class: ServiceClass = ServiceClass.GENERAL,
    ) -> Paginator:
        """Cancellable page-link paginator bound to the run."""
        return Paginator.page_links(
            session, url, params=params, service_class=service_class, cancel=ctx.cancel
        )


class DriveTraversal:
    """Pre-order copy (or backup) of a drive folder tree.

    Folders are created in the destination before their children are
    listed; files go through ChunkedTransfer. Used by the files, sites and
    teams processors.
    """

    def __init__(
        self,
        ctx: WorkloadContext,
        source_drive_id: str,
        destination_drive_id: Optional[str] = None,
        key_prefix: Tuple[str, ...] = (),
    ):
        self.ctx = ctx
        self.source_drive_id = source_drive_id
        self.destination_drive_id = destination_drive_id
        self.key_prefix = key_prefix
        self.interrupted = False

    async def run(self, source_folder_id: str = "root", destination_folder_id: str = "root") -> None:
        await self._walk(source_folder_id, destination_folder_id, ())
        if self.interrupted:
            self.ctx.result.interrupted = True

    async def _walk(self, source_folder_id: str, destination_folder_id: Optional[str], path: Tuple[str, ...]) -> None:
        ctx = self.ctx
        paginator = Paginator.page_links(
            ctx.source,
            f"drives/{self.source_drive_id}/items/{source_folder_id}/children",
            params={"$top": ctx.graph.drive_page_size},
            service_class=ServiceClass.FILES,
            cancel=ctx.cancel,
        )
        async for page in paginator.pages():
            for raw in page.items:
                if "folder" not in raw and "file" not in raw:
                    continue
                item = TransferItem.from_drive_item(raw, self.source_drive_id)
                if item.is_container:
                    await self._enter_folder(item, destination_folder_id, path)
                    if self.interrupted:
                        return
                else:
                    await ctx.run_item(
                        item.id,
                        lambda item=item: self._transfer_file(item, destination_folder_id, path),
                    )
            await ctx.flush()
        if paginator.interrupted:
            self.interrupted = True

    async def _enter_folder(self, item: TransferItem, destination_parent_id: Optional[str], path: Tuple[str, ...]) -> None:
        ctx = self.ctx
        destination_id = None
        if not ctx.is_backup:
            try:
                created = await self._ensure_folder(item.name, destination_parent_id)
            except MigrationError as e:
                ctx.logger.warning("Folder creation failed", folder=item.name, error=e.message)
                ctx.result.record_failure(item.id, e, level="container")
                return
            destination_id = created["id"]
        await self._walk(item.id, destination_id, path + (item.name,))

    async def _ensure_folder(self, name: str, parent_id: Optional[str]) -> Dict[str, Any]:
        """Create a destination folder, reusing one left by an earlier run."""
        destination = self.ctx.destination
        try:
            return await destination.post(
                f"drives/{self.destination_drive_id}/items/{parent_id}/children",
                {"name": name, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"},
                service_class=ServiceClass.FILES,
            )
        except ConflictError:
            return await destination.get(
                f"drives/{self.destination_drive_id}/items/{parent_id}:/{item_path(name)}",
                service_class=ServiceClass.FILES,
            )

    async def _transfer_file(self, item: TransferItem, destination_folder_id: Optional[str], path: Tuple[str, ...]) -> int:
        ctx = self.ctx
        content_url = f"drives/{self.source_drive_id}/items/{item.id}/content"
        if ctx.is_backup:
            outcome = await ctx.chunked.store(
                ctx.source,
                content_url,
                ctx.storage,
                ctx.backup_key(*self.key_prefix, *path, item.name),
                item.size,
                item.mime_type,
            )
        else:
            outcome = await ctx.chunked.copy(
                ctx.source,
                content_url,
                ctx.destination,
                f"drives/{self.destination_drive_id}/items/{destination_folder_id}:/{item_path(item.name)}:",
                item.size,
                ctx.options.conflict_behavior,
            )
        return outcome.bytes_transferred
