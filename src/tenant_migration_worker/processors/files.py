"""Personal drive processor."""

from typing import List

from ..schemas.job import Workload
from ..utils.rate_limit import ServiceClass
from .base import DriveTraversal, WorkloadContext, WorkloadProcessor


class FilesProcessor(WorkloadProcessor):
    """Copy or back up each user's personal drive, folder tree first."""

    workload = Workload.FILES

    async def resolve_subjects(self, ctx: WorkloadContext) -> List[str]:
        return await self.enumerate_users(ctx)

    async def process_subject(self, ctx: WorkloadContext, subject_id: str) -> None:
        source_drive = await ctx.source.get(f"users/{subject_id}/drive", service_class=ServiceClass.FILES)

        destination_drive_id = None
        if not ctx.is_backup:
            destination_user = ctx.scope.destination_for(subject_id)
            destination_drive = await ctx.destination.get(
                f"users/{destination_user}/drive", service_class=ServiceClass.FILES
            )
            destination_drive_id = destination_drive["id"]

        ctx.logger.info("Processing drive", user=subject_id, drive_id=source_drive["id"])
        traversal = DriveTraversal(ctx, source_drive["id"], destination_drive_id, key_prefix=(subject_id,))
        await traversal.run()
