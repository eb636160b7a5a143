"""Site processor: document libraries and lists."""

from typing import Any, Dict, List, Optional

from ..schemas.job import Workload
from ..utils.errors import ConflictError, MigrationError, WorkloadError
from ..utils.rate_limit import ServiceClass
from .base import DriveTraversal, WorkloadContext, WorkloadProcessor

# List item fields maintained by the service
READ_ONLY_FIELDS = frozenset(
    {
        "id",
        "ContentType",
        "Created",
        "Modified",
        "AuthorLookupId",
        "EditorLookupId",
        "AppAuthorLookupId",
        "AppEditorLookupId",
        "_UIVersionString",
        "Attachments",
        "Edit",
        "LinkTitle",
        "LinkTitleNoMenu",
        "ItemChildCount",
        "FolderChildCount",
        "DocIcon",
        "_ComplianceFlags",
        "_ComplianceTag",
        "_ComplianceTagWrittenTime",
        "_ComplianceTagUserId",
    }
)


def writable_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: v
        for k, v in fields.items()
        if k not in READ_ONLY_FIELDS and not k.startswith("@odata")
    }


class SitesProcessor(WorkloadProcessor):
    """Copy or back up sites.

    Each document library is traversed like a drive. Each custom list has
    its items copied one by one with their field values.
    """

    workload = Workload.SITES

    async def resolve_subjects(self, ctx: WorkloadContext) -> List[str]:
        return await self._explicit_or_all(
            ctx,
            ctx.scope.sites,
            ctx.scope.all_sites,
            "sites",
            {"search": "*", "$select": "id,displayName"},
        )

    async def process_subject(self, ctx: WorkloadContext, subject_id: str) -> None:
        site = await ctx.source.get(f"sites/{subject_id}", service_class=ServiceClass.FILES)
        destination_site_id = None
        if not ctx.is_backup:
            destination_site_id = await self._destination_site(ctx, subject_id, site)

        ctx.logger.info("Processing site", site=site.get("displayName"), site_id=subject_id)
        await self._libraries(ctx, subject_id, destination_site_id)
        if ctx.options.include_lists and not ctx.result.interrupted:
            await self._lists(ctx, subject_id, destination_site_id)

    async def _destination_site(self, ctx: WorkloadContext, site_id: str, site: Dict[str, Any]) -> str:
        """Find the matching destination site; it is never created."""
        if site_id in ctx.scope.mappings:
            mapped = await ctx.destination.get(
                f"sites/{ctx.scope.mappings[site_id]}", service_class=ServiceClass.FILES
            )
            return mapped["id"]

        name = site.get("displayName") or ""
        found = await ctx.destination.get(
            "sites", params={"search": name}, service_class=ServiceClass.FILES
        )
        for candidate in found.get("value", []):
            if candidate.get("displayName") == name:
                return candidate["id"]
        raise WorkloadError(
            f"Destination site '{name}' not found; create it before migrating",
            workload=self.workload.value,
            subject_id=site_id,
        )

    async def _libraries(self, ctx: WorkloadContext, site_id: str, destination_site_id: Optional[str]) -> None:
        destination_libraries: Dict[str, str] = {}
        if not ctx.is_backup:
            response = await ctx.destination.get(
                f"sites/{destination_site_id}/drives", service_class=ServiceClass.FILES
            )
            destination_libraries = {d["name"]: d["id"] for d in response.get("value", [])}

        libraries = self.paged(ctx, ctx.source, f"sites/{site_id}/drives", service_class=ServiceClass.FILES)
        async for library in libraries.items():
            try:
                destination_drive_id = None
                if not ctx.is_backup:
                    destination_drive_id = await self._ensure_library(
                        ctx, destination_site_id, library["name"], destination_libraries
                    )
                traversal = DriveTraversal(
                    ctx, library["id"], destination_drive_id, key_prefix=(site_id, "libraries", library["name"])
                )
                await traversal.run()
            except MigrationError as e:
                ctx.logger.warning("Library failed", library=library.get("name"), error=e.message)
                ctx.result.record_failure(library["id"], e, level="container")
            if ctx.result.interrupted:
                return
        if libraries.interrupted:
            ctx.result.interrupted = True

    async def _ensure_library(
        self,
        ctx: WorkloadContext,
        site_id: str,
        name: str,
        known: Dict[str, str],
    ) -> str:
        if name in known:
            return known[name]
        created = await ctx.destination.post(
            f"sites/{site_id}/lists",
            {"displayName": name, "list": {"template": "documentLibrary"}},
            service_class=ServiceClass.FILES,
        )
        drive = await ctx.destination.get(
            f"sites/{site_id}/lists/{created['id']}/drive", service_class=ServiceClass.FILES
        )
        known[name] = drive["id"]
        return drive["id"]

    async def _lists(self, ctx: WorkloadContext, site_id: str, destination_site_id: Optional[str]) -> None:
        lists = self.paged(
            ctx,
            ctx.source,
            f"sites/{site_id}/lists",
            {"$select": "id,displayName,system,list"},
            ServiceClass.FILES,
        )
        async for site_list in lists.items():
            template = (site_list.get("list") or {}).get("template") or "genericList"
            if "system" in site_list or template == "documentLibrary":
                continue
            try:
                destination_list_id = None
                if not ctx.is_backup:
                    destination_list_id = await self._ensure_list(ctx, destination_site_id, site_list, template)
                await self._list_items(ctx, site_id, site_list, destination_site_id, destination_list_id)
            except MigrationError as e:
                ctx.logger.warning("List failed", list=site_list.get("displayName"), error=e.message)
                ctx.result.record_failure(site_list["id"], e, level="container")
            if ctx.result.interrupted:
                return
        if lists.interrupted:
            ctx.result.interrupted = True

    async def _ensure_list(self, ctx: WorkloadContext, site_id: str, site_list: Dict[str, Any], template: str) -> str:
        name = site_list.get("displayName") or site_list["id"]
        try:
            created = await ctx.destination.post(
                f"sites/{site_id}/lists",
                {"displayName": name, "list": {"template": template}},
                service_class=ServiceClass.FILES,
            )
        except ConflictError:
            created = await ctx.destination.get(f"sites/{site_id}/lists/{name}", service_class=ServiceClass.FILES)
        return created["id"]

    async def _list_items(
        self,
        ctx: WorkloadContext,
        site_id: str,
        site_list: Dict[str, Any],
        destination_site_id: Optional[str],
        destination_list_id: Optional[str],
    ) -> None:
        items = self.paged(
            ctx,
            ctx.source,
            f"sites/{site_id}/lists/{site_list['id']}/items",
            {"$expand": "fields", "$top": ctx.graph.page_size},
            ServiceClass.FILES,
        )
        async for page in items.pages():
            for item in page.items:
                await ctx.run_item(
                    item["id"],
                    lambda item=item: self._transfer_list_item(
                        ctx, site_id, site_list, destination_site_id, destination_list_id, item
                    ),
                )
            await ctx.flush()
        if items.interrupted:
            ctx.result.interrupted = True

    async def _transfer_list_item(
        self,
        ctx: WorkloadContext,
        site_id: str,
        site_list: Dict[str, Any],
        destination_site_id: Optional[str],
        destination_list_id: Optional[str],
        item: Dict[str, Any],
    ) -> int:
        if ctx.is_backup:
            return await ctx.storage.put_json(
                ctx.backup_key(site_id, "lists", site_list["id"], f"{item['id']}.json"), item
            )
        await ctx.destination.post(
            f"sites/{destination_site_id}/lists/{destination_list_id}/items",
            {"fields": writable_fields(item.get("fields") or {})},
            service_class=ServiceClass.FILES,
        )
        return 0
