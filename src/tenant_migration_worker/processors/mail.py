"""Mailbox processor: folders, messages, calendar events and contacts."""

import json
from typing import Any, Dict, List

from ..client.paginator import Paginator
from ..schemas.job import Workload
from ..utils.errors import ConflictError, MigrationError
from ..utils.rate_limit import ServiceClass
from .base import WorkloadContext, WorkloadProcessor

MESSAGE_FIELDS = (
    "id,subject,body,from,sender,toRecipients,ccRecipients,bccRecipients,replyTo,"
    "receivedDateTime,sentDateTime,importance,isRead,categories,hasAttachments"
)

# Properties copied onto recreated messages
MESSAGE_COPY = (
    "subject",
    "body",
    "from",
    "sender",
    "toRecipients",
    "ccRecipients",
    "bccRecipients",
    "replyTo",
    "importance",
    "isRead",
    "categories",
)

EVENT_COPY = (
    "subject",
    "body",
    "start",
    "end",
    "location",
    "locations",
    "attendees",
    "isAllDay",
    "recurrence",
    "showAs",
    "sensitivity",
    "categories",
)

CONTACT_COPY = (
    "givenName",
    "surname",
    "displayName",
    "emailAddresses",
    "businessPhones",
    "mobilePhone",
    "homePhones",
    "companyName",
    "jobTitle",
    "department",
    "businessAddress",
    "homeAddress",
    "birthday",
    "personalNotes",
    "categories",
)

ATTACHMENT_COPY = ("@odata.type", "name", "contentType", "contentBytes", "isInline", "contentId")


def _pick(source: Dict[str, Any], fields) -> Dict[str, Any]:
    return {k: source[k] for k in fields if source.get(k) is not None}


def _message_payload(message: Dict[str, Any]) -> Dict[str, Any]:
    payload = _pick(message, MESSAGE_COPY)
    attachments = [
        _pick(a, ATTACHMENT_COPY)
        for a in message.get("attachments") or []
        if a.get("@odata.type") == "#microsoft.graph.fileAttachment"
    ]
    if attachments:
        payload["attachments"] = attachments
    return payload


def _encoded_size(payload: Any) -> int:
    return len(json.dumps(payload, default=str).encode("utf-8"))


class MailProcessor(WorkloadProcessor):
    """Copy or back up mailboxes.

    Messages are enumerated per folder in delta mode, so each folder keeps
    its own checkpoint and incremental runs only see changes. Calendar
    events and contacts are plain-paginated.
    """

    workload = Workload.MAIL

    async def resolve_subjects(self, ctx: WorkloadContext) -> List[str]:
        return await self.enumerate_users(ctx)

    async def process_subject(self, ctx: WorkloadContext, subject_id: str) -> None:
        destination_user = ctx.scope.destination_for(subject_id)
        destination_folders: Dict[str, str] = {}
        if not ctx.is_backup:
            destination_folders = await self._destination_folders(ctx, destination_user)

        folders = self.paged(
            ctx,
            ctx.source,
            f"users/{subject_id}/mailFolders",
            {"$top": ctx.graph.page_size},
            ServiceClass.MAIL,
        )
        async for folder in folders.items():
            destination_folder_id = None
            if not ctx.is_backup:
                try:
                    destination_folder_id = await self._ensure_folder(
                        ctx, destination_user, folder, destination_folders
                    )
                except MigrationError as e:
                    ctx.logger.warning(
                        "Mail folder setup failed",
                        user=subject_id,
                        folder=folder.get("displayName"),
                        error=e.message,
                    )
                    ctx.result.record_failure(folder["id"], e, level="container")
                    continue
            await self._messages(ctx, subject_id, destination_user, folder, destination_folder_id)
            if ctx.result.interrupted:
                return
        if folders.interrupted:
            ctx.result.interrupted = True
            return

        if ctx.options.include_calendar:
            await self._plain_collection(
                ctx,
                subject_id,
                f"users/{subject_id}/calendar/events",
                f"users/{destination_user}/calendar/events",
                "events",
                EVENT_COPY,
            )
        if ctx.options.include_contacts and not ctx.result.interrupted:
            await self._plain_collection(
                ctx,
                subject_id,
                f"users/{subject_id}/contacts",
                f"users/{destination_user}/contacts",
                "contacts",
                CONTACT_COPY,
            )

    async def _destination_folders(self, ctx: WorkloadContext, user: str) -> Dict[str, str]:
        paginator = Paginator.page_links(
            ctx.destination,
            f"users/{user}/mailFolders",
            params={"$top": ctx.graph.page_size},
            service_class=ServiceClass.MAIL,
        )
        return {f["displayName"]: f["id"] async for f in paginator.items()}

    async def _ensure_folder(
        self,
        ctx: WorkloadContext,
        user: str,
        folder: Dict[str, Any],
        known: Dict[str, str],
    ) -> str:
        name = folder.get("displayName") or folder["id"]
        if name in known:
            return known[name]
        try:
            created = await ctx.destination.post(
                f"users/{user}/mailFolders",
                {"displayName": name},
                service_class=ServiceClass.MAIL,
            )
        except ConflictError:
            known.update(await self._destination_folders(ctx, user))
            if name not in known:
                raise
            return known[name]
        known[name] = created["id"]
        return created["id"]

    async def _messages(
        self,
        ctx: WorkloadContext,
        user: str,
        destination_user: str,
        folder: Dict[str, Any],
        destination_folder_id,
    ) -> None:
        checkpoint_subject = f"{user}/{folder['id']}"
        cursor = await ctx.checkpoints.start_cursor(self.workload.value, checkpoint_subject)
        paginator = Paginator.delta(
            ctx.source,
            f"users/{user}/mailFolders/{folder['id']}/messages/delta",
            params={"$select": MESSAGE_FIELDS},
            service_class=ServiceClass.MAIL,
            cancel=ctx.cancel,
            cursor=cursor,
        )
        if cursor:
            ctx.logger.info("Resuming mail folder from checkpoint", user=user, folder=folder.get("displayName"))

        async for page in paginator.pages():
            for message in page.items:
                if "@removed" in message:
                    continue
                await ctx.run_item(
                    message["id"],
                    lambda message=message: self._transfer_message(
                        ctx, user, destination_user, folder, destination_folder_id, message
                    ),
                )
            if page.next_link:
                await ctx.checkpoints.save_page(self.workload.value, checkpoint_subject, page.next_link)
            elif page.delta_link:
                await ctx.checkpoints.save_delta(self.workload.value, checkpoint_subject, page.delta_link)
            await ctx.flush()

        if paginator.interrupted:
            ctx.result.interrupted = True

    async def _transfer_message(
        self,
        ctx: WorkloadContext,
        user: str,
        destination_user: str,
        folder: Dict[str, Any],
        destination_folder_id,
        message: Dict[str, Any],
    ) -> int:
        full = message
        if message.get("hasAttachments"):
            full = await ctx.source.get(
                f"users/{user}/messages/{message['id']}",
                params={"$expand": "attachments"},
                service_class=ServiceClass.MAIL,
            )

        if ctx.is_backup:
            return await ctx.storage.put_json(
                ctx.backup_key(user, "messages", folder["id"], f"{message['id']}.json"), full
            )

        payload = _message_payload(full)
        await ctx.destination.post(
            f"users/{destination_user}/mailFolders/{destination_folder_id}/messages",
            payload,
            service_class=ServiceClass.MAIL,
        )
        return _encoded_size(payload)

    async def _plain_collection(
        self,
        ctx: WorkloadContext,
        user: str,
        source_url: str,
        destination_url: str,
        label: str,
        copy_fields,
    ) -> None:
        paginator = self.paged(ctx, ctx.source, source_url, {"$top": ctx.graph.page_size}, ServiceClass.MAIL)
        async for page in paginator.pages():
            for entry in page.items:
                await ctx.run_item(
                    entry["id"],
                    lambda entry=entry: self._transfer_entry(ctx, user, destination_url, label, copy_fields, entry),
                )
            await ctx.flush()
        if paginator.interrupted:
            ctx.result.interrupted = True

    async def _transfer_entry(
        self,
        ctx: WorkloadContext,
        user: str,
        destination_url: str,
        label: str,
        copy_fields,
        entry: Dict[str, Any],
    ) -> int:
        if ctx.is_backup:
            return await ctx.storage.put_json(ctx.backup_key(user, label, f"{entry['id']}.json"), entry)
        payload = _pick(entry, copy_fields)
        await ctx.destination.post(destination_url, payload, service_class=ServiceClass.MAIL)
        return _encoded_size(payload)
