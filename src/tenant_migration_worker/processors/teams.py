"""Teams processor: channels, messages, channel files, members and planner."""

from typing import Any, Dict, List, Optional

from ..schemas.job import Workload
from ..utils.errors import ConflictError, MigrationError, WorkloadError
from ..utils.rate_limit import ServiceClass
from .base import DriveTraversal, WorkloadContext, WorkloadProcessor, odata_quote

GENERAL_CHANNEL = "General"
TEAM_TEMPLATE = "https://graph.microsoft.com/v1.0/teamsTemplates('standard')"
PROVISIONING_ATTEMPTS = 3


def _team_filter(name: str) -> str:
    return (
        f"displayName eq '{odata_quote(name)}' "
        "and resourceProvisioningOptions/Any(x:x eq 'Team')"
    )


class TeamsProcessor(WorkloadProcessor):
    """Copy or back up teams.

    Channel message writes draw from the `teams_messages` bucket and pause
    after every write; the General channel is looked up in the destination,
    never created.
    """

    workload = Workload.TEAMS

    async def resolve_subjects(self, ctx: WorkloadContext) -> List[str]:
        return await self._explicit_or_all(
            ctx,
            ctx.scope.teams,
            ctx.scope.all_teams,
            "groups",
            {
                "$filter": "resourceProvisioningOptions/Any(x:x eq 'Team')",
                "$select": "id,displayName",
            },
        )

    async def process_subject(self, ctx: WorkloadContext, subject_id: str) -> None:
        team = await ctx.source.get(f"teams/{subject_id}", service_class=ServiceClass.TEAMS)
        destination_team_id = None
        if not ctx.is_backup:
            destination_team_id = await self._destination_team(ctx, subject_id, team)
        else:
            await ctx.storage.put_json(ctx.backup_key(subject_id, "team.json"), team)

        ctx.logger.info("Processing team", team=team.get("displayName"), team_id=subject_id)
        await self._channels(ctx, subject_id, destination_team_id)
        if ctx.result.interrupted:
            return
        if ctx.options.include_members:
            await self._members(ctx, subject_id, destination_team_id)
        if ctx.options.include_planner and not ctx.result.interrupted:
            await self._planner(ctx, subject_id, destination_team_id)

    # Team and channel resolution

    async def _find_team(self, ctx: WorkloadContext, name: str) -> Optional[str]:
        found = await ctx.destination.get(
            "groups",
            params={"$filter": _team_filter(name), "$select": "id,displayName"},
            service_class=ServiceClass.TEAMS,
        )
        groups = found.get("value", [])
        return groups[0]["id"] if groups else None

    async def _destination_team(self, ctx: WorkloadContext, team_id: str, team: Dict[str, Any]) -> str:
        """Get the destination team, creating it when it does not exist yet."""
        if team_id in ctx.scope.mappings:
            mapped = await ctx.destination.get(
                f"teams/{ctx.scope.mappings[team_id]}", service_class=ServiceClass.TEAMS
            )
            return mapped["id"]

        name = team.get("displayName") or team_id
        existing = await self._find_team(ctx, name)
        if existing:
            return existing

        created = await ctx.destination.post(
            "teams",
            {
                "template@odata.bind": TEAM_TEMPLATE,
                "displayName": name,
                "description": team.get("description") or name,
                "visibility": team.get("visibility") or "private",
            },
            service_class=ServiceClass.TEAMS,
        )
        if created.get("id"):
            await ctx.sleep(ctx.graph.team_provisioning_delay_seconds)
            return created["id"]

        # Creation is asynchronous; the team shows up once provisioned
        for _ in range(PROVISIONING_ATTEMPTS):
            await ctx.sleep(ctx.graph.team_provisioning_delay_seconds)
            existing = await self._find_team(ctx, name)
            if existing:
                return existing
        raise WorkloadError(
            f"Team '{name}' was not provisioned in the destination",
            workload=self.workload.value,
            subject_id=team_id,
        )

    async def _destination_channels(self, ctx: WorkloadContext, team_id: str) -> Dict[str, Dict[str, Any]]:
        response = await ctx.destination.get(f"teams/{team_id}/channels", service_class=ServiceClass.TEAMS)
        return {c["displayName"]: c for c in response.get("value", [])}

    async def _ensure_channel(
        self,
        ctx: WorkloadContext,
        team_id: str,
        channel: Dict[str, Any],
        known: Dict[str, Dict[str, Any]],
    ) -> str:
        name = channel.get("displayName") or ""
        if name in known:
            return known[name]["id"]
        if name == GENERAL_CHANNEL:
            raise WorkloadError(
                "General channel not found in destination team",
                workload=self.workload.value,
                subject_id=team_id,
            )
        created = await ctx.destination.post(
            f"teams/{team_id}/channels",
            {
                "displayName": name,
                "description": channel.get("description"),
                "membershipType": "standard",
            },
            service_class=ServiceClass.TEAMS,
        )
        known[name] = created
        return created["id"]

    # Channels

    async def _channels(self, ctx: WorkloadContext, team_id: str, destination_team_id: Optional[str]) -> None:
        known: Dict[str, Dict[str, Any]] = {}
        if not ctx.is_backup:
            known = await self._destination_channels(ctx, destination_team_id)

        channels = self.paged(ctx, ctx.source, f"teams/{team_id}/channels", service_class=ServiceClass.TEAMS)
        async for channel in channels.items():
            try:
                destination_channel_id = None
                if not ctx.is_backup:
                    destination_channel_id = await self._ensure_channel(ctx, destination_team_id, channel, known)
                await self._messages(ctx, team_id, channel, destination_team_id, destination_channel_id)
                if ctx.result.interrupted:
                    return
                await self._channel_files(ctx, team_id, channel, destination_team_id, destination_channel_id)
            except MigrationError as e:
                ctx.logger.warning("Channel failed", channel=channel.get("displayName"), error=e.message)
                ctx.result.record_failure(channel["id"], e, level="container")
            if ctx.result.interrupted:
                return
        if channels.interrupted:
            ctx.result.interrupted = True

    async def _messages(
        self,
        ctx: WorkloadContext,
        team_id: str,
        channel: Dict[str, Any],
        destination_team_id: Optional[str],
        destination_channel_id: Optional[str],
    ) -> None:
        messages = self.paged(
            ctx,
            ctx.source,
            f"teams/{team_id}/channels/{channel['id']}/messages",
            {"$top": ctx.graph.page_size, "$expand": "replies"},
            ServiceClass.TEAMS,
        )
        async for page in messages.pages():
            for message in page.items:
                if message.get("messageType") != "message":
                    continue
                await ctx.run_item(
                    message["id"],
                    lambda message=message: self._transfer_message(
                        ctx, team_id, channel, destination_team_id, destination_channel_id, message
                    ),
                )
            await ctx.flush()
        if messages.interrupted:
            ctx.result.interrupted = True

    async def _post_message(self, ctx: WorkloadContext, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        created = await ctx.destination.post(url, {"body": body}, service_class=ServiceClass.TEAMS_MESSAGES)
        await ctx.sleep(ctx.graph.teams_message_delay_seconds)
        return created

    async def _transfer_message(
        self,
        ctx: WorkloadContext,
        team_id: str,
        channel: Dict[str, Any],
        destination_team_id: Optional[str],
        destination_channel_id: Optional[str],
        message: Dict[str, Any],
    ) -> int:
        if ctx.is_backup:
            return await ctx.storage.put_json(
                ctx.backup_key(team_id, "channels", channel["id"], "messages", f"{message['id']}.json"),
                message,
            )

        base = f"teams/{destination_team_id}/channels/{destination_channel_id}/messages"
        created = await self._post_message(ctx, base, message.get("body") or {})
        for reply in message.get("replies") or []:
            if reply.get("messageType") != "message":
                continue
            # The parent is already posted; a reply failure is recorded on its own
            try:
                await self._post_message(ctx, f"{base}/{created['id']}/replies", reply.get("body") or {})
            except MigrationError as e:
                ctx.logger.warning("Reply failed", message_id=message["id"], reply_id=reply["id"], error=e.message)
                ctx.result.record_failure(reply["id"], e, level="item")
        return len(str((message.get("body") or {}).get("content", "")).encode("utf-8"))

    async def _channel_files(
        self,
        ctx: WorkloadContext,
        team_id: str,
        channel: Dict[str, Any],
        destination_team_id: Optional[str],
        destination_channel_id: Optional[str],
    ) -> None:
        source_folder = await ctx.source.get(
            f"teams/{team_id}/channels/{channel['id']}/filesFolder", service_class=ServiceClass.TEAMS
        )
        destination_drive_id = None
        destination_folder_id = "root"
        if not ctx.is_backup:
            destination_folder = await ctx.destination.get(
                f"teams/{destination_team_id}/channels/{destination_channel_id}/filesFolder",
                service_class=ServiceClass.TEAMS,
            )
            destination_drive_id = destination_folder["parentReference"]["driveId"]
            destination_folder_id = destination_folder["id"]

        traversal = DriveTraversal(
            ctx,
            source_folder["parentReference"]["driveId"],
            destination_drive_id,
            key_prefix=(team_id, "channels", channel["id"], "files"),
        )
        await traversal.run(source_folder["id"], destination_folder_id)

    # Members

    async def _members(self, ctx: WorkloadContext, team_id: str, destination_team_id: Optional[str]) -> None:
        members = self.paged(ctx, ctx.source, f"teams/{team_id}/members", service_class=ServiceClass.TEAMS)
        async for page in members.pages():
            for member in page.items:
                await ctx.run_item(
                    member.get("userId") or member["id"],
                    lambda member=member: self._transfer_member(ctx, team_id, destination_team_id, member),
                )
            await ctx.flush()
        if members.interrupted:
            ctx.result.interrupted = True

    async def _transfer_member(
        self,
        ctx: WorkloadContext,
        team_id: str,
        destination_team_id: Optional[str],
        member: Dict[str, Any],
    ) -> int:
        if ctx.is_backup:
            return await ctx.storage.put_json(
                ctx.backup_key(team_id, "members", f"{member['id']}.json"), member
            )
        user_id = ctx.scope.destination_for(member.get("userId") or "")
        try:
            await ctx.destination.post(
                f"teams/{destination_team_id}/members",
                {
                    "@odata.type": "#microsoft.graph.aadUserConversationMember",
                    "roles": member.get("roles") or [],
                    "user@odata.bind": f"https://graph.microsoft.com/v1.0/users('{user_id}')",
                },
                service_class=ServiceClass.TEAMS,
            )
        except ConflictError:
            ctx.logger.debug("Member already present", user_id=user_id)
        except MigrationError as e:
            if "already exists" not in e.message.lower():
                raise
            ctx.logger.debug("Member already present", user_id=user_id)
        return 0

    # Planner

    async def _planner(self, ctx: WorkloadContext, team_id: str, destination_team_id: Optional[str]) -> None:
        plans = self.paged(ctx, ctx.source, f"groups/{team_id}/planner/plans")
        async for plan in plans.items():
            try:
                if ctx.is_backup:
                    await self._backup_plan(ctx, team_id, plan)
                else:
                    await self._migrate_plan(ctx, plan, destination_team_id)
            except MigrationError as e:
                ctx.logger.warning("Plan failed", plan=plan.get("title"), error=e.message)
                ctx.result.record_failure(plan["id"], e, level="container")
            await ctx.flush()
        if plans.interrupted:
            ctx.result.interrupted = True

    async def _backup_plan(self, ctx: WorkloadContext, team_id: str, plan: Dict[str, Any]) -> None:
        buckets = await self.paged(ctx, ctx.source, f"planner/plans/{plan['id']}/buckets").collect()
        await ctx.storage.put_json(
            ctx.backup_key(team_id, "planner", plan["id"], "plan.json"),
            {"plan": plan, "buckets": buckets},
        )
        tasks = self.paged(ctx, ctx.source, f"planner/plans/{plan['id']}/tasks")
        async for task in tasks.items():
            await ctx.run_item(
                task["id"],
                lambda task=task: ctx.storage.put_json(
                    ctx.backup_key(team_id, "planner", plan["id"], "tasks", f"{task['id']}.json"), task
                ),
            )

    async def _migrate_plan(self, ctx: WorkloadContext, plan: Dict[str, Any], destination_team_id: str) -> None:
        destination_plan = await ctx.destination.post(
            "planner/plans",
            {
                "container": {"url": f"https://graph.microsoft.com/v1.0/groups/{destination_team_id}"},
                "title": plan.get("title"),
            },
        )

        bucket_map: Dict[str, str] = {}
        buckets = self.paged(ctx, ctx.source, f"planner/plans/{plan['id']}/buckets")
        async for bucket in buckets.items():
            created = await ctx.destination.post(
                "planner/buckets",
                {
                    "name": bucket.get("name"),
                    "planId": destination_plan["id"],
                    "orderHint": bucket.get("orderHint") or " !",
                },
            )
            bucket_map[bucket["id"]] = created["id"]

        tasks = self.paged(ctx, ctx.source, f"planner/plans/{plan['id']}/tasks")
        async for task in tasks.items():
            await ctx.run_item(
                task["id"],
                lambda task=task: self._migrate_task(ctx, task, destination_plan["id"], bucket_map),
            )

    async def _migrate_task(
        self,
        ctx: WorkloadContext,
        task: Dict[str, Any],
        plan_id: str,
        bucket_map: Dict[str, str],
    ) -> int:
        payload = {
            "planId": plan_id,
            "title": task.get("title"),
            "percentComplete": task.get("percentComplete", 0),
        }
        bucket_id = bucket_map.get(task.get("bucketId"))
        if bucket_id:
            payload["bucketId"] = bucket_id
        if task.get("dueDateTime"):
            payload["dueDateTime"] = task["dueDateTime"]
        await ctx.destination.post("planner/tasks", payload)
        return 0
