from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Any, Callable
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from groupcast.channels.base import GatewayClient, GatewayError
from groupcast.config import Settings
from groupcast.core.dispatch import DispatchEngine
from groupcast.core.errors import InvalidRequestError, NotConnectedError, UpstreamError
from groupcast.domain.models import ConnectionRecord, Group, ScheduledBroadcast, SendSummary, utcnow
from groupcast.observability.logging import get_logger
from groupcast.persistence.repo import Repo
from groupcast.protocol.models import GetMessagesData, ScheduleMessageData, SendMessageData

log = get_logger("messaging")

def _parse(model, data: dict[str, Any]):
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        raise InvalidRequestError(str(e)) from e

def _naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)

class MessagingService:
    """Group sync, immediate sends, scheduling and history for a connected user."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        client: GatewayClient,
        dispatcher: DispatchEngine,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.client = client
        self.dispatcher = dispatcher
        self._clock = clock

    async def _connected_record(self, user_id: str) -> ConnectionRecord:
        async with self.session_factory() as s:
            record = await Repo(s).get_connection(user_id)
        if record is None or not record.is_connected:
            raise NotConnectedError("WhatsApp not connected. Please connect WhatsApp first.")
        return record

    async def sync_groups(self, user_id: str) -> dict[str, Any]:
        record = await self._connected_record(user_id)
        try:
            remote = await self.client.list_groups(record.channel_credential)
        except GatewayError as e:
            log.warning("group_sync_failed", error=str(e))
            raise UpstreamError("Failed to fetch groups from the gateway") from e

        groups = [
            Group(user_id=user_id, group_id=g.group_id, name=g.name, description=g.description,
                  participants_count=g.participants_count, is_admin=g.is_admin, avatar_url=g.avatar_url)
            for g in remote
        ]
        async with self.session_factory() as s:
            count = await Repo(s).replace_groups(user_id, groups)
            await s.commit()
        log.info("groups_synced", count=count)
        return {"success": True, "groups_count": count, "message": f"Synced {count} groups successfully"}

    async def send_message(self, user_id: str, data: dict[str, Any]) -> SendSummary:
        req = _parse(SendMessageData, data)
        group_ids = list(dict.fromkeys(req.group_ids))
        if not group_ids or not req.message:
            raise InvalidRequestError("Group IDs and message are required")
        record = await self._connected_record(user_id)
        summary = await self.dispatcher.deliver(
            user_id, record.channel_credential, req.message, group_ids,
            media_ref=req.media_ref, media_type=req.media_type,
        )
        log.info("direct_send_done", sent=summary.sent, failed=summary.failed)
        return summary

    async def schedule_message(self, user_id: str, data: dict[str, Any]) -> ScheduledBroadcast:
        req = _parse(ScheduleMessageData, data)
        if not req.message or not (req.group_ids or req.tag_ids) or req.send_at is None:
            raise InvalidRequestError("Message, recipients, and send time are required")

        now = self._clock()
        async with self.session_factory() as s:
            repo = Repo(s)
            await repo.ensure_connection(user_id, now, self.settings.trial_days)
            # snapshot: tag membership is resolved once, here
            tagged = await repo.group_ids_for_tags(user_id, req.tag_ids)
            recipients = list(dict.fromkeys([*req.group_ids, *tagged]))
            if not recipients:
                raise InvalidRequestError("The selected tags resolve to no groups")
            broadcast = ScheduledBroadcast(
                id=uuid.uuid4().hex, user_id=user_id, message=req.message, media_ref=req.media_ref,
                media_type=req.media_type, recipient_group_ids=recipients, tag_ids=req.tag_ids,
                send_at=_naive_utc(req.send_at), created_at=now, updated_at=now,
            )
            await repo.add_broadcast(broadcast)
            await s.commit()
        log.info("broadcast_scheduled", broadcast_id=broadcast.id, recipients=len(recipients),
                 send_at=broadcast.send_at.isoformat())
        return broadcast

    async def get_messages(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        req = _parse(GetMessagesData, data)
        async with self.session_factory() as s:
            repo = Repo(s)
            if req.type == "scheduled":
                items = await repo.list_broadcasts(user_id, limit=req.limit, offset=req.offset)
            else:
                items = await repo.list_deliveries(user_id, limit=req.limit, offset=req.offset)
        return {"success": True, "type": req.type, "messages": [m.model_dump(mode="json") for m in items]}
