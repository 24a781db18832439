from __future__ import annotations
from datetime import datetime, timedelta
from sqlalchemy import select, update, delete, desc, or_
from sqlalchemy.ext.asyncio import AsyncSession
from groupcast.domain.models import (
    BroadcastStatus, ConnectionRecord, ConnectionStatus, DeliveryRecord, Group, ScheduledBroadcast,
)
from groupcast.persistence.schema import (
    BroadcastRow, ConnectionRow, DeliveryRow, GroupRow, TagAssignmentRow,
)

def _connection(r: ConnectionRow) -> ConnectionRecord:
    return ConnectionRecord(
        user_id=r.user_id, channel_id=r.channel_id, channel_credential=r.channel_credential,
        status=r.status, channel_created_at=r.channel_created_at, last_updated=r.last_updated,
        payment_plan=r.payment_plan, trial_expires_at=r.trial_expires_at,
    )

def _broadcast(r: BroadcastRow) -> ScheduledBroadcast:
    return ScheduledBroadcast(
        id=r.id, user_id=r.user_id, message=r.message, media_ref=r.media_ref, media_type=r.media_type,
        recipient_group_ids=list(r.recipient_group_ids or []), tag_ids=list(r.tag_ids or []),
        send_at=r.send_at, status=r.status, created_at=r.created_at, updated_at=r.updated_at,
    )

def _delivery(r: DeliveryRow) -> DeliveryRecord:
    return DeliveryRecord(
        id=r.id, user_id=r.user_id, broadcast_id=r.broadcast_id, recipient_group_id=r.recipient_group_id,
        message=r.message, media_ref=r.media_ref, status=r.status, error_detail=r.error_detail,
        remote_message_id=r.remote_message_id, sent_at=r.sent_at,
    )

class Repo:
    """Store access. Callers own the session and commit.

    Status writes on connections are conditional updates so that concurrent
    writers (user actions, polling, webhooks) resolve by timestamp.
    """
    def __init__(self, session: AsyncSession):
        self.s = session

    # connections

    async def get_connection(self, user_id: str) -> ConnectionRecord | None:
        row = await self.s.get(ConnectionRow, user_id)
        return _connection(row) if row else None

    async def ensure_connection(self, user_id: str, now: datetime, trial_days: int) -> ConnectionRecord:
        row = await self.s.get(ConnectionRow, user_id)
        if row is None:
            row = ConnectionRow(
                user_id=user_id, status=ConnectionStatus.absent.value, last_updated=now,
                payment_plan="trial", trial_expires_at=now + timedelta(days=trial_days),
            )
            self.s.add(row)
            await self.s.flush()
        return _connection(row)

    async def find_connection_by_channel(self, channel_id: str) -> ConnectionRecord | None:
        res = await self.s.execute(select(ConnectionRow).where(ConnectionRow.channel_id == channel_id))
        row = res.scalars().first()
        return _connection(row) if row else None

    async def list_connections_with_channel(self) -> list[ConnectionRecord]:
        res = await self.s.execute(select(ConnectionRow).where(ConnectionRow.channel_id.is_not(None)))
        return [_connection(r) for r in res.scalars().all()]

    async def write_status(self, user_id: str, status: str, at: datetime, channel_id: str | None = None) -> bool:
        """Last-write-wins status write. Returns False when a newer write, or
        a different channel (if channel_id is given), is already stored."""
        stmt = (
            update(ConnectionRow)
            .where(ConnectionRow.user_id == user_id)
            .where(or_(ConnectionRow.last_updated.is_(None), ConnectionRow.last_updated <= at))
            .values(status=status, last_updated=at)
        )
        if channel_id is not None:
            stmt = stmt.where(ConnectionRow.channel_id == channel_id)
        res = await self.s.execute(stmt)
        return res.rowcount > 0

    async def attach_channel(self, user_id: str, channel_id: str, credential: str, status: str, at: datetime) -> bool:
        res = await self.s.execute(
            update(ConnectionRow)
            .where(ConnectionRow.user_id == user_id)
            .values(channel_id=channel_id, channel_credential=credential, status=status,
                    channel_created_at=at, last_updated=at)
        )
        return res.rowcount > 0

    async def clear_channel(self, user_id: str, status: str, at: datetime, expected_channel_id: str | None = None) -> bool:
        """Drops channel id and credential together. With expected_channel_id
        the clear only applies while that channel is still the stored one."""
        stmt = (
            update(ConnectionRow)
            .where(ConnectionRow.user_id == user_id)
            .values(channel_id=None, channel_credential=None, channel_created_at=None,
                    status=status, last_updated=at)
        )
        if expected_channel_id is not None:
            stmt = stmt.where(ConnectionRow.channel_id == expected_channel_id)
        res = await self.s.execute(stmt)
        return res.rowcount > 0

    # groups

    async def replace_groups(self, user_id: str, groups: list[Group]) -> int:
        """Upserts the given groups and removes the user's groups that are gone.
        Tag assignments survive for groups that are still present."""
        res = await self.s.execute(select(GroupRow).where(GroupRow.user_id == user_id))
        existing = {r.group_id: r for r in res.scalars().all()}
        keep: set[str] = set()
        for g in groups:
            keep.add(g.group_id)
            row = existing.get(g.group_id)
            if row is None:
                self.s.add(GroupRow(
                    user_id=user_id, group_id=g.group_id, name=g.name, description=g.description,
                    participants_count=g.participants_count, is_admin=g.is_admin, avatar_url=g.avatar_url,
                ))
            else:
                row.name = g.name
                row.description = g.description
                row.participants_count = g.participants_count
                row.is_admin = g.is_admin
                row.avatar_url = g.avatar_url
        stale = [r.id for gid, r in existing.items() if gid not in keep]
        if stale:
            await self.s.execute(delete(TagAssignmentRow).where(TagAssignmentRow.group_row_id.in_(stale)))
            await self.s.execute(delete(GroupRow).where(GroupRow.id.in_(stale)))
        return len(keep)

    async def group_ids_for_tags(self, user_id: str, tag_ids: list[str]) -> list[str]:
        if not tag_ids:
            return []
        stmt = (
            select(GroupRow.group_id)
            .join(TagAssignmentRow, TagAssignmentRow.group_row_id == GroupRow.id)
            .where(GroupRow.user_id == user_id)
            .where(TagAssignmentRow.tag_id.in_(tag_ids))
            .order_by(GroupRow.id)
        )
        res = await self.s.execute(stmt)
        return list(dict.fromkeys(res.scalars().all()))

    # broadcasts

    async def add_broadcast(self, b: ScheduledBroadcast) -> None:
        self.s.add(BroadcastRow(
            id=b.id, user_id=b.user_id, message=b.message, media_ref=b.media_ref, media_type=b.media_type,
            recipient_group_ids=list(b.recipient_group_ids), tag_ids=list(b.tag_ids), send_at=b.send_at,
            status=b.status.value, created_at=b.created_at, updated_at=b.updated_at,
        ))

    async def get_broadcast(self, broadcast_id: str) -> ScheduledBroadcast | None:
        row = await self.s.get(BroadcastRow, broadcast_id)
        return _broadcast(row) if row else None

    async def list_due_broadcasts(self, now: datetime, limit: int) -> list[ScheduledBroadcast]:
        stmt = (
            select(BroadcastRow)
            .where(BroadcastRow.status == BroadcastStatus.pending.value)
            .where(BroadcastRow.send_at <= now)
            .order_by(BroadcastRow.send_at, BroadcastRow.created_at)
            .limit(limit)
        )
        res = await self.s.execute(stmt)
        return [_broadcast(r) for r in res.scalars().all()]

    async def list_broadcasts(self, user_id: str, limit: int = 20, offset: int = 0) -> list[ScheduledBroadcast]:
        stmt = (
            select(BroadcastRow).where(BroadcastRow.user_id == user_id)
            .order_by(desc(BroadcastRow.send_at)).offset(offset).limit(limit)
        )
        res = await self.s.execute(stmt)
        return [_broadcast(r) for r in res.scalars().all()]

    async def _transition(self, broadcast_id: str, from_: tuple[BroadcastStatus, ...], to: BroadcastStatus,
                          at: datetime) -> bool:
        res = await self.s.execute(
            update(BroadcastRow)
            .where(BroadcastRow.id == broadcast_id)
            .where(BroadcastRow.status.in_([s.value for s in from_]))
            .values(status=to.value, updated_at=at)
        )
        return res.rowcount > 0

    async def claim_broadcast(self, broadcast_id: str, at: datetime) -> bool:
        """pending -> sending compare-and-set. False means another pass (or a
        cancellation) got there first."""
        return await self._transition(broadcast_id, (BroadcastStatus.pending,), BroadcastStatus.sending, at)

    async def finish_broadcast(self, broadcast_id: str, status: BroadcastStatus, at: datetime) -> bool:
        return await self._transition(broadcast_id, (BroadcastStatus.sending,), status, at)

    async def fail_broadcast(self, broadcast_id: str, at: datetime) -> bool:
        return await self._transition(
            broadcast_id, (BroadcastStatus.pending, BroadcastStatus.sending), BroadcastStatus.failed, at,
        )

    # deliveries

    async def add_delivery(self, d: DeliveryRecord) -> None:
        self.s.add(DeliveryRow(
            user_id=d.user_id, broadcast_id=d.broadcast_id, recipient_group_id=d.recipient_group_id,
            message=d.message, media_ref=d.media_ref, status=d.status.value, error_detail=d.error_detail,
            remote_message_id=d.remote_message_id, sent_at=d.sent_at,
        ))

    async def list_deliveries(self, user_id: str, limit: int = 20, offset: int = 0,
                              broadcast_id: str | None = None) -> list[DeliveryRecord]:
        stmt = select(DeliveryRow).where(DeliveryRow.user_id == user_id)
        if broadcast_id:
            stmt = stmt.where(DeliveryRow.broadcast_id == broadcast_id)
        stmt = stmt.order_by(desc(DeliveryRow.sent_at), desc(DeliveryRow.id)).offset(offset).limit(limit)
        res = await self.s.execute(stmt)
        return [_delivery(r) for r in res.scalars().all()]
