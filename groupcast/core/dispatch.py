from __future__ import annotations
import asyncio, time
from datetime import datetime
from typing import Callable
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from groupcast.channels.base import GatewayClient
from groupcast.config import Settings
from groupcast.domain.models import (
    BroadcastStatus, DeliveryRecord, DeliveryStatus, RecipientResult, ScheduledBroadcast, SendSummary, utcnow,
)
from groupcast.observability.logging import get_logger
from groupcast.observability import metrics
from groupcast.persistence.repo import Repo

log = get_logger("dispatch")

def rollup(summary: SendSummary) -> BroadcastStatus:
    """sent if every recipient succeeded, partial if some did, failed otherwise."""
    if summary.sent and not summary.failed:
        return BroadcastStatus.sent
    if summary.sent:
        return BroadcastStatus.partial
    return BroadcastStatus.failed

class DispatchEngine:
    """Delivers due scheduled broadcasts.

    A broadcast is claimed (pending -> sending compare-and-set) before any
    remote work, so concurrent passes never send the same broadcast twice.
    Each recipient attempt is isolated and leaves exactly one DeliveryRecord.
    """
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        client: GatewayClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.client = client
        self._clock = clock

    async def run_due_broadcasts(self) -> int:
        """One pass over the oldest due broadcasts. Returns how many this pass claimed."""
        started = time.monotonic()
        async with self.session_factory() as s:
            due = await Repo(s).list_due_broadcasts(self._clock(), self.settings.dispatch_batch_size)
        if not due:
            log.debug("no_due_broadcasts")
            return 0

        processed = 0
        for b in due:
            try:
                if await self._process(b):
                    processed += 1
            except Exception as e:
                log.exception("broadcast_processing_failed", broadcast_id=b.id, error=str(e))
                await self._mark_failed(b.id)

        metrics.dispatch_pass_latency.observe(time.monotonic() - started)
        log.info("dispatch_pass_done", due=len(due), processed=processed)
        return processed

    async def _process(self, b: ScheduledBroadcast) -> bool:
        async with self.session_factory() as s:
            claimed = await Repo(s).claim_broadcast(b.id, self._clock())
            await s.commit()
        if not claimed:
            log.info("broadcast_already_claimed", broadcast_id=b.id)
            return False

        async with self.session_factory() as s:
            record = await Repo(s).get_connection(b.user_id)
        if record is None or not record.is_connected:
            log.warning("broadcast_channel_not_connected", broadcast_id=b.id, user_id=b.user_id,
                        status=record.status if record else None)
            await self._finish(b.id, BroadcastStatus.failed)
            return True

        summary = await self.deliver(
            b.user_id, record.channel_credential, b.message, b.recipient_group_ids,
            media_ref=b.media_ref, media_type=b.media_type, broadcast_id=b.id,
        )
        final = rollup(summary)
        await self._finish(b.id, final)
        log.info("broadcast_done", broadcast_id=b.id, status=final.value, sent=summary.sent, failed=summary.failed)
        return True

    async def deliver(
        self,
        user_id: str,
        credential: str,
        message: str,
        recipients: list[str],
        media_ref: str | None = None,
        media_type: str | None = None,
        broadcast_id: str | None = None,
    ) -> SendSummary:
        """Send to every recipient; the summary is built only after all attempts finished."""
        sem = asyncio.Semaphore(max(1, self.settings.dispatch_concurrency))

        async def attempt(group_id: str) -> RecipientResult:
            async with sem:
                return await self._send_one(user_id, credential, group_id, message, media_ref, media_type, broadcast_id)

        results = list(await asyncio.gather(*(attempt(g) for g in recipients)))
        sent = sum(1 for r in results if r.success)
        return SendSummary(results=results, sent=sent, failed=len(results) - sent)

    async def _send_one(
        self,
        user_id: str,
        credential: str,
        group_id: str,
        message: str,
        media_ref: str | None,
        media_type: str | None,
        broadcast_id: str | None,
    ) -> RecipientResult:
        try:
            remote_id = await self.client.send_message(credential, group_id, message, media_ref, media_type)
            delivery = DeliveryRecord(
                user_id=user_id, broadcast_id=broadcast_id, recipient_group_id=group_id, message=message,
                media_ref=media_ref, status=DeliveryStatus.sent, remote_message_id=remote_id, sent_at=self._clock(),
            )
        except Exception as e:
            log.warning("delivery_failed", broadcast_id=broadcast_id, group_id=group_id,
                        error=str(e), error_type=type(e).__name__)
            delivery = DeliveryRecord(
                user_id=user_id, broadcast_id=broadcast_id, recipient_group_id=group_id, message=message,
                media_ref=media_ref, status=DeliveryStatus.failed, error_detail=(str(e) or type(e).__name__)[:1000],
                sent_at=self._clock(),
            )

        try:
            async with self.session_factory() as s:
                await Repo(s).add_delivery(delivery)
                await s.commit()
        except SQLAlchemyError as e:
            log.error("delivery_record_write_failed", broadcast_id=broadcast_id, group_id=group_id, error=str(e))
        metrics.deliveries.labels(status=delivery.status.value).inc()

        return RecipientResult(
            group_id=group_id,
            success=delivery.status == DeliveryStatus.sent,
            remote_message_id=delivery.remote_message_id,
            error=delivery.error_detail,
        )

    async def _finish(self, broadcast_id: str, status: BroadcastStatus) -> None:
        async with self.session_factory() as s:
            applied = await Repo(s).finish_broadcast(broadcast_id, status, self._clock())
            await s.commit()
        if not applied:
            log.warning("broadcast_final_status_not_applied", broadcast_id=broadcast_id, status=status.value)
            return
        metrics.broadcasts.labels(status=status.value).inc()

    async def _mark_failed(self, broadcast_id: str) -> None:
        try:
            async with self.session_factory() as s:
                applied = await Repo(s).fail_broadcast(broadcast_id, self._clock())
                await s.commit()
        except SQLAlchemyError as e:
            log.error("broadcast_mark_failed_error", broadcast_id=broadcast_id, error=str(e))
            return
        if applied:
            metrics.broadcasts.labels(status=BroadcastStatus.failed.value).inc()
