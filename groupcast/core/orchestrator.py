from __future__ import annotations
import asyncio
from datetime import datetime
from typing import Awaitable, Callable
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from groupcast.channels.base import ChannelNotFoundError, GatewayClient, GatewayError
from groupcast.config import Settings
from groupcast.core.retry import retry_async
from groupcast.core.status import as_image_payload, is_connected, map_remote_status
from groupcast.domain.models import (
    ConnectionRecord, ConnectionStatus, ConnectOutcome, ConnectResult, StatusResult, utcnow,
)
from groupcast.observability.logging import get_logger
from groupcast.observability import metrics
from groupcast.persistence.repo import Repo
from groupcast.protocol.models import WebhookEvent

log = get_logger("orchestrator")

class ChannelOrchestrator:
    """Owns the lifecycle of a user's remote channel.

    absent -> initializing -> awaiting_pairing -> connected, connected ->
    disconnected through disconnect(), and any state -> absent when the
    gateway reports the channel gone. Every store session is closed before
    the next gateway call; status writes are last-write-wins by timestamp.
    """
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        client: GatewayClient,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.client = client
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # connect
    # ------------------------------------------------------------------

    async def ensure_connected(self, user_id: str) -> ConnectResult:
        record = await self._load(user_id)
        previous_channel = record.channel_id

        if record.has_channel:
            try:
                remote = await self._retry(self.client.health, record.channel_credential)
            except ChannelNotFoundError:
                await self._self_heal(user_id, record.channel_id)
                previous_channel = None
            except GatewayError as e:
                log.warning("channel_unreachable", channel_id=record.channel_id, error=str(e))
            else:
                status = map_remote_status(remote)
                await self._write_status(user_id, status, record.channel_id, source="connect")
                if is_connected(status):
                    return ConnectResult(
                        outcome=ConnectOutcome.already_connected, channel_id=record.channel_id,
                        status=status, message="WhatsApp already connected",
                    )
                return await self._request_pairing_code(
                    user_id, record.channel_id, record.channel_credential, record.channel_created_at, status,
                )

        return await self._create_channel(user_id, previous_channel)

    async def _create_channel(self, user_id: str, previous_channel: str | None) -> ConnectResult:
        # resolved on every create; a cached id goes stale when projects change
        try:
            project_id = self.settings.whapi_project_id or await self._retry(self.client.resolve_project_id)
        except GatewayError as e:
            log.error("project_resolution_failed", error=str(e))
            return self._failed("Could not resolve the gateway project. Try again.")

        if previous_channel:
            await self._delete_remote(previous_channel)

        name = f"{self.settings.channel_name_prefix}{user_id[:8]}"
        try:
            created = await self._retry(self.client.create_channel, name, project_id)
        except GatewayError as e:
            log.error("channel_create_failed", project_id=project_id, error=str(e))
            return self._failed("Failed to create channel. Try again.")
        log.info("channel_created", channel_id=created.channel_id, project_id=project_id, remote_status=created.status)

        created_at = self._clock()
        try:
            async with self.session_factory() as s:
                await Repo(s).attach_channel(
                    user_id, created.channel_id, created.credential, ConnectionStatus.initializing.value, created_at,
                )
                await s.commit()
        except SQLAlchemyError as e:
            log.error("channel_persist_failed", channel_id=created.channel_id, error=str(e))
            await self._delete_remote(created.channel_id)
            return self._failed("Failed to save channel. Try again.")
        metrics.status_writes.labels(source="connect", applied="true").inc()

        await self._register_webhook(created.channel_id, created.credential)
        return await self._request_pairing_code(
            user_id, created.channel_id, created.credential, created_at, ConnectionStatus.initializing.value,
        )

    async def _register_webhook(self, channel_id: str, credential: str) -> None:
        url = self.settings.webhook_url
        if not url:
            return
        try:
            await self.client.configure_webhook(credential, url, list(self.settings.webhook_events))
            log.info("webhook_configured", channel_id=channel_id)
        except GatewayError as e:
            # polling still tracks the channel
            log.warning("webhook_config_failed", channel_id=channel_id, error=str(e))

    async def _request_pairing_code(
        self, user_id: str, channel_id: str, credential: str, created_at: datetime | None, status: str,
    ) -> ConnectResult:
        await self._wait_for_channel_age(channel_id, created_at)
        try:
            code = await self._retry(self.client.get_pairing_code, credential)
        except ChannelNotFoundError:
            await self._self_heal(user_id, channel_id)
            return ConnectResult(
                outcome=ConnectOutcome.requires_new_instance, channel_id=channel_id,
                status=ConnectionStatus.absent.value, retryable=True,
                message="Channel no longer exists. Connect again to create a new one.",
            )
        except GatewayError as e:
            log.info("pairing_code_not_ready", channel_id=channel_id, error=str(e))
            return ConnectResult(
                outcome=ConnectOutcome.pending, channel_id=channel_id, status=status, retryable=True,
                message="Channel is still initializing. Try again in a few moments to get the QR code.",
            )

        await self._write_status(user_id, ConnectionStatus.awaiting_pairing.value, channel_id, source="connect")
        return ConnectResult(
            outcome=ConnectOutcome.pairing_code, channel_id=channel_id,
            status=ConnectionStatus.awaiting_pairing.value, pairing_code=as_image_payload(code),
            message="Scan this QR code with WhatsApp",
        )

    async def _wait_for_channel_age(self, channel_id: str, created_at: datetime | None) -> None:
        if created_at is None:
            return
        age = (self._clock() - created_at).total_seconds()
        remaining = self.settings.channel_min_age_s - age
        if remaining <= 0:
            return
        if remaining > self.settings.pairing_max_wait_s:
            log.info("channel_age_wait_skipped", channel_id=channel_id, remaining_s=round(remaining, 1))
            return
        log.info("waiting_for_channel_age", channel_id=channel_id, remaining_s=round(remaining, 1))
        await self._sleep(remaining)

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    async def check_status(self, user_id: str) -> StatusResult:
        record = await self._get(user_id)
        if record is None or not record.has_channel:
            return StatusResult(
                connected=False,
                status=record.status if record else ConnectionStatus.absent.value,
                message="No WhatsApp instance found",
            )

        # existence first: a cached credential for a deleted channel proves nothing
        try:
            info = await self._retry(self.client.get_channel, record.channel_id)
        except ChannelNotFoundError:
            return await self._gone(user_id, record)
        except GatewayError as e:
            log.warning("status_check_failed", channel_id=record.channel_id, error=str(e))
            return StatusResult(
                connected=False, status=record.status, channel_id=record.channel_id, retryable=True,
                message="Failed to check status",
            )

        try:
            remote = await self._retry(self.client.health, record.channel_credential)
        except ChannelNotFoundError:
            return await self._gone(user_id, record)
        except GatewayError as e:
            log.warning("health_unavailable_using_manager_status", channel_id=record.channel_id, error=str(e))
            remote = info.status

        status = record.status
        if remote:
            status = map_remote_status(remote)
            await self._write_status(user_id, status, record.channel_id, source="poll")
        connected = is_connected(status)
        return StatusResult(
            connected=connected, status=status, channel_id=record.channel_id,
            message="WhatsApp connected" if connected else "WhatsApp not connected",
        )

    async def _gone(self, user_id: str, record: ConnectionRecord) -> StatusResult:
        await self._self_heal(user_id, record.channel_id)
        return StatusResult(
            connected=False, status=ConnectionStatus.absent.value, channel_id=record.channel_id,
            requires_new_instance=True, message="Instance no longer exists. Please create a new instance.",
        )

    async def poll_all(self) -> int:
        """check_status for every user holding a channel."""
        async with self.session_factory() as s:
            records = await Repo(s).list_connections_with_channel()
        polled = 0
        for rec in records:
            try:
                await self.check_status(rec.user_id)
                polled += 1
            except SQLAlchemyError as e:
                log.error("status_poll_failed", user_id=rec.user_id, error=str(e))
        return polled

    # ------------------------------------------------------------------
    # disconnect
    # ------------------------------------------------------------------

    async def disconnect(self, user_id: str) -> StatusResult:
        record = await self._get(user_id)
        if record is not None and record.channel_id:
            await self._delete_remote(record.channel_id)

        # unconditional: the user must always be able to reconnect
        async with self.session_factory() as s:
            repo = Repo(s)
            await repo.ensure_connection(user_id, self._clock(), self.settings.trial_days)
            await repo.clear_channel(user_id, ConnectionStatus.disconnected.value, self._clock())
            await s.commit()
        log.info("channel_disconnected", channel_id=record.channel_id if record else None)
        return StatusResult(connected=False, status=ConnectionStatus.disconnected.value, message="WhatsApp disconnected")

    # ------------------------------------------------------------------
    # webhook
    # ------------------------------------------------------------------

    async def reconcile_webhook_event(self, event: WebhookEvent) -> bool:
        """Apply a pushed status to the record owning the event's channel.

        Unknown channels are dropped; no record is ever created here.
        """
        channel_id, remote = event.channel_id, event.status
        if not channel_id or not remote:
            log.info("webhook_event_ignored", kind=event.event, reason="missing_channel_or_status")
            return False
        status = map_remote_status(remote)
        async with self.session_factory() as s:
            repo = Repo(s)
            record = await repo.find_connection_by_channel(channel_id)
            if record is None:
                log.warning("webhook_unknown_channel", channel_id=channel_id, kind=event.event)
                return False
            applied = await repo.write_status(record.user_id, status, self._clock(), channel_id=channel_id)
            await s.commit()
        metrics.status_writes.labels(source="webhook", applied=str(applied).lower()).inc()
        log.info("webhook_status", user_id=record.user_id, channel_id=channel_id,
                 remote_status=remote, status=status, applied=applied)
        return applied

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _retry(self, func, *args):
        return await retry_async(
            func, *args,
            retries=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay_s,
            sleep=self._sleep,
        )

    async def _get(self, user_id: str) -> ConnectionRecord | None:
        async with self.session_factory() as s:
            return await Repo(s).get_connection(user_id)

    async def _load(self, user_id: str) -> ConnectionRecord:
        async with self.session_factory() as s:
            record = await Repo(s).ensure_connection(user_id, self._clock(), self.settings.trial_days)
            await s.commit()
        return record

    async def _write_status(self, user_id: str, status: str, channel_id: str, source: str) -> bool:
        async with self.session_factory() as s:
            applied = await Repo(s).write_status(user_id, status, self._clock(), channel_id=channel_id)
            await s.commit()
        metrics.status_writes.labels(source=source, applied=str(applied).lower()).inc()
        return applied

    async def _self_heal(self, user_id: str, channel_id: str) -> None:
        log.warning("channel_gone_clearing_local_state", channel_id=channel_id)
        async with self.session_factory() as s:
            await Repo(s).clear_channel(user_id, ConnectionStatus.absent.value, self._clock(),
                                        expected_channel_id=channel_id)
            await s.commit()

    async def _delete_remote(self, channel_id: str) -> None:
        try:
            await self.client.delete_channel(channel_id)
            log.info("channel_deleted", channel_id=channel_id)
        except ChannelNotFoundError:
            log.info("channel_already_deleted", channel_id=channel_id)
        except Exception as e:
            log.warning("channel_orphaned", channel_id=channel_id, error=str(e), error_type=type(e).__name__)

    @staticmethod
    def _failed(message: str) -> ConnectResult:
        return ConnectResult(outcome=ConnectOutcome.failed, retryable=True, message=message)
