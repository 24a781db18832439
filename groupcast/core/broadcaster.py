from __future__ import annotations
import os
from datetime import datetime
from typing import Any, Callable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from groupcast.channels.base import GatewayClient
from groupcast.channels.whapi import WhapiClient
from groupcast.config import Settings
from groupcast.core.dispatch import DispatchEngine
from groupcast.core.messaging import MessagingService
from groupcast.core.orchestrator import ChannelOrchestrator
from groupcast.core.scheduler import PeriodicTask
from groupcast.core.webhook import WebhookReceiver
from groupcast.domain.models import utcnow
from groupcast.observability.logging import get_logger

log = get_logger("broadcaster")

class Broadcaster:
    """Single authority: owns the gateway client, the orchestrator, the
    dispatch engine and the periodic loops.

    External access: the HTTP action endpoint and the webhook route.
    """
    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        client: GatewayClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.client: GatewayClient = client or WhapiClient.from_settings(settings)

        self.orchestrator = ChannelOrchestrator(settings, session_factory, self.client, clock=clock)
        self.dispatcher = DispatchEngine(settings, session_factory, self.client, clock=clock)
        self.messaging = MessagingService(settings, session_factory, self.client, self.dispatcher, clock=clock)
        self.webhooks = WebhookReceiver(self.orchestrator)

        self._tasks: list[PeriodicTask] = []
        if settings.dispatch_enabled:
            self._tasks.append(PeriodicTask("dispatch", settings.dispatch_interval_s, self.dispatcher.run_due_broadcasts))
        if settings.poll_interval_s > 0:
            self._tasks.append(PeriodicTask("status_poll", settings.poll_interval_s, self.orchestrator.poll_all))

    async def start(self) -> None:
        os.makedirs(self.settings.data_dir, exist_ok=True)
        if not self.settings.whapi_partner_token:
            log.warning("partner_token_missing", hint="set GCAST_WHAPI_PARTNER_TOKEN; channel creation will fail")
        if not self.settings.webhook_url:
            log.info("webhook_registration_disabled", reason="public_base_url not set")
        for t in self._tasks:
            t.start()

    async def stop(self) -> None:
        for t in self._tasks:
            await t.stop()
        await self.client.aclose()

    # user actions

    async def connect(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        res = await self.orchestrator.ensure_connected(user_id)
        return res.model_dump(mode="json")

    async def status(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        res = await self.orchestrator.check_status(user_id)
        return res.model_dump(mode="json")

    async def disconnect(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        res = await self.orchestrator.disconnect(user_id)
        return {"success": True, **res.model_dump(mode="json")}

    async def sync_groups(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self.messaging.sync_groups(user_id)

    async def send_message(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        summary = await self.messaging.send_message(user_id, data)
        return summary.as_payload()

    async def schedule_message(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        b = await self.messaging.schedule_message(user_id, data)
        return {
            "success": True,
            "scheduled_message": b.model_dump(mode="json"),
            "message": f"Message scheduled for {b.send_at.isoformat()}Z",
        }

    async def get_messages(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self.messaging.get_messages(user_id, data)

    def handler_map(self):
        return {
            "connect": self.connect,
            "status": self.status,
            "disconnect": self.disconnect,
            "sync-groups": self.sync_groups,
            "send-message": self.send_message,
            "schedule-message": self.schedule_message,
            "get-messages": self.get_messages,
        }
