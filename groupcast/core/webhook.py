from __future__ import annotations
from typing import Any
from pydantic import ValidationError
from groupcast.core.orchestrator import ChannelOrchestrator
from groupcast.observability.logging import get_logger
from groupcast.observability import metrics
from groupcast.protocol.models import WebhookEvent

log = get_logger("webhook")

HANDLED_EVENTS = frozenset({"channel", "users"})

class WebhookReceiver:
    """Translates gateway pushes into connection status writes.

    Idempotent: a duplicate delivery rewrites the same status.
    """
    def __init__(self, orchestrator: ChannelOrchestrator):
        self.orchestrator = orchestrator

    async def receive(self, payload: dict[str, Any]) -> bool:
        try:
            event = WebhookEvent.model_validate(payload)
        except ValidationError as e:
            metrics.webhook_events.labels(event="unknown", outcome="invalid").inc()
            log.warning("webhook_payload_invalid", error=str(e))
            return False

        kind = event.event if event.event in HANDLED_EVENTS else "other"
        if kind == "other":
            metrics.webhook_events.labels(event=kind, outcome="ignored").inc()
            log.debug("webhook_event_skipped", kind=event.event)
            return False

        applied = await self.orchestrator.reconcile_webhook_event(event)
        metrics.webhook_events.labels(event=kind, outcome="applied" if applied else "dropped").inc()
        return applied
