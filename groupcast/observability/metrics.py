from __future__ import annotations
from prometheus_client import Counter, Histogram

actions = Counter("gcast_actions_total", "User actions total", ["action"])
action_errors = Counter("gcast_action_errors_total", "User action errors total", ["action", "code"])
gateway_calls = Counter("gcast_gateway_calls_total", "Remote gateway calls", ["op", "outcome"])
status_writes = Counter("gcast_status_writes_total", "Connection status writes", ["source", "applied"])
webhook_events = Counter("gcast_webhook_events_total", "Webhook events received", ["event", "outcome"])
broadcasts = Counter("gcast_broadcasts_total", "Scheduled broadcasts finished", ["status"])
deliveries = Counter("gcast_deliveries_total", "Per-recipient delivery attempts", ["status"])
dispatch_pass_latency = Histogram("gcast_dispatch_pass_seconds", "Dispatch pass latency seconds")
