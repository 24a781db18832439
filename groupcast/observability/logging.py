from __future__ import annotations
import logging, sys
from typing import Any
import structlog

# event fields that may carry gateway or client secrets
SECRET_FIELDS = frozenset({"token", "credential", "channel_credential", "partner_token", "api_key", "authorization"})

def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in SECRET_FIELDS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict

def configure_logging(level: str = "INFO", json_logs: bool = True, instance_id: str | None = None) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, stream=sys.stdout, format="%(message)s")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
    ]
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        cache_logger_on_first_use=True,
    )
    if instance_id:
        structlog.contextvars.bind_contextvars(instance=instance_id)

def get_logger(name: str = "gcast"):
    return structlog.get_logger(name)

def bind_user_id(user_id: str | None):
    """Every log line emitted while an action runs carries the acting user."""
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=user_id)
    else:
        structlog.contextvars.unbind_contextvars("user_id")
