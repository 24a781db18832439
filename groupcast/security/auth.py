from __future__ import annotations
import secrets
from groupcast.config import Settings

def constant_time_equals(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

def verify_client_key(settings: Settings, provided: str | None) -> bool:
    """x-api-key check for the action endpoint; no configured keys means deny."""
    if not settings.require_client_auth:
        return True
    return bool(provided) and any(constant_time_equals(k, provided) for k in settings.client_api_keys)

def verify_webhook_token(settings: Settings, provided: str | None) -> bool:
    """?token= check for gateway pushes; an empty configured token disables it."""
    if not settings.webhook_token:
        return True
    return bool(provided) and constant_time_equals(settings.webhook_token, provided)
