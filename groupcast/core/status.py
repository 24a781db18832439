"""Remote status vocabulary shared by the polling and webhook paths."""
from __future__ import annotations

from groupcast.domain.models import ConnectionStatus

CONNECTED_STATES = frozenset({"authenticated", "ready", "active"})
PAIRING_STATES = frozenset({"qr", "unauthorized"})


def map_remote_status(remote: str | None) -> str:
    """Map a gateway status string to the internal vocabulary.

    Unknown values pass through verbatim and count as not connected.
    """
    if not remote:
        return ConnectionStatus.absent.value
    key = remote.strip().lower()
    if key in CONNECTED_STATES:
        return ConnectionStatus.connected.value
    if key in PAIRING_STATES:
        return ConnectionStatus.awaiting_pairing.value
    return remote


def is_connected(status: str | None) -> bool:
    return status == ConnectionStatus.connected.value


def as_image_payload(code: str, mime: str = "image/png") -> str:
    """Pairing codes are handed out as data URIs."""
    code = code.strip()
    if code.startswith("data:"):
        return code
    return f"data:{mime};base64,{code}"
