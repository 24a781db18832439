"""Domain models for groupcast."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, the form the store persists."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Enums
# ============================================================================


class ConnectionStatus(str, Enum):
    """Internal channel connection status.

    Remote statuses outside this vocabulary are stored verbatim and count as
    not connected.
    """

    absent = "absent"
    initializing = "initializing"
    awaiting_pairing = "awaiting_pairing"
    connected = "connected"
    disconnected = "disconnected"
    unauthorized = "unauthorized"


class BroadcastStatus(str, Enum):
    """Scheduled broadcast status."""

    pending = "pending"
    sending = "sending"
    sent = "sent"
    partial = "partial"
    failed = "failed"
    cancelled = "cancelled"


class DeliveryStatus(str, Enum):
    """Per-recipient delivery outcome."""

    sent = "sent"
    failed = "failed"


class ConnectOutcome(str, Enum):
    """Result kinds of the connect action."""

    already_connected = "already_connected"
    pairing_code = "pairing_code"
    pending = "pending"
    requires_new_instance = "requires_new_instance"
    failed = "failed"


class PaymentPlan(str, Enum):
    trial = "trial"
    paid = "paid"


# ============================================================================
# Stored records
# ============================================================================


class ConnectionRecord(BaseModel):
    """One connection record per user."""

    user_id: str = Field(description="Owning user")
    channel_id: Optional[str] = Field(default=None, description="Remote channel identifier")
    channel_credential: Optional[str] = Field(default=None, description="Per-channel credential", repr=False)
    status: str = Field(default=ConnectionStatus.absent.value)
    channel_created_at: Optional[datetime] = Field(default=None, description="When the current channel was attached")
    last_updated: Optional[datetime] = Field(default=None, description="Last-write-wins stamp")
    payment_plan: PaymentPlan = Field(default=PaymentPlan.trial)
    trial_expires_at: Optional[datetime] = None

    @property
    def has_channel(self) -> bool:
        return bool(self.channel_id and self.channel_credential)

    @property
    def is_connected(self) -> bool:
        return self.has_channel and self.status == ConnectionStatus.connected.value


class ScheduledBroadcast(BaseModel):
    """A message scheduled for delivery to a snapshot of recipient groups."""

    id: str = Field(description="Unique broadcast identifier")
    user_id: str = Field(description="Owning user")
    message: str
    media_ref: Optional[str] = None
    media_type: Optional[str] = None
    recipient_group_ids: list[str] = Field(default_factory=list)
    tag_ids: list[str] = Field(default_factory=list, description="Tags the recipients were resolved from")
    send_at: datetime
    status: BroadcastStatus = Field(default=BroadcastStatus.pending)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeliveryRecord(BaseModel):
    """Append-only audit of one send attempt to one recipient."""

    id: Optional[int] = None
    user_id: str
    broadcast_id: Optional[str] = Field(default=None, description="Empty for direct sends")
    recipient_group_id: str
    message: str
    media_ref: Optional[str] = None
    status: DeliveryStatus
    error_detail: Optional[str] = None
    remote_message_id: Optional[str] = None
    sent_at: datetime = Field(default_factory=utcnow)


class Group(BaseModel):
    """A messaging group known for a user."""

    user_id: str
    group_id: str = Field(description="Remote group identifier")
    name: str
    description: Optional[str] = None
    participants_count: int = 0
    is_admin: bool = False
    avatar_url: Optional[str] = None


# ============================================================================
# Operation results
# ============================================================================


class ConnectResult(BaseModel):
    outcome: ConnectOutcome
    channel_id: Optional[str] = None
    status: Optional[str] = None
    pairing_code: Optional[str] = Field(default=None, description="Self-describing image payload (data URI)")
    retryable: bool = False
    message: str = ""


class StatusResult(BaseModel):
    connected: bool
    status: str
    channel_id: Optional[str] = None
    requires_new_instance: bool = False
    retryable: bool = False
    message: str = ""


class RecipientResult(BaseModel):
    group_id: str
    success: bool
    remote_message_id: Optional[str] = None
    error: Optional[str] = None


class SendSummary(BaseModel):
    results: list[RecipientResult] = Field(default_factory=list)
    sent: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.sent + self.failed

    def as_payload(self) -> dict[str, Any]:
        return {
            "success": self.sent > 0,
            "results": [r.model_dump(mode="json") for r in self.results],
            "sent": self.sent,
            "failed": self.failed,
            "message": f"Sent to {self.sent} of {self.total} groups",
        }
