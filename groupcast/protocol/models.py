from __future__ import annotations
import uuid
from datetime import datetime
from typing import Any, Literal, Optional
from pydantic import AliasChoices, BaseModel, Field

ActionName = Literal[
    "connect",
    "status",
    "disconnect",
    "sync-groups",
    "send-message",
    "schedule-message",
    "get-messages",
]

class ActionRequest(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str = Field(min_length=1)
    action: ActionName = "connect"
    data: dict[str, Any] = Field(default_factory=dict)

class ActionResponse(BaseModel):
    id: str
    action: str
    ts: datetime
    ok: bool = True
    payload: dict[str, Any] = Field(default_factory=dict)
    err: Optional[dict[str, Any]] = None

class WebhookEvent(BaseModel):
    """Gateway push. Delivered out of order and possibly more than once."""

    event: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    channel_id_: Optional[str] = Field(default=None, alias="channel_id")

    @property
    def channel_id(self) -> str | None:
        if self.event == "channel":
            cid = self.data.get("id") or self.data.get("channel_id") or self.channel_id_
        else:
            # in user events data.id names the user, not the channel
            cid = self.data.get("channel_id") or self.channel_id_
        return str(cid) if cid else None

    @property
    def status(self) -> str | None:
        status = self.data.get("status")
        if isinstance(status, dict):
            status = status.get("text")
        return str(status) if status else None

class SendMessageData(BaseModel):
    group_ids: list[str] = Field(default_factory=list, validation_alias=AliasChoices("group_ids", "groupIds"))
    message: str = ""
    media_ref: Optional[str] = Field(default=None, validation_alias=AliasChoices("media_ref", "mediaUrl", "media_url"))
    media_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("media_type", "mediaType"))

class ScheduleMessageData(SendMessageData):
    tag_ids: list[str] = Field(default_factory=list, validation_alias=AliasChoices("tag_ids", "tagIds"))
    send_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("send_at", "sendAt"))

class GetMessagesData(BaseModel):
    type: Literal["scheduled", "history"] = "scheduled"
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
