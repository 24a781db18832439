from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, DateTime, Text, JSON, Integer, Boolean, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

class Base(DeclarativeBase):
    pass

class ConnectionRow(Base):
    __tablename__ = "connections"
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    channel_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    channel_credential: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="absent")
    channel_created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    payment_plan: Mapped[str] = mapped_column(String, default="trial")
    trial_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

class GroupRow(Base):
    __tablename__ = "chat_groups"
    __table_args__ = (UniqueConstraint("user_id", "group_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("connections.user_id"), index=True)
    group_id: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    participants_count: Mapped[int] = mapped_column(Integer, default=0)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    avatar_url: Mapped[str | None] = mapped_column(String, nullable=True)

class TagRow(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name"),)
    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("connections.user_id"), index=True)
    name: Mapped[str] = mapped_column(String)

class TagAssignmentRow(Base):
    __tablename__ = "tag_assignments"
    __table_args__ = (UniqueConstraint("group_row_id", "tag_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_row_id: Mapped[int] = mapped_column(Integer, ForeignKey("chat_groups.id", ondelete="CASCADE"), index=True)
    tag_id: Mapped[str] = mapped_column(String, ForeignKey("tags.id", ondelete="CASCADE"), index=True)

class BroadcastRow(Base):
    __tablename__ = "scheduled_broadcasts"
    __table_args__ = (Index("ix_broadcast_status_send_at", "status", "send_at"),)
    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("connections.user_id"), index=True)
    message: Mapped[str] = mapped_column(Text)
    media_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    media_type: Mapped[str | None] = mapped_column(String, nullable=True)
    recipient_group_ids: Mapped[list] = mapped_column(JSON, default=list)
    tag_ids: Mapped[list] = mapped_column(JSON, default=list)
    send_at: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

class DeliveryRow(Base):
    __tablename__ = "deliveries"
    __table_args__ = (Index("ix_delivery_user_sent_at", "user_id", "sent_at"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    broadcast_id: Mapped[str | None] = mapped_column(String, ForeignKey("scheduled_broadcasts.id"), index=True, nullable=True)
    recipient_group_id: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    media_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime)
