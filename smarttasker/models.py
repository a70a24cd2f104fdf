from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def new_id() -> str:
  return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
  """Timezone-aware datetime that always comes back as UTC, including on SQLite."""

  impl = DateTime(timezone=True)
  cache_ok = True

  def process_bind_param(self, value, dialect):
    if value is None:
      return None
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

  def process_result_value(self, value, dialect):
    if value is None:
      return None
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
  pass


class User(Base):
  __tablename__ = "users"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  password_hash: Mapped[str] = mapped_column(String, nullable=False)
  role: Mapped[str] = mapped_column(String, nullable=False, default="team_member")  # admin | team_leader | team_member
  active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  notification_prefs: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Session(Base):
  __tablename__ = "sessions"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  created_ip: Mapped[str | None] = mapped_column(String, nullable=True)
  user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class Task(Base):
  __tablename__ = "tasks"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  title: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")  # pending | in_progress | completed | cancelled
  priority: Mapped[str] = mapped_column(String, nullable=False, default="medium")  # low | medium | high | urgent
  due_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
  created_by: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
  assigned_to: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True, index=True)
  tags: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
  completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
  # Written only by the due-date monitor.
  due_soon_notified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
  overdue_notified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

  @property
  def notifications_sent(self) -> dict[str, datetime]:
    sent: dict[str, datetime] = {}
    if self.due_soon_notified_at is not None:
      sent["dueSoon"] = self.due_soon_notified_at
    if self.overdue_notified_at is not None:
      sent["overdue"] = self.overdue_notified_at
    return sent


class Notification(Base):
  __tablename__ = "notifications"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  type: Mapped[str] = mapped_column(String, nullable=False)
  priority: Mapped[str] = mapped_column(String, nullable=False, default="normal")  # low | normal | high | urgent
  title: Mapped[str] = mapped_column(String, nullable=False)
  message: Mapped[str] = mapped_column(Text, nullable=False)
  reference_type: Mapped[str | None] = mapped_column(String, nullable=True)
  reference_id: Mapped[str | None] = mapped_column(String, nullable=True)
  related_refs: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
  data: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  read_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
  email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  email_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ChatHistory(Base):
  __tablename__ = "chat_history"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False, default="New Chat")
  messages: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
  last_active: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  actor_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
