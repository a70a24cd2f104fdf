from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic import field_validator

from smarttasker.notifications.content import NOTIFICATION_TYPES

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

Role = Literal["admin", "team_leader", "team_member"]
TaskStatus = Literal["pending", "in_progress", "completed", "cancelled"]
TaskPriority = Literal["low", "medium", "high", "urgent"]


def _parse_dt_utc(value: object) -> object:
  if value is None:
    return None
  if isinstance(value, datetime):
    dt = value
  elif isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    if _DATE_ONLY_RE.fullmatch(s):
      dt = datetime.fromisoformat(s)
    else:
      dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
  else:
    return value

  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


class UserOut(BaseModel):
  id: str
  email: str
  name: str
  role: Role
  active: bool = True


class UserCreateIn(BaseModel):
  email: str = Field(min_length=3, max_length=320)
  name: str = Field(min_length=1, max_length=120)
  role: Role = "team_member"
  password: str | None = Field(default=None, min_length=8, max_length=200)


class UserCreateOut(BaseModel):
  user: UserOut
  tempPassword: str | None = None


class LoginIn(BaseModel):
  email: str
  password: str


class TaskOut(BaseModel):
  id: str
  title: str
  description: str
  status: TaskStatus
  priority: TaskPriority
  dueDate: datetime | None
  createdBy: str
  assignedTo: str | None
  tags: list[str]
  completedAt: datetime | None
  notificationsSent: dict[str, datetime]
  createdAt: datetime
  updatedAt: datetime


class TaskCreateIn(BaseModel):
  title: str = Field(min_length=1, max_length=500)
  description: str = ""
  status: TaskStatus = "pending"
  priority: TaskPriority = "medium"
  dueDate: datetime | None = None
  assignedTo: str | None = None
  tags: list[str] = []

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_date_to_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class TaskUpdateIn(BaseModel):
  title: str | None = Field(default=None, min_length=1, max_length=500)
  description: str | None = None
  status: TaskStatus | None = None
  priority: TaskPriority | None = None
  dueDate: datetime | None = None
  assignedTo: str | None = None
  tags: list[str] | None = None

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_date_to_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class NotificationRefOut(BaseModel):
  refType: str
  refId: str


class NotificationOut(BaseModel):
  id: str
  userId: str
  type: str
  priority: str
  title: str
  message: str
  reference: NotificationRefOut | None = None
  relatedRefs: list[NotificationRefOut] = []
  data: dict[str, Any] = {}
  read: bool
  readAt: datetime | None = None
  emailSent: bool
  emailSentAt: datetime | None = None
  createdAt: datetime


class NotificationListOut(BaseModel):
  items: list[NotificationOut]
  unreadCount: int
  page: int
  limit: int
  total: int
  pages: int


class NotificationCountOut(BaseModel):
  unreadCount: int


class NotificationBulkOut(BaseModel):
  ok: bool = True
  count: int


class NotificationPreferencesOut(BaseModel):
  emailDisabled: list[str]


class NotificationPreferencesIn(BaseModel):
  emailDisabled: list[str] = []

  @field_validator("emailDisabled")
  @classmethod
  def _known_types(cls, v: list[str]) -> list[str]:
    unknown = [t for t in v if t not in NOTIFICATION_TYPES]
    if unknown:
      raise ValueError(f"Unknown notification type(s): {', '.join(unknown)}")
    return list(dict.fromkeys(v))


class NotificationTestIn(BaseModel):
  type: str = "TaskAssigned"
  userId: str | None = None
  sendEmail: bool = False

  @field_validator("type")
  @classmethod
  def _known_type(cls, v: str) -> str:
    if v not in NOTIFICATION_TYPES:
      raise ValueError(f"Unknown notification type: {v}")
    return v


class ChatMessageOut(BaseModel):
  role: Literal["system", "user", "assistant"]
  content: str
  timestamp: str | None = None


class ChatSummaryOut(BaseModel):
  id: str
  title: str
  lastActive: datetime
  messageCount: int


class ChatOut(BaseModel):
  id: str
  title: str
  lastActive: datetime
  messages: list[ChatMessageOut]


class ChatSendIn(BaseModel):
  message: str = Field(min_length=1, max_length=8000)
  chatId: str | None = None
  stream: bool = False


class ChatSendOut(BaseModel):
  chatId: str
  response: str


class ChatTitleOut(BaseModel):
  success: bool
  title: str | None = None


class ChatClearOut(BaseModel):
  ok: bool = True
  deleted: int


class TaskExtractIn(BaseModel):
  message: str = Field(min_length=1, max_length=8000)
  createTask: bool = False


class ExtractedTaskOut(BaseModel):
  title: str
  description: str | None = None
  dueDate: datetime | None = None
  priority: TaskPriority | None = None
  tags: list[str] | None = None


class TaskExtractOut(BaseModel):
  success: bool
  confidence: float
  task: ExtractedTaskOut | None = None
  error: str | None = None
  taskId: str | None = None


class ChatTaskConfirmIn(BaseModel):
  title: str = Field(min_length=1, max_length=500)
  description: str | None = None
  dueDate: datetime | None = None
  priority: TaskPriority | None = None
  tags: list[str] | None = None
  confidence: float = 1.0

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_date_to_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class ChatTaskConfirmOut(BaseModel):
  taskId: str
