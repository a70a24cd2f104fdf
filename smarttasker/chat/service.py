from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
from dateutil import parser as dateparser
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from smarttasker.ai.client import ChatModel, ModelApiError, response_text
from smarttasker.ai.prompts import TASK_EXTRACTION_PROMPT, TITLE_PROMPT, extraction_request
from smarttasker.audit import write_audit
from smarttasker.chat.context import DEFAULT_SYSTEM_PROMPT, build_context
from smarttasker.metrics import runtime_metrics
from smarttasker.models import ChatHistory, Task, new_id

logger = logging.getLogger(__name__)

TASK_PRIORITIES = ("low", "medium", "high", "urgent")
MAX_TITLE_LENGTH = 50

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.S | re.I)
_QUOTES = "\"'`“”‘’"


def _now() -> datetime:
  return datetime.now(timezone.utc)


def _message(role: str, content: str) -> dict[str, str]:
  return {"role": role, "content": content, "timestamp": _now().isoformat()}


@dataclass
class ChatReply:
  chat_id: str
  content: str


@dataclass
class ExtractedTask:
  title: str
  description: str | None = None
  due_date: datetime | None = None
  priority: str | None = None
  tags: list[str] | None = None

  def to_dict(self) -> dict[str, Any]:
    return {
      "title": self.title,
      "description": self.description,
      "dueDate": self.due_date.isoformat() if self.due_date else None,
      "priority": self.priority,
      "tags": self.tags,
    }


@dataclass
class TaskExtractionResult:
  success: bool
  task: ExtractedTask | None = None
  confidence: float = 0.0
  error: str | None = None
  raw_response: Any = None

  def to_dict(self) -> dict[str, Any]:
    out: dict[str, Any] = {"success": self.success, "confidence": self.confidence}
    if self.task is not None:
      out["task"] = self.task.to_dict()
    if self.error:
      out["error"] = self.error
    if self.raw_response is not None:
      out["rawResponse"] = self.raw_response
    return out


@dataclass
class TitleResult:
  success: bool
  title: str | None = None


class ChatStream:
  """
  Async-iterable stream of reply chunks for one chat turn.

  The full reply is handed to `on_complete` only when the model stream ends
  normally with some text. A consumer that stops early, or a stream that
  fails part way, leaves the stored history untouched.
  """

  def __init__(
    self,
    chat_id: str,
    source: AsyncIterator[str],
    on_complete: Callable[[str], Awaitable[None]],
  ) -> None:
    self.chat_id = chat_id
    self.content = ""
    self.completed = False
    self._source = source
    self._on_complete = on_complete

  async def __aiter__(self) -> AsyncIterator[str]:
    parts: list[str] = []
    async for chunk in self._source:
      parts.append(chunk)
      yield chunk
    self.content = "".join(parts)
    if self.content:
      await self._on_complete(self.content)
      self.completed = True

  async def collect(self) -> str:
    async for _ in self:
      pass
    return self.content


def strip_code_fence(text: str) -> str:
  s = (text or "").strip()
  m = _FENCE.match(s)
  return m.group(1) if m else s


def parse_due_date(value: Any) -> datetime | None:
  if not value:
    return None
  try:
    dt = dateparser.parse(str(value))
  except (ValueError, OverflowError):
    return None
  if dt is None:
    return None
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=timezone.utc)
  return dt


def _confidence(value: Any, default: float) -> float:
  try:
    c = float(value)
  except (TypeError, ValueError):
    return default
  if not c:
    return default
  return max(0.0, min(1.0, c))


def clean_title(raw: str) -> str:
  title = (raw or "").strip().strip(_QUOTES).strip()
  if len(title) > MAX_TITLE_LENGTH:
    title = title[: MAX_TITLE_LENGTH - 3] + "..."
  return title


class ChatService:
  def __init__(
    self,
    model: ChatModel,
    session_factory: async_sessionmaker[AsyncSession],
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
  ) -> None:
    self.model = model
    self.session_factory = session_factory
    self.system_prompt = system_prompt

  async def _resolve_chat(self, db: AsyncSession, user_id: str, chat_id: str | None) -> tuple[ChatHistory, bool]:
    # Unknown or foreign chat ids start a fresh chat rather than failing.
    if chat_id:
      res = await db.execute(select(ChatHistory).where(ChatHistory.id == chat_id))
      existing = res.scalar_one_or_none()
      if existing and existing.user_id == user_id:
        return existing, False
    chat = ChatHistory(id=new_id(), user_id=user_id, title="New Chat", messages=[], last_active=_now())
    return chat, True

  async def _persist_turn(self, user_id: str, chat_id: str, is_new: bool, messages: list[dict]) -> None:
    async with self.session_factory() as db:
      row = None
      if not is_new:
        row = (await db.execute(select(ChatHistory).where(ChatHistory.id == chat_id))).scalar_one_or_none()
      if row is None:
        row = ChatHistory(id=chat_id, user_id=user_id, title="New Chat")
        db.add(row)
      row.messages = messages
      row.last_active = _now()
      await db.commit()
    runtime_metrics.incr("chat.turns")

  async def send_message(self, user_id: str, message: str, chat_id: str | None = None) -> ChatReply:
    # No session is held across the model call.
    async with self.session_factory() as db:
      chat, is_new = await self._resolve_chat(db, user_id, chat_id)
      target_id = chat.id
      messages = list(chat.messages or []) + [_message("user", message)]

    data = await self.model.chat(build_context(messages, self.system_prompt))
    content = response_text(data)

    await self._persist_turn(user_id, target_id, is_new, messages + [_message("assistant", content)])
    return ChatReply(chat_id=target_id, content=content)

  async def send_message_stream(self, user_id: str, message: str, chat_id: str | None = None) -> ChatStream:
    async with self.session_factory() as db:
      chat, is_new = await self._resolve_chat(db, user_id, chat_id)
      target_id = chat.id
      messages = list(chat.messages or []) + [_message("user", message)]

    source = self.model.chat_stream(build_context(messages, self.system_prompt))

    async def persist(text: str) -> None:
      await self._persist_turn(user_id, target_id, is_new, messages + [_message("assistant", text)])

    return ChatStream(target_id, source, persist)

  async def get_user_chat_history(self, user_id: str, limit: int = 10) -> list[ChatHistory]:
    async with self.session_factory() as db:
      res = await db.execute(
        select(ChatHistory)
        .where(ChatHistory.user_id == user_id)
        .order_by(ChatHistory.last_active.desc())
        .limit(int(limit))
      )
      return list(res.scalars().all())

  async def get_chat_history(self, chat_id: str, user_id: str) -> ChatHistory | None:
    async with self.session_factory() as db:
      res = await db.execute(select(ChatHistory).where(ChatHistory.id == chat_id))
      chat = res.scalar_one_or_none()
      if not chat or chat.user_id != user_id:
        return None
      return chat

  async def create_new_chat(self, user_id: str) -> ChatHistory:
    async with self.session_factory() as db:
      chat = ChatHistory(user_id=user_id, title="New Chat", messages=[], last_active=_now())
      db.add(chat)
      await db.commit()
      return chat

  async def delete_chat_history(self, chat_id: str, user_id: str) -> bool:
    async with self.session_factory() as db:
      res = await db.execute(select(ChatHistory).where(ChatHistory.id == chat_id))
      chat = res.scalar_one_or_none()
      if not chat or chat.user_id != user_id:
        return False
      await db.delete(chat)
      await db.commit()
      return True

  async def clear_all_chat_history(self, user_id: str) -> int:
    async with self.session_factory() as db:
      res = await db.execute(delete(ChatHistory).where(ChatHistory.user_id == user_id))
      await db.commit()
      return int(res.rowcount or 0)

  async def extract_task_from_message(self, message: str) -> TaskExtractionResult:
    """
    Ask the model for a structured task. Never raises: unparseable output, a
    missing title or a failed model call all come back as success=False.
    """
    try:
      data = await self.model.chat(
        [
          {"role": "system", "content": TASK_EXTRACTION_PROMPT},
          {"role": "user", "content": extraction_request(message)},
        ],
        temperature=0.2,
        max_tokens=500,
      )
    except (ModelApiError, httpx.HTTPError) as e:
      logger.exception("task extraction request failed")
      return TaskExtractionResult(success=False, confidence=0.0, error=str(e) or "Unknown error during task extraction")

    content = strip_code_fence(response_text(data))
    try:
      extracted = json.loads(content)
    except ValueError:
      return TaskExtractionResult(
        success=False, confidence=0.0, error="Failed to parse task extraction response", raw_response=content
      )
    if not isinstance(extracted, dict):
      return TaskExtractionResult(
        success=False, confidence=0.0, error="Failed to parse task extraction response", raw_response=extracted
      )

    title = str(extracted.get("title") or "").strip()
    if not title:
      return TaskExtractionResult(
        success=False,
        confidence=_confidence(extracted.get("confidence"), 0.0),
        error="Failed to extract required task title",
        raw_response=extracted,
      )

    priority = str(extracted.get("priority") or "").strip().lower()
    tags = extracted.get("tags")
    description = extracted.get("description")
    return TaskExtractionResult(
      success=True,
      task=ExtractedTask(
        title=title,
        description=str(description) if description is not None else None,
        due_date=parse_due_date(extracted.get("dueDate")),
        priority=priority if priority in TASK_PRIORITIES else None,
        tags=[str(t) for t in tags] if isinstance(tags, list) else None,
      ),
      confidence=_confidence(extracted.get("confidence"), 0.5),
      raw_response=extracted,
    )

  async def create_task_from_extraction(self, user_id: str, result: TaskExtractionResult) -> str | None:
    if not result.success or result.task is None:
      return None
    t = result.task
    try:
      async with self.session_factory() as db:
        task = Task(
          title=t.title,
          description=t.description or "",
          priority=t.priority or "medium",
          status="pending",
          due_date=t.due_date,
          created_by=user_id,
          assigned_to=user_id,
          tags=list(t.tags or []),
        )
        db.add(task)
        await db.flush()
        await write_audit(
          db,
          event_type="task.created",
          entity_type="Task",
          entity_id=task.id,
          actor_id=user_id,
          payload={"title": task.title, "source": "chat", "confidence": result.confidence},
        )
        await db.commit()
        return task.id
    except Exception:
      logger.exception("error creating task from extraction for user %s", user_id)
      return None

  async def generate_chat_title(self, chat_id: str, user_id: str | None = None) -> TitleResult:
    async with self.session_factory() as db:
      res = await db.execute(select(ChatHistory).where(ChatHistory.id == chat_id))
      chat = res.scalar_one_or_none()
      if not chat or (user_id is not None and chat.user_id != user_id):
        return TitleResult(success=False)
      messages = list(chat.messages or [])
    if len(messages) < 2:
      return TitleResult(success=False)

    sample = "\n".join(f"{m.get('role')}: {str(m.get('content') or '')[:100]}" for m in messages[:3])
    try:
      data = await self.model.chat([{"role": "system", "content": TITLE_PROMPT}, {"role": "user", "content": sample}])
    except (ModelApiError, httpx.HTTPError):
      logger.exception("error generating title for chat %s", chat_id)
      return TitleResult(success=False)

    title = clean_title(response_text(data))
    if not title:
      return TitleResult(success=False)
    async with self.session_factory() as db:
      chat = (await db.execute(select(ChatHistory).where(ChatHistory.id == chat_id))).scalar_one_or_none()
      if chat is None:
        return TitleResult(success=False)
      chat.title = title
      await db.commit()
    return TitleResult(success=True, title=title)
