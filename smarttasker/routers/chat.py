from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from smarttasker.ai.client import ModelApiError
from smarttasker.audit import write_audit
from smarttasker.chat.service import ChatService, ChatStream, ExtractedTask, TaskExtractionResult
from smarttasker.config import settings
from smarttasker.deps import get_chat_service, get_current_user, get_db
from smarttasker.models import ChatHistory, User
from smarttasker.rate_limit import rate_limit_or_429
from smarttasker.schemas import (
  ChatClearOut,
  ChatMessageOut,
  ChatOut,
  ChatSendIn,
  ChatSendOut,
  ChatSummaryOut,
  ChatTaskConfirmIn,
  ChatTaskConfirmOut,
  ChatTitleOut,
  ExtractedTaskOut,
  TaskExtractIn,
  TaskExtractOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _chat_limit(user: User) -> None:
  rate_limit_or_429(key=f"chat:user:{user.id}", limit=int(settings.chat_rate_limit_per_minute))


def _chat_out(c: ChatHistory) -> ChatOut:
  return ChatOut(
    id=c.id,
    title=c.title,
    lastActive=c.last_active,
    messages=[
      ChatMessageOut(role=m.get("role") or "user", content=str(m.get("content") or ""), timestamp=m.get("timestamp"))
      for m in (c.messages or [])
    ],
  )


def _sse(payload: dict) -> str:
  return f"data: {json.dumps(payload)}\n\n"


async def _stream_events(handle: ChatStream) -> AsyncIterator[str]:
  try:
    async for chunk in handle:
      yield _sse({"content": chunk})
  except ModelApiError as e:
    logger.error("chat stream failed for chat %s: %s", handle.chat_id, e.message)
    yield _sse({"error": {"message": e.message, "statusCode": e.status_code, "errorType": e.error_type}})
    return
  except httpx.HTTPError as e:
    logger.error("chat stream transport error for chat %s: %s", handle.chat_id, e)
    yield _sse({"error": {"message": "Model service unavailable", "statusCode": 502, "errorType": "network_error"}})
    return
  yield _sse({"done": True, "chatId": handle.chat_id})


@router.post("", response_model=ChatSendOut)
async def send_message(
  payload: ChatSendIn,
  user: User = Depends(get_current_user),
  chat: ChatService = Depends(get_chat_service),
):
  _chat_limit(user)
  if payload.stream:
    handle = await chat.send_message_stream(user.id, payload.message, payload.chatId)
    return StreamingResponse(
      _stream_events(handle),
      media_type="text/event-stream",
      headers={"Cache-Control": "no-cache", "X-Chat-Id": handle.chat_id},
    )
  reply = await chat.send_message(user.id, payload.message, payload.chatId)
  return ChatSendOut(chatId=reply.chat_id, response=reply.content)


@router.post("/new", response_model=ChatOut)
async def new_chat(user: User = Depends(get_current_user), chat: ChatService = Depends(get_chat_service)) -> ChatOut:
  return _chat_out(await chat.create_new_chat(user.id))


@router.get("/history", response_model=list[ChatSummaryOut])
async def chat_history(
  limit: int = Query(default=10, ge=1, le=100),
  user: User = Depends(get_current_user),
  chat: ChatService = Depends(get_chat_service),
) -> list[ChatSummaryOut]:
  chats = await chat.get_user_chat_history(user.id, limit=limit)
  return [ChatSummaryOut(id=c.id, title=c.title, lastActive=c.last_active, messageCount=len(c.messages or [])) for c in chats]


@router.delete("/history", response_model=ChatClearOut)
async def clear_chat_history(
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  chat: ChatService = Depends(get_chat_service),
) -> ChatClearOut:
  deleted = await chat.clear_all_chat_history(user.id)
  await write_audit(db, event_type="chat.cleared", entity_type="User", entity_id=user.id, actor_id=user.id, payload={"deleted": deleted})
  await db.commit()
  return ChatClearOut(deleted=deleted)


@router.post("/extract-task", response_model=TaskExtractOut)
async def extract_task(
  payload: TaskExtractIn,
  user: User = Depends(get_current_user),
  chat: ChatService = Depends(get_chat_service),
) -> TaskExtractOut:
  _chat_limit(user)
  result = await chat.extract_task_from_message(payload.message)
  task_id = None
  if payload.createTask and result.success:
    task_id = await chat.create_task_from_extraction(user.id, result)
  return TaskExtractOut(
    success=result.success,
    confidence=result.confidence,
    task=ExtractedTaskOut(**result.task.to_dict()) if result.task else None,
    error=result.error,
    taskId=task_id,
  )


@router.post("/tasks", response_model=ChatTaskConfirmOut)
async def confirm_task(
  payload: ChatTaskConfirmIn,
  user: User = Depends(get_current_user),
  chat: ChatService = Depends(get_chat_service),
) -> ChatTaskConfirmOut:
  result = TaskExtractionResult(
    success=True,
    task=ExtractedTask(
      title=payload.title.strip(),
      description=payload.description,
      due_date=payload.dueDate,
      priority=payload.priority,
      tags=payload.tags,
    ),
    confidence=payload.confidence,
  )
  task_id = await chat.create_task_from_extraction(user.id, result)
  if not task_id:
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create task")
  return ChatTaskConfirmOut(taskId=task_id)


@router.get("/{chat_id}", response_model=ChatOut)
async def get_chat(chat_id: str, user: User = Depends(get_current_user), chat: ChatService = Depends(get_chat_service)) -> ChatOut:
  c = await chat.get_chat_history(chat_id, user.id)
  if not c:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
  return _chat_out(c)


@router.delete("/{chat_id}")
async def delete_chat(chat_id: str, user: User = Depends(get_current_user), chat: ChatService = Depends(get_chat_service)) -> dict:
  if not await chat.delete_chat_history(chat_id, user.id):
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
  return {"ok": True}


@router.post("/{chat_id}/generate-title", response_model=ChatTitleOut)
async def generate_title(chat_id: str, user: User = Depends(get_current_user), chat: ChatService = Depends(get_chat_service)) -> ChatTitleOut:
  if not await chat.get_chat_history(chat_id, user.id):
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
  result = await chat.generate_chat_title(chat_id, user.id)
  return ChatTitleOut(success=result.success, title=result.title)
