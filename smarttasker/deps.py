from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Cookie, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from smarttasker import services
from smarttasker.chat.service import ChatService
from smarttasker.db import SessionLocal
from smarttasker.models import Session as DbSession, User
from smarttasker.notifications.dispatcher import NotificationDispatcher
from smarttasker.security import SESSION_COOKIE_NAME


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


async def get_current_user(
  db: AsyncSession = Depends(get_db),
  session_id: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> User:
  if not session_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

  res = await db.execute(select(DbSession).where(DbSession.id == session_id))
  s = res.scalar_one_or_none()
  if not s:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")
  if s.expires_at < datetime.now(timezone.utc):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired")

  ures = await db.execute(select(User).where(User.id == s.user_id))
  u = ures.scalar_one_or_none()
  if not u:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
  if not u.active:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User disabled")
  return u


async def require_admin(user: User = Depends(get_current_user)) -> User:
  if user.role != "admin":
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
  return user


def get_dispatcher() -> NotificationDispatcher:
  return services.dispatcher


def get_chat_service() -> ChatService:
  return services.chat_service()


def client_ip(request: Request) -> str | None:
  return request.client.host if request.client else None
