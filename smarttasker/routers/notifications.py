from __future__ import annotations

import math
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from smarttasker.audit import write_audit
from smarttasker.deps import get_current_user, get_db, get_dispatcher, require_admin
from smarttasker.models import Notification, User
from smarttasker.notifications.dispatcher import NotificationDispatcher, Ref, email_disabled_types
from smarttasker.schemas import (
  NotificationBulkOut,
  NotificationCountOut,
  NotificationListOut,
  NotificationOut,
  NotificationPreferencesIn,
  NotificationPreferencesOut,
  NotificationRefOut,
  NotificationTestIn,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def notification_out(n: Notification) -> NotificationOut:
  return NotificationOut(
    id=n.id,
    userId=n.user_id,
    type=n.type,
    priority=n.priority,
    title=n.title,
    message=n.message,
    reference=NotificationRefOut(refType=n.reference_type, refId=n.reference_id) if n.reference_type and n.reference_id else None,
    relatedRefs=[
      NotificationRefOut(refType=str(r.get("refType")), refId=str(r.get("refId")))
      for r in (n.related_refs or [])
      if r.get("refType") and r.get("refId")
    ],
    data=dict(n.data or {}),
    read=bool(n.read),
    readAt=n.read_at,
    emailSent=bool(n.email_sent),
    emailSentAt=n.email_sent_at,
    createdAt=n.created_at,
  )


async def _unread_count(db: AsyncSession, user_id: str) -> int:
  res = await db.execute(
    select(func.count()).select_from(Notification).where(Notification.user_id == user_id, Notification.read.is_(False))
  )
  return int(res.scalar_one() or 0)


async def _owned(db: AsyncSession, notification_id: str, user_id: str) -> Notification:
  res = await db.execute(select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id))
  n = res.scalar_one_or_none()
  if not n:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
  return n


@router.get("", response_model=NotificationListOut)
async def list_notifications(
  page: int = Query(default=1, ge=1),
  limit: int = Query(default=20, ge=1, le=100),
  read: bool | None = Query(default=None),
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> NotificationListOut:
  conds = [Notification.user_id == user.id]
  if read is not None:
    conds.append(Notification.read.is_(read))

  total = int((await db.execute(select(func.count()).select_from(Notification).where(*conds))).scalar_one() or 0)
  res = await db.execute(
    select(Notification)
    .where(*conds)
    .order_by(Notification.created_at.desc())
    .offset((page - 1) * limit)
    .limit(limit)
  )
  return NotificationListOut(
    items=[notification_out(n) for n in res.scalars().all()],
    unreadCount=await _unread_count(db, user.id),
    page=page,
    limit=limit,
    total=total,
    pages=math.ceil(total / limit) if total else 0,
  )


@router.get("/count", response_model=NotificationCountOut)
async def unread_count(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> NotificationCountOut:
  return NotificationCountOut(unreadCount=await _unread_count(db, user.id))


@router.get("/preferences", response_model=NotificationPreferencesOut)
async def get_notification_preferences(user: User = Depends(get_current_user)) -> NotificationPreferencesOut:
  return NotificationPreferencesOut(emailDisabled=sorted(email_disabled_types(user)))


@router.put("/preferences", response_model=NotificationPreferencesOut)
async def update_notification_preferences(
  payload: NotificationPreferencesIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> NotificationPreferencesOut:
  prefs = dict(user.notification_prefs or {})
  prefs["emailDisabled"] = list(payload.emailDisabled)
  user.notification_prefs = prefs
  await write_audit(db, event_type="notifications.preferences.updated", entity_type="User", entity_id=user.id, actor_id=user.id, payload=prefs)
  await db.commit()
  return NotificationPreferencesOut(emailDisabled=sorted(payload.emailDisabled))


@router.put("/read-all", response_model=NotificationBulkOut)
async def mark_all_read(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> NotificationBulkOut:
  res = await db.execute(
    update(Notification)
    .where(Notification.user_id == user.id, Notification.read.is_(False))
    .values(read=True, read_at=datetime.now(timezone.utc))
  )
  await db.commit()
  return NotificationBulkOut(count=int(res.rowcount or 0))


@router.put("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(notification_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> NotificationOut:
  n = await _owned(db, notification_id, user.id)
  if not n.read:
    n.read = True
    n.read_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(n)
  return notification_out(n)


@router.delete("/{notification_id}")
async def delete_notification(notification_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  n = await _owned(db, notification_id, user.id)
  await db.delete(n)
  await db.commit()
  return {"ok": True}


@router.delete("", response_model=NotificationBulkOut)
async def clear_notifications(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> NotificationBulkOut:
  res = await db.execute(delete(Notification).where(Notification.user_id == user.id))
  count = int(res.rowcount or 0)
  await write_audit(db, event_type="notifications.cleared", entity_type="User", entity_id=user.id, actor_id=user.id, payload={"count": count})
  await db.commit()
  return NotificationBulkOut(count=count)


@router.post("/test", response_model=NotificationOut)
async def send_test_notification(
  payload: NotificationTestIn,
  actor: User = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
  dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> NotificationOut:
  target_id = payload.userId or actor.id
  res = await db.execute(select(User.id).where(User.id == target_id))
  if res.scalar_one_or_none() is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

  n = await dispatcher.create_notification(
    target_id,
    payload.type,
    "Test Notification",
    f"This is a test {payload.type} notification.",
    reference=Ref("User", target_id),
    data={"test": True, "sentBy": actor.id},
    send_email=payload.sendEmail,
  )
  if n is None:
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create notification")
  return notification_out(n)
