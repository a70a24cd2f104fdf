from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from smarttasker import services
from smarttasker.config import settings
from smarttasker.deps import get_db, require_admin
from smarttasker.metrics import runtime_metrics
from smarttasker.models import Notification, Task, User

router = APIRouter(tags=["system"])


@router.get("/health")
async def health() -> dict:
  return {"ok": True}


@router.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


@router.get("/system/metrics")
async def system_metrics(_: User = Depends(require_admin), db: AsyncSession = Depends(get_db)) -> dict:
  db_ok = True
  try:
    await db.execute(text("SELECT 1"))
  except (SQLAlchemyError, OSError):
    db_ok = False

  open_tasks = 0
  unread = 0
  if db_ok:
    open_tasks = int((await db.execute(select(func.count()).select_from(Task).where(Task.status != "completed"))).scalar_one() or 0)
    unread = int((await db.execute(select(func.count()).select_from(Notification).where(Notification.read.is_(False)))).scalar_one() or 0)

  return {
    "runtime": runtime_metrics.snapshot(),
    "database": {"ok": db_ok, "openTasks": open_tasks, "unreadNotifications": unread},
    "email": {"queued": len(services.mailer.queue), "disabled": settings.email_disabled},
    "dueMonitor": {"running": services.monitor.running, "intervalSeconds": services.monitor.interval_seconds},
    "background": {"pending": services.runner.pending},
  }
