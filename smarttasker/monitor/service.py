from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from time import monotonic

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from smarttasker.background import run_periodically
from smarttasker.metrics import runtime_metrics
from smarttasker.models import Task, User
from smarttasker.notifications.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)
DEFAULT_INTERVAL_SECONDS = 15 * 60

_MARKER_COLUMNS = {
  "dueSoon": Task.due_soon_notified_at,
  "overdue": Task.overdue_notified_at,
}


@dataclass(frozen=True)
class _Match:
  # Plain copy of the row; a rollback would expire the ORM instance mid-pass.
  id: str
  title: str
  assigned_to: str | None
  due_date: datetime

  @classmethod
  def of(cls, t: Task) -> _Match:
    return cls(id=t.id, title=t.title, assigned_to=t.assigned_to, due_date=t.due_date)


@dataclass
class MonitorSummary:
  due_soon_notified: int = 0
  overdue_notified: int = 0
  overdue_marked: int = 0
  duration_ms: float = 0.0


async def find_due_soon(db: AsyncSession, now: datetime) -> list[Task]:
  """Open tasks due in (now, now + 24h] with no due-soon marker from the last day."""
  stale = now - ONE_DAY
  res = await db.execute(
    select(Task)
    .where(
      Task.status != "completed",
      Task.due_date.is_not(None),
      Task.due_date > now,
      Task.due_date <= now + ONE_DAY,
      or_(Task.due_soon_notified_at.is_(None), Task.due_soon_notified_at < stale),
    )
    .order_by(Task.due_date.asc())
  )
  return list(res.scalars().all())


async def find_overdue(db: AsyncSession, now: datetime) -> list[Task]:
  stale = now - ONE_DAY
  res = await db.execute(
    select(Task)
    .where(
      Task.status != "completed",
      Task.due_date.is_not(None),
      Task.due_date < now,
      or_(Task.overdue_notified_at.is_(None), Task.overdue_notified_at < stale),
    )
    .order_by(Task.due_date.asc())
  )
  return list(res.scalars().all())


async def stamp_marker(db: AsyncSession, task_id: str, kind: str, now: datetime) -> None:
  col = _MARKER_COLUMNS[kind]
  await db.execute(update(Task).where(Task.id == task_id).values({col.key: now}))


async def _assignee_exists(db: AsyncSession, user_id: str) -> bool:
  res = await db.execute(select(User.id).where(User.id == user_id))
  return res.scalar_one_or_none() is not None


class DueDateMonitor:
  """
  Periodic due-soon / overdue scan.

  Each kind of notification fires at most once per task per rolling day. The
  overdue pass stamps its marker for every assigned match but only notifies
  tasks that are more than a day late, so a task found one hour late is
  silenced until the marker goes stale.
  """

  def __init__(
    self,
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: NotificationDispatcher,
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
  ) -> None:
    self.session_factory = session_factory
    self.dispatcher = dispatcher
    self.interval_seconds = interval_seconds
    self._task: asyncio.Task | None = None

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  def start(self) -> None:
    if self.running:
      logger.info("due-date monitor is already running")
      return
    logger.info("starting due-date monitor, interval %ss", self.interval_seconds)
    self._task = asyncio.create_task(
      run_periodically(self.run_once, interval_seconds=self.interval_seconds, name="due-date-monitor", run_immediately=True)
    )

  async def stop(self) -> None:
    task, self._task = self._task, None
    if task is None or task.done():
      return
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      pass
    logger.info("due-date monitor stopped")

  async def run_once(self, now: datetime | None = None) -> MonitorSummary:
    now = now or datetime.now(timezone.utc)
    started = monotonic()
    summary = MonitorSummary()
    try:
      await self.check_due_soon(now, summary)
      await self.check_overdue(now, summary)
    except Exception:
      logger.exception("due-date monitor pass failed")
    summary.duration_ms = round((monotonic() - started) * 1000.0, 2)
    runtime_metrics.incr("monitor.passes")
    logger.info(
      "due-date monitor pass done in %sms: due_soon=%d overdue=%d overdue_marked=%d",
      summary.duration_ms,
      summary.due_soon_notified,
      summary.overdue_notified,
      summary.overdue_marked,
    )
    return summary

  async def check_due_soon(self, now: datetime, summary: MonitorSummary) -> None:
    async with self.session_factory() as db:
      matches = [_Match.of(t) for t in await find_due_soon(db, now)]
      logger.info("found %d tasks due soon", len(matches))
      for m in matches:
        try:
          if not m.assigned_to or not await _assignee_exists(db, m.assigned_to):
            continue
          await self.dispatcher.notify_task_due(m.assigned_to, m.id, m.title, m.due_date)
          await stamp_marker(db, m.id, "dueSoon", now)
          await db.commit()
          summary.due_soon_notified += 1
        except Exception:
          await db.rollback()
          logger.exception("error sending due-soon notification for task %s", m.id)

  async def check_overdue(self, now: datetime, summary: MonitorSummary) -> None:
    async with self.session_factory() as db:
      matches = [_Match.of(t) for t in await find_overdue(db, now)]
      logger.info("found %d overdue tasks", len(matches))
      for m in matches:
        try:
          if not m.assigned_to or not await _assignee_exists(db, m.assigned_to):
            continue
          if now - m.due_date > ONE_DAY:
            await self.dispatcher.notify_task_overdue(m.assigned_to, m.id, m.title, m.due_date)
            summary.overdue_notified += 1
          await stamp_marker(db, m.id, "overdue", now)
          await db.commit()
          summary.overdue_marked += 1
        except Exception:
          await db.rollback()
          logger.exception("error sending overdue notification for task %s", m.id)
