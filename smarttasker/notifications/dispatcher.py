from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, NamedTuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from smarttasker.background import BackgroundTaskRunner
from smarttasker.email.service import EmailDeliveryService, EmailOptions
from smarttasker.metrics import runtime_metrics
from smarttasker.models import Notification, User
from smarttasker.notifications.content import email_content_for

logger = logging.getLogger(__name__)


class Ref(NamedTuple):
  type: str
  id: str


def _iso(value: datetime | str | None) -> str | None:
  if value is None:
    return None
  if isinstance(value, datetime):
    return value.isoformat()
  return str(value)


def email_disabled_types(user: User) -> set[str]:
  prefs = user.notification_prefs or {}
  return {str(t) for t in (prefs.get("emailDisabled") or [])}


class NotificationDispatcher:
  """
  Persists notifications and hands their emails to the background runner.

  None of the public methods raise: failures are logged and reported as a
  `None` result so a broken mail path never breaks the caller.
  """

  def __init__(
    self,
    session_factory: async_sessionmaker[AsyncSession],
    mailer: EmailDeliveryService,
    runner: BackgroundTaskRunner,
    base_url: str = "",
  ) -> None:
    self.session_factory = session_factory
    self.mailer = mailer
    self.runner = runner
    self.base_url = base_url

  async def create_notification(
    self,
    user_id: str,
    type: str,
    title: str,
    message: str,
    priority: str = "normal",
    reference: Ref | None = None,
    related_refs: list[Ref] | None = None,
    data: dict[str, Any] | None = None,
    send_email: bool = False,
  ) -> Notification | None:
    try:
      async with self.session_factory() as db:
        n = Notification(
          user_id=user_id,
          type=type,
          priority=priority,
          title=title,
          message=message,
          reference_type=reference.type if reference else None,
          reference_id=reference.id if reference else None,
          related_refs=[{"refType": r.type, "refId": r.id} for r in (related_refs or [])],
          data=dict(data or {}),
          read=False,
          email_sent=False,
        )
        db.add(n)
        await db.commit()
    except Exception:
      logger.exception("error creating %s notification for user %s", type, user_id)
      return None

    runtime_metrics.incr("notifications.created")
    if send_email:
      self.runner.submit(self.send_notification_email(n.id), name=f"notification-email:{n.id}")
    return n

  async def send_notification_email(self, notification_id: str) -> bool:
    """Email job for one notification. Returns True when the email was handed off."""
    try:
      async with self.session_factory() as db:
        n = (await db.execute(select(Notification).where(Notification.id == notification_id))).scalar_one_or_none()
        if not n:
          logger.info("notification %s vanished before its email was sent", notification_id)
          return False
        if n.email_sent:
          logger.info("email already sent for notification %s", n.id)
          return False

        user = (await db.execute(select(User).where(User.id == n.user_id))).scalar_one_or_none()
        if not user or not user.active or not user.email:
          logger.info("no deliverable recipient for notification %s", n.id)
          return False
        if n.type in email_disabled_types(user):
          logger.info("user %s opted out of %s emails", user.id, n.type)
          return False

        content = email_content_for(n.type, n.title, n.message, n.reference_id, n.data, self.base_url)
        ok = await self.mailer.send_email(
          EmailOptions(to=user.email, subject=content.subject, html=content.html, text=n.message)
        )
        if not ok:
          return False

        n.email_sent = True
        n.email_sent_at = datetime.now(timezone.utc)
        await db.commit()
        return True
    except Exception:
      logger.exception("error sending email for notification %s", notification_id)
      return False

  async def notify_task_assigned(
    self,
    user_id: str,
    task_id: str,
    task_title: str,
    assigned_by_user_id: str,
    *,
    send_email: bool = True,
  ) -> Notification | None:
    return await self.create_notification(
      user_id,
      "TaskAssigned",
      "Task Assigned",
      f"You have been assigned a new task: {task_title}",
      reference=Ref("Task", task_id),
      related_refs=[Ref("User", assigned_by_user_id)],
      data={"taskTitle": task_title},
      send_email=send_email,
    )

  async def notify_task_due(
    self,
    user_id: str,
    task_id: str,
    task_title: str,
    due_date: datetime | str | None,
    *,
    send_email: bool = True,
  ) -> Notification | None:
    return await self.create_notification(
      user_id,
      "TaskDue",
      "Task Due Soon",
      f'Task "{task_title}" is due soon',
      priority="high",
      reference=Ref("Task", task_id),
      data={"taskTitle": task_title, "dueDate": _iso(due_date)},
      send_email=send_email,
    )

  async def notify_task_overdue(
    self,
    user_id: str,
    task_id: str,
    task_title: str,
    due_date: datetime | str | None,
    *,
    send_email: bool = True,
  ) -> Notification | None:
    return await self.create_notification(
      user_id,
      "TaskOverdue",
      "Task Overdue",
      f'Task "{task_title}" is now overdue',
      priority="urgent",
      reference=Ref("Task", task_id),
      data={"taskTitle": task_title, "dueDate": _iso(due_date)},
      send_email=send_email,
    )

  async def notify_mentioned_in_comment(
    self,
    user_id: str,
    task_id: str,
    comment_id: str,
    mentioned_by_user_id: str,
    task_title: str,
    comment_text: str,
    *,
    send_email: bool = True,
  ) -> Notification | None:
    return await self.create_notification(
      user_id,
      "MentionedInComment",
      "Mentioned in Comment",
      f'You were mentioned in a comment on task "{task_title}"',
      reference=Ref("Task", task_id),
      related_refs=[Ref("User", mentioned_by_user_id), Ref("Comment", comment_id)],
      data={"taskTitle": task_title, "commentText": comment_text},
      send_email=send_email,
    )

  async def notify_team_changed(
    self,
    user_id: str,
    team_id: str,
    team_name: str,
    change_type: str,
    *,
    send_email: bool = True,
  ) -> Notification | None:
    if change_type == "added":
      type, title, message = "TeamMemberAdded", "Added to Team", f'You have been added to team "{team_name}"'
    elif change_type == "removed":
      type, title, message = "TeamMemberRemoved", "Removed from Team", f'You have been removed from team "{team_name}"'
    elif change_type == "leader_changed":
      type, title, message = "TeamLeaderChanged", "Team Leadership Changed", f'You are now the leader of team "{team_name}"'
    else:
      logger.error("unknown team change type %r for user %s", change_type, user_id)
      return None
    return await self.create_notification(
      user_id,
      type,
      title,
      message,
      reference=Ref("Team", team_id),
      data={"teamName": team_name, "changeType": change_type},
      send_email=send_email,
    )

  async def notify_recurring_task_generated(
    self,
    user_id: str,
    recurring_task_id: str,
    task_id: str,
    recurring_task_title: str,
    task_title: str,
    *,
    send_email: bool = False,
  ) -> Notification | None:
    return await self.create_notification(
      user_id,
      "RecurringTaskGenerated",
      "Recurring Task Generated",
      f'A new task has been generated from your recurring task "{recurring_task_title}"',
      reference=Ref("Task", task_id),
      related_refs=[Ref("RecurringTask", recurring_task_id)],
      data={"recurringTaskTitle": recurring_task_title, "taskTitle": task_title},
      send_email=send_email,
    )
