from __future__ import annotations

import smtplib
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from smarttasker.background import BackgroundTaskRunner
from smarttasker.email.service import EmailDeliveryService, EmailQueue
from smarttasker.models import Notification
from smarttasker.notifications.content import email_content_for
from smarttasker.notifications.dispatcher import NotificationDispatcher, Ref
from tests.conftest import FakeTransport, make_user, production_settings


def _dispatcher(session_factory, transport: FakeTransport | None = None, runner: BackgroundTaskRunner | None = None):
  mailer = EmailDeliveryService(transport or FakeTransport(), EmailQueue(), production_settings())
  return NotificationDispatcher(session_factory, mailer, runner or BackgroundTaskRunner(), base_url="http://app.test/")


async def _load(session_factory, notification_id: str) -> Notification:
  async with session_factory() as s:
    return (await s.execute(select(Notification).where(Notification.id == notification_id))).scalar_one()


@pytest.mark.anyio
async def test_create_notification_persists_unread_record(db):
  uid = await make_user("alice@example.com")
  d = _dispatcher(db)

  n = await d.create_notification(
    uid,
    "TaskAssigned",
    "Task Assigned",
    "You have been assigned a new task: Write report",
    reference=Ref("Task", "task-1"),
    related_refs=[Ref("User", "boss-1")],
    data={"taskTitle": "Write report"},
  )
  assert n is not None

  stored = await _load(db, n.id)
  assert stored.read is False
  assert stored.email_sent is False
  assert stored.priority == "normal"
  assert stored.reference_type == "Task"
  assert stored.reference_id == "task-1"
  assert stored.related_refs == [{"refType": "User", "refId": "boss-1"}]
  assert stored.data == {"taskTitle": "Write report"}


@pytest.mark.anyio
async def test_task_assigned_sends_email_and_marks_it(db):
  uid = await make_user("bob@example.com")
  transport = FakeTransport()
  runner = BackgroundTaskRunner()
  d = _dispatcher(db, transport, runner)

  n = await d.notify_task_assigned(uid, "task-7", "Ship it", "lead-1")
  await runner.drain()

  assert len(transport.sent) == 1
  mail = transport.sent[0]
  assert mail.to == "bob@example.com"
  assert mail.subject == "New task assigned: Ship it"
  assert 'href="http://app.test/tasks/task-7"' in mail.html

  stored = await _load(db, n.id)
  assert stored.email_sent is True
  assert stored.email_sent_at is not None


@pytest.mark.anyio
async def test_unreachable_mail_server_never_breaks_the_caller(db):
  uid = await make_user("carol@example.com")
  transport = FakeTransport(always_fail=ConnectionRefusedError("smtp down"))
  runner = BackgroundTaskRunner()
  d = _dispatcher(db, transport, runner)

  n = await d.notify_task_due(uid, "task-1", "Report", datetime(2026, 1, 2, tzinfo=timezone.utc))
  await runner.drain()

  assert n is not None
  assert n.priority == "high"
  assert n.message == 'Task "Report" is due soon'
  assert len(d.mailer.queue) == 1
  # Queued for retry counts as handed off.
  assert (await _load(db, n.id)).email_sent is True


@pytest.mark.anyio
async def test_permanent_mail_failure_leaves_email_unsent(db):
  uid = await make_user("dave@example.com")
  transport = FakeTransport([smtplib.SMTPResponseException(550, b"no such user")])
  runner = BackgroundTaskRunner()
  d = _dispatcher(db, transport, runner)

  n = await d.notify_task_overdue(uid, "task-1", "Report", None)
  await runner.drain()

  assert n.priority == "urgent"
  assert (await _load(db, n.id)).email_sent is False
  assert len(d.mailer.queue) == 0


@pytest.mark.anyio
async def test_broken_store_returns_none(db):
  def broken_factory():
    raise RuntimeError("database unavailable")

  d = _dispatcher(broken_factory)
  assert await d.notify_task_assigned("user-1", "task-1", "Anything", "user-2") is None


@pytest.mark.anyio
async def test_opted_out_type_skips_email(db):
  uid = await make_user("erin@example.com", email_disabled=["TaskAssigned"])
  transport = FakeTransport()
  d = _dispatcher(db, transport)

  n = await d.create_notification(uid, "TaskAssigned", "Task Assigned", "msg")
  assert await d.send_notification_email(n.id) is False
  assert transport.calls == 0

  other = await d.create_notification(uid, "TaskDue", "Task Due Soon", "msg")
  assert await d.send_notification_email(other.id) is True
  assert transport.calls == 1


@pytest.mark.anyio
async def test_email_is_sent_at_most_once(db):
  uid = await make_user("frank@example.com")
  transport = FakeTransport()
  d = _dispatcher(db, transport)

  n = await d.create_notification(uid, "TaskDue", "Task Due Soon", "msg")
  assert await d.send_notification_email(n.id) is True
  assert await d.send_notification_email(n.id) is False
  assert transport.calls == 1


@pytest.mark.anyio
async def test_inactive_or_missing_recipient_skips_email(db):
  uid = await make_user("gone@example.com", active=False)
  transport = FakeTransport()
  d = _dispatcher(db, transport)

  n = await d.create_notification(uid, "TaskDue", "Task Due Soon", "msg")
  assert await d.send_notification_email(n.id) is False
  orphan = await d.create_notification("no-such-user", "TaskDue", "Task Due Soon", "msg")
  assert await d.send_notification_email(orphan.id) is False
  assert await d.send_notification_email("no-such-notification") is False
  assert transport.calls == 0


@pytest.mark.anyio
async def test_team_change_mapping(db):
  uid = await make_user("gina@example.com")
  d = _dispatcher(db)

  added = await d.notify_team_changed(uid, "team-1", "Platform", "added", send_email=False)
  removed = await d.notify_team_changed(uid, "team-1", "Platform", "removed", send_email=False)
  leader = await d.notify_team_changed(uid, "team-1", "Platform", "leader_changed", send_email=False)

  assert (added.type, added.title) == ("TeamMemberAdded", "Added to Team")
  assert removed.type == "TeamMemberRemoved"
  assert leader.message == 'You are now the leader of team "Platform"'
  assert added.reference_type == "Team"
  assert await d.notify_team_changed(uid, "team-1", "Platform", "renamed") is None


@pytest.mark.anyio
async def test_recurring_task_notification_defaults_to_no_email(db):
  uid = await make_user("hank@example.com")
  transport = FakeTransport()
  runner = BackgroundTaskRunner()
  d = _dispatcher(db, transport, runner)

  n = await d.notify_recurring_task_generated(uid, "rt-1", "task-9", "Weekly sync", "Weekly sync #3")
  await runner.drain()

  assert n.type == "RecurringTaskGenerated"
  assert n.related_refs == [{"refType": "RecurringTask", "refId": "rt-1"}]
  assert transport.calls == 0


@pytest.mark.anyio
async def test_mention_carries_comment_ref(db):
  uid = await make_user("ivy@example.com")
  d = _dispatcher(db)

  n = await d.notify_mentioned_in_comment(uid, "task-1", "comment-1", "user-2", "Roadmap", "@ivy thoughts?", send_email=False)
  assert n.related_refs == [
    {"refType": "User", "refId": "user-2"},
    {"refType": "Comment", "refId": "comment-1"},
  ]
  assert n.data["commentText"] == "@ivy thoughts?"


@pytest.mark.anyio
async def test_runner_reports_failed_jobs():
  seen: list[tuple[str, BaseException]] = []
  runner = BackgroundTaskRunner(on_error=lambda name, exc: seen.append((name, exc)))

  async def boom():
    raise ValueError("nope")

  runner.submit(boom(), name="boom-job")
  await runner.drain()

  assert runner.pending == 0
  assert [(name, str(exc)) for name, exc in seen] == [("boom-job", "nope")]


def test_email_content_links_and_escaping():
  c = email_content_for(
    "TaskDue",
    "Task Due Soon",
    'Task "<b>x</b>" is due soon',
    reference_id="t-1",
    data={"taskTitle": "<b>x</b>", "dueDate": "2026-01-02T00:00:00+00:00"},
    base_url="https://app.example.com/",
  )
  assert c.subject == "Task due soon: <b>x</b>"
  assert 'href="https://app.example.com/tasks/t-1"' in c.html
  assert "&lt;b&gt;x&lt;/b&gt;" in c.html
  assert "<b>x</b>" not in c.html
  assert "2026-01-02T00:00:00+00:00" in c.html


def test_email_content_team_link_and_generic_fallback():
  team = email_content_for("TeamMemberAdded", "Added to Team", "hello", reference_id="team-9", data={"teamName": "Ops"})
  assert team.subject == "Added to team Ops"
  assert 'href="/teams/team-9"' in team.html

  generic = email_content_for("SomethingNew", "Heads up", "plain message")
  assert generic.subject == "Heads up"
  assert "<h2>Heads up</h2><p>plain message</p>" in generic.html
