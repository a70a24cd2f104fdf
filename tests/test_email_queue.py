from __future__ import annotations

import asyncio
import smtplib
from datetime import timedelta

import pytest

from smarttasker.email.service import (
  EmailAttachment,
  EmailDeliveryService,
  EmailOptions,
  EmailQueue,
  SmtpTransport,
  is_transient_error,
)
from tests.conftest import FakeTransport, production_settings


def _options(**kw) -> EmailOptions:
  values = {"to": "user@example.com", "subject": "Hello", "html": "<p>Hi</p>"}
  values.update(kw)
  return EmailOptions(**values)


def _service(transport: FakeTransport, **settings_overrides) -> EmailDeliveryService:
  return EmailDeliveryService(transport, EmailQueue(), production_settings(**settings_overrides))


@pytest.mark.anyio
async def test_disabled_email_is_logged_not_sent():
  t = FakeTransport()
  svc = _service(t, email_disabled=True)
  assert await svc.send_email(_options()) is True
  assert t.calls == 0
  assert len(svc.queue) == 0


@pytest.mark.anyio
async def test_non_production_without_override_is_logged_not_sent():
  t = FakeTransport()
  svc = _service(t, app_env="development")
  assert await svc.send_email(_options()) is True
  assert t.calls == 0

  forced = _service(t, app_env="development", email_send_in_development=True)
  assert await forced.send_email(_options()) is True
  assert t.calls == 1


@pytest.mark.anyio
async def test_successful_send_uses_default_from_address():
  seen = {}

  class Recording(FakeTransport):
    async def send(self, *, from_addr: str, options: EmailOptions) -> None:
      seen["from"] = from_addr
      await super().send(from_addr=from_addr, options=options)

  t = Recording()
  svc = _service(t, email_from="robot@smarttasker.test")
  assert await svc.send_email(_options()) is True
  assert seen["from"] == "robot@smarttasker.test"
  assert len(t.sent) == 1


@pytest.mark.anyio
async def test_transient_failure_is_queued_and_reported_as_success():
  t = FakeTransport([smtplib.SMTPResponseException(421, b"try again later")])
  svc = _service(t)
  assert await svc.send_email(_options(to=["a@example.com", "b@example.com"])) is True

  queued = svc.queue.snapshot()
  assert len(queued) == 1
  assert queued[0].attempts == 0
  assert queued[0].to == "a@example.com,b@example.com"
  assert queued[0].last_attempt == queued[0].created_at


@pytest.mark.anyio
async def test_connection_reset_is_transient():
  t = FakeTransport([ConnectionResetError("reset by peer")])
  svc = _service(t)
  assert await svc.send_email(_options()) is True
  assert len(svc.queue) == 1


@pytest.mark.anyio
async def test_permanent_failure_returns_false_and_is_not_queued():
  t = FakeTransport([smtplib.SMTPResponseException(550, b"mailbox unavailable")])
  svc = _service(t)
  assert await svc.send_email(_options()) is False
  assert len(svc.queue) == 0


def test_transient_error_classification():
  assert is_transient_error(ConnectionRefusedError())
  assert is_transient_error(TimeoutError())
  assert is_transient_error(smtplib.SMTPServerDisconnected("gone"))
  assert is_transient_error(smtplib.SMTPResponseException(450, b"busy"))
  assert is_transient_error(smtplib.SMTPAuthenticationError(535, b"bad auth"))
  assert not is_transient_error(smtplib.SMTPResponseException(554, b"rejected"))
  assert not is_transient_error(smtplib.SMTPNotSupportedError("no"))
  assert not is_transient_error(ValueError("bad address"))


@pytest.mark.anyio
async def test_retry_waits_five_minutes_since_last_attempt():
  t = FakeTransport([ConnectionResetError()])
  svc = _service(t)
  await svc.send_email(_options())
  t0 = svc.queue.snapshot()[0].last_attempt

  await svc.process_queue(now=t0 + timedelta(seconds=299))
  assert t.calls == 1
  assert len(svc.queue) == 1

  await svc.process_queue(now=t0 + timedelta(minutes=5))
  assert t.calls == 2
  assert len(svc.queue) == 0
  assert len(t.sent) == 1


@pytest.mark.anyio
async def test_retry_resends_the_full_original_message():
  senders = []

  class Recording(FakeTransport):
    async def send(self, *, from_addr: str, options: EmailOptions) -> None:
      senders.append(from_addr)
      await super().send(from_addr=from_addr, options=options)

  t = Recording([smtplib.SMTPServerDisconnected("gone")])
  svc = _service(t, email_from="robot@smarttasker.test")
  report = EmailAttachment(filename="report.csv", content=b"a,b\n", mime_type="text/csv")
  await svc.send_email(
    _options(cc="lead@example.com", bcc=["audit@example.com"], from_addr="team@example.com", attachments=[report])
  )
  t0 = svc.queue.snapshot()[0].last_attempt

  await svc.process_queue(now=t0 + timedelta(minutes=5))

  assert senders == ["team@example.com", "team@example.com"]
  resent = t.sent[0]
  assert resent.cc == "lead@example.com"
  assert resent.bcc == ["audit@example.com"]
  assert resent.attachments == [report]


@pytest.mark.anyio
async def test_entry_dropped_exactly_after_third_failed_retry():
  t = FakeTransport(always_fail=ConnectionResetError())
  svc = _service(t)
  await svc.send_email(_options())
  t0 = svc.queue.snapshot()[0].last_attempt

  await svc.process_queue(now=t0 + timedelta(minutes=5))
  assert [q.attempts for q in svc.queue.snapshot()] == [1]

  # Too soon after the previous attempt: untouched.
  await svc.process_queue(now=t0 + timedelta(minutes=9))
  assert [q.attempts for q in svc.queue.snapshot()] == [1]
  assert t.calls == 2

  await svc.process_queue(now=t0 + timedelta(minutes=10))
  assert [q.attempts for q in svc.queue.snapshot()] == [2]

  await svc.process_queue(now=t0 + timedelta(minutes=15))
  assert len(svc.queue) == 0
  assert t.calls == 4

  await svc.process_queue(now=t0 + timedelta(minutes=30))
  assert t.calls == 4


@pytest.mark.anyio
async def test_retry_loop_start_and_stop_are_idempotent():
  svc = _service(FakeTransport(), email_retry_interval_seconds=3600)
  svc.start_retry_loop()
  first = svc._retry_task
  svc.start_retry_loop()
  assert svc._retry_task is first
  await svc.stop_retry_loop()
  await svc.stop_retry_loop()
  await asyncio.sleep(0)
  assert first.cancelled()


def test_smtp_message_keeps_bcc_out_of_headers():
  transport = SmtpTransport(host="smtp.example.com")
  m = transport.build_message(
    from_addr="noreply@smarttasker.test",
    options=_options(cc="c@example.com", bcc=["hidden@example.com"], text="plain body"),
  )
  assert m["To"] == "user@example.com"
  assert m["Cc"] == "c@example.com"
  assert m["Bcc"] is None
  assert "hidden@example.com" not in m.as_string()
