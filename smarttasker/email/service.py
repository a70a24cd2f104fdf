from __future__ import annotations

import asyncio
import logging
import smtplib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Protocol

from smarttasker.background import run_periodically
from smarttasker.config import Settings, settings as default_settings
from smarttasker.metrics import runtime_metrics

logger = logging.getLogger(__name__)


@dataclass
class EmailAttachment:
  filename: str
  content: bytes
  mime_type: str = "application/octet-stream"


@dataclass
class EmailOptions:
  to: str | list[str]
  subject: str
  html: str
  text: str | None = None
  cc: str | list[str] | None = None
  bcc: str | list[str] | None = None
  from_addr: str | None = None
  attachments: list[EmailAttachment] = field(default_factory=list)


@dataclass
class QueuedEmail:
  to: str
  subject: str
  html: str
  text: str | None
  attempts: int
  last_attempt: datetime
  created_at: datetime
  id: str = field(default_factory=lambda: f"email_{uuid.uuid4().hex[:12]}")
  # Original message, resent as-is on retry.
  options: EmailOptions | None = None


class EmailTransport(Protocol):
  async def send(self, *, from_addr: str, options: EmailOptions) -> None: ...


def _addresses(value: str | list[str] | None) -> list[str]:
  if not value:
    return []
  if isinstance(value, str):
    return [a.strip() for a in value.split(",") if a.strip()]
  return [str(a).strip() for a in value if str(a).strip()]


class SmtpTransport:
  def __init__(
    self,
    *,
    host: str,
    port: int = 587,
    username: str = "",
    password: str = "",
    starttls: bool = True,
    timeout: float = 15,
  ) -> None:
    self.host = host
    self.port = port
    self.username = username
    self.password = password
    self.starttls = starttls
    self.timeout = timeout

  def build_message(self, *, from_addr: str, options: EmailOptions) -> EmailMessage:
    m = EmailMessage()
    m["Subject"] = options.subject
    m["From"] = from_addr
    m["To"] = ", ".join(_addresses(options.to))
    cc = _addresses(options.cc)
    if cc:
      m["Cc"] = ", ".join(cc)
    m.set_content(options.text or options.subject)
    m.add_alternative(options.html, subtype="html")
    for a in options.attachments:
      maintype, _, subtype = a.mime_type.partition("/")
      m.add_attachment(a.content, maintype=maintype, subtype=subtype or "octet-stream", filename=a.filename)
    return m

  async def send(self, *, from_addr: str, options: EmailOptions) -> None:
    m = self.build_message(from_addr=from_addr, options=options)
    recipients = _addresses(options.to) + _addresses(options.cc) + _addresses(options.bcc)

    def _send_sync() -> None:
      with smtplib.SMTP(host=self.host, port=self.port, timeout=self.timeout) as s:
        s.ehlo()
        if self.starttls:
          s.starttls()
          s.ehlo()
        if self.username and self.password:
          s.login(self.username, self.password)
        s.send_message(m, to_addrs=recipients)

    await asyncio.to_thread(_send_sync)


# Envelope, auth and connection-level SMTP failures are worth another try.
_TRANSIENT_SMTP_ERRORS = (
  smtplib.SMTPServerDisconnected,
  smtplib.SMTPConnectError,
  smtplib.SMTPAuthenticationError,
  smtplib.SMTPSenderRefused,
  smtplib.SMTPRecipientsRefused,
)


def is_transient_error(exc: BaseException) -> bool:
  if isinstance(exc, _TRANSIENT_SMTP_ERRORS):
    return True
  if isinstance(exc, smtplib.SMTPResponseException):
    return 400 <= int(exc.smtp_code) < 500
  if isinstance(exc, smtplib.SMTPException):
    return False
  # Resets, refusals, timeouts, DNS and other socket failures.
  return isinstance(exc, OSError)


class EmailQueue:
  """Process-local retry queue; pending entries are lost on restart."""

  def __init__(self) -> None:
    self._items: list[QueuedEmail] = []

  def push(self, item: QueuedEmail) -> None:
    self._items.append(item)

  def take_all(self) -> list[QueuedEmail]:
    items, self._items = self._items, []
    return items

  def snapshot(self) -> list[QueuedEmail]:
    return list(self._items)

  def __len__(self) -> int:
    return len(self._items)


class EmailDeliveryService:
  def __init__(
    self,
    transport: EmailTransport,
    queue: EmailQueue | None = None,
    settings: Settings | None = None,
  ) -> None:
    self.transport = transport
    self.queue = queue if queue is not None else EmailQueue()
    self.settings = settings or default_settings
    self._retry_task: asyncio.Task | None = None

  @property
  def retry_delay(self) -> timedelta:
    return timedelta(seconds=int(self.settings.email_retry_delay_seconds))

  @property
  def max_attempts(self) -> int:
    return int(self.settings.email_max_retry_attempts)

  async def send_email(self, options: EmailOptions) -> bool:
    """
    Best-effort send.

    Returns True when the mail was sent, logged instead of sent, or queued for
    retry after a transient failure. False only for permanent failures.
    """
    from_addr = options.from_addr or self.settings.email_from
    preview = options.text or (options.html[:100] + "...")

    if self.settings.email_disabled:
      logger.info("email disabled, would have sent to=%s subject=%r content=%r", options.to, options.subject, preview)
      return True

    if not self.settings.is_production and not self.settings.email_send_in_development:
      logger.info("email (%s mode) to=%s subject=%r content=%r", self.settings.app_env, options.to, options.subject, preview)
      return True

    try:
      await self.transport.send(from_addr=from_addr, options=options)
      runtime_metrics.incr("emails.sent")
      return True
    except Exception as e:
      logger.error("error sending email to %s: %s", options.to, e)
      if not is_transient_error(e):
        runtime_metrics.incr("emails.failed")
        return False

    now = datetime.now(timezone.utc)
    self.queue.push(
      QueuedEmail(
        to=",".join(_addresses(options.to)),
        subject=options.subject,
        html=options.html,
        text=options.text,
        attempts=0,
        last_attempt=now,
        created_at=now,
        options=options,
      )
    )
    runtime_metrics.incr("emails.queued")
    logger.info("email to %s queued for retry, queue size %d", options.to, len(self.queue))
    return True

  async def process_queue(self, now: datetime | None = None) -> None:
    if not len(self.queue):
      return
    now = now or datetime.now(timezone.utc)
    items = self.queue.take_all()
    logger.info("processing email retry queue, %d entries", len(items))

    for item in items:
      if now - item.last_attempt < self.retry_delay:
        self.queue.push(item)
        continue

      if item.attempts >= self.max_attempts:
        self._drop(item)
        continue

      options = item.options or EmailOptions(to=item.to, subject=item.subject, html=item.html, text=item.text)
      try:
        await self.transport.send(from_addr=options.from_addr or self.settings.email_from, options=options)
        runtime_metrics.incr("emails.sent")
        logger.info("sent queued email to %s on attempt %d", item.to, item.attempts + 1)
      except Exception as e:
        logger.error("failed to send queued email to %s (attempt %d): %s", item.to, item.attempts + 1, e)
        item.attempts += 1
        item.last_attempt = now
        if item.attempts < self.max_attempts:
          self.queue.push(item)
        else:
          self._drop(item)

  def _drop(self, item: QueuedEmail) -> None:
    runtime_metrics.incr("emails.dropped")
    logger.warning("email %s to %s failed after %d attempts, giving up", item.id, item.to, item.attempts)

  def start_retry_loop(self) -> None:
    if self._retry_task is not None and not self._retry_task.done():
      return
    self._retry_task = asyncio.create_task(
      run_periodically(
        self.process_queue,
        interval_seconds=max(1, int(self.settings.email_retry_interval_seconds)),
        name="email-retry",
      )
    )

  async def stop_retry_loop(self) -> None:
    task, self._retry_task = self._retry_task, None
    if task is None or task.done():
      return
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      pass


def get_email_service(settings: Settings | None = None) -> EmailDeliveryService:
  cfg = settings or default_settings
  transport = SmtpTransport(
    host=cfg.email_host,
    port=cfg.email_port,
    username=cfg.email_user,
    password=cfg.email_password,
    starttls=cfg.email_starttls,
  )
  return EmailDeliveryService(transport, EmailQueue(), cfg)
