from __future__ import annotations

from smarttasker.background import BackgroundTaskRunner
from smarttasker.chat.service import ChatService
from smarttasker.config import settings
from smarttasker.db import SessionLocal
from smarttasker.email.service import get_email_service
from smarttasker.monitor.service import DueDateMonitor
from smarttasker.notifications.dispatcher import NotificationDispatcher

# Process-wide collaborators, wired once at import like the limiter and metrics.
runner = BackgroundTaskRunner()
mailer = get_email_service(settings)
dispatcher = NotificationDispatcher(SessionLocal, mailer, runner, base_url=settings.app_base_url)
monitor = DueDateMonitor(SessionLocal, dispatcher, interval_seconds=settings.due_monitor_interval_seconds)

_chat_service: ChatService | None = None


def chat_service() -> ChatService:
  # Built lazily so a missing model API key only fails chat requests.
  global _chat_service
  if _chat_service is None:
    from smarttasker.ai.client import get_model_client

    _chat_service = ChatService(get_model_client(), SessionLocal, system_prompt=settings.groq_system_prompt)
  return _chat_service
