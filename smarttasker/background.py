from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)

ErrorSink = Callable[[str, BaseException], None]


def _log_error(name: str, exc: BaseException) -> None:
  logger.error("background job %s failed", name, exc_info=(type(exc), exc, exc.__traceback__))


class BackgroundTaskRunner:
  """
  One-shot background jobs (email sends after a notification commit).

  Every submitted job is tracked until it finishes so shutdown and tests can
  `drain()` it; failures go to the error sink instead of vanishing.
  """

  def __init__(self, on_error: ErrorSink | None = None) -> None:
    self._on_error = on_error or _log_error
    self._tasks: set[asyncio.Task] = set()

  def submit(self, coro: Coroutine[Any, Any, Any], *, name: str = "job") -> asyncio.Task:
    task = asyncio.create_task(coro, name=name)
    self._tasks.add(task)
    task.add_done_callback(self._finished)
    return task

  def _finished(self, task: asyncio.Task) -> None:
    self._tasks.discard(task)
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      self._on_error(task.get_name(), exc)

  @property
  def pending(self) -> int:
    return len(self._tasks)

  async def drain(self) -> None:
    # Jobs may submit further jobs; loop until nothing is outstanding.
    while self._tasks:
      await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def run_periodically(
  fn: Callable[[], Awaitable[Any]],
  *,
  interval_seconds: float,
  name: str,
  run_immediately: bool = False,
) -> None:
  if not run_immediately:
    await asyncio.sleep(interval_seconds)
  while True:
    try:
      await fn()
    except Exception:
      logger.exception("periodic job %s failed", name)
    await asyncio.sleep(interval_seconds)
