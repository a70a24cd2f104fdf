from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import httpx

from smarttasker.ai.prompts import TASK_EXTRACTION_PROMPT, TITLE_PROMPT
from smarttasker.config import settings

logger = logging.getLogger(__name__)

Message = dict[str, str]


class ModelApiError(Exception):
  def __init__(self, message: str, status_code: int, error_type: str = "api_error") -> None:
    super().__init__(message)
    self.message = message
    self.status_code = status_code
    self.error_type = error_type

  @property
  def retryable(self) -> bool:
    return self.status_code == 429 or 500 <= self.status_code < 600


class ChatModel(Protocol):
  async def chat(
    self,
    messages: list[Message],
    *,
    temperature: float | None = None,
    top_p: float | None = None,
    max_tokens: int | None = None,
  ) -> dict[str, Any]: ...

  def chat_stream(
    self,
    messages: list[Message],
    *,
    temperature: float | None = None,
    top_p: float | None = None,
    max_tokens: int | None = None,
  ) -> AsyncIterator[str]: ...


def response_text(data: dict[str, Any]) -> str:
  try:
    return str(data["choices"][0]["message"]["content"] or "")
  except (KeyError, IndexError, TypeError):
    return ""


def _error_from_response(r: httpx.Response) -> ModelApiError:
  message, error_type = "Unknown API error", "api_error"
  try:
    err = (r.json() or {}).get("error") or {}
    if isinstance(err, dict):
      message = str(err.get("message") or message)
      error_type = str(err.get("type") or error_type)
  except (ValueError, AttributeError):
    pass
  return ModelApiError(message, r.status_code, error_type)


class ChatModelClient:
  """
  OpenAI-compatible /chat/completions client (Groq by default).

  `chat` retries rate limits and 5xx responses with exponential backoff; any
  other failure, including transport errors, is raised at once. Streaming
  requests are never retried.
  """

  def __init__(
    self,
    *,
    api_key: str,
    base_url: str,
    model: str,
    temperature: float = 0.7,
    top_p: float = 0.9,
    max_tokens: int = 4096,
    max_retries: int = 3,
    retry_delay_ms: int = 1000,
    timeout_ms: int = 60000,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
  ) -> None:
    self.api_key = api_key
    self.base_url = base_url.rstrip("/")
    self.model = model
    self.temperature = temperature
    self.top_p = top_p
    self.max_tokens = max_tokens
    self.max_retries = max_retries
    self.retry_delay_ms = retry_delay_ms
    self.timeout_ms = timeout_ms
    self.transport = transport
    self.sleep = sleep

  def _client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(
      base_url=self.base_url,
      headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
      timeout=self.timeout_ms / 1000.0,
      transport=self.transport,
    )

  def _payload(
    self,
    messages: list[Message],
    *,
    temperature: float | None,
    top_p: float | None,
    max_tokens: int | None,
    stream: bool,
  ) -> dict[str, Any]:
    return {
      "model": self.model,
      "messages": messages,
      "temperature": self.temperature if temperature is None else temperature,
      "top_p": self.top_p if top_p is None else top_p,
      "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
      "stream": stream,
    }

  def backoff_seconds(self, attempt: int) -> float:
    return (self.retry_delay_ms * (2 ** (attempt - 1))) / 1000.0

  async def chat(
    self,
    messages: list[Message],
    *,
    temperature: float | None = None,
    top_p: float | None = None,
    max_tokens: int | None = None,
  ) -> dict[str, Any]:
    payload = self._payload(messages, temperature=temperature, top_p=top_p, max_tokens=max_tokens, stream=False)
    retries = 0
    async with self._client() as client:
      while True:
        r = await client.post("/chat/completions", json=payload)
        if r.is_success:
          try:
            return r.json()
          except ValueError:
            logger.error("model API returned a non-JSON body status=%s", r.status_code)
            raise ModelApiError("Invalid JSON in model API response", 502, "invalid_response")

        err = _error_from_response(r)
        logger.error("model API error status=%s type=%s message=%s", err.status_code, err.error_type, err.message)
        if not err.retryable or retries >= self.max_retries:
          raise err
        retries += 1
        delay = self.backoff_seconds(retries)
        logger.info("retrying model API request (%d/%d) after %.0fms", retries, self.max_retries, delay * 1000)
        await self.sleep(delay)

  async def chat_stream(
    self,
    messages: list[Message],
    *,
    temperature: float | None = None,
    top_p: float | None = None,
    max_tokens: int | None = None,
  ) -> AsyncIterator[str]:
    payload = self._payload(messages, temperature=temperature, top_p=top_p, max_tokens=max_tokens, stream=True)
    async with self._client() as client:
      async with client.stream(
        "POST", "/chat/completions", json=payload, headers={"Accept": "text/event-stream"}
      ) as r:
        if not r.is_success:
          await r.aread()
          raise _error_from_response(r)
        async for line in r.aiter_lines():
          if not line.startswith("data:"):
            continue
          data = line[5:].strip()
          if data == "[DONE]":
            return
          try:
            chunk = json.loads(data)
            delta = chunk["choices"][0].get("delta") or {}
          except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            logger.warning("skipping malformed stream chunk: %r", data[:200])
            continue
          content = delta.get("content")
          if content:
            yield str(content)


_REMIND_PREFIX = re.compile(r"^\s*(please\s+)?(remind me to|i need to|i have to|don't forget to|todo:?)\s+", re.I)
_WHEN_WORDS = re.compile(r"\s+(tomorrow|today|tonight|next week)\b.*$", re.I)


@dataclass
class LocalChatModel:
  """
  Deterministic offline model for development and tests.

  Recognises the extraction and title prompts and answers them in the same
  shape a hosted model would; anything else gets a short acknowledgement.
  """

  model: str = "local-deterministic"

  def _reply(self, messages: list[Message]) -> str:
    system = messages[0]["content"] if messages and messages[0].get("role") == "system" else ""
    last_user = next((m["content"] for m in reversed(messages) if m.get("role") == "user"), "")
    if system == TASK_EXTRACTION_PROMPT:
      return json.dumps(self._extract(last_user))
    if system == TITLE_PROMPT:
      first = last_user.split("\n", 1)[0]
      first = first.split(":", 1)[-1].strip() or "Conversation"
      return f'"{first[:60]}"'
    turns = sum(1 for m in messages if m.get("role") == "user")
    return f"Noted ({turns} message{'s' if turns != 1 else ''} so far): {last_user.strip()[:200]}"

  def _extract(self, request: str) -> dict[str, Any]:
    text = request
    m = re.search(r'"(.*)"', request, re.S)
    if m:
      text = m.group(1)
    lower = text.lower()
    due = None
    now = datetime.now(timezone.utc).replace(hour=9, minute=0, second=0, microsecond=0)
    if "tomorrow" in lower:
      due = (now + timedelta(days=1)).isoformat()
    elif "next week" in lower:
      due = (now + timedelta(days=7)).isoformat()
    elif "today" in lower or "tonight" in lower:
      due = now.isoformat()
    priority = "urgent" if "urgent" in lower or "asap" in lower else ("high" if "important" in lower else "medium")
    title = _WHEN_WORDS.sub("", _REMIND_PREFIX.sub("", text)).strip().rstrip(".!?")
    if not title:
      return {"description": text, "confidence": 0.1}
    return {
      "title": title[:1].upper() + title[1:],
      "description": text,
      "dueDate": due,
      "priority": priority,
      "tags": [],
      "confidence": 0.8,
    }

  async def chat(
    self,
    messages: list[Message],
    *,
    temperature: float | None = None,
    top_p: float | None = None,
    max_tokens: int | None = None,
  ) -> dict[str, Any]:
    content = self._reply(messages)
    return {
      "id": "local",
      "object": "chat.completion",
      "model": self.model,
      "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
      "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }

  async def chat_stream(
    self,
    messages: list[Message],
    *,
    temperature: float | None = None,
    top_p: float | None = None,
    max_tokens: int | None = None,
  ) -> AsyncIterator[str]:
    words = self._reply(messages).split(" ")
    for i, w in enumerate(words):
      yield w if i == 0 else f" {w}"


def get_model_client() -> ChatModel:
  if settings.ai_provider.lower() == "groq":
    if not settings.groq_api_key:
      raise RuntimeError("AI_PROVIDER=groq requires GROQ_API_KEY")
    return ChatModelClient(
      api_key=settings.groq_api_key,
      base_url=settings.groq_api_url,
      model=settings.groq_model,
      temperature=settings.groq_temperature,
      top_p=settings.groq_top_p,
      max_tokens=settings.groq_max_tokens,
      max_retries=settings.groq_retries,
      retry_delay_ms=settings.groq_retry_delay_ms,
      timeout_ms=settings.groq_timeout_ms,
    )
  return LocalChatModel()
