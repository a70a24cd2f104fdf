from __future__ import annotations

import json
from contextlib import asynccontextmanager

import httpx
import pytest
from sqlalchemy import func, select

from smarttasker.ai.client import ChatModelClient, LocalChatModel, ModelApiError
from smarttasker.chat.context import build_context
from smarttasker.chat.service import ChatService, TaskExtractionResult, clean_title, parse_due_date, strip_code_fence
from smarttasker.models import AuditEvent, ChatHistory, Task
from tests.conftest import make_user


def _completion(content: str) -> dict:
  return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


class ScriptedModel:
  """Replies from a script; an Exception entry is raised instead of returned."""

  def __init__(self, replies=None, chunks=None, fail_after: int | None = None) -> None:
    self.replies = list(replies or [])
    self.chunks = list(chunks or [])
    self.fail_after = fail_after
    self.requests: list[list[dict]] = []

  async def chat(self, messages, *, temperature=None, top_p=None, max_tokens=None):
    self.requests.append(messages)
    reply = self.replies.pop(0) if self.replies else "ok"
    if isinstance(reply, Exception):
      raise reply
    return _completion(reply)

  async def chat_stream(self, messages, *, temperature=None, top_p=None, max_tokens=None):
    self.requests.append(messages)
    for i, c in enumerate(self.chunks):
      if self.fail_after is not None and i >= self.fail_after:
        raise ModelApiError("stream broke", 502)
      yield c


async def _chat_rows(session_factory, user_id: str) -> list[ChatHistory]:
  async with session_factory() as s:
    return list((await s.execute(select(ChatHistory).where(ChatHistory.user_id == user_id))).scalars().all())


def test_context_keeps_system_prompt_and_last_twenty():
  history = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}", "timestamp": "x"} for i in range(100)]
  ctx = build_context(history, "sys")
  assert len(ctx) == 21
  assert ctx[0] == {"role": "system", "content": "sys"}
  assert ctx[1] == {"role": "user", "content": "m80"}
  assert ctx[-1] == {"role": "assistant", "content": "m99"}
  assert build_context([], "sys") == [{"role": "system", "content": "sys"}]


@pytest.mark.anyio
async def test_send_message_creates_chat_and_trims_context(db):
  uid = await make_user("chatter@example.com")
  model = ScriptedModel(["first answer", "second answer"])
  svc = ChatService(model, db, system_prompt="be brief")

  reply = await svc.send_message(uid, "hello")
  assert reply.content == "first answer"
  rows = await _chat_rows(db, uid)
  assert [r.id for r in rows] == [reply.chat_id]
  assert [m["role"] for m in rows[0].messages] == ["user", "assistant"]

  async with db() as s:
    chat = (await s.execute(select(ChatHistory).where(ChatHistory.id == reply.chat_id))).scalar_one()
    chat.messages = [{"role": "user", "content": f"old {i}", "timestamp": "t"} for i in range(99)]
    await s.commit()

  again = await svc.send_message(uid, "newest", chat_id=reply.chat_id)
  assert again.chat_id == reply.chat_id
  sent = model.requests[-1]
  assert len(sent) == 21
  assert sent[0] == {"role": "system", "content": "be brief"}
  assert sent[-1] == {"role": "user", "content": "newest"}
  assert len((await _chat_rows(db, uid))[0].messages) == 101


@pytest.mark.anyio
async def test_foreign_chat_id_starts_a_new_chat(db):
  owner = await make_user("owner@example.com")
  other = await make_user("other@example.com")
  svc = ChatService(ScriptedModel(), db)

  mine = await svc.send_message(owner, "private")
  theirs = await svc.send_message(other, "hijack?", chat_id=mine.chat_id)

  assert theirs.chat_id != mine.chat_id
  assert len((await _chat_rows(db, owner))[0].messages) == 2


@pytest.mark.anyio
async def test_model_call_runs_without_an_open_session(db):
  uid = await make_user("pooled@example.com")
  state = {"open": 0}

  @asynccontextmanager
  async def sessions():
    async with db() as s:
      state["open"] += 1
      try:
        yield s
      finally:
        state["open"] -= 1

  class Watching(ScriptedModel):
    async def chat(self, messages, **kw):
      seen.append(state["open"])
      return await super().chat(messages, **kw)

  seen: list[int] = []
  svc = ChatService(Watching(["one", "two", "Title"]), sessions)
  first = await svc.send_message(uid, "hello")
  await svc.send_message(uid, "again", chat_id=first.chat_id)
  assert (await svc.generate_chat_title(first.chat_id, uid)).success

  assert seen == [0, 0, 0]
  assert len((await _chat_rows(db, uid))[0].messages) == 4


@pytest.mark.anyio
async def test_model_failure_persists_nothing(db):
  uid = await make_user("unlucky@example.com")
  svc = ChatService(ScriptedModel([ModelApiError("down", 503)]), db)

  with pytest.raises(ModelApiError):
    await svc.send_message(uid, "hello")
  assert await _chat_rows(db, uid) == []


@pytest.mark.anyio
async def test_stream_persists_full_reply_on_completion(db):
  uid = await make_user("streamer@example.com")
  svc = ChatService(ScriptedModel(chunks=["Hel", "lo", "!"]), db)

  stream = await svc.send_message_stream(uid, "hi")
  chunks = [c async for c in stream]

  assert chunks == ["Hel", "lo", "!"]
  assert stream.completed
  rows = await _chat_rows(db, uid)
  assert [r.id for r in rows] == [stream.chat_id]
  assert [m["content"] for m in rows[0].messages] == ["hi", "Hello!"]


@pytest.mark.anyio
async def test_stream_failure_midway_persists_nothing(db):
  uid = await make_user("streamer@example.com")
  svc = ChatService(ScriptedModel(chunks=["a", "b", "c"], fail_after=2), db)

  stream = await svc.send_message_stream(uid, "hi")
  received = []
  with pytest.raises(ModelApiError):
    async for c in stream:
      received.append(c)

  assert received == ["a", "b"]
  assert not stream.completed
  assert await _chat_rows(db, uid) == []


@pytest.mark.anyio
async def test_abandoned_stream_leaves_existing_chat_untouched(db):
  uid = await make_user("streamer@example.com")
  svc = ChatService(ScriptedModel(["done"], chunks=["x", "y", "z"]), db)
  first = await svc.send_message(uid, "start")

  stream = await svc.send_message_stream(uid, "more", chat_id=first.chat_id)
  it = stream.__aiter__()
  assert await it.__anext__() == "x"
  await it.aclose()

  rows = await _chat_rows(db, uid)
  assert len(rows[0].messages) == 2
  assert not stream.completed


@pytest.mark.anyio
async def test_extract_task_requires_title():
  svc = ChatService(ScriptedModel(['{"description": "buy milk"}']), None)
  result = await svc.extract_task_from_message("buy milk")
  assert result.success is False
  assert result.task is None
  assert result.error == "Failed to extract required task title"


@pytest.mark.anyio
async def test_extract_task_normalises_fields():
  raw = '```json\n{"title": "Pay rent", "dueDate": "not a date", "priority": "whenever", "tags": "money"}\n```'
  model = ScriptedModel([raw])
  result = await ChatService(model, None).extract_task_from_message("pay rent")

  assert result.success is True
  assert result.task.title == "Pay rent"
  assert result.task.due_date is None
  assert result.task.priority is None
  assert result.task.tags is None
  assert result.confidence == 0.5
  assert model.requests[0][1]["content"] == 'Extract task information from this text: "pay rent"'


@pytest.mark.anyio
async def test_extract_task_parses_dates_and_clamps_confidence():
  raw = json.dumps({"title": "Launch", "dueDate": "2026-05-01T10:00:00", "priority": "HIGH", "tags": ["a", 1], "confidence": 7})
  result = await ChatService(ScriptedModel([raw]), None).extract_task_from_message("launch")

  assert result.task.due_date.isoformat() == "2026-05-01T10:00:00+00:00"
  assert result.task.priority == "high"
  assert result.task.tags == ["a", "1"]
  assert result.confidence == 1.0
  assert result.to_dict()["task"]["dueDate"] == "2026-05-01T10:00:00+00:00"


@pytest.mark.anyio
async def test_extract_task_bad_json_and_model_errors_never_raise():
  bad = await ChatService(ScriptedModel(["sure! here it is"]), None).extract_task_from_message("x")
  assert bad.success is False
  assert bad.error == "Failed to parse task extraction response"
  assert bad.raw_response == "sure! here it is"

  failed = await ChatService(ScriptedModel([ModelApiError("quota", 429)]), None).extract_task_from_message("x")
  assert failed.success is False
  assert failed.confidence == 0.0
  assert failed.error == "quota"


@pytest.mark.anyio
async def test_garbled_model_reply_never_raises(db):
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text="<html>gateway hiccup</html>", headers={"content-type": "text/html"})

  client = ChatModelClient(
    api_key="test-key", base_url="https://llm.test/v1", model="test-model", transport=httpx.MockTransport(handler)
  )
  result = await ChatService(client, None).extract_task_from_message("Remind me to water the plants")
  assert result.success is False
  assert result.confidence == 0.0
  assert result.error == "Invalid JSON in model API response"

  uid = await make_user("garbled@example.com")
  reply = await ChatService(ScriptedModel(), db).send_message(uid, "hi")
  assert (await ChatService(client, db).generate_chat_title(reply.chat_id, uid)).success is False
  assert (await _chat_rows(db, uid))[0].title == "New Chat"


@pytest.mark.anyio
async def test_reminder_round_trip_creates_one_self_assigned_task(db):
  uid = await make_user("planner@example.com")
  svc = ChatService(LocalChatModel(), db)

  result = await svc.extract_task_from_message("Remind me to call Bob tomorrow")
  assert result.success
  task_id = await svc.create_task_from_extraction(uid, result)
  assert task_id

  async with db() as s:
    tasks = (await s.execute(select(Task))).scalars().all()
    audits = (await s.execute(select(func.count()).select_from(AuditEvent).where(AuditEvent.entity_id == task_id))).scalar_one()
  assert len(tasks) == 1
  t = tasks[0]
  assert (t.title, t.created_by, t.assigned_to, t.status, t.priority) == ("Call Bob", uid, uid, "pending", "medium")
  assert t.due_date is not None
  assert audits == 1

  assert await svc.create_task_from_extraction(uid, TaskExtractionResult(success=False)) is None


@pytest.mark.anyio
async def test_generate_title_truncates_and_needs_two_messages(db):
  uid = await make_user("titler@example.com")
  model = ScriptedModel(["hi", '"' + "A" * 60 + '"'])
  svc = ChatService(model, db)

  empty = await svc.create_new_chat(uid)
  assert (await svc.generate_chat_title(empty.id, uid)).success is False

  reply = await svc.send_message(uid, "Plan the offsite")
  assert (await svc.generate_chat_title(reply.chat_id, "someone-else")).success is False

  result = await svc.generate_chat_title(reply.chat_id, uid)
  assert result.success
  assert result.title == "A" * 47 + "..."
  assert len(result.title) == 50
  assert (await svc.get_chat_history(reply.chat_id, uid)).title == result.title
  assert model.requests[-1][1]["content"] == "user: Plan the offsite\nassistant: hi"


@pytest.mark.anyio
async def test_history_ownership_and_clear(db):
  uid = await make_user("keeper@example.com")
  other = await make_user("nosy@example.com")
  svc = ChatService(ScriptedModel(), db)

  a = await svc.send_message(uid, "one")
  await svc.send_message(uid, "two")
  await svc.create_new_chat(other)

  assert len(await svc.get_user_chat_history(uid)) == 2
  assert len(await svc.get_user_chat_history(uid, limit=1)) == 1
  assert await svc.get_chat_history(a.chat_id, other) is None
  assert await svc.delete_chat_history(a.chat_id, other) is False
  assert await svc.delete_chat_history(a.chat_id, uid) is True
  assert await svc.clear_all_chat_history(uid) == 1
  assert await svc.get_user_chat_history(uid) == []
  assert len(await svc.get_user_chat_history(other)) == 1


def test_helpers():
  assert strip_code_fence('```\n{"a": 1}\n```') == '{"a": 1}'
  assert strip_code_fence("  plain  ") == "plain"
  assert parse_due_date("") is None
  assert parse_due_date("2026-01-02T03:04:05Z").isoformat() == "2026-01-02T03:04:05+00:00"
  assert clean_title("  'Weekly planning'  ") == "Weekly planning"
