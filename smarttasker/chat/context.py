from __future__ import annotations

from typing import Any

MAX_CONTEXT_MESSAGES = 20
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant. Provide accurate, helpful responses."


def build_context(
  messages: list[dict[str, Any]],
  system_prompt: str = DEFAULT_SYSTEM_PROMPT,
  limit: int = MAX_CONTEXT_MESSAGES,
) -> list[dict[str, str]]:
  """
  System prompt followed by the last `limit` messages, stripped to role/content.
  Older turns are dropped, not summarised.
  """
  recent = messages[-limit:] if limit > 0 else []
  context = [{"role": "system", "content": system_prompt}]
  for m in recent:
    context.append({"role": str(m.get("role") or "user"), "content": str(m.get("content") or "")})
  return context
