from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any

NOTIFICATION_TYPES = (
  "TaskAssigned",
  "TaskDue",
  "TaskOverdue",
  "MentionedInComment",
  "TeamMemberAdded",
  "TeamMemberRemoved",
  "TeamLeaderChanged",
  "RecurringTaskGenerated",
)

NOTIFICATION_PRIORITIES = ("low", "normal", "high", "urgent")


@dataclass(frozen=True)
class EmailContent:
  subject: str
  html: str


_FOOTER = '<hr /><p><small>You are receiving this because of your SmartTasker notification settings.</small></p>'

_TEMPLATES: dict[str, tuple[str, str]] = {
  "TaskAssigned": (
    "New task assigned: {taskTitle}",
    "<h2>{title}</h2><p>{message}</p><p><a href=\"{{taskUrl}}\">Open task</a></p>",
  ),
  "TaskDue": (
    "Task due soon: {taskTitle}",
    "<h2>{title}</h2><p>{message}</p><p>Due: <strong>{dueDate}</strong></p><p><a href=\"{{taskUrl}}\">Open task</a></p>",
  ),
  "TaskOverdue": (
    "Task overdue: {taskTitle}",
    "<h2>{title}</h2><p>{message}</p><p>Was due: <strong>{dueDate}</strong></p><p><a href=\"{{taskUrl}}\">Open task</a></p>",
  ),
  "MentionedInComment": (
    "You were mentioned on {taskTitle}",
    "<h2>{title}</h2><p>{message}</p><blockquote>{commentText}</blockquote><p><a href=\"{{taskUrl}}\">View comment</a></p>",
  ),
  "TeamMemberAdded": (
    "Added to team {teamName}",
    "<h2>{title}</h2><p>{message}</p><p><a href=\"{{teamUrl}}\">Open team</a></p>",
  ),
  "TeamMemberRemoved": (
    "Removed from team {teamName}",
    "<h2>{title}</h2><p>{message}</p>",
  ),
  "TeamLeaderChanged": (
    "Team leadership changed: {teamName}",
    "<h2>{title}</h2><p>{message}</p><p><a href=\"{{teamUrl}}\">Open team</a></p>",
  ),
  "RecurringTaskGenerated": (
    "New task from {recurringTaskTitle}",
    "<h2>{title}</h2><p>{message}</p><p><a href=\"{{taskUrl}}\">Open task</a></p>",
  ),
}

_GENERIC = ("{title}", "<h2>{title}</h2><p>{message}</p>")


class _Values(dict):
  def __missing__(self, key: str) -> str:
    return ""


def email_content_for(
  type: str,
  title: str,
  message: str,
  reference_id: str | None = None,
  data: dict[str, Any] | None = None,
  base_url: str = "",
) -> EmailContent:
  """
  Subject/body for a notification email. Unknown types get the generic
  title/message template. `{{taskUrl}}` and `{{teamUrl}}` are replaced with
  links built from the reference id.
  """
  subject_tpl, body_tpl = _TEMPLATES.get(type, _GENERIC)

  raw: dict[str, Any] = {k: v for k, v in (data or {}).items() if isinstance(k, str)}
  raw["title"] = title
  raw["message"] = message
  raw.setdefault("taskTitle", title)
  raw.setdefault("teamName", title)
  raw.setdefault("recurringTaskTitle", title)

  plain = _Values({k: ("" if v is None else str(v)) for k, v in raw.items()})
  escaped = _Values({k: html.escape(v) for k, v in plain.items()})

  ref = reference_id or ""
  base = base_url.rstrip("/")
  for token, url in (("{{taskUrl}}", f"{base}/tasks/{ref}"), ("{{teamUrl}}", f"{base}/teams/{ref}")):
    # Braces are doubled so the link survives format_map below.
    body_tpl = body_tpl.replace(token, html.escape(url).replace("{", "{{").replace("}", "}}"))

  return EmailContent(subject=subject_tpl.format_map(plain), html=body_tpl.format_map(escaped) + _FOOTER)
