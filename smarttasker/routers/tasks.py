from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from smarttasker.audit import write_audit
from smarttasker.deps import get_current_user, get_db, get_dispatcher
from smarttasker.models import Task, User
from smarttasker.notifications.dispatcher import NotificationDispatcher
from smarttasker.schemas import TaskCreateIn, TaskOut, TaskUpdateIn

router = APIRouter(prefix="/tasks", tags=["tasks"])


def task_out(t: Task) -> TaskOut:
  return TaskOut(
    id=t.id,
    title=t.title,
    description=t.description,
    status=t.status,
    priority=t.priority,
    dueDate=t.due_date,
    createdBy=t.created_by,
    assignedTo=t.assigned_to,
    tags=list(t.tags or []),
    completedAt=t.completed_at,
    notificationsSent=t.notifications_sent,
    createdAt=t.created_at,
    updatedAt=t.updated_at,
  )


def _can_see(t: Task, user: User) -> bool:
  return user.role == "admin" or user.id in (t.created_by, t.assigned_to)


async def _load_task(task_id: str, user: User, db: AsyncSession) -> Task:
  res = await db.execute(select(Task).where(Task.id == task_id))
  t = res.scalar_one_or_none()
  if not t or not _can_see(t, user):
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
  return t


async def _validate_assignee(user_id: str | None, db: AsyncSession) -> None:
  if not user_id:
    return
  res = await db.execute(select(User).where(User.id == user_id))
  u = res.scalar_one_or_none()
  if not u or not u.active:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Assignee not found")


@router.get("", response_model=list[TaskOut])
async def list_tasks(
  status_filter: str | None = Query(default=None, alias="status"),
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> list[TaskOut]:
  q = select(Task)
  if user.role != "admin":
    q = q.where(or_(Task.created_by == user.id, Task.assigned_to == user.id))
  if status_filter:
    q = q.where(Task.status == status_filter)
  res = await db.execute(q.order_by(Task.created_at.desc()))
  return [task_out(t) for t in res.scalars().all()]


@router.post("", response_model=TaskOut)
async def create_task(
  payload: TaskCreateIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> TaskOut:
  await _validate_assignee(payload.assignedTo, db)
  t = Task(
    title=payload.title.strip(),
    description=payload.description,
    status=payload.status,
    priority=payload.priority,
    due_date=payload.dueDate,
    created_by=user.id,
    assigned_to=payload.assignedTo,
    tags=list(payload.tags),
    completed_at=datetime.now(timezone.utc) if payload.status == "completed" else None,
  )
  db.add(t)
  await db.flush()
  await write_audit(db, event_type="task.created", entity_type="Task", entity_id=t.id, actor_id=user.id, payload={"title": t.title, "source": "api"})
  await db.commit()

  if t.assigned_to and t.assigned_to != user.id:
    await dispatcher.notify_task_assigned(t.assigned_to, t.id, t.title, user.id)
  return task_out(t)


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(task_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> TaskOut:
  return task_out(await _load_task(task_id, user, db))


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
  task_id: str,
  payload: TaskUpdateIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> TaskOut:
  t = await _load_task(task_id, user, db)
  old_assignee = t.assigned_to

  fields_set = payload.model_fields_set
  if "assignedTo" in fields_set:
    await _validate_assignee(payload.assignedTo, db)

  changed: dict = {}
  mapping = [
    ("title", "title"),
    ("description", "description"),
    ("status", "status"),
    ("priority", "priority"),
    ("due_date", "dueDate"),
    ("assigned_to", "assignedTo"),
    ("tags", "tags"),
  ]
  for model_attr, field_name in mapping:
    if field_name in fields_set:
      val = getattr(payload, field_name)
      if field_name in ("title", "status", "priority", "tags") and val is None:
        continue
      setattr(t, model_attr, val)
      changed[field_name] = val[:500] if field_name == "description" and isinstance(val, str) else val

  if t.status != "completed":
    t.completed_at = None
  elif t.completed_at is None:
    t.completed_at = datetime.now(timezone.utc)

  await write_audit(db, event_type="task.updated", entity_type="Task", entity_id=t.id, actor_id=user.id, payload={"changed": list(changed.keys()), "fields": changed})
  await db.commit()
  await db.refresh(t)

  if "assignedTo" in changed and t.assigned_to and t.assigned_to != old_assignee and t.assigned_to != user.id:
    await dispatcher.notify_task_assigned(t.assigned_to, t.id, t.title, user.id)
  return task_out(t)


@router.delete("/{task_id}")
async def delete_task(task_id: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  t = await _load_task(task_id, user, db)
  if user.role != "admin" and t.created_by != user.id:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the creator can delete this task")
  await write_audit(db, event_type="task.deleted", entity_type="Task", entity_id=t.id, actor_id=user.id, payload={"title": t.title})
  await db.delete(t)
  await db.commit()
  return {"ok": True}
