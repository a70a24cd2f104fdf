from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from smarttasker.audit import write_audit
from smarttasker.deps import get_db, require_admin
from smarttasker.models import User
from smarttasker.routers.auth import user_out
from smarttasker.schemas import UserCreateIn, UserCreateOut, UserOut
from smarttasker.security import hash_password, temp_password

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=list[UserOut])
async def list_users(
  _: User = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> list[UserOut]:
  res = await db.execute(select(User).order_by(User.name.asc()))
  return [user_out(u) for u in res.scalars().all()]


@router.post("", response_model=UserCreateOut)
async def create_user(
  payload: UserCreateIn,
  actor: User = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> UserCreateOut:
  email = payload.email.strip().lower()
  if "@" not in email or email.startswith("@") or email.endswith("@"):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email")
  name = payload.name.strip()
  if not name:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="name is required")

  res = await db.execute(select(User).where(User.email == email))
  if res.scalar_one_or_none():
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already in use")

  temp: str | None = None
  password = payload.password
  if not password:
    temp = temp_password()
    password = temp

  u = User(email=email, name=name, role=payload.role, password_hash=hash_password(password), active=True)
  db.add(u)
  await db.flush()
  await write_audit(db, event_type="user.created", entity_type="User", entity_id=u.id, actor_id=actor.id, payload={"email": email, "role": payload.role})
  await db.commit()
  return UserCreateOut(user=user_out(u), tempPassword=temp)
