from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from smarttasker.audit import write_audit
from smarttasker.config import settings
from smarttasker.deps import client_ip, get_current_user, get_db
from smarttasker.models import Session as DbSession, User
from smarttasker.rate_limit import rate_limit_or_429
from smarttasker.schemas import LoginIn, UserOut
from smarttasker.security import SESSION_COOKIE_NAME, SESSION_TTL_DAYS, new_session_expires_at, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])


def user_out(u: User) -> UserOut:
  return UserOut(id=u.id, email=u.email, name=u.name, role=u.role, active=bool(u.active))


@router.post("/login", response_model=UserOut)
async def login(payload: LoginIn, request: Request, response: Response, db: AsyncSession = Depends(get_db)) -> UserOut:
  ip = client_ip(request) or "unknown"
  email = (payload.email or "").strip().lower()
  rate_limit_or_429(key=f"auth:login:ip:{ip}", limit=int(settings.rate_limit_login_ip_per_minute))
  if email:
    rate_limit_or_429(key=f"auth:login:email:{email}", limit=int(settings.rate_limit_login_email_per_minute))

  res = await db.execute(select(User).where(User.email == email))
  u = res.scalar_one_or_none()
  if not u or not verify_password(payload.password, u.password_hash):
    await write_audit(db, event_type="auth.login.failed", entity_type="Auth", entity_id=None, payload={"email": email, "ip": ip})
    await db.commit()
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
  if not u.active:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User disabled")

  s = DbSession(
    user_id=u.id,
    created_ip=ip,
    user_agent=(request.headers.get("user-agent") or "")[:300] or None,
    expires_at=new_session_expires_at(),
  )
  db.add(s)
  await db.flush()
  await write_audit(db, event_type="auth.login", entity_type="User", entity_id=u.id, actor_id=u.id, payload={"ip": ip})
  await db.commit()

  response.set_cookie(
    key=SESSION_COOKIE_NAME,
    value=s.id,
    httponly=True,
    secure=settings.cookie_secure,
    samesite="lax",
    domain=settings.cookie_domain or None,
    max_age=int(SESSION_TTL_DAYS * 86400),
    expires=s.expires_at,
    path="/",
  )
  return user_out(u)


@router.post("/logout")
async def logout(
  response: Response,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> dict:
  await db.execute(delete(DbSession).where(DbSession.user_id == user.id))
  response.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
  await db.commit()
  return {"ok": True}


@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)) -> UserOut:
  return user_out(user)
