from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

SESSION_COOKIE_NAME = "st_session"
SESSION_TTL_DAYS = 7


def hash_password(password: str) -> str:
  return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
  try:
    return pwd_context.verify(password, password_hash)
  except ValueError:
    # Unknown or malformed hash.
    return False


def new_session_expires_at() -> datetime:
  return datetime.now(timezone.utc) + timedelta(days=SESSION_TTL_DAYS)


def temp_password() -> str:
  return secrets.token_urlsafe(12)
