from __future__ import annotations

import asyncio
import logging
import os
import secrets

from sqlalchemy import select

from smarttasker.db import SessionLocal
from smarttasker.models import User
from smarttasker.security import hash_password

logger = logging.getLogger(__name__)

ADMIN_EMAIL = "admin@smarttasker.local"
MEMBER_EMAIL = "member@smarttasker.local"


def _bootstrap_password(env_key: str) -> tuple[str, bool]:
  configured = (os.getenv(env_key) or "").strip()
  if configured:
    return configured, False
  return secrets.token_urlsafe(14), True


async def seed() -> list[str]:
  """Create the bootstrap admin and member accounts if they are missing."""
  created: list[str] = []
  async with SessionLocal() as db:
    for email, name, role, env_key in (
      (ADMIN_EMAIL, "Admin", "admin", "SEED_ADMIN_PASSWORD"),
      (MEMBER_EMAIL, "Member", "team_member", "SEED_MEMBER_PASSWORD"),
    ):
      res = await db.execute(select(User).where(User.email == email))
      if res.scalar_one_or_none():
        continue
      password, generated = _bootstrap_password(env_key)
      db.add(User(email=email, name=name, role=role, password_hash=hash_password(password)))
      created.append(f"{email}={password} (generated={str(generated).lower()})")
    await db.commit()
  return created


if __name__ == "__main__":
  logging.basicConfig(level=logging.INFO)
  for line in asyncio.run(seed()):
    logger.info("bootstrap credentials: %s", line)
