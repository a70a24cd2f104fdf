from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

_TEST_DB = Path(tempfile.gettempdir()) / "smarttasker_test.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB}"
os.environ["APP_ENV"] = "test"
os.environ["AI_PROVIDER"] = "local"
os.environ["REDIS_URL"] = ""
os.environ["EMAIL_DISABLED"] = "false"
os.environ["EMAIL_SEND_IN_DEVELOPMENT"] = "false"

from sqlalchemy import select  # noqa: E402

from smarttasker import services  # noqa: E402
from smarttasker.config import Settings, settings  # noqa: E402
from smarttasker.db import SessionLocal, engine  # noqa: E402
from smarttasker.email.service import EmailOptions  # noqa: E402
from smarttasker.main import app  # noqa: E402
from smarttasker.models import Base, User  # noqa: E402
from smarttasker.rate_limit import limiter  # noqa: E402
from smarttasker.security import hash_password  # noqa: E402

DEFAULT_PASSWORD = "password1234"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


def _refuse_non_test_db() -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. smarttasker_test)."
    )


@pytest.fixture
async def db():
  """Fresh schema for each test that touches the database."""
  _refuse_non_test_db()
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
    await conn.run_sync(Base.metadata.create_all)
  limiter.reset_prefix("")
  yield SessionLocal
  await services.runner.drain()
  await engine.dispose()


@pytest.fixture
async def client(db) -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c
  app.dependency_overrides.clear()


class FakeTransport:
  """Records outgoing mail; raises the queued errors first, or always_fail on every call."""

  def __init__(self, errors: list[BaseException] | None = None, *, always_fail: BaseException | None = None) -> None:
    self.errors = list(errors or [])
    self.always_fail = always_fail
    self.calls = 0
    self.sent: list[EmailOptions] = []

  async def send(self, *, from_addr: str, options: EmailOptions) -> None:
    self.calls += 1
    if self.always_fail is not None:
      raise self.always_fail
    if self.errors:
      raise self.errors.pop(0)
    self.sent.append(options)


def production_settings(**overrides) -> Settings:
  values = {"app_env": "production", "email_disabled": False, "email_send_in_development": False}
  values.update(overrides)
  return Settings(**values)


async def make_user(
  email: str,
  *,
  name: str | None = None,
  role: str = "team_member",
  password: str = DEFAULT_PASSWORD,
  active: bool = True,
  email_disabled: list[str] | None = None,
) -> str:
  async with SessionLocal() as s:
    u = User(
      email=email,
      name=name or email.split("@", 1)[0].title(),
      role=role,
      password_hash=hash_password(password),
      active=active,
      notification_prefs={"emailDisabled": list(email_disabled or [])},
    )
    s.add(u)
    await s.commit()
    return u.id


async def login(client: AsyncClient, email: str, password: str = DEFAULT_PASSWORD) -> dict:
  res = await client.post("/auth/login", json={"email": email, "password": password})
  assert res.status_code == 200, res.text
  cookie = res.headers.get("set-cookie")
  assert cookie and "st_session=" in cookie
  return res.json()


async def user_id_for(email: str) -> str:
  async with SessionLocal() as s:
    res = await s.execute(select(User).where(User.email == email))
    return res.scalar_one().id
