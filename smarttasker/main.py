from __future__ import annotations

import logging
from time import monotonic

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from smarttasker import services
from smarttasker.ai.client import ModelApiError
from smarttasker.config import settings
from smarttasker.metrics import runtime_metrics
from smarttasker.routers.auth import router as auth_router
from smarttasker.routers.chat import router as chat_router
from smarttasker.routers.notifications import router as notifications_router
from smarttasker.routers.system import router as system_router
from smarttasker.routers.tasks import router as tasks_router
from smarttasker.routers.users import router as users_router

logging.basicConfig(
  level=getattr(logging, settings.log_level.upper(), logging.INFO),
  format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
  title="SmartTasker API",
  version="0.1.0",
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)


@app.exception_handler(ModelApiError)
async def _model_api_error_handler(_, exc: ModelApiError) -> JSONResponse:
  return JSONResponse(
    status_code=502,
    content={"detail": {"message": exc.message, "statusCode": exc.status_code, "errorType": exc.error_type}},
  )


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_origin_regex=settings.cors_origin_regex,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_host_list())

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(tasks_router)
app.include_router(notifications_router)
app.include_router(chat_router)
app.include_router(system_router)


@app.middleware("http")
async def _request_metrics_middleware(request, call_next):
  start = monotonic()
  response = await call_next(request)
  elapsed_ms = (monotonic() - start) * 1000.0
  runtime_metrics.observe_request(response.status_code, elapsed_ms)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  response.headers.setdefault("X-Frame-Options", "DENY")
  response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
  return response


def _is_test_db() -> bool:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  return "test" in db_name


@app.on_event("startup")
async def _startup() -> None:
  if _is_test_db():
    return
  if not settings.app_secret or settings.app_secret.strip().lower() in {"dev-secret-change-me", "replace_with_strong_random_secret"}:
    raise RuntimeError("APP_SECRET is required and must not be a placeholder")
  services.mailer.start_retry_loop()
  if settings.due_monitor_enabled:
    services.monitor.start()
  logger.info("SmartTasker API started (env=%s, version=%s)", settings.app_env, settings.app_version)


@app.on_event("shutdown")
async def _shutdown() -> None:
  await services.monitor.stop()
  await services.mailer.stop_retry_loop()
  await services.runner.drain()
