from __future__ import annotations

import logging
from time import monotonic

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from boardhook.config import settings
from boardhook.db import SessionLocal, create_all, engine
from boardhook.deps import build_services
from boardhook.errors import BoardhookError
from boardhook.metrics import runtime_metrics
from boardhook.retry import RetryExhausted
from boardhook.routers.mappings import router as mappings_router
from boardhook.routers.system_status import router as system_status_router
from boardhook.routers.webhooks import router as webhooks_router
from boardhook.trello.client import TrelloApiError
from boardhook.webhooks.registry import ReconcileReport

logging.basicConfig(
  level=getattr(logging, settings.log_level.upper(), logging.INFO),
  format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
# httpx logs every request URL at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

app = FastAPI(title="boardhook", version="0.1.0")


@app.exception_handler(BoardhookError)
async def _boardhook_error_handler(_, exc: BoardhookError) -> JSONResponse:
  if exc.status_code >= 500:
    logger.warning("%s: %s %s", exc.__class__.__name__, exc.message, exc.context)
  return JSONResponse(
    status_code=exc.status_code,
    content={"detail": {"message": exc.message, "error": exc.__class__.__name__, **exc.context}},
  )


@app.exception_handler(TrelloApiError)
async def _trello_api_error_handler(_, exc: TrelloApiError) -> JSONResponse:
  status_code = 503 if exc.retryable else 400
  return JSONResponse(
    status_code=status_code,
    content={"detail": {"message": exc.message, "statusCode": exc.status_code, "trello": exc.details}},
  )


app.include_router(webhooks_router)
app.include_router(mappings_router)
app.include_router(system_status_router)


@app.middleware("http")
async def _request_metrics_middleware(request, call_next):
  start = monotonic()
  response = await call_next(request)
  elapsed_ms = (monotonic() - start) * 1000.0
  runtime_metrics.observe_request(response.status_code, elapsed_ms)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  return response


def _check_settings() -> None:
  if settings.webhook_require_signature and not (settings.trello_api_secret or "").strip():
    raise RuntimeError("TRELLO_API_SECRET is required while WEBHOOK_REQUIRE_SIGNATURE is enabled")
  if settings.webhook_require_signature and not settings.callback_url():
    raise RuntimeError("PUBLIC_BASE_URL is required to verify webhook signatures")


@app.on_event("startup")
async def _startup() -> None:
  if getattr(app.state, "services", None) is not None:
    return
  _check_settings()
  if settings.db_auto_create:
    await create_all()
  services = build_services(settings, SessionLocal)
  app.state.services = services
  if settings.reconcile_on_startup:
    try:
      report: ReconcileReport = await services.registry.reconcile_with_upstream()
    except (RetryExhausted, TrelloApiError, BoardhookError) as e:
      # startup must not fail because Trello is down; the next mapping change reconciles again
      logger.warning("Startup webhook reconciliation failed: %s", e)
    else:
      logger.info("Startup webhook reconciliation: %s", report.as_dict())


@app.on_event("shutdown")
async def _shutdown() -> None:
  services = getattr(app.state, "services", None)
  if services is not None:
    await services.close()
  await engine.dispose()
