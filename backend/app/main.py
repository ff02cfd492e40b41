import os
import logging
import time
import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from app.db import models  # noqa: F401
from app.api.admin_security import router as admin_security_router
from app.api.auth import router as auth_router
from app.core.admin_sync import parse_admin_emails, sync_admin_users
from app.core.api_response import error_response_payload, get_request_id, success_response_payload
from app.core.metrics import increment_counter, prometheus_text, snapshot_metrics
from app.core.security import require_permission
from app.db.base import Base
from app.db.models.user import User
from app.db.session import SessionLocal, engine
from app.services.housekeeping import run_housekeeping_loop

logger = logging.getLogger(__name__)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

UNMETERED_PATHS = {"/metrics", "/metrics/prometheus", "/health"}
# Statuses the login surface uses to refuse a caller; logged louder than the rest.
REFUSAL_STATUSES = {401, 403, 423, 429}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()] or ["*"]


def _bootstrap_admins() -> None:
    admin_emails = parse_admin_emails(os.getenv("ADMIN_EMAILS", ""))
    admin_password = os.getenv("ADMIN_PASSWORD")
    if not admin_emails or not admin_password:
        return
    db = SessionLocal()
    try:
        result = sync_admin_users(db, admin_emails, admin_password)
    finally:
        db.close()
    logger.info("admin_sync_done result=%s", result)


async def _stop_task(task: asyncio.Task, stop_event: asyncio.Event) -> None:
    stop_event.set()
    try:
        await asyncio.wait_for(task, timeout=3)
    except asyncio.TimeoutError:
        task.cancel()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if _env_flag("DB_CREATE_ALL", "true"):
        Base.metadata.create_all(bind=engine)
    _bootstrap_admins()

    housekeeping: tuple[asyncio.Task, asyncio.Event] | None = None
    if _env_flag("HOUSEKEEPING_ENABLED", "true"):
        stop_event = asyncio.Event()
        housekeeping = (asyncio.create_task(run_housekeeping_loop(stop_event)), stop_event)

    yield

    if housekeeping is not None:
        await _stop_task(*housekeeping)


app = FastAPI(title="Rentverse Security API", lifespan=lifespan)
app.include_router(auth_router)
app.include_router(admin_security_router)

_origins = _cors_origins()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    # Browsers refuse credentialed responses for a wildcard origin.
    allow_credentials="*" not in _origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["Retry-After", "X-Request-ID"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    request.state.request_id = request_id
    started_at = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started_at) * 1000
    response.headers["X-Request-ID"] = request_id

    path = request.url.path
    if path not in UNMETERED_PATHS:
        increment_counter("http_requests_total", method=request.method.upper(), path=path, status=str(response.status_code))
    level = logging.WARNING if response.status_code in REFUSAL_STATUSES else logging.INFO
    logger.log(
        level,
        "http_request request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        path,
        response.status_code,
        duration_ms,
    )
    return response


def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details=None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    increment_counter("http_errors_total", code=str(status_code), path=request.url.path, method=request.method.upper())
    return JSONResponse(
        status_code=status_code,
        content=error_response_payload(request, code=code, message=message, details=details),
        headers=headers,
    )


def _detail_message(detail) -> str:
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict) and isinstance(detail.get("message"), str):
        return detail["message"]
    return "Request failed"


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(
        request,
        exc.status_code,
        code=f"http_{exc.status_code}",
        message=_detail_message(exc.detail),
        details=exc.detail,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(request, 422, code="validation_error", message="Validation error", details=exc.errors())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error request_id=%s", get_request_id(request), exc_info=exc)
    return _error_response(request, 500, code="internal_error", message="Internal server error")


@app.get("/health")
def health(request: Request):
    return {"ok": True, "status": "ok", "request_id": get_request_id(request)}


@app.get("/metrics")
def metrics(request: Request, _: User = Depends(require_permission("metrics.view"))):
    return success_response_payload(request, data={"counters": snapshot_metrics()})


@app.get("/metrics/prometheus")
def metrics_prometheus():
    return PlainTextResponse(content=prometheus_text(), media_type="text/plain; version=0.0.4; charset=utf-8")
