import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root wherever uvicorn is started from
_PROJ_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJ_ROOT / ".env")

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlmodel import Session

from app.api.enrollments import router as enrollments_router
from app.api.payments import router as payments_router
from app.core.config import is_paystack_configured, settings
from app.core.database import engine, init_db, ping_db
from app.core.rate_limit import get_client_ip, limiter
from app.logging import setup_logging
from app.models import ErrorLog, SecurityLog

setup_logging(level=logging.INFO)
log = logging.getLogger("coursepay")


def _cors_origins_list() -> list[str]:
    if not settings.cors_origins or settings.cors_origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in settings.cors_origins.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    log.info("Paystack configured: %s", "yes" if is_paystack_configured() else "NO (set PAYSTACK_SECRET_KEY in .env)")
    yield


app = FastAPI(
    title="CoursePay API",
    description="Course checkout: payment verification and enrollment",
    lifespan=lifespan,
)
app.state.limiter = limiter


def _error_response(request: Request, status_code: int, detail: str, headers: dict | None = None) -> JSONResponse:
    rid = getattr(request.state, "request_id", None)
    body = {"error": detail, "status_code": status_code}
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    try:
        with Session(engine) as db:
            db.add(SecurityLog(event="rate_limit", ip=get_client_ip(request) or None, endpoint=request.url.path, detail=str(exc.detail)[:200]))
            db.commit()
    except Exception as e:
        log.warning("SecurityLog rate_limit write failed: %s", e)
    return _error_response(request, 429, "Too many requests. Please wait a minute.")


app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)


def _jsonable_errors(errs) -> list[dict]:
    """Pydantic error dicts may carry exception objects in ctx; keep only JSON-friendly keys."""
    return [{k: e.get(k) for k in ("type", "loc", "msg")} for e in errs]


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errs = exc.errors()
    log.warning(
        "Request validation error (422): path=%s method=%s detail=%s",
        request.url.path,
        request.method,
        errs,
    )
    first = errs[0] if errs else {}
    rid = getattr(request.state, "request_id", None)
    body = {"error": first.get("msg") or "Invalid request.", "status_code": 422, "detail": _jsonable_errors(errs)}
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=422, content=body)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error_response(request, exc.status_code, detail, getattr(exc, "headers", None))


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled exception: path=%s %s", request.url.path, exc, exc_info=exc)
    try:
        with Session(engine) as db:
            db.add(ErrorLog(
                user_id=None,
                endpoint=request.url.path,
                method=request.method,
                error_message=str(exc)[:2000],
                stack_trace="".join(traceback.format_exception(exc))[:10000],
            ))
            db.commit()
    except Exception as e:
        log.warning("ErrorLog write failed: %s", e)
    path = (request.url.path or "").strip()
    if path.startswith("/payments"):
        user_msg = "Something went wrong while processing the payment."
    else:
        user_msg = "Unexpected server error."
    return _error_response(request, 500, user_msg)


@app.middleware("http")
async def request_id_and_latency(request: Request, call_next):
    request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    start = time.perf_counter()
    response = await call_next(request)
    latency_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request.state.request_id
    log.info(
        "request_id=%s method=%s path=%s status=%s latency_ms=%.2f",
        request.state.request_id,
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(payments_router)
app.include_router(enrollments_router)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "database": "ok" if ping_db() else "error",
        "paystack_configured": is_paystack_configured(),
    }
