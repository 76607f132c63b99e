from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.pos import router as pos_router
from .config import settings
from .db import close_pools
from .deps import get_store
from .errors import CheckoutError
from .logs import json_log

app = FastAPI(title="RetailPOS Checkout API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


@app.exception_handler(CheckoutError)
def _checkout_error(req: Request, exc: CheckoutError):
    content = exc.to_dict()
    content["request_id"] = _current_request_id(req)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    content = {"detail": "constraint violation"}
    if settings.is_dev:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    content = {"detail": "invalid reference"}
    if settings.is_dev:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.is_dev and hasattr(exc, "errors"):
        content["errors"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.is_dev:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not path.startswith("/health"):
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(pos_router)


@app.on_event("startup")
def _startup():
    # Fails fast when the configured store may not run here (e.g. simulation in production).
    store = get_store()
    try:
        store.ping()
        json_log("info", "startup.store_ready", env=settings.env, store=store.name, version=settings.api_version)
    except Exception as exc:
        json_log("warning", "startup.store_probe_failed", env=settings.env, store=store.name, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pools()


def _store_health():
    try:
        store = get_store()
        store.ping()
        return store.name, True, None
    except Exception as exc:
        return settings.store_backend, False, str(exc)


def _health_body(req: Request, status: str, store_name: str, store_ok: bool) -> dict:
    return {
        "status": status,
        "env": settings.env,
        "store": store_name,
        "store_status": "ok" if store_ok else "down",
        # Simulated commits are not durable; clients should show a non-production banner.
        "simulated": store_name == "simulation",
        "service": "retailpos-checkout",
        "version": settings.api_version,
        "request_id": _current_request_id(req),
    }


@app.get("/health")
def health(req: Request):
    name, ok, err = _store_health()
    if not ok:
        content = _health_body(req, "degraded", name, False)
        content["started_at"] = STARTED_AT_UTC.isoformat()
        if settings.is_dev:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    content = _health_body(req, "ok", name, True)
    content["started_at"] = STARTED_AT_UTC.isoformat()
    return content


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": "retailpos-checkout",
        "request_id": _current_request_id(req),
    }


@app.get("/health/ready")
def health_ready(req: Request):
    name, ok, err = _store_health()
    if not ok:
        content = _health_body(req, "degraded", name, False)
        if settings.is_dev:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return _health_body(req, "ready", name, True)


@app.get("/meta")
def meta():
    return {
        "service": "retailpos-checkout",
        "version": settings.api_version,
        "env": settings.env,
        "store": settings.store_backend,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
