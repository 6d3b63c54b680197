from importlib.metadata import PackageNotFoundError, version

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

import redis

from .api import router as billing_router
from .config import settings
from .db import Base, SessionLocal, engine, run_schema_migrations
from .observability import configure_logging, request_tracing_middleware
from .request_context import actor_binding_middleware
from .schedule_api import router as schedule_router

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


def _package_version() -> str:
    try:
        return version("hoodops")
    except PackageNotFoundError:
        return "0.0.0"


def _prepare_database() -> None:
    run_schema_migrations()
    if settings.DATABASE_URL.startswith("sqlite") or settings.DB_AUTO_CREATE_ALL:
        Base.metadata.create_all(bind=engine)


def _check_database() -> str:
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        return "error"
    return "ok"


def _check_redis() -> str:
    # Redis is optional; an unset URL is not a readiness failure.
    url = (settings.REDIS_URL or "").strip()
    if not url:
        return "skipped"
    try:
        redis.from_url(url, socket_connect_timeout=1).ping()
    except Exception:
        return "error"
    return "ok"


_prepare_database()
configure_logging()

app = FastAPI(
    title="HoodOps",
    description="Back office for kitchen exhaust cleaning: clients, invoices, scheduling and payroll",
    version=_package_version(),
)


@app.middleware("http")
async def bind_actor(request: Request, call_next):
    return await actor_binding_middleware(request, call_next)


@app.middleware("http")
async def apply_security_headers(request: Request, call_next):
    response = await call_next(request)
    if settings.SECURITY_HEADERS_ENABLED:
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def trace_request(request: Request, call_next):
    return await request_tracing_middleware(request, call_next)


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    checks = {"db": _check_database(), "redis": _check_redis()}
    if checks["db"] != "ok":
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
    return {"status": "ready", "checks": checks}


app.include_router(billing_router)
app.include_router(schedule_router)
