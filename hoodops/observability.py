import logging
import sys
import time
import uuid

import structlog
from fastapi import Request
from starlette.responses import JSONResponse

logger = structlog.get_logger("hoodops.http")

MASKED_FIELDS = ("phone", "email", "client_email", "contact_email")

_configured = False


def masking_processor(logger, method_name, event_dict):
    """Masks contact details like phone numbers and e-mails in logs."""
    for key in MASKED_FIELDS:
        raw = event_dict.get(key)
        if not raw:
            continue
        text = str(raw)
        event_dict[key] = f"{text[:3]}***{text[-2:]}" if len(text) > 5 else "***"
    return event_dict


def configure_logging(level: int = logging.INFO) -> None:
    """Route stdlib logging through structlog and emit one JSON object per line."""
    global _configured
    if _configured:
        return

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            masking_processor,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    for noisy in ("uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _configured = True


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


async def request_tracing_middleware(request: Request, call_next):
    request_id = (request.headers.get("x-request-id") or "").strip() or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("http_request_failed", duration_ms=_elapsed_ms(started))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    logger.info("http_request", status=response.status_code, duration_ms=_elapsed_ms(started))
    response.headers["X-Request-ID"] = request_id
    return response
