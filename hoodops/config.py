import os
from datetime import date

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


def _get_date(name: str, default: date) -> date:
    raw = os.getenv(name, default.isoformat()).strip()
    try:
        return date.fromisoformat(raw)
    except Exception:
        return default


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./hoodops.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0").strip()

    BUSINESS_TIME_ZONE = os.getenv("BUSINESS_TIME_ZONE", "America/Vancouver").strip()
    SERVICE_DAY_CUTOFF_HOUR = _get_int("SERVICE_DAY_CUTOFF_HOUR", 3)

    PAYROLL_BASE_START_DATE = _get_date("PAYROLL_BASE_START_DATE", date(2024, 10, 3))
    PAYROLL_PERIOD_DAYS = _get_int("PAYROLL_PERIOD_DAYS", 14)
    PAYROLL_PAYDAY_OFFSET_DAYS = _get_int("PAYROLL_PAYDAY_OFFSET_DAYS", 3)
    DEFAULT_HOURLY_RATE = _get_float("DEFAULT_HOURLY_RATE", 18.0)

    DEFAULT_JOB_HOURS = _get_float("DEFAULT_JOB_HOURS", 4.0)
    FALLBACK_JOB_HOURS = _get_float("FALLBACK_JOB_HOURS", 2.5)
    ACTUAL_SERVICE_MAX_MINUTES = _get_int("ACTUAL_SERVICE_MAX_MINUTES", 24 * 60)
    DURATION_REVIEW_BUFFER_HOURS = _get_float("DURATION_REVIEW_BUFFER_HOURS", 1.5)

    DEPOT_RETURN_GAP_HOURS = _get_float("DEPOT_RETURN_GAP_HOURS", 2.0)
    TRAVEL_CACHE_TTL_DAYS = _get_int("TRAVEL_CACHE_TTL_DAYS", 90)

    GST_RATE = _get_float("GST_RATE", 0.05)
    INVOICE_OVERDUE_AFTER_DAYS = _get_int("INVOICE_OVERDUE_AFTER_DAYS", 14)
    ITEMS_PER_PAGE = _get_int("ITEMS_PER_PAGE", 7)
    ESTIMATES_PER_PAGE = _get_int("ESTIMATES_PER_PAGE", 10)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
