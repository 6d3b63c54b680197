import hashlib
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .config import settings
from .models import Schedule, TravelTimeCache, utc_now_naive

logger = structlog.get_logger("hoodops.travel_time")

_ABBREVIATIONS = (
    ("st", "street"),
    ("ave", "avenue"),
    ("dr", "drive"),
    ("rd", "road"),
    ("blvd", "boulevard"),
    ("crt", "court"),
    ("ct", "court"),
    ("pl", "place"),
    ("cres", "crescent"),
    ("hwy", "highway"),
)
_ABBREVIATION_PATTERNS = [(re.compile(rf"\b{short}\b"), full) for short, full in _ABBREVIATIONS]
_WHITESPACE = re.compile(r"\s+")

UNABLE_TO_ESTIMATE = "Unable to estimate"


def normalize_address(address: str) -> str:
    value = (address or "").strip().lower()
    for pattern, full in _ABBREVIATION_PATTERNS:
        value = pattern.sub(full, value)
    return _WHITESPACE.sub(" ", value)


def departure_bucket(departure: datetime) -> str:
    weekday = (departure.weekday() + 1) % 7
    return f"w{weekday}|h{departure.hour}"


def pair_hash(origin: str, destination: str, departure: datetime) -> str:
    key = f"{normalize_address(origin)}|{normalize_address(destination)}|{departure_bucket(departure)}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def is_self_pair(origin: str, destination: str) -> bool:
    return normalize_address(origin) == normalize_address(destination)


def routing_start(start_dt: datetime) -> datetime:
    """Timeline position of a job: early-morning jobs close out the service day."""
    if start_dt.hour < settings.SERVICE_DAY_CUTOFF_HOUR:
        return start_dt + timedelta(days=1)
    return start_dt


def _sanitize(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, round(number, 1))


@dataclass
class RoutePoint:
    label: str
    address: str
    departure: datetime
    kind: str
    job_id: int | None = None


@dataclass
class RouteSegment:
    from_label: str
    to_label: str
    origin: str
    destination: str
    departure: datetime
    from_kind: str
    to_kind: str
    from_job_id: int | None = None
    to_job_id: int | None = None

    @property
    def hash(self) -> str:
        return pair_hash(self.origin, self.destination, self.departure)


@dataclass
class DayRoute:
    day: date
    is_partial: bool
    segments: list[RouteSegment] = field(default_factory=list)


def build_day_route(day: date, jobs: list[Schedule], depot_address: str | None) -> DayRoute:
    """Route of one technician over one service day.

    The route runs depot -> jobs -> depot when a depot is known. An idle gap
    of at least ``DEPOT_RETURN_GAP_HOURS`` between two jobs sends the
    technician back to the depot in between. Segments between identical
    addresses are dropped.
    """
    depot = (depot_address or "").strip() or None
    route = DayRoute(day=day, is_partial=depot is None)
    if not jobs:
        return route

    stops = []
    for job in sorted(jobs, key=lambda j: (routing_start(j.start_dt), j.id or 0)):
        start = routing_start(job.start_dt)
        end = start + timedelta(hours=max(float(job.hours or 0), 0))
        stops.append((job, start, end))

    points: list[RoutePoint] = []
    if depot:
        points.append(RoutePoint("Depot", depot, stops[0][1], "depot"))

    gap = timedelta(hours=settings.DEPOT_RETURN_GAP_HOURS)
    for idx, (job, start, end) in enumerate(stops):
        points.append(RoutePoint(job.job_title or "Job", job.location, end, "job", job.id))
        if depot and idx < len(stops) - 1:
            next_start = stops[idx + 1][1]
            if next_start - end >= gap:
                points.append(RoutePoint("Depot", depot, end, "depot"))
                points.append(RoutePoint("Depot", depot, next_start, "depot"))

    if depot:
        points.append(RoutePoint("Depot", depot, stops[-1][2], "depot"))

    for origin, destination in zip(points, points[1:]):
        if is_self_pair(origin.address, destination.address):
            continue
        route.segments.append(
            RouteSegment(
                from_label=origin.label,
                to_label=destination.label,
                origin=origin.address,
                destination=destination.address,
                departure=origin.departure,
                from_kind=origin.kind,
                to_kind=destination.kind,
                from_job_id=origin.job_id,
                to_job_id=destination.job_id,
            )
        )
    return route


def lookup_cached_estimates(
    db: Session, hashes: list[str], now: datetime | None = None
) -> dict[str, TravelTimeCache]:
    unique = sorted(set(hashes))
    if not unique:
        return {}
    current = now or utc_now_naive()
    rows = db.execute(
        select(TravelTimeCache).where(
            TravelTimeCache.pair_hash.in_(unique),
            TravelTimeCache.expires_at > current,
        )
    ).scalars().all()
    return {row.pair_hash: row for row in rows}


def summarize_routes(db: Session, routes: list[DayRoute], now: datetime | None = None) -> list[dict]:
    cached = lookup_cached_estimates(
        db, [segment.hash for route in routes for segment in route.segments], now=now
    )

    summaries = []
    missing = 0
    for route in routes:
        segments = []
        for segment in route.segments:
            estimate = cached.get(segment.hash)
            if estimate is None:
                missing += 1
            segments.append(
                {
                    "from_label": segment.from_label,
                    "to_label": segment.to_label,
                    "typical_minutes": _sanitize(estimate.typical_minutes) if estimate else 0.0,
                    "km": _sanitize(estimate.estimated_km) if estimate else 0.0,
                    "travel_notes": (estimate.travel_notes if estimate else UNABLE_TO_ESTIMATE),
                    "from_kind": segment.from_kind,
                    "to_kind": segment.to_kind,
                    "from_job_id": segment.from_job_id,
                    "to_job_id": segment.to_job_id,
                }
            )
        summaries.append(
            {
                "date": route.day,
                "total_travel_minutes": round(sum(s["typical_minutes"] for s in segments), 1),
                "total_travel_km": round(sum(s["km"] for s in segments), 1),
                "segments": segments,
                "is_partial": route.is_partial,
            }
        )

    if missing:
        logger.info("travel_estimates_missing", segments=missing)
    return summaries


def day_travel_summary(
    db: Session, day: date, jobs: list[Schedule], depot_address: str | None
) -> dict:
    return summarize_routes(db, [build_day_route(day, jobs, depot_address)])[0]


def import_estimates(db: Session, estimates: list[dict], now: datetime | None = None) -> int:
    """Upsert externally computed drive times into the cache.

    Each estimate carries ``origin``, ``destination``, ``departure``,
    ``typical_minutes`` and ``estimated_km`` (``travel_notes`` optional).
    """
    current = now or utc_now_naive()
    expires_at = current + timedelta(days=settings.TRAVEL_CACHE_TTL_DAYS)

    by_hash = {}
    for estimate in estimates:
        origin = (estimate.get("origin") or "").strip()
        destination = (estimate.get("destination") or "").strip()
        if not origin or not destination:
            raise ValueError("origin and destination are required")
        by_hash[pair_hash(origin, destination, estimate["departure"])] = (origin, destination, estimate)

    existing = {
        row.pair_hash: row
        for row in db.execute(
            select(TravelTimeCache).where(TravelTimeCache.pair_hash.in_(list(by_hash)))
        ).scalars()
    }
    for key, (origin, destination, estimate) in by_hash.items():
        row = existing.get(key)
        if row is None:
            row = TravelTimeCache(pair_hash=key)
            db.add(row)
        row.origin_address = origin
        row.destination_address = destination
        row.typical_minutes = _sanitize(estimate.get("typical_minutes"))
        row.estimated_km = _sanitize(estimate.get("estimated_km"))
        row.travel_notes = (estimate.get("travel_notes") or None)
        row.expires_at = expires_at

    db.commit()
    logger.info("travel_estimates_imported", count=len(by_hash))
    return len(by_hash)


def purge_expired_estimates(db: Session, now: datetime | None = None) -> int:
    current = now or utc_now_naive()
    result = db.execute(delete(TravelTimeCache).where(TravelTimeCache.expires_at <= current))
    db.commit()
    return int(result.rowcount or 0)
