"""Store-backed, epoch-aligned window rate limiter.

The limiter protects paid external calls. Counting lives in the
``request_limits`` table so separate processes share one counter per key.

Store errors are handled according to a :class:`FailPolicy`:

- ``FailPolicy.OPEN`` (default) logs the error and admits the call. The
  limiter caps cost and abuse; it does not provide hard guarantees.
- ``FailPolicy.CLOSED`` denies the call instead.

Concurrent callers racing on one key may over-admit by at most the number
of racers. A racing first insert hits the ``(key, window_start)`` unique
constraint and is handled as a store error.
"""
from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon.config import get_settings
from recon.models import RequestLimit
from recon.utils import as_utc, utc_now

log = logging.getLogger(__name__)

DEFAULT_ROUTE_LIMIT = 5


class FailPolicy(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime


def window_bounds(now: datetime, window_ms: int) -> tuple[datetime, datetime]:
    """Return ``(window_start, reset_at)`` for the epoch-aligned window holding *now*."""
    now_ms = int(as_utc(now).timestamp() * 1000)
    start_ms = (now_ms // window_ms) * window_ms
    start = datetime.fromtimestamp(start_ms / 1000, tz=UTC)
    return start, start + timedelta(milliseconds=window_ms)


def check_rate_limit(
    session: Session,
    key: str,
    limit: int,
    window_ms: int,
    *,
    now: datetime | None = None,
    policy: FailPolicy = FailPolicy.OPEN,
) -> RateLimitResult:
    """Count one call against *key* and report whether it is permitted."""
    if limit <= 0 or window_ms <= 0:
        raise ValueError("limit and window_ms must be positive")
    window_start, reset_at = window_bounds(now or utc_now(), window_ms)

    try:
        row = session.execute(
            select(RequestLimit).where(
                RequestLimit.key == key,
                RequestLimit.window_start == window_start,
            )
        ).scalars().first()

        if row is None:
            session.add(RequestLimit(key=key, window_start=window_start, window_ms=window_ms, count=1))
            session.commit()
            return RateLimitResult(allowed=True, remaining=max(0, limit - 1), reset_at=reset_at)

        current = row.count
        if current >= limit:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

        session.execute(
            update(RequestLimit)
            .where(RequestLimit.id == row.id)
            .values(count=RequestLimit.count + 1)
        )
        session.commit()
        return RateLimitResult(allowed=True, remaining=max(0, limit - current - 1), reset_at=reset_at)
    except SQLAlchemyError as exc:
        session.rollback()
        if policy is FailPolicy.CLOSED:
            log.error("Rate limit store error for key=%s, failing closed: %s", key, exc)
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)
        log.warning("Rate limit store error for key=%s, failing open: %s", key, exc)
        return RateLimitResult(allowed=True, remaining=max(0, limit - 1), reset_at=reset_at)


def policy_for(fail_closed: bool) -> FailPolicy:
    return FailPolicy.CLOSED if fail_closed else FailPolicy.OPEN


# ---------------------------------------------------------------------------
# Usage statistics
# ---------------------------------------------------------------------------


def _route_of(key: str) -> str:
    return key.split(":", 1)[0]


def rate_limit_stats(
    session: Session,
    hours: int = 24,
    *,
    limits: dict[str, int] | None = None,
    now: datetime | None = None,
) -> dict:
    """Summarize limiter usage over the last *hours*.

    A window counts as a hit when its count reached the route's configured
    limit (*limits*, defaulting to ``Settings.route_limits()``).
    """
    if limits is None:
        limits = get_settings().route_limits()
    cutoff = (now or utc_now()) - timedelta(hours=hours)
    rows = session.execute(
        select(RequestLimit).where(RequestLimit.window_start >= cutoff)
    ).scalars().all()

    per_route: dict[str, dict[str, int]] = defaultdict(lambda: {"requests": 0, "hits": 0})
    total = hits = 0
    near_limit: list[dict] = []
    for row in rows:
        route = _route_of(row.key)
        limit = limits.get(route, DEFAULT_ROUTE_LIMIT)
        total += row.count
        per_route[route]["requests"] += row.count
        if row.count >= limit:
            per_route[route]["hits"] += 1
            hits += 1
        if row.count >= limit * 0.8:
            near_limit.append({
                "key": row.key,
                "count": row.count,
                "limit": limit,
                "window_start": as_utc(row.window_start).isoformat(),
            })

    top = sorted(
        ({"endpoint": route, **stats} for route, stats in per_route.items()),
        key=lambda item: item["requests"],
        reverse=True,
    )[:10]
    near_limit.sort(key=lambda item: item["window_start"], reverse=True)
    return {
        "total_requests": total,
        "rate_limit_hits": hits,
        "top_endpoints": top,
        "recent_hits": near_limit[:20],
    }
