"""Tests for the store-backed window rate limiter and its usage stats."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from recon.config import get_settings
from recon.models import Base, RequestLimit
from recon.ratelimit import (
    FailPolicy,
    check_rate_limit,
    policy_for,
    rate_limit_stats,
    window_bounds,
)

NOW = datetime(2026, 3, 2, 12, 0, 30, tzinfo=UTC)
WINDOW_MS = 60_000


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def _broken_session() -> MagicMock:
    session = MagicMock()
    session.execute.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    return session


# ---------------------------------------------------------------------------
# Tests: window arithmetic
# ---------------------------------------------------------------------------


class TestWindowBounds:
    def test_epoch_aligned(self):
        start, reset = window_bounds(NOW, WINDOW_MS)
        assert start == datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)
        assert reset == start + timedelta(minutes=1)

    def test_same_window_for_any_instant_inside(self):
        a, _ = window_bounds(datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC), WINDOW_MS)
        b, _ = window_bounds(datetime(2026, 3, 2, 12, 0, 59, 999000, tzinfo=UTC), WINDOW_MS)
        assert a == b

    def test_naive_treated_as_utc(self):
        start, _ = window_bounds(NOW.replace(tzinfo=None), WINDOW_MS)
        assert start == datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Tests: check_rate_limit
# ---------------------------------------------------------------------------


class TestCheckRateLimit:
    def test_new_window_allows_with_remaining(self, session):
        result = check_rate_limit(session, "pipeline:1.2.3.4", 5, WINDOW_MS, now=NOW)
        assert result.allowed is True
        assert result.remaining == 4
        assert result.reset_at == datetime(2026, 3, 2, 12, 1, 0, tzinfo=UTC)
        row = session.execute(select(RequestLimit)).scalars().one()
        assert row.count == 1
        assert row.window_ms == WINDOW_MS

    def test_existing_window_increments(self, session):
        for _ in range(3):
            check_rate_limit(session, "k", 5, WINDOW_MS, now=NOW)
        result = check_rate_limit(session, "k", 5, WINDOW_MS, now=NOW)
        assert result.allowed is True
        assert result.remaining == 1
        session.expire_all()
        assert session.execute(select(RequestLimit.count)).scalar_one() == 4

    def test_exactly_limit_calls_allowed_per_window(self, session):
        results = [check_rate_limit(session, "k", 5, WINDOW_MS, now=NOW) for _ in range(7)]
        assert [r.allowed for r in results] == [True] * 5 + [False] * 2
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0, 0]

    def test_denied_call_does_not_increment(self, session):
        for _ in range(6):
            check_rate_limit(session, "k", 5, WINDOW_MS, now=NOW)
        session.expire_all()
        assert session.execute(select(RequestLimit.count)).scalar_one() == 5

    def test_new_window_resets(self, session):
        for _ in range(5):
            check_rate_limit(session, "k", 5, WINDOW_MS, now=NOW)
        assert check_rate_limit(session, "k", 5, WINDOW_MS, now=NOW).allowed is False

        later = NOW + timedelta(minutes=1)
        result = check_rate_limit(session, "k", 5, WINDOW_MS, now=later)
        assert result.allowed is True
        assert result.remaining == 4

    def test_keys_are_independent(self, session):
        for _ in range(5):
            check_rate_limit(session, "pipeline:a", 5, WINDOW_MS, now=NOW)
        assert check_rate_limit(session, "pipeline:a", 5, WINDOW_MS, now=NOW).allowed is False
        assert check_rate_limit(session, "pipeline:b", 5, WINDOW_MS, now=NOW).allowed is True

    def test_store_error_fails_open(self):
        session = _broken_session()
        result = check_rate_limit(session, "k", 5, WINDOW_MS, now=NOW)
        assert result.allowed is True
        assert result.remaining == 4
        session.rollback.assert_called_once()

    def test_store_error_fails_closed(self):
        session = _broken_session()
        result = check_rate_limit(session, "k", 5, WINDOW_MS, now=NOW, policy=FailPolicy.CLOSED)
        assert result.allowed is False
        assert result.remaining == 0
        assert result.reset_at == datetime(2026, 3, 2, 12, 1, 0, tzinfo=UTC)

    def test_invalid_arguments(self, session):
        with pytest.raises(ValueError):
            check_rate_limit(session, "k", 0, WINDOW_MS, now=NOW)
        with pytest.raises(ValueError):
            check_rate_limit(session, "k", 5, 0, now=NOW)

    def test_policy_for(self):
        assert policy_for(True) is FailPolicy.CLOSED
        assert policy_for(False) is FailPolicy.OPEN


# ---------------------------------------------------------------------------
# Tests: rate_limit_stats
# ---------------------------------------------------------------------------


class TestRateLimitStats:
    def _window(self, session, key, count, minutes_ago):
        start, _ = window_bounds(NOW - timedelta(minutes=minutes_ago), WINDOW_MS)
        session.add(RequestLimit(key=key, window_start=start, window_ms=WINDOW_MS, count=count))
        session.commit()

    def test_empty(self, session):
        stats = rate_limit_stats(session, 24, now=NOW)
        assert stats == {"total_requests": 0, "rate_limit_hits": 0, "top_endpoints": [], "recent_hits": []}

    def test_aggregates_by_endpoint(self, session):
        self._window(session, "pipeline:1.1.1.1", 5, 1)
        self._window(session, "pipeline:2.2.2.2", 2, 2)
        self._window(session, "auto-ingest:1.1.1.1", 2, 3)
        self._window(session, "pipeline:3.3.3.3", 5, 60 * 48)  # outside range

        stats = rate_limit_stats(session, 24, now=NOW)
        assert stats["total_requests"] == 9
        assert stats["rate_limit_hits"] == 2
        assert stats["top_endpoints"][0] == {"endpoint": "pipeline", "requests": 7, "hits": 1}
        assert stats["top_endpoints"][1] == {"endpoint": "auto-ingest", "requests": 2, "hits": 1}

    def test_recent_hits_near_limit_newest_first(self, session):
        self._window(session, "pipeline:a", 4, 10)
        self._window(session, "pipeline:b", 5, 1)
        self._window(session, "pipeline:c", 1, 2)

        hits = rate_limit_stats(session, 24, now=NOW)["recent_hits"]
        assert [h["key"] for h in hits] == ["pipeline:b", "pipeline:a"]
        assert hits[0]["limit"] == 5

    def test_hits_follow_explicit_limits(self, session):
        self._window(session, "pipeline:a", 3, 1)
        stats = rate_limit_stats(session, 24, limits={"pipeline": 3}, now=NOW)
        assert stats["rate_limit_hits"] == 1
        assert stats["recent_hits"][0]["limit"] == 3

    def test_default_limits_follow_settings(self, session, monkeypatch):
        monkeypatch.setenv("PIPELINE_RATE_LIMIT", "2")
        monkeypatch.setenv("AUTO_INGEST_RATE_LIMIT", "7")
        get_settings.cache_clear()
        try:
            assert get_settings().route_limits() == {"pipeline": 2, "auto-ingest": 7, "embed": 5}
            self._window(session, "pipeline:a", 2, 1)
            self._window(session, "auto-ingest:a", 2, 1)
            stats = rate_limit_stats(session, 24, now=NOW)
            assert stats["rate_limit_hits"] == 1
            assert [h["key"] for h in stats["recent_hits"]] == ["pipeline:a"]
        finally:
            get_settings.cache_clear()
