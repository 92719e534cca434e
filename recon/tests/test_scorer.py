"""Tests for health scoring and targeting priority."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from recon.models import (
    Account, Base, Contact, Interaction, Opportunity, Signal, SignalAction, SourceDocument,
)
from recon.scorer import (
    compute_health_score,
    compute_target_score,
    get_account_targets,
    get_health_scores,
    group_by_account,
    health_band,
    target_band,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def days_ago(n: float) -> datetime:
    return NOW - timedelta(days=n)


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


@pytest.fixture()
def account() -> Account:
    return Account(id=1, slug="mercy", name="Mercy Health")


def _health(account, interactions=(), opportunities=(), signals=(), actions=(), contacts=()):
    return compute_health_score(
        account, list(interactions), list(opportunities), list(signals),
        list(actions), list(contacts), now=NOW,
    )


# ---------------------------------------------------------------------------
# Tests: health bands and bounds
# ---------------------------------------------------------------------------


class TestHealthBand:
    @pytest.mark.parametrize("score,band", [
        (100, "strong"), (70, "strong"), (69, "watch"), (40, "watch"), (39, "at_risk"), (0, "at_risk"),
    ])
    def test_boundaries(self, score, band):
        assert health_band(score) == band


class TestComputeHealthScore:
    def test_empty_account_is_clamped_to_zero(self, account):
        h = _health(account)
        assert h.overall_score == 0
        assert h.band == "at_risk"
        assert h.components == {"engagement": 0, "opportunity": 0, "signal": 0, "risk": 5}
        assert h.reasons == ["No open/in-progress opportunities (risk)"]

    def test_fully_engaged_account(self, account):
        h = _health(
            account,
            interactions=[Interaction(channel="call", occurred_at=days_ago(2))],
            actions=[SignalAction(signal_id=1, action_category="outreach", action_description="x",
                                  created_at=days_ago(3))],
            opportunities=[
                Opportunity(title=f"Opp {i}", status="open", created_at=days_ago(5)) for i in range(4)
            ],
            signals=[
                Signal(severity="high", category="ai", summary="a", created_at=days_ago(1)),
                Signal(severity="high", category="ai", summary="b", created_at=days_ago(1)),
                Signal(severity="high", category="ai", summary="c", created_at=days_ago(1)),
                Signal(severity="medium", category="ai", summary="d", created_at=days_ago(1)),
                Signal(severity="low", category="ai", summary="e", created_at=days_ago(1)),
            ],
            contacts=[Contact(full_name="Pat", seniority="exec")],
        )
        assert h.components == {"engagement": 30, "opportunity": 30, "signal": 15, "risk": 0}
        assert h.overall_score == 75
        assert h.band == "strong"
        assert h.reasons == [
            "Recent interactions in last 14 days",
            "Signal actions generated in last 14 days",
            "3 open/in-progress opportunities",
            "Opportunities updated/created in last 30 days",
            "3 high-severity signals in last 30 days",
            "1 medium-severity signal in last 30 days",
            "Low-severity signals detected",
        ]

    def test_older_engagement_scores_lower(self, account):
        h = _health(
            account,
            interactions=[Interaction(channel="email", occurred_at=days_ago(20))],
            actions=[SignalAction(signal_id=1, action_category="c", action_description="d",
                                  created_at=days_ago(25))],
        )
        assert h.components["engagement"] == 15
        assert "Interactions in last 30 days" in h.reasons
        assert "Signal actions in last 30 days" in h.reasons

    def test_opportunity_recency_uses_updated_at(self, account):
        stale = Opportunity(title="Old", status="closed_won", created_at=days_ago(90), updated_at=days_ago(10))
        h = _health(account, opportunities=[stale])
        assert h.components["opportunity"] == 6
        assert h.reasons[0] == "Opportunities updated/created in last 30 days"

    def test_single_open_opportunity_reason_is_singular(self, account):
        h = _health(account, opportunities=[Opportunity(title="A", status="in_progress", created_at=days_ago(90))])
        assert h.components["opportunity"] == 8
        assert h.reasons == ["1 open/in-progress opportunity"]

    def test_old_signals_ignored(self, account):
        h = _health(account, signals=[Signal(severity="high", category="ai", summary="x", created_at=days_ago(45))])
        assert h.components["signal"] == 0

    def test_risk_rules(self, account):
        h = _health(
            account,
            interactions=[Interaction(channel="call", occurred_at=days_ago(90))],
            contacts=[Contact(full_name="Sam", seniority="manager", role_in_deal="influencer")],
        )
        assert h.components["risk"] == 20
        assert h.reasons == [
            "No interactions in last 60 days (risk)",
            "No open/in-progress opportunities (risk)",
            "No executive/champion contacts (risk)",
        ]

    def test_champion_or_decision_maker_counts_as_senior(self, account):
        for role in ("champion", "decision_maker"):
            h = _health(account, contacts=[Contact(full_name="Sam", seniority="staff", role_in_deal=role)])
            assert "No executive/champion contacts (risk)" not in h.reasons

    def test_null_timestamps_skipped(self, account):
        h = _health(
            account,
            interactions=[Interaction(channel="call", occurred_at=None)],
            signals=[Signal(severity="high", category="ai", summary="x", created_at=None)],
        )
        assert h.components["engagement"] == 0
        assert h.components["signal"] == 0

    def test_score_always_within_bounds(self, account):
        h = _health(
            account,
            interactions=[Interaction(channel="call", occurred_at=days_ago(1))] * 10,
            actions=[SignalAction(signal_id=1, action_category="c", action_description="d",
                                  created_at=days_ago(1))] * 10,
            opportunities=[Opportunity(title="o", status="open", created_at=days_ago(1))] * 10,
            signals=[Signal(severity=s, category="ai", summary="x", created_at=days_ago(1))
                     for s in ("high", "medium", "low") * 5],
            contacts=[Contact(full_name="P", seniority="exec")],
        )
        assert 0 <= h.overall_score <= 100
        assert h.components["engagement"] <= 30
        assert h.components["opportunity"] <= 30
        assert h.components["signal"] <= 20

    def test_every_reason_backed_by_component(self, account):
        h = _health(
            account,
            interactions=[Interaction(channel="call", occurred_at=days_ago(20))],
            signals=[Signal(severity="medium", category="ai", summary="x", created_at=days_ago(2))],
        )
        assert h.components == {"engagement": 10, "opportunity": 0, "signal": 3, "risk": 5}
        assert len(h.reasons) == 3
        assert h.overall_score == 8


# ---------------------------------------------------------------------------
# Tests: targeting
# ---------------------------------------------------------------------------


class TestTargetBand:
    @pytest.mark.parametrize("score,band", [(7, "hot"), (6, "warm"), (3, "warm"), (2, "cold"), (0, "cold")])
    def test_boundaries(self, score, band):
        assert target_band(score) == band


class TestComputeTargetScore:
    def test_all_rules(self, account):
        t = compute_target_score(
            account,
            opportunities=[Opportunity(title=f"o{i}", status="open") for i in range(5)],
            interactions=[
                Interaction(channel="call", occurred_at=days_ago(3), next_step_due_at=days_ago(1)),
                Interaction(channel="email", occurred_at=days_ago(40), next_step_due_at=NOW + timedelta(days=3)),
            ],
            signals=[Signal(severity="low", category="ai", summary="x", created_at=days_ago(2))],
            documents=[SourceDocument(source_type="news", source_url="u", content_hash="h", crawled_at=days_ago(1))],
            now=NOW,
        )
        assert t.score == 9 + 2 + 1 + 1 + 2 + 1
        assert t.band == "hot"
        assert t.reasons == [
            "3 open/in-progress opportunities",
            "Overdue next steps",
            "Upcoming next steps",
            "Recent interactions",
            "Recent signals (last 7 days)",
            "Recent news (last 7 days)",
        ]

    def test_far_future_next_step_not_upcoming(self, account):
        t = compute_target_score(
            account, [],
            [Interaction(channel="call", occurred_at=days_ago(90), next_step_due_at=NOW + timedelta(days=30))],
            [], [], now=NOW,
        )
        assert t.score == 0
        assert t.band == "cold"

    def test_website_documents_are_not_news(self, account):
        t = compute_target_score(
            account, [], [], [],
            [SourceDocument(source_type="website", source_url="u", content_hash="h", crawled_at=days_ago(1))],
            now=NOW,
        )
        assert t.reasons == []


# ---------------------------------------------------------------------------
# Tests: store-backed ranking
# ---------------------------------------------------------------------------


class TestRankings:
    def _seed(self, session):
        alpha = Account(slug="alpha", name="Alpha")
        beta = Account(slug="beta", name="Beta")
        gamma = Account(slug="gamma", name="Gamma")
        session.add_all([alpha, beta, gamma])
        session.flush()
        session.add_all([
            Opportunity(account_id=beta.id, title="Deal", status="open", created_at=days_ago(2)),
            Interaction(account_id=beta.id, channel="call", occurred_at=days_ago(1)),
            Signal(account_id=None, severity="high", category="ai", summary="orphan", created_at=days_ago(1)),
            Opportunity(account_id=None, title="Orphan", status="open", created_at=days_ago(1)),
        ])
        session.commit()
        return alpha, beta, gamma

    def test_health_sorted_by_score_then_name(self, session):
        self._seed(session)
        scores = get_health_scores(session, now=NOW)
        assert [s.slug for s in scores] == ["beta", "alpha", "gamma"]
        assert scores[0].overall_score == 20 + 8 + 6
        assert scores[1].overall_score == scores[2].overall_score == 0

    def test_targets_sorted_and_orphans_skipped(self, session):
        self._seed(session)
        targets = get_account_targets(session, now=NOW)
        assert [t.slug for t in targets] == ["beta", "alpha", "gamma"]
        assert targets[0].score == 3 + 1
        assert targets[1].score == 0

    def test_empty_store(self, session):
        assert get_health_scores(session, now=NOW) == []
        assert get_account_targets(session, now=NOW) == []

    def test_group_by_account_drops_null(self):
        rows = [Signal(account_id=1, severity="low", category="ai", summary="a"),
                Signal(account_id=None, severity="low", category="ai", summary="b")]
        grouped = group_by_account(rows)
        assert list(grouped) == [1]
