"""Deterministic account scoring: health and targeting priority.

Health
------
Four components, each a fixed rule table over an account's facts:

- **Engagement** (0-30): recency of interactions and signal actions.
- **Opportunity** (0-30): open/in-progress count and recent pipeline movement.
- **Signal** (0-20): severity mix of signals from the last 30 days.
- **Risk** (0-20): subtracted; stale engagement, empty pipeline, no senior contact.

``overall = clamp(engagement + opportunity + signal - risk, 0, 100)`` and the
band is ``strong`` (>= 70), ``watch`` (>= 40) or ``at_risk``. Every rule that
fires contributes exactly one reason string.

Targeting
---------
An additive priority score over open opportunities, next-step timing,
recent interactions, signals and news, banded ``hot`` (>= 7), ``warm`` (>= 3)
or ``cold``.

Both rankings sort by score descending, then name ascending.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Sequence, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from recon.models import (
    Account, Contact, Interaction, Opportunity, Signal, SignalAction, SourceDocument,
)
from recon.utils import as_utc, utc_now

OPEN_STATUSES = ("open", "in_progress")
SENIOR_ROLES = ("decision_maker", "champion")

RowT = TypeVar("RowT")


@dataclass
class HealthScore:
    account_id: int
    slug: str
    name: str
    overall_score: int
    band: str
    components: dict[str, int] = field(default_factory=dict)
    reasons: list[str] = field(default_factory=list)


@dataclass
class TargetScore:
    account_id: int
    slug: str
    name: str
    score: int
    band: str
    reasons: list[str] = field(default_factory=list)


def _plural(n: int, one: str, many: str) -> str:
    return one if n == 1 else many


def _within(ts: datetime | None, since: datetime) -> bool:
    return ts is not None and as_utc(ts) >= since


# ---------------------------------------------------------------------------
# Health components
# ---------------------------------------------------------------------------


def health_band(score: int) -> str:
    if score >= 70:
        return "strong"
    if score >= 40:
        return "watch"
    return "at_risk"


def engagement_component(
    interactions: Sequence[Interaction],
    signal_actions: Sequence[SignalAction],
    now: datetime,
) -> tuple[int, list[str]]:
    d14, d30 = now - timedelta(days=14), now - timedelta(days=30)
    score, reasons = 0, []

    if any(_within(i.occurred_at, d14) for i in interactions):
        score += 20
        reasons.append("Recent interactions in last 14 days")
    elif any(_within(i.occurred_at, d30) for i in interactions):
        score += 10
        reasons.append("Interactions in last 30 days")

    if any(_within(a.created_at, d14) for a in signal_actions):
        score += 10
        reasons.append("Signal actions generated in last 14 days")
    elif any(_within(a.created_at, d30) for a in signal_actions):
        score += 5
        reasons.append("Signal actions in last 30 days")

    return min(30, score), reasons


def opportunity_component(opportunities: Sequence[Opportunity], now: datetime) -> tuple[int, list[str]]:
    d30 = now - timedelta(days=30)
    score, reasons = 0, []

    open_count = min(3, sum(1 for o in opportunities if o.status in OPEN_STATUSES))
    if open_count:
        score += open_count * 8
        reasons.append(
            f"{open_count} open/in-progress {_plural(open_count, 'opportunity', 'opportunities')}"
        )

    if any(_within(o.updated_at or o.created_at, d30) for o in opportunities):
        score += 6
        reasons.append("Opportunities updated/created in last 30 days")

    return min(30, score), reasons


def signal_component(signals: Sequence[Signal], now: datetime) -> tuple[int, list[str]]:
    d30 = now - timedelta(days=30)
    recent = [s for s in signals if _within(s.created_at, d30)]
    high = sum(1 for s in recent if s.severity == "high")
    medium = sum(1 for s in recent if s.severity == "medium")
    has_low = any(s.severity == "low" for s in recent)

    score = min(2, high) * 5 + min(2, medium) * 3 + (2 if has_low else 0)
    reasons = []
    if high:
        reasons.append(f"{high} high-severity {_plural(high, 'signal', 'signals')} in last 30 days")
    if medium:
        reasons.append(f"{medium} medium-severity {_plural(medium, 'signal', 'signals')} in last 30 days")
    if has_low:
        reasons.append("Low-severity signals detected")
    return min(20, score), reasons


def risk_component(
    interactions: Sequence[Interaction],
    opportunities: Sequence[Opportunity],
    contacts: Sequence[Contact],
    now: datetime,
) -> tuple[int, list[str]]:
    d60 = now - timedelta(days=60)
    score, reasons = 0, []

    if interactions and not any(_within(i.occurred_at, d60) for i in interactions):
        score += 10
        reasons.append("No interactions in last 60 days (risk)")

    if not any(o.status in OPEN_STATUSES for o in opportunities):
        score += 5
        reasons.append("No open/in-progress opportunities (risk)")

    senior = any(c.seniority == "exec" or c.role_in_deal in SENIOR_ROLES for c in contacts)
    if contacts and not senior:
        score += 5
        reasons.append("No executive/champion contacts (risk)")

    return min(20, score), reasons


def compute_health_score(
    account: Account,
    interactions: Sequence[Interaction],
    opportunities: Sequence[Opportunity],
    signals: Sequence[Signal],
    signal_actions: Sequence[SignalAction],
    contacts: Sequence[Contact],
    *,
    now: datetime,
) -> HealthScore:
    now = as_utc(now)
    engagement, r_eng = engagement_component(interactions, signal_actions, now)
    opportunity, r_opp = opportunity_component(opportunities, now)
    signal, r_sig = signal_component(signals, now)
    risk, r_risk = risk_component(interactions, opportunities, contacts, now)

    overall = max(0, min(100, engagement + opportunity + signal - risk))
    return HealthScore(
        account_id=account.id,
        slug=account.slug,
        name=account.name,
        overall_score=overall,
        band=health_band(overall),
        components={
            "engagement": engagement,
            "opportunity": opportunity,
            "signal": signal,
            "risk": risk,
        },
        reasons=r_eng + r_opp + r_sig + r_risk,
    )


# ---------------------------------------------------------------------------
# Loading and grouping
# ---------------------------------------------------------------------------


def group_by_account(rows: Iterable[RowT]) -> dict[int, list[RowT]]:
    """Group rows by ``account_id``; rows without one are dropped."""
    grouped: dict[int, list[RowT]] = defaultdict(list)
    for row in rows:
        account_id = getattr(row, "account_id", None)
        if account_id is not None:
            grouped[account_id].append(row)
    return grouped


def _all(session: Session, model: type[RowT]) -> list[RowT]:
    return list(session.execute(select(model)).scalars().all())


def _ranked(items: list, key_attr: str) -> list:
    return sorted(items, key=lambda x: (-getattr(x, key_attr), x.name))


def get_health_scores(session: Session, *, now: datetime | None = None) -> list[HealthScore]:
    """Health scores for every account, best first."""
    now = as_utc(now or utc_now())
    accounts = session.execute(select(Account).order_by(Account.name)).scalars().all()
    if not accounts:
        return []

    interactions = group_by_account(_all(session, Interaction))
    opportunities = group_by_account(_all(session, Opportunity))
    signals = group_by_account(_all(session, Signal))
    actions = group_by_account(_all(session, SignalAction))
    contacts = group_by_account(_all(session, Contact))

    scores = [
        compute_health_score(
            a,
            interactions.get(a.id, []),
            opportunities.get(a.id, []),
            signals.get(a.id, []),
            actions.get(a.id, []),
            contacts.get(a.id, []),
            now=now,
        )
        for a in accounts
    ]
    return _ranked(scores, "overall_score")


# ---------------------------------------------------------------------------
# Targeting
# ---------------------------------------------------------------------------


def target_band(score: int) -> str:
    if score >= 7:
        return "hot"
    if score >= 3:
        return "warm"
    return "cold"


def compute_target_score(
    account: Account,
    opportunities: Sequence[Opportunity],
    interactions: Sequence[Interaction],
    signals: Sequence[Signal],
    documents: Sequence[SourceDocument],
    *,
    now: datetime,
) -> TargetScore:
    now = as_utc(now)
    d7_ago, d7_ahead, d30_ago = now - timedelta(days=7), now + timedelta(days=7), now - timedelta(days=30)
    score, reasons = 0, []

    open_count = min(3, sum(1 for o in opportunities if o.status in OPEN_STATUSES))
    if open_count:
        score += open_count * 3
        reasons.append(f"{open_count} open/in-progress opportunities")

    dues = [as_utc(i.next_step_due_at) for i in interactions if i.next_step_due_at is not None]
    if any(due < now for due in dues):
        score += 2
        reasons.append("Overdue next steps")
    if any(now <= due <= d7_ahead for due in dues):
        score += 1
        reasons.append("Upcoming next steps")
    if any(_within(i.occurred_at, d30_ago) for i in interactions):
        score += 1
        reasons.append("Recent interactions")

    if any(_within(s.created_at, d7_ago) for s in signals):
        score += 2
        reasons.append("Recent signals (last 7 days)")
    if any(d.source_type == "news" and _within(d.crawled_at, d7_ago) for d in documents):
        score += 1
        reasons.append("Recent news (last 7 days)")

    return TargetScore(
        account_id=account.id,
        slug=account.slug,
        name=account.name,
        score=score,
        band=target_band(score),
        reasons=reasons,
    )


def get_account_targets(session: Session, *, now: datetime | None = None) -> list[TargetScore]:
    """Targeting priority for every account, hottest first."""
    now = as_utc(now or utc_now())
    accounts = session.execute(select(Account).order_by(Account.name)).scalars().all()
    if not accounts:
        return []

    since = now - timedelta(days=7)
    opportunities = group_by_account(session.execute(
        select(Opportunity).where(Opportunity.status.in_(OPEN_STATUSES))
    ).scalars().all())
    interactions = group_by_account(_all(session, Interaction))
    signals = group_by_account(session.execute(
        select(Signal).where(Signal.created_at >= since)
    ).scalars().all())
    news = group_by_account(session.execute(
        select(SourceDocument).where(
            SourceDocument.source_type == "news", SourceDocument.crawled_at >= since,
        )
    ).scalars().all())

    targets = [
        compute_target_score(
            a,
            opportunities.get(a.id, []),
            interactions.get(a.id, []),
            signals.get(a.id, []),
            news.get(a.id, []),
            now=now,
        )
        for a in accounts
    ]
    return _ranked(targets, "score")
