"""Daily focus list: what needs attention on a given day.

Merges three fact streams into one ranked list:

- interactions whose next step is due by the end of the day (overdue included),
- signal actions created in the seven days before the day ends,
- open/in-progress opportunities touched in the 30 days before the day starts.

Items sort by type (interaction, then signal action, then opportunity) and
within a type by ``when`` ascending, with undated items last.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from recon.models import Account, Interaction, Opportunity, SignalAction
from recon.scorer import OPEN_STATUSES, HealthScore, get_health_scores
from recon.utils import as_utc

TYPE_WEIGHT = {"interaction": 3, "signal_action": 2, "opportunity": 1}


@dataclass
class FocusItem:
    id: int
    type: str  # interaction | signal_action | opportunity
    account_id: int
    account_slug: str
    account_name: str
    title: str
    description: str | None = None
    when: datetime | None = None
    band: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "account_id": self.account_id,
            "account_slug": self.account_slug,
            "account_name": self.account_name,
            "title": self.title,
            "description": self.description,
            "when": self.when.isoformat() if self.when else None,
            "band": self.band,
            "meta": self.meta,
        }


@dataclass
class FocusResult:
    date: str  # YYYY-MM-DD
    items: list[FocusItem] = field(default_factory=list)


def day_window(for_date: date | datetime) -> tuple[datetime, datetime]:
    """UTC ``[start, end)`` bounds of the day containing *for_date*."""
    if isinstance(for_date, datetime):
        for_date = as_utc(for_date).date()
    start = datetime.combine(for_date, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


def sort_focus_items(items: list[FocusItem]) -> list[FocusItem]:
    return sorted(
        items,
        key=lambda item: (
            -TYPE_WEIGHT.get(item.type, 0),
            item.when is None,
            item.when or datetime.min.replace(tzinfo=UTC),
        ),
    )


def get_today_focus(
    session: Session,
    for_date: date | datetime,
    *,
    health_scores: list[HealthScore] | None = None,
    now: datetime | None = None,
) -> FocusResult:
    start, end = day_window(for_date)
    accounts = {a.id: a for a in session.execute(select(Account)).scalars().all()}
    if health_scores is None:
        health_scores = get_health_scores(session, now=now)
    bands = {h.account_id: h.band for h in health_scores}

    def make(row: Any, type_: str, title: str, description: str | None,
             when: datetime | None, meta: dict[str, Any]) -> FocusItem | None:
        account = accounts.get(row.account_id)
        if account is None:
            return None
        return FocusItem(
            id=row.id,
            type=type_,
            account_id=account.id,
            account_slug=account.slug,
            account_name=account.name,
            title=title,
            description=description,
            when=as_utc(when),
            band=bands.get(account.id),
            meta=meta,
        )

    candidates: list[FocusItem | None] = []

    interactions = session.execute(
        select(Interaction).where(
            Interaction.next_step_due_at.is_not(None),
            Interaction.next_step_due_at <= end,
        )
    ).scalars().all()
    for ix in interactions:
        candidates.append(make(
            ix, "interaction", ix.subject or ix.channel, ix.summary,
            ix.next_step_due_at or ix.occurred_at, {"channel": ix.channel},
        ))

    actions = session.execute(
        select(SignalAction).where(
            SignalAction.created_at >= start - timedelta(days=7),
            SignalAction.created_at < end,
        )
    ).scalars().all()
    for sa in actions:
        candidates.append(make(
            sa, "signal_action", sa.action_category, sa.action_description,
            sa.created_at, {"confidence": sa.confidence},
        ))

    since = start - timedelta(days=30)
    opportunities = session.execute(
        select(Opportunity).where(Opportunity.status.in_(OPEN_STATUSES))
    ).scalars().all()
    for opp in opportunities:
        touched = opp.updated_at or opp.created_at
        if touched is None or as_utc(touched) < since:
            continue
        candidates.append(make(
            opp, "opportunity", opp.title, opp.status, touched, {"status": opp.status},
        ))

    items = [item for item in candidates if item is not None]
    return FocusResult(date=start.date().isoformat(), items=sort_focus_items(items))
