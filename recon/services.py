"""Shared business logic for the Recon API and MCP server."""
from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import date
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon.ingest import get_account
from recon.llm import GenerationClient
from recon.models import Account, AccountSeed, DocumentEmbedding, PipelineRun, Signal, SourceDocument
from recon.pipeline import recent_pipeline_runs
from recon.focus import FocusResult
from recon.scorer import HealthScore, TargetScore
from recon.utils import as_utc, json_parse, utc_now

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def seed_summary(seed: AccountSeed) -> dict:
    return {"id": seed.id, "url": seed.url, "source_type": seed.source_type, "active": seed.active}


def run_summary(run: PipelineRun) -> dict:
    return {
        "id": run.id, "status": run.status,
        "ingest_created": run.ingest_created or 0,
        "process_processed": run.process_processed or 0,
        "error_message": run.error_message,
        "created_at": _iso(run.created_at),
    }


def signal_summary(signal: Signal) -> dict:
    details = json_parse(signal.details_json)
    return {
        "id": signal.id, "category": signal.category, "severity": signal.severity,
        "summary": signal.summary,
        "details": details if isinstance(details, dict) else {},
        "document_id": signal.document_id,
        "created_at": _iso(signal.created_at),
    }


def recent_signals(session: Session, account_id: int, limit: int = 10) -> list[Signal]:
    return list(session.execute(
        select(Signal)
        .where(Signal.account_id == account_id)
        .order_by(Signal.created_at.desc(), Signal.id.desc())
        .limit(limit)
    ).scalars().all())


def document_counts(session: Session) -> dict[int, tuple[int, int]]:
    """``{account_id: (documents, unprocessed)}`` for accounts holding documents."""
    rows = session.execute(
        select(
            SourceDocument.account_id,
            func.count(SourceDocument.id),
            func.sum(case((SourceDocument.processed.is_(False), 1), else_=0)),
        )
        .where(SourceDocument.account_id.is_not(None))
        .group_by(SourceDocument.account_id)
    ).all()
    return {account_id: (total, int(unprocessed or 0)) for account_id, total, unprocessed in rows}


def account_summary(account: Account, counts: dict[int, tuple[int, int]] | None = None) -> dict:
    total, unprocessed = (counts or {}).get(account.id, (0, 0))
    return {
        "id": account.id, "slug": account.slug, "name": account.name,
        "website": account.website or "", "hq_city": account.hq_city or "",
        "hq_state": account.hq_state or "",
        "document_count": total,
        "unprocessed_count": unprocessed,
    }


def account_detail(session: Session, account: Account) -> dict:
    base = account_summary(account, document_counts(session))
    base["seeds"] = [seed_summary(s) for s in account.seeds]
    base["recent_runs"] = [run_summary(r) for r in recent_pipeline_runs(session, account.id)]
    base["recent_signals"] = [signal_summary(s) for s in recent_signals(session, account.id)]
    return base


def health_summary(score: HealthScore) -> dict:
    return asdict(score)


def target_summary(target: TargetScore) -> dict:
    return asdict(target)


def focus_summary(result: FocusResult) -> dict:
    return {"date": result.date, "items": [item.to_dict() for item in result.items]}


def parse_focus_date(value: str | None) -> date:
    """Parse ``YYYY-MM-DD``; today (UTC) when *value* is empty."""
    if not value:
        return utc_now().date()
    return date.fromisoformat(value)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def list_accounts(session: Session, search: str | None = None) -> list[dict]:
    query = select(Account).order_by(Account.name)
    if search:
        q = f"%{search.strip()}%"
        query = query.where(Account.name.ilike(q) | Account.slug.ilike(q))
    accounts = session.execute(query).scalars().all()
    counts = document_counts(session)
    return [account_summary(a, counts) for a in accounts]


def create_account(
    session: Session,
    *,
    slug: str,
    name: str,
    website: str = "",
    hq_city: str = "",
    hq_state: str = "",
    seed_urls: list[str] | None = None,
) -> Account | None:
    """Create an account with optional seed URLs; ``None`` if *slug* is taken."""
    if get_account(session, slug) is not None:
        return None
    account = Account(slug=slug, name=name, website=website, hq_city=hq_city, hq_state=hq_state)
    for url in seed_urls or []:
        if url.strip():
            account.seeds.append(AccountSeed(url=url.strip(), source_type="website", active=True))
    session.add(account)
    session.commit()
    log.info("Created account %s with %d seed(s)", slug, len(account.seeds))
    return account


def add_seed(
    session: Session, account: Account, url: str, *, source_type: str = "website", active: bool = True,
) -> AccountSeed:
    """Add a seed URL, or update the existing seed with the same URL."""
    url = url.strip()
    seed = session.execute(
        select(AccountSeed).where(AccountSeed.account_id == account.id, AccountSeed.url == url)
    ).scalars().first()
    if seed is None:
        seed = AccountSeed(account_id=account.id, url=url)
        session.add(seed)
    seed.source_type = source_type
    seed.active = active
    session.commit()
    return seed


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


async def embed_recent_documents(session: Session, client: GenerationClient, limit: int = 10) -> dict:
    """Embed the most recent documents that have no embedding yet."""
    docs = session.execute(
        select(SourceDocument).order_by(SourceDocument.crawled_at.desc(), SourceDocument.id.desc()).limit(limit)
    ).scalars().all()
    if not docs:
        return {"embedded": 0, "dimensions": 0}

    done = set(session.execute(
        select(DocumentEmbedding.document_id).where(
            DocumentEmbedding.document_id.in_([d.id for d in docs])
        )
    ).scalars().all())
    pending = [d for d in docs if d.id not in done]
    if not pending:
        return {"embedded": 0, "dimensions": 0}

    vectors = await client.embed([f"{d.title or ''}\n\n{d.raw_text or ''}" for d in pending])
    embedded = 0
    for doc, vector in zip(pending, vectors):
        session.add(DocumentEmbedding(
            document_id=doc.id, model=client.embedding_model, embedding_json=json.dumps(vector),
        ))
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            log.error("Failed to store embedding for document %d: %s", doc.id, exc)
            continue
        embedded += 1
    dims = len(vectors[0]) if vectors else 0
    log.info("Embedded %d document(s)", embedded)
    return {"embedded": embedded, "dimensions": dims}
