"""Ingestion: crawl an account's seed URLs and store new documents.

Documents are deduplicated on ``(account_id, content_hash)`` where the hash
is taken over whitespace-normalized content. Re-running ingestion over
unchanged sources creates nothing.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recon.crawler import CrawledPage, CrawlError, Crawler
from recon.models import Account, AccountSeed, SourceDocument
from recon.utils import hash_text, utc_now

log = logging.getLogger(__name__)


@dataclass
class IngestResult:
    created: int = 0
    skipped: int = 0


@dataclass
class AutoIngestResult:
    total_accounts: int = 0
    successful: int = 0
    failed: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)


def get_account(session: Session, slug: str) -> Account | None:
    return session.execute(select(Account).where(Account.slug == slug)).scalars().first()


def active_seeds(session: Session, account_id: int) -> list[AccountSeed]:
    return list(session.execute(
        select(AccountSeed)
        .where(AccountSeed.account_id == account_id, AccountSeed.active.is_(True))
        .order_by(AccountSeed.id)
    ).scalars().all())


def ingest_pages(
    session: Session,
    account: Account,
    pages: Iterable[CrawledPage],
    *,
    source_type: str = "website",
    now: datetime | None = None,
) -> IngestResult:
    """Store every page with content not already held for *account*."""
    now = now or utc_now()
    result = IngestResult()
    for page in pages:
        if not page.content or not page.content.strip():
            continue
        content_hash = hash_text(page.content)
        existing = session.execute(
            select(SourceDocument.id).where(
                SourceDocument.account_id == account.id,
                SourceDocument.content_hash == content_hash,
            )
        ).scalars().first()
        if existing is not None:
            result.skipped += 1
            continue

        session.add(SourceDocument(
            account_id=account.id,
            source_url=page.url,
            source_type=source_type,
            title=page.title or "",
            raw_text=page.content,
            content_hash=content_hash,
            processed=False,
            crawled_at=now,
        ))
        try:
            session.commit()
        except IntegrityError:
            # Concurrent ingest stored the same content first.
            session.rollback()
            result.skipped += 1
            continue
        result.created += 1
    return result


async def run_ingest(
    session: Session,
    slug: str,
    crawler: Crawler,
    *,
    now: datetime | None = None,
) -> IngestResult:
    """Crawl each active seed of account *slug* and store new documents."""
    account = get_account(session, slug)
    if account is None:
        log.warning("Ingest skipped: account %r not found", slug)
        return IngestResult()

    seeds = active_seeds(session, account.id)
    if not seeds:
        log.warning("Ingest skipped: account %r has no active seeds", slug)
        return IngestResult()

    total = IngestResult()
    for seed in seeds:
        try:
            pages = await crawler.crawl(seed.url)
        except CrawlError as exc:
            log.warning("Crawl failed for %s (%s): %s", slug, seed.url, exc)
            continue
        part = ingest_pages(session, account, pages, source_type=seed.source_type, now=now)
        total.created += part.created
        total.skipped += part.skipped

    log.info("Ingest for %s: %d created, %d skipped", slug, total.created, total.skipped)
    return total


async def run_auto_ingest(
    session: Session,
    crawler: Crawler,
    *,
    delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AutoIngestResult:
    """Ingest every account that has at least one active seed, one at a time."""
    has_seed = (
        select(AccountSeed.id)
        .where(AccountSeed.account_id == Account.id, AccountSeed.active.is_(True))
        .exists()
    )
    accounts = session.execute(
        select(Account).where(has_seed).order_by(Account.slug)
    ).scalars().all()
    log.info("Auto-ingest: %d account(s) with active seeds", len(accounts))

    outcome = AutoIngestResult(total_accounts=len(accounts))
    for i, account in enumerate(accounts):
        try:
            result = await run_ingest(session, account.slug, crawler)
        except Exception as exc:
            session.rollback()
            log.error("Auto-ingest failed for %s: %s", account.slug, exc)
            outcome.failed += 1
            outcome.results.append({"slug": account.slug, "success": False, "error": str(exc)})
            continue
        outcome.successful += 1
        outcome.results.append({
            "slug": account.slug, "success": True, "documents_created": result.created,
        })
        if delay and i < len(accounts) - 1:
            await sleep(delay)

    log.info(
        "Auto-ingest complete: %d successful, %d failed",
        outcome.successful, outcome.failed,
    )
    return outcome
