from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon.config import get_settings
from recon.crawler import Crawler
from recon.extract import run_extraction
from recon.ingest import get_account, run_ingest
from recon.llm import GenerationClient
from recon.models import PipelineRun
from recon.utils import utc_now

log = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    slug: str
    ingest_created: int = 0
    process_processed: int = 0
    error: str | None = None  # ingest_failed | process_failed | account_not_found
    error_message: str | None = None

    def to_dict(self) -> dict:
        out = {
            "slug": self.slug,
            "ingest": {"created": self.ingest_created},
            "process": {"processed": self.process_processed},
        }
        if self.error:
            out["error"] = self.error
        return out


def _log_run(session: Session, account_id: int, outcome: PipelineOutcome, now: datetime) -> None:
    try:
        session.add(PipelineRun(
            account_id=account_id,
            status="error" if outcome.error else "success",
            ingest_created=outcome.ingest_created,
            process_processed=outcome.process_processed,
            error_message=outcome.error_message,
            created_at=now,
        ))
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Failed to log pipeline run for account %d: %s", account_id, exc)


async def run_pipeline(
    session: Session,
    slug: str,
    client: GenerationClient,
    crawler: Crawler,
    *,
    now: datetime | None = None,
) -> PipelineOutcome:
    """Ingest then extract for one account, recording the run.

    A failure in one stage is recorded and the other stage still runs.
    """
    now = now or utc_now()
    outcome = PipelineOutcome(slug=slug)
    account = get_account(session, slug)
    if account is None:
        log.warning("Pipeline skipped: account %r not found", slug)
        outcome.error = "account_not_found"
        return outcome
    account_id = account.id

    try:
        ingest = await run_ingest(session, slug, crawler, now=now)
        outcome.ingest_created = ingest.created
    except Exception as exc:
        session.rollback()
        outcome.error = "ingest_failed"
        outcome.error_message = str(exc)
        log.exception("Pipeline ingest error for %s", slug)

    settings = get_settings()
    try:
        summary = await run_extraction(
            session, slug, client,
            batch_size=settings.extraction_batch_size,
            max_text_chars=settings.extraction_max_text_chars,
            now=now,
        )
        outcome.process_processed = summary.processed
    except Exception as exc:
        session.rollback()
        outcome.error = "process_failed"
        outcome.error_message = str(exc)
        log.exception("Pipeline process error for %s", slug)

    _log_run(session, account_id, outcome, now)
    log.info(
        "Pipeline completed for %s: %d created, %d processed%s",
        slug, outcome.ingest_created, outcome.process_processed,
        f" ({outcome.error})" if outcome.error else "",
    )
    return outcome


def recent_pipeline_runs(session: Session, account_id: int, limit: int = 5) -> list[PipelineRun]:
    return list(session.execute(
        select(PipelineRun)
        .where(PipelineRun.account_id == account_id)
        .order_by(PipelineRun.created_at.desc(), PipelineRun.id.desc())
        .limit(limit)
    ).scalars().all())
