"""Extraction: turn unprocessed documents into entities and signals.

Each batch loads a few unprocessed documents for one account and handles
them one at a time:

1. Cap the raw text and ask the generation service for JSON.
2. Validate the envelope; drop individual items that fail validation.
3. Insert all entities in one statement, then all signals in one statement.
4. Only when both inserts committed, flip ``processed`` from false to true.

A document whose generation, parsing or inserts fail stays unprocessed and
is retried by a later batch. Facts written before a failure stay written,
so a retry can duplicate them.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recon.ingest import get_account
from recon.llm import GenerationClient, GenerationError, parse_structured
from recon.models import Entity, Signal, SourceDocument
from recon.schemas import ExtractedEntity, ExtractedSignal, ExtractionEnvelope
from recon.utils import cap_text, utc_now

log = logging.getLogger(__name__)

EXTRACTION_INSTRUCTIONS = (
    "You extract structured entities and signals about a healthcare system from a "
    "single webpage. Only return valid JSON matching the specified schema. Do not "
    "include any explanatory text."
)

EXTRACTION_SCHEMA_HINT = """\
Respond with a JSON object of this shape:
{
  "entities": [
    {"type": "<person|facility|initiative|vendor|technology>", "name": "<name>",
     "role": "<role or null>", "attributes": {}}
  ],
  "signals": [
    {"category": "<leadership_change|strategy|technology|finance|workforce|ai|epic_migration>",
     "severity": "<low|medium|high>", "summary": "<one sentence>", "details": {}}
  ]
}"""


@dataclass
class ExtractionSummary:
    processed: int = 0  # documents attempted
    completed: int = 0  # documents flipped to processed


@dataclass
class ParsedExtraction:
    entities: list[ExtractedEntity]
    signals: list[ExtractedSignal]


def build_extraction_prompt(doc: SourceDocument, max_text_chars: int) -> str:
    parts = [
        EXTRACTION_INSTRUCTIONS,
        "Extract entities and signals from the following document.",
        EXTRACTION_SCHEMA_HINT,
        f"Title: {doc.title or ''}",
        f"URL: {doc.source_url or ''}",
        cap_text(doc.raw_text, max_text_chars),
    ]
    return "\n\n".join(p for p in parts if p)


def _validate_items(items: list[Any], model: type, label: str, doc_id: int) -> list:
    valid = []
    for item in items:
        try:
            valid.append(model.model_validate(item))
        except ValidationError as exc:
            log.warning("Dropping invalid %s from document %d: %s", label, doc_id, exc.errors()[:1])
    return valid


def parse_extraction(text: str, doc_id: int) -> ParsedExtraction:
    """Validate generation output; raises ``MalformedOutputError`` on a bad envelope."""
    envelope = parse_structured(text, ExtractionEnvelope)
    return ParsedExtraction(
        entities=_validate_items(envelope.entities, ExtractedEntity, "entity", doc_id),
        signals=_validate_items(envelope.signals, ExtractedSignal, "signal", doc_id),
    )


def load_unprocessed(session: Session, account_id: int, limit: int) -> list[SourceDocument]:
    return list(session.execute(
        select(SourceDocument)
        .where(SourceDocument.account_id == account_id, SourceDocument.processed.is_(False))
        .order_by(SourceDocument.crawled_at, SourceDocument.id)
        .limit(limit)
    ).scalars().all())


def _insert_rows(session: Session, table: type, rows: list[dict[str, Any]]) -> None:
    if not rows:
        return
    session.execute(insert(table), rows)
    session.commit()


def store_facts(session: Session, doc: SourceDocument, parsed: ParsedExtraction, now: datetime) -> None:
    """Batch-insert entities then signals for *doc*, committing each separately."""
    _insert_rows(session, Entity, [
        {
            "account_id": doc.account_id,
            "type": e.type,
            "name": e.name,
            "role": e.role,
            "attributes_json": json.dumps(e.attributes or {}),
            "source_document_id": doc.id,
            "created_at": now,
        }
        for e in parsed.entities
    ])
    _insert_rows(session, Signal, [
        {
            "account_id": doc.account_id,
            "document_id": doc.id,
            "severity": s.severity,
            "category": s.category,
            "summary": s.summary,
            "details_json": json.dumps(s.details or {}),
            "created_at": now,
        }
        for s in parsed.signals
    ])


def mark_processed(session: Session, doc_id: int) -> bool:
    """Flip ``processed`` for *doc_id*; returns False if it was already set."""
    result = session.execute(
        update(SourceDocument)
        .where(SourceDocument.id == doc_id, SourceDocument.processed.is_(False))
        .values(processed=True)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


async def run_extraction(
    session: Session,
    slug: str,
    client: GenerationClient,
    *,
    batch_size: int = 3,
    max_text_chars: int = 12_000,
    now: datetime | None = None,
) -> ExtractionSummary:
    """Process one batch of unprocessed documents for account *slug*."""
    account = get_account(session, slug)
    if account is None:
        log.warning("Extraction skipped: account %r not found", slug)
        return ExtractionSummary()

    docs = load_unprocessed(session, account.id, batch_size)
    if not docs:
        return ExtractionSummary()

    now = now or utc_now()
    summary = ExtractionSummary(processed=len(docs))
    for doc in docs:
        try:
            text = await client.generate(build_extraction_prompt(doc, max_text_chars), output="json")
            parsed = parse_extraction(text, doc.id)
        except GenerationError as exc:
            log.error("Extraction failed for document %d (%s): %s", doc.id, slug, exc)
            continue
        except Exception:
            session.rollback()
            log.exception("Unexpected extraction error for document %d (%s)", doc.id, slug)
            continue

        try:
            store_facts(session, doc, parsed, now)
        except SQLAlchemyError as exc:
            session.rollback()
            log.error("Failed to store facts for document %d: %s", doc.id, exc)
            continue
        except Exception:
            session.rollback()
            log.exception("Unexpected error storing facts for document %d", doc.id)
            continue

        try:
            if mark_processed(session, doc.id):
                summary.completed += 1
        except Exception:
            session.rollback()
            log.exception("Failed to mark document %d processed", doc.id)

    log.info(
        "Extraction for %s: %d attempted, %d completed",
        slug, summary.processed, summary.completed,
    )
    return summary
