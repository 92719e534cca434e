"""XLSX import of accounts and their seed URLs.

Expected workbook layout (header row first, column order free):

- an ``Accounts`` sheet with ``slug``, ``name``, ``website``, ``hq_city``, ``hq_state``
- an optional ``Seeds`` sheet with ``slug``, ``url``, ``source_type``, ``active``

Accounts upsert by slug. Seeds are added once per ``(account, url)``.
"""
from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from recon.models import Account, AccountSeed
from recon.schemas import SLUG_RE, ImportResult

log = logging.getLogger(__name__)

_ACCOUNT_FIELDS = ("name", "website", "hq_city", "hq_state")
_SOURCE_TYPES = ("website", "news", "pdf", "linkedin")


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _b(value: object, default: bool = True) -> bool:
    """Safely coerce cell value to bool."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "y")


def _rows(ws) -> list[dict[str, object]]:
    """Read a sheet into dicts keyed by lower-cased header names."""
    it = ws.iter_rows(values_only=True)
    header = next(it, None)
    if not header:
        return []
    keys = [_s(h).casefold().replace(" ", "_") for h in header]
    return [
        {k: v for k, v in zip(keys, row) if k}
        for row in it
        if row and any(v is not None for v in row)
    ]


def _find_sheet(wb, name: str):
    for sheet_name in wb.sheetnames:
        if sheet_name.strip().casefold() == name:
            return wb[sheet_name]
    return None


def import_xlsx(file_path: str | Path, session: Session) -> ImportResult:
    """Import accounts and seeds from *file_path*; upserts accounts by slug."""
    wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    accounts_ws = _find_sheet(wb, "accounts") or wb[wb.sheetnames[0]]
    account_rows = _rows(accounts_ws)
    seeds_ws = _find_sheet(wb, "seeds")
    seed_rows = _rows(seeds_ws) if seeds_ws is not None else []
    wb.close()

    existing = {a.slug: a for a in session.execute(select(Account)).scalars().all()}
    created = updated = seeds_added = skipped = 0

    for row in account_rows:
        slug = _s(row.get("slug")).lower()
        name = _s(row.get("name"))
        if not slug or not name or not SLUG_RE.match(slug):
            skipped += 1
            continue
        account = existing.get(slug)
        if account is None:
            account = Account(slug=slug, name=name)
            session.add(account)
            existing[slug] = account
            created += 1
        else:
            updated += 1
        for field in _ACCOUNT_FIELDS:
            value = _s(row.get(field))
            if value:
                setattr(account, field, value)
    session.flush()

    known_seeds = {
        (s.account_id, s.url) for s in session.execute(select(AccountSeed)).scalars().all()
    }
    for row in seed_rows:
        account = existing.get(_s(row.get("slug")).lower())
        url = _s(row.get("url"))
        if account is None or not url:
            skipped += 1
            continue
        if (account.id, url) in known_seeds:
            continue
        source_type = _s(row.get("source_type")).lower() or "website"
        if source_type not in _SOURCE_TYPES:
            source_type = "website"
        session.add(AccountSeed(
            account_id=account.id, url=url, source_type=source_type, active=_b(row.get("active")),
        ))
        known_seeds.add((account.id, url))
        seeds_added += 1

    session.commit()
    log.info(
        "Imported %d new, %d updated account(s), %d seed(s), %d row(s) skipped",
        created, updated, seeds_added, skipped,
    )
    return ImportResult(
        accounts_created=created,
        accounts_updated=updated,
        seeds_added=seeds_added,
        rows_skipped=skipped,
    )
