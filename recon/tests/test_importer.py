"""Tests for XLSX import of accounts and seeds."""
from __future__ import annotations

import openpyxl
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from recon.importer import import_xlsx
from recon.models import Account, AccountSeed, Base


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def _write(path, accounts, seeds=None, accounts_title="Accounts"):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = accounts_title
    for row in accounts:
        ws.append(row)
    if seeds is not None:
        seeds_ws = wb.create_sheet("Seeds")
        for row in seeds:
            seeds_ws.append(row)
    wb.save(path)
    return path


class TestImportXlsx:
    def test_creates_accounts_and_seeds(self, session, tmp_path):
        path = _write(
            tmp_path / "a.xlsx",
            [["Name", "Slug", "Website", "HQ City"],
             ["Mercy Health", "Mercy", "https://mercy.example", "Cincinnati"],
             ["Bayview", "bayview", None, None]],
            [["slug", "url", "source_type", "active"],
             ["mercy", "https://mercy.example/news", "News", "no"],
             ["bayview", "https://bayview.example", None, None]],
        )
        result = import_xlsx(path, session)
        assert result.accounts_created == 2
        assert result.seeds_added == 2
        assert result.rows_skipped == 0

        mercy = session.execute(select(Account).where(Account.slug == "mercy")).scalars().one()
        assert mercy.hq_city == "Cincinnati"
        seeds = session.execute(select(AccountSeed).order_by(AccountSeed.url)).scalars().all()
        assert [(s.url, s.source_type, s.active) for s in seeds] == [
            ("https://bayview.example", "website", True),
            ("https://mercy.example/news", "news", False),
        ]

    def test_reimport_updates_and_dedups_seeds(self, session, tmp_path):
        rows = [["slug", "name"], ["mercy", "Mercy Health"]]
        seeds = [["slug", "url"], ["mercy", "https://mercy.example"]]
        import_xlsx(_write(tmp_path / "a.xlsx", rows, seeds), session)

        rows[1][1] = "Mercy Health System"
        result = import_xlsx(_write(tmp_path / "b.xlsx", rows, seeds), session)
        assert result.accounts_created == 0
        assert result.accounts_updated == 1
        assert result.seeds_added == 0
        mercy = session.execute(select(Account)).scalars().one()
        assert mercy.name == "Mercy Health System"
        assert len(session.execute(select(AccountSeed)).scalars().all()) == 1

    def test_invalid_rows_skipped(self, session, tmp_path):
        path = _write(
            tmp_path / "a.xlsx",
            [["slug", "name"], ["bad slug!", "Bad"], ["", "No slug"], ["ok", None], ["good", "Good"]],
            [["slug", "url"], ["unknown", "https://x.example"], ["good", None]],
        )
        result = import_xlsx(path, session)
        assert result.accounts_created == 1
        assert result.rows_skipped == 5

    def test_first_sheet_used_without_accounts_sheet(self, session, tmp_path):
        path = _write(tmp_path / "a.xlsx", [["slug", "name"], ["mercy", "Mercy"]], accounts_title="Sheet1")
        assert import_xlsx(path, session).accounts_created == 1
