from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from recon import services
from recon.config import configure_logging, get_settings
from recon.crawler import Crawler
from recon.db import init_db, session_scope
from recon.focus import get_today_focus
from recon.ingest import get_account
from recon.llm import GenerationClient
from recon.pipeline import run_pipeline
from recon.ratelimit import check_rate_limit, policy_for
from recon.scorer import get_account_targets, get_health_scores

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@dataclass
class ReconContext:
    generation: GenerationClient
    crawler: Crawler


@asynccontextmanager
async def recon_lifespan(server: FastMCP) -> AsyncIterator[ReconContext]:
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()
    yield ReconContext(
        generation=GenerationClient.from_settings(settings),
        crawler=Crawler.from_settings(settings),
    )


mcp = FastMCP(
    "Recon",
    instructions=(
        "Recon is an account intelligence tool. Use these tools to browse accounts, "
        "run the ingest/extract pipeline, and read health scores, targeting priority "
        "and the daily focus list. Start with list_accounts(), then get_account(slug)."
    ),
    lifespan=recon_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("recon://overview")
def recon_overview() -> str:
    """Overview of Recon: data model, workflow, and score bands."""
    return json.dumps({
        "system": "Recon - Account Intelligence",
        "data_model": {
            "account": "An organization tracked by slug, with seed URLs to crawl.",
            "document": "Crawled page text, deduplicated per account by content hash.",
            "entity": "Person, facility, initiative, vendor or technology extracted from a document.",
            "signal": "Categorized, severity-rated event extracted from a document.",
        },
        "workflow": [
            "1. list_accounts() - browse accounts and unprocessed document counts.",
            "2. run_account_pipeline(slug) - crawl seeds and extract one batch.",
            "3. get_health_scores() / get_targets() - rank accounts.",
            "4. get_focus(date) - what needs attention today.",
        ],
        "health_bands": {"strong": ">= 70", "watch": ">= 40", "at_risk": "< 40"},
        "target_bands": {"hot": ">= 7", "warm": ">= 3", "cold": "< 3"},
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Accounts
# ---------------------------------------------------------------------------


@mcp.tool()
def list_accounts(search: str | None = None) -> list[dict]:
    """List accounts with document and unprocessed-document counts.

    Args:
        search: Optional substring match on account name or slug.
    """
    with session_scope() as session:
        return services.list_accounts(session, search=search)


@mcp.tool()
def get_account_detail(slug: str) -> dict:
    """Get an account with its seed URLs and recent pipeline runs."""
    with session_scope() as session:
        account = get_account(session, slug)
        if account is None:
            return {"error": f"Account {slug!r} not found"}
        return services.account_detail(session, account)


# ---------------------------------------------------------------------------
# Tools: Pipeline
# ---------------------------------------------------------------------------


@mcp.tool()
async def run_account_pipeline(slug: str, ctx: Context) -> dict:
    """Crawl an account's seeds and extract entities/signals from one batch of documents."""
    app_ctx: ReconContext = ctx.request_context.lifespan_context
    settings = get_settings()
    with session_scope() as session:
        limit = check_rate_limit(
            session, "pipeline:mcp", settings.pipeline_rate_limit, settings.rate_limit_window_ms,
            policy=policy_for(settings.rate_limit_fail_closed),
        )
        if not limit.allowed:
            return {"error": "Rate limit exceeded", "reset_at": limit.reset_at.isoformat()}
        if get_account(session, slug) is None:
            return {"error": f"Account {slug!r} not found"}
        outcome = await run_pipeline(session, slug, app_ctx.generation, app_ctx.crawler)
        return outcome.to_dict()


# ---------------------------------------------------------------------------
# Tools: Scores
# ---------------------------------------------------------------------------


@mcp.tool()
def get_health_scores_tool(limit: int = 50) -> list[dict]:
    """Health score (0-100), band and reasons for each account, best first."""
    with session_scope() as session:
        return [services.health_summary(h) for h in get_health_scores(session)[:max(1, limit)]]


@mcp.tool()
def get_targets(limit: int = 50) -> list[dict]:
    """Targeting priority score, band (hot/warm/cold) and reasons, hottest first."""
    with session_scope() as session:
        return [services.target_summary(t) for t in get_account_targets(session)[:max(1, limit)]]


@mcp.tool()
def get_focus(date: str | None = None) -> dict:
    """Daily focus items: due next steps, recent signal actions, active opportunities.

    Args:
        date: Day as YYYY-MM-DD. Defaults to today (UTC).
    """
    try:
        for_date = services.parse_focus_date(date)
    except ValueError:
        return {"error": "date must be YYYY-MM-DD"}
    with session_scope() as session:
        return services.focus_summary(get_today_focus(session, for_date))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Recon MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
