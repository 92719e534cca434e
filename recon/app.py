from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from recon import services
from recon.config import configure_logging, get_settings
from recon.crawler import Crawler
from recon.db import init_db, session_generator
from recon.focus import get_today_focus
from recon.importer import import_xlsx
from recon.ingest import get_account, run_auto_ingest
from recon.llm import GenerationClient, GenerationError
from recon.pipeline import recent_pipeline_runs, run_pipeline
from recon.ratelimit import check_rate_limit, policy_for, rate_limit_stats
from recon.schemas import (
    AccountCreate,
    AccountDetail,
    AccountOut,
    AutoIngestOut,
    EmbedOut,
    FocusOut,
    HealthScoreOut,
    ImportResult,
    PipelineOut,
    PipelineRunOut,
    RateLimitStatsOut,
    SeedCreate,
    SeedOut,
    TargetOut,
)
from recon.scorer import get_account_targets, get_health_scores

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()
    app.state.generation = GenerationClient.from_settings(settings)
    app.state.crawler = Crawler.from_settings(settings)
    yield


app = FastAPI(
    title="Recon",
    version="0.1.0",
    description=(
        "Account intelligence API. Crawl account sources, extract entities and "
        "signals, and rank accounts by health, priority and daily focus. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Accounts", "description": "Browse and create accounts and their seed URLs."},
        {"name": "Pipeline", "description": "Ingest and extract. Rate limited; calls paid services."},
        {"name": "Scores", "description": "Health scores, targeting priority and daily focus."},
        {"name": "Import", "description": "Bulk import accounts and seeds from XLSX spreadsheets."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


db_session = session_generator


def get_generation_client(request: Request) -> GenerationClient:
    return request.app.state.generation


def get_crawler(request: Request) -> Crawler:
    return request.app.state.crawler


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _account_or_404(session: Session, slug: str):
    account = get_account(session, slug)
    if account is None:
        raise HTTPException(404, "Account not found")
    return account


def _rate_limited(session: Session, route: str, request: Request):
    """Return a 429 response when *route* is over its limit for this client, else None."""
    settings = get_settings()
    result = check_rate_limit(
        session, f"{route}:{_client_ip(request)}",
        settings.route_limits()[route], settings.rate_limit_window_ms,
        policy=policy_for(settings.rate_limit_fail_closed),
    )
    if result.allowed:
        return None
    log.warning("Rate limit exceeded for %s from %s", route, _client_ip(request))
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded",
            "reset_at": result.reset_at.isoformat(),
        },
        headers={"X-RateLimit-Remaining": "0"},
    )


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import accounts and seeds from XLSX spreadsheet")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Accounts
# ---------------------------------------------------------------------------


class AccountListResponse(BaseModel):
    items: list[AccountOut]
    total: int


@app.get("/api/accounts", response_model=AccountListResponse,
         tags=["Accounts"], summary="List accounts with document counts")
async def list_accounts(
    search: str | None = Query(None, description="Substring match on name or slug"),
    session: Session = Depends(db_session),
):
    items = services.list_accounts(session, search=search)
    return {"items": items, "total": len(items)}


@app.post("/api/accounts", response_model=AccountDetail, status_code=201,
          tags=["Accounts"], summary="Create an account with optional seed URLs")
async def create_account(body: AccountCreate, session: Session = Depends(db_session)):
    account = services.create_account(
        session, slug=body.slug, name=body.name, website=body.website,
        hq_city=body.hq_city, hq_state=body.hq_state, seed_urls=body.seed_urls,
    )
    if account is None:
        raise HTTPException(409, f"Account '{body.slug}' already exists")
    return services.account_detail(session, account)


@app.get("/api/accounts/{slug}", response_model=AccountDetail,
         tags=["Accounts"], summary="Get account detail with seeds and recent pipeline runs")
async def get_account_detail(slug: str, session: Session = Depends(db_session)):
    return services.account_detail(session, _account_or_404(session, slug))


@app.get("/api/accounts/{slug}/seeds", response_model=list[SeedOut],
         tags=["Accounts"], summary="List seed URLs for an account")
async def list_seeds(slug: str, session: Session = Depends(db_session)):
    account = _account_or_404(session, slug)
    return [services.seed_summary(s) for s in account.seeds]


@app.post("/api/accounts/{slug}/seeds", response_model=SeedOut, status_code=201,
          tags=["Accounts"], summary="Add or update a seed URL")
async def add_seed(slug: str, body: SeedCreate, session: Session = Depends(db_session)):
    account = _account_or_404(session, slug)
    seed = services.add_seed(session, account, body.url, source_type=body.source_type, active=body.active)
    return services.seed_summary(seed)


# ---------------------------------------------------------------------------
# Routes: Pipeline
# ---------------------------------------------------------------------------


@app.post("/api/accounts/{slug}/run-pipeline", response_model=PipelineOut,
          tags=["Pipeline"], summary="Ingest and extract one batch for an account")
async def run_pipeline_route(
    slug: str,
    request: Request,
    session: Session = Depends(db_session),
    client: GenerationClient = Depends(get_generation_client),
    crawler: Crawler = Depends(get_crawler),
):
    denied = _rate_limited(session, "pipeline", request)
    if denied is not None:
        return denied
    _account_or_404(session, slug)
    outcome = await run_pipeline(session, slug, client, crawler)
    return outcome.to_dict()


@app.get("/api/accounts/{slug}/pipeline-runs", response_model=list[PipelineRunOut],
         tags=["Pipeline"], summary="Recent pipeline runs for an account")
async def list_pipeline_runs(
    slug: str,
    limit: int = Query(5, ge=1, le=50),
    session: Session = Depends(db_session),
):
    account = _account_or_404(session, slug)
    return [services.run_summary(r) for r in recent_pipeline_runs(session, account.id, limit)]


@app.post("/api/ingest/auto", response_model=AutoIngestOut,
          tags=["Pipeline"], summary="Ingest every account with active seeds")
async def auto_ingest(
    request: Request,
    session: Session = Depends(db_session),
    crawler: Crawler = Depends(get_crawler),
):
    denied = _rate_limited(session, "auto-ingest", request)
    if denied is not None:
        return denied
    result = await run_auto_ingest(session, crawler, delay=get_settings().auto_ingest_delay_seconds)
    return {
        "total_accounts": result.total_accounts,
        "successful": result.successful,
        "failed": result.failed,
        "results": result.results,
    }


@app.post("/api/embed", response_model=EmbedOut,
          tags=["Pipeline"], summary="Embed recent documents that have no embedding")
async def embed_documents(
    request: Request,
    session: Session = Depends(db_session),
    client: GenerationClient = Depends(get_generation_client),
):
    denied = _rate_limited(session, "embed", request)
    if denied is not None:
        return denied
    try:
        return await services.embed_recent_documents(session, client)
    except GenerationError as exc:
        raise HTTPException(502, f"Embedding failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Routes: Scores
# ---------------------------------------------------------------------------


@app.get("/api/health-scores", response_model=list[HealthScoreOut],
         tags=["Scores"], summary="Health score for every account, best first")
async def health_scores(session: Session = Depends(db_session)):
    return [services.health_summary(h) for h in get_health_scores(session)]


@app.get("/api/targets", response_model=list[TargetOut],
         tags=["Scores"], summary="Targeting priority for every account, hottest first")
async def targets(session: Session = Depends(db_session)):
    return [services.target_summary(t) for t in get_account_targets(session)]


@app.get("/api/focus", response_model=FocusOut,
         tags=["Scores"], summary="Daily focus list")
async def focus(
    date: str | None = Query(None, description="YYYY-MM-DD, defaults to today (UTC)"),
    session: Session = Depends(db_session),
):
    try:
        for_date = services.parse_focus_date(date)
    except ValueError as exc:
        raise HTTPException(400, "date must be YYYY-MM-DD") from exc
    return services.focus_summary(get_today_focus(session, for_date))


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/api/admin/rate-limits", response_model=RateLimitStatsOut,
         tags=["Admin"], summary="Rate limiter usage over the last N hours")
async def rate_limits(
    hours: int = Query(24, ge=1, le=24 * 30),
    session: Session = Depends(db_session),
):
    return rate_limit_stats(session, hours)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("recon.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
