"""Pydantic request/response schemas for the Recon API and extraction output."""
from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, field_validator

EntityType = Literal["person", "facility", "initiative", "vendor", "technology"]
SignalSeverity = Literal["low", "medium", "high"]
SignalCategory = Literal[
    "leadership_change", "strategy", "technology", "finance", "workforce", "ai", "epic_migration",
]
SourceType = Literal["website", "news", "pdf", "linkedin"]

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


# ---------------------------------------------------------------------------
# Extraction payload (validated generation output)
# ---------------------------------------------------------------------------


class ExtractedEntity(BaseModel):
    type: EntityType
    name: str
    role: str | None = None
    attributes: dict[str, Any] | None = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("entity name must not be blank")
        return v


class ExtractedSignal(BaseModel):
    category: SignalCategory
    severity: SignalSeverity
    summary: str
    details: dict[str, Any] | None = None

    @field_validator("category", "severity", mode="before")
    @classmethod
    def normalize_enum(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("summary")
    @classmethod
    def summary_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("signal summary must not be blank")
        return v


class ExtractionEnvelope(BaseModel):
    """Top-level shape of an extraction response; items are validated one by one."""
    entities: list[Any] = []
    signals: list[Any] = []


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    slug: str
    name: str
    website: str = ""
    hq_city: str = ""
    hq_state: str = ""
    seed_urls: list[str] = []

    @field_validator("slug")
    @classmethod
    def slug_must_be_safe(cls, v: str) -> str:
        v = v.strip().lower()
        if not SLUG_RE.match(v):
            raise ValueError("slug must contain only lowercase letters, numbers, and hyphens")
        return v


class AccountOut(BaseModel):
    id: int
    slug: str
    name: str
    website: str
    hq_city: str
    hq_state: str
    document_count: int = 0
    unprocessed_count: int = 0


class SeedCreate(BaseModel):
    url: str
    source_type: SourceType = "website"
    active: bool = True


class SeedOut(BaseModel):
    id: int
    url: str
    source_type: str
    active: bool


class PipelineRunOut(BaseModel):
    id: int
    status: str
    ingest_created: int
    process_processed: int
    error_message: str | None = None
    created_at: str | None = None


class SignalOut(BaseModel):
    id: int
    category: str
    severity: str
    summary: str
    details: dict[str, Any] = {}
    document_id: int | None = None
    created_at: str | None = None


class AccountDetail(AccountOut):
    seeds: list[SeedOut] = []
    recent_runs: list[PipelineRunOut] = []
    recent_signals: list[SignalOut] = []


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class PipelineOut(BaseModel):
    slug: str
    ingest: dict[str, int]
    process: dict[str, int]
    error: str | None = None


class AutoIngestOut(BaseModel):
    total_accounts: int
    successful: int
    failed: int
    results: list[dict[str, Any]]


class EmbedOut(BaseModel):
    embedded: int
    dimensions: int = 0


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


class HealthScoreOut(BaseModel):
    account_id: int
    slug: str
    name: str
    overall_score: int
    band: str
    components: dict[str, int]
    reasons: list[str]


class TargetOut(BaseModel):
    account_id: int
    slug: str
    name: str
    score: int
    band: str
    reasons: list[str]


class FocusItemOut(BaseModel):
    id: int
    type: str
    account_id: int
    account_slug: str
    account_name: str
    title: str
    description: str | None = None
    when: str | None = None
    band: str | None = None
    meta: dict[str, Any] = {}


class FocusOut(BaseModel):
    date: str
    items: list[FocusItemOut]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class RateLimitStatsOut(BaseModel):
    total_requests: int
    rate_limit_hits: int
    top_endpoints: list[dict[str, Any]]
    recent_hits: list[dict[str, Any]]


class ImportResult(BaseModel):
    accounts_created: int
    accounts_updated: int
    seeds_added: int
    rows_skipped: int
