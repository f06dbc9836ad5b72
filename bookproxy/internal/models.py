from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class RequestType(StrEnum):
    search = "search"
    isbn = "isbn"


class Priority(StrEnum):
    critical = "critical"
    high = "high"
    normal = "normal"
    low = "low"
    background = "background"


class CacheTier(StrEnum):
    hot = "hot"
    warm = "warm"


class QuotaPeriod(StrEnum):
    daily = "daily"
    hourly = "hourly"


# ---------------------------------------------------------------- tables


class CacheEntry(SQLModel, table=True):
    """Warm tier row. The warm tier is the canonical copy of every cached payload."""

    key: str = Field(primary_key=True)
    namespace: str = Field(index=True)
    payload: str
    created_at: float
    ttl_seconds: int
    hit_count: int = 0
    last_access_at: float
    size_bytes: int = 0
    expires_at: float = Field(index=True)


class QuotaCounter(SQLModel, table=True):
    key: str = Field(primary_key=True)
    """quota/{provider}/{tier}/{window}"""
    provider_id: str
    tier: str
    period: str = QuotaPeriod.daily
    window_key: str
    used: int = 0
    limit: int | None = None
    expires_at: float = Field(index=True)


class RateLimitWindow(SQLModel, table=True):
    key: str = Field(primary_key=True)
    """ratelimit/{scope}/{fingerprint}/{window_start}"""
    fingerprint: str = Field(index=True)
    scope: str = "request"
    window_key: str
    count: int = 0
    limit: int
    expires_at: float = Field(index=True)


class WarmingProgress(SQLModel, table=True):
    job_type: str = Field(primary_key=True)
    current_segment: str | None = None
    cursor: int = 0
    """Index of the next item to look at in the current segment"""
    processed_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    failed_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    completed_segments: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    last_run_at: float | None = None
    completed: bool = False
    last_run: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


# ---------------------------------------------------------------- payloads


class BookRecord(BaseModel):
    """Provider independent book metadata."""

    id: str
    title: str
    subtitle: str | None = None
    authors: list[str] = []
    publisher: str | None = None
    published_date: str | None = None
    description: str | None = None
    isbn_13: str | None = None
    isbn_10: str | None = None
    page_count: int | None = None
    categories: list[str] = []
    language: str | None = None
    cover_image: str | None = None
    provider: str


class SearchResult(BaseModel):
    items: list[BookRecord] = []
    total_items: int = 0
    provider: str


class ProviderRequest(BaseModel):
    """One unit of work for the orchestrator, a search or an identifier lookup."""

    model_config = ConfigDict(frozen=True)

    id: str
    request_type: RequestType
    query: str | None = None
    isbn: str | None = None
    max_results: int = 20
    sort_by: str = "relevance"
    lang: str | None = None
