from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.services.providers.base import SearchFilterSet


class JobStatus(str, Enum):
    SUBMITTED = "submitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class SearchFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    beats: list[str] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)
    exclude_domains: list[str] = Field(default_factory=list)
    date_from: date | None = None
    date_to: date | None = None

    @field_validator("beats", "regions", "countries", "languages", "domains", "exclude_domains")
    @classmethod
    def _strip_values(cls, values: list[str]) -> list[str]:
        cleaned: list[str] = []
        for value in values:
            stripped = value.strip()
            if stripped and stripped not in cleaned:
                cleaned.append(stripped)
        return cleaned

    @model_validator(mode="after")
    def _check_date_range(self) -> "SearchFilters":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def to_filter_set(self) -> SearchFilterSet:
        return SearchFilterSet(
            beats=tuple(self.beats),
            regions=tuple(self.regions),
            countries=tuple(self.countries),
            languages=tuple(self.languages),
            domains=tuple(domain.lower() for domain in self.domains),
            exclude_domains=tuple(domain.lower() for domain in self.exclude_domains),
            date_from=self.date_from,
            date_to=self.date_to,
        )


class JobProgress(BaseModel):
    stage: str = "queued"
    percent: int = Field(default=0, ge=0, le=100)
    message: str = "Search queued"
    estimated_remaining_seconds: float | None = None


class ResultSummary(BaseModel):
    candidate_count: int = 0
    result_count: int = 0
    cost: float = 0.0
    providers_total: int = 0
    providers_completed: int = 0
    providers_failed: int = 0
    timed_out: bool = False


class JobError(BaseModel):
    code: str
    message: str
    retryable: bool = False
    retry_after: float | None = None
    provider: str | None = None


class SearchJob(BaseModel):
    id: str
    owner_id: str
    query: str
    filters: SearchFilters = Field(default_factory=SearchFilters)
    max_results: int = 10
    priority: str = "normal"
    status: JobStatus = JobStatus.SUBMITTED
    progress: JobProgress = Field(default_factory=JobProgress)
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result_summary: ResultSummary = Field(default_factory=ResultSummary)
    error: JobError | None = None
    errors: list[JobError] = Field(default_factory=list)
    last_sequence_number: int = 0
    cancel_reason: str | None = None


class SearchRequest(BaseModel):
    query: str
    filters: SearchFilters | None = None
    max_results: int | None = Field(default=None, ge=1, le=100)
    priority: Literal["low", "normal", "high"] = "normal"


class SubmitSearchResponse(BaseModel):
    search_id: str
    status: JobStatus
    estimated_duration: int


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CandidateContact(BaseModel):
    id: str
    job_id: str
    name: str | None = None
    email: str | None = None
    title: str | None = None
    company: str | None = None
    confidence_score: float = Field(default=0.8, ge=0.0, le=1.0)
    source_url: str
    source_title: str | None = None
    domain: str | None = None
    verification_status: Literal["pending", "verified"] = "pending"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ImportRequest(BaseModel):
    contact_ids: list[str] = Field(min_length=1)
    target_lists: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class ImportItemError(BaseModel):
    contact_id: str
    code: str
    message: str


class ImportResult(BaseModel):
    total: int
    imported: int
    failed: int
    already_imported: list[str] = Field(default_factory=list)
    errors: list[ImportItemError] = Field(default_factory=list)
    imported_ids: dict[str, int] = Field(default_factory=dict)


class ProviderHealthOut(BaseModel):
    provider: str
    status: str
    response_time_seconds: float
    error_rate: float
    last_error: str | None = None
    breaker_state: str | None = None
    metrics: dict[str, float | int] = Field(default_factory=dict)


class SearchHealthOut(BaseModel):
    status: str
    providers: list[ProviderHealthOut] = Field(default_factory=list)
    active_jobs: int = 0
