from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol


@dataclass(slots=True, frozen=True)
class SearchFilterSet:
    """Provider-facing view of the structured search filters."""

    beats: tuple[str, ...] = ()
    regions: tuple[str, ...] = ()
    countries: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()
    exclude_domains: tuple[str, ...] = ()
    date_from: date | None = None
    date_to: date | None = None


@dataclass(slots=True, frozen=True)
class WebSearchRequest:
    query: str
    filters: SearchFilterSet = field(default_factory=SearchFilterSet)
    max_results: int = 10
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class WebSearchResult:
    url: str
    title: str
    summary: str
    domain: str
    authority: float
    relevance_score: float
    published_date: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class WebSearchResponse:
    results: list[WebSearchResult]
    total_results: int
    query_time_seconds: float
    search_id: str | None = None
    cost: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderMetrics:
    requests: int = 0
    searches: int = 0
    results_found: int = 0
    errors: int = 0
    rate_limit_hits: int = 0
    cost: float = 0.0

    @property
    def error_rate(self) -> float:
        if self.requests == 0:
            return 0.0
        return self.errors / self.requests

    def as_dict(self) -> dict[str, float | int]:
        return {
            "requests": self.requests,
            "searches": self.searches,
            "results_found": self.results_found,
            "errors": self.errors,
            "rate_limit_hits": self.rate_limit_hits,
            "cost": round(self.cost, 6),
            "error_rate": round(self.error_rate, 4),
        }


@dataclass(slots=True, frozen=True)
class ProviderHealth:
    provider: str
    status: str
    response_time_seconds: float
    error_rate: float
    last_error: str | None = None


class SearchProvider(Protocol):
    provider_name: str

    async def search(self, request: WebSearchRequest) -> WebSearchResponse: ...

    async def health_check(self) -> ProviderHealth: ...

    async def close(self) -> None: ...
