from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any

import httpx

from app.core.config import Settings
from app.core.errors import (
    AuthenticationFailedError,
    NetworkError,
    QuotaExceededError,
    RateLimitedError,
    SearchError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from app.core.urls import domain_matches, domain_of
from app.services.providers.base import (
    ProviderHealth,
    ProviderMetrics,
    SearchFilterSet,
    WebSearchRequest,
    WebSearchResponse,
    WebSearchResult,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60.0
LOW_QUOTA_REMAINING = 5
HEALTHY_ERROR_RATE = 0.1
SUMMARY_FALLBACK_CHARS = 300


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if math.isfinite(number) else default


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class ExaConfig:
    api_key: str
    base_url: str = "https://api.exa.ai"
    timeout_seconds: float = 30.0
    max_results: int = 10
    include_summaries: bool = True

    # Heuristic only: results from these domains get a fixed authority boost.
    trusted_domains: tuple[str, ...] = ("reuters.com", "apnews.com", "ap.org", "bbc.com", "bbc.co.uk")
    authority_boost: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> ExaConfig:
        return cls(
            api_key=settings.exa_api_key or "",
            base_url=settings.exa_base_url,
            timeout_seconds=settings.exa_timeout_seconds,
            max_results=settings.exa_max_results,
            trusted_domains=tuple(settings.trusted_news_domains),
            authority_boost=settings.authority_boost,
        )


class ExaProvider:
    """
    Exa web search adapter:
      - POST {base_url}/search

    Auth header:
      - x-api-key: <key>

    Upstream failures are classified into the search error taxonomy here, so
    callers never see raw httpx errors or upstream payloads.
    """

    provider_name = "exa"

    def __init__(self, cfg: ExaConfig, client: httpx.AsyncClient | None = None):
        if not cfg.api_key:
            raise ValueError("ExaConfig.api_key is required")
        self.cfg = cfg
        self._client = client
        self._owns_client = client is None
        self.metrics = ProviderMetrics()
        self.last_error: str | None = None

    async def __aenter__(self) -> ExaProvider:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.cfg.timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.cfg.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def search(self, request: WebSearchRequest) -> WebSearchResponse:
        started = time.perf_counter()
        try:
            data, cost = await self._post("/search", self._build_payload(request))
            results = [self._transform_result(item) for item in data.get("results") or [] if _is_result(item)]
        except SearchError as exc:
            self.last_error = exc.message
            raise
        except Exception as exc:
            self.metrics.errors += 1
            self.last_error = "unexpected provider failure"
            logger.exception("exa search failed unexpectedly query_length=%s", len(request.query))
            raise UpstreamUnavailableError("search provider returned an unexpected response") from exc

        self.metrics.searches += 1
        self.metrics.results_found += len(results)
        total = data.get("totalCount")
        return WebSearchResponse(
            results=results,
            total_results=int(total) if isinstance(total, int) else len(results),
            query_time_seconds=time.perf_counter() - started,
            search_id=data.get("requestId"),
            cost=cost,
            metadata={
                "search_engine": self.provider_name,
                "resolved_query": data.get("resolvedQuery") or data.get("autopromptString"),
                "filters": {
                    "domains": list(request.filters.domains),
                    "exclude_domains": list(request.filters.exclude_domains),
                },
            },
        )

    async def health_check(self) -> ProviderHealth:
        started = time.perf_counter()
        try:
            await self._post("/search", {"query": "journalist contact", "numResults": 1})
        except SearchError as exc:
            self.last_error = exc.message
            return ProviderHealth(
                provider=self.provider_name,
                status="unhealthy",
                response_time_seconds=time.perf_counter() - started,
                error_rate=self.metrics.error_rate,
                last_error=exc.message,
            )

        error_rate = self.metrics.error_rate
        return ProviderHealth(
            provider=self.provider_name,
            status="healthy" if error_rate < HEALTHY_ERROR_RATE else "degraded",
            response_time_seconds=time.perf_counter() - started,
            error_rate=error_rate,
            last_error=self.last_error,
        )

    def _build_payload(self, request: WebSearchRequest) -> dict[str, Any]:
        filters = request.filters
        payload: dict[str, Any] = {
            "query": _compose_query(request.query, filters),
            "numResults": max(1, min(request.max_results, self.cfg.max_results)),
            "contents": {
                "text": True,
                "summary": bool(request.options.get("include_summaries", self.cfg.include_summaries)),
            },
        }
        if filters.domains:
            payload["includeDomains"] = list(filters.domains)
        if filters.exclude_domains:
            payload["excludeDomains"] = list(filters.exclude_domains)
        if filters.date_from is not None:
            payload["startPublishedDate"] = f"{filters.date_from.isoformat()}T00:00:00.000Z"
        if filters.date_to is not None:
            payload["endPublishedDate"] = f"{filters.date_to.isoformat()}T23:59:59.999Z"
        return payload

    async def _post(self, path: str, payload: dict[str, Any]) -> tuple[dict[str, Any], float]:
        self.metrics.requests += 1
        url = f"{self.cfg.base_url.rstrip('/')}{path}"
        try:
            response = await self.client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            self.metrics.errors += 1
            raise UpstreamUnavailableError("search provider timed out") from exc
        except httpx.TransportError as exc:
            self.metrics.errors += 1
            raise NetworkError("search provider unreachable") from exc

        header_cost = self._inspect_headers(response)
        if response.status_code >= 400:
            self.metrics.errors += 1
            raise self._classify_failure(response)

        try:
            data = response.json()
        except ValueError as exc:
            self.metrics.errors += 1
            raise UpstreamUnavailableError("search provider returned invalid JSON") from exc
        if not isinstance(data, dict):
            self.metrics.errors += 1
            raise UpstreamUnavailableError("search provider returned an unexpected payload")

        cost = header_cost if header_cost is not None else _body_cost(data)
        self.metrics.cost += cost
        return data, cost

    def _inspect_headers(self, response: httpx.Response) -> float | None:
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is not None and remaining.strip().isdigit() and int(remaining) < LOW_QUOTA_REMAINING:
            self.metrics.rate_limit_hits += 1

        raw_cost = response.headers.get("x-cost-used")
        if raw_cost is None:
            return None
        return max(0.0, _as_float(raw_cost))

    def _classify_failure(self, response: httpx.Response) -> SearchError:
        status = response.status_code
        details = {"provider": self.provider_name, "status_code": status}
        if status == 429:
            self.metrics.rate_limit_hits += 1
            retry_after = _as_float(response.headers.get("retry-after"), DEFAULT_RETRY_AFTER_SECONDS)
            return RateLimitedError(
                "search provider rate limit reached",
                retry_after_seconds=retry_after if retry_after > 0 else DEFAULT_RETRY_AFTER_SECONDS,
                details=details,
            )
        if status == 402:
            return QuotaExceededError("search provider quota exhausted", details=details)
        if status in (401, 403):
            return AuthenticationFailedError("search provider rejected the configured credentials", details=details)
        if 400 <= status < 500:
            return ValidationFailedError("search provider rejected the request", details=details)
        return UpstreamUnavailableError(f"search provider unavailable (HTTP {status})", details=details)

    def _transform_result(self, item: dict[str, Any]) -> WebSearchResult:
        url = str(item["url"])
        domain = domain_of(url)
        score = _as_float(item.get("score"))
        authority = _clamp(score)
        if domain and domain_matches(domain, list(self.cfg.trusted_domains)):
            authority = min(authority + self.cfg.authority_boost, 1.0)

        text = item.get("text") or ""
        highlights = item.get("highlights") or []
        summary = item.get("summary") or " ".join(str(h) for h in highlights) or str(text)[:SUMMARY_FALLBACK_CHARS]

        metadata: dict[str, Any] = {
            "content_length": len(text) if isinstance(text, str) else 0,
            "content_type": item.get("category") or "article",
        }
        for source_key, target_key in (("author", "author"), ("image", "image"), ("favicon", "favicon")):
            if item.get(source_key):
                metadata[target_key] = item[source_key]

        return WebSearchResult(
            url=url,
            title=item.get("title") or "Untitled",
            summary=summary,
            domain=domain,
            authority=authority,
            relevance_score=score,
            published_date=item.get("publishedDate"),
            metadata=metadata,
        )


def _is_result(item: Any) -> bool:
    return isinstance(item, dict) and bool(item.get("url"))


def _body_cost(data: dict[str, Any]) -> float:
    raw = data.get("costDollars")
    if isinstance(raw, dict):
        raw = raw.get("total")
    if raw is None:
        raw = data.get("cost")
    return max(0.0, _as_float(raw))


def _compose_query(query: str, filters: SearchFilterSet) -> str:
    parts = [query.strip()]
    if filters.beats:
        parts.append(f"covering {', '.join(filters.beats)}")
    places = [*filters.regions, *filters.countries]
    if places:
        parts.append(f"based in {', '.join(places)}")
    if filters.languages:
        parts.append(f"writing in {', '.join(filters.languages)}")
    return " ".join(parts)
