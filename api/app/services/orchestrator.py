from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from app.core.auth import Principal
from app.core.config import Settings
from app.core.errors import (
    BudgetExceededError,
    CircuitOpenError,
    ErrorCode,
    InternalError,
    JobAccessDeniedError,
    JobNotFoundError,
    RateLimitedError,
    RetryExhaustedError,
    SearchError,
    UpstreamUnavailableError,
    ValidationFailedError,
    error_severity,
)
from app.core.telemetry import bind_search_id
from app.core.urls import result_key
from app.schemas.search import (
    CandidateContact,
    ImportRequest,
    ImportResult,
    JobError,
    JobStatus,
    SearchFilters,
    SearchJob,
    SearchRequest,
)
from app.services.cost_ledger import CostLedger
from app.services.materializer import ContactImporter, materialize
from app.services.progress import EventType, ProgressChannel, ProgressEvent
from app.services.providers.base import ProviderHealth, SearchProvider, WebSearchRequest, WebSearchResponse, WebSearchResult
from app.services.rate_limiter import RateLimiter, RateLimitResult
from app.services.resilience import CircuitBreakerRegistry, RetryPolicy, Sleep, run_with_retry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

START_PERCENT = 5
DISPATCH_PERCENT_SPAN = 90


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    max_query_length: int = 500
    default_max_results: int = 10
    max_in_flight_per_job: int = 3
    job_timeout_seconds: float = 300.0
    estimated_seconds_per_provider: float = 20.0

    @classmethod
    def from_settings(cls, settings: Settings) -> OrchestratorConfig:
        return cls(
            max_query_length=settings.search_max_query_length,
            default_max_results=settings.search_default_max_results,
            max_in_flight_per_job=settings.search_max_in_flight_per_job,
            job_timeout_seconds=settings.search_job_timeout_seconds,
            estimated_seconds_per_provider=settings.search_estimated_seconds_per_provider,
        )


@dataclass(slots=True, frozen=True)
class SubmissionResult:
    job_id: str
    status: JobStatus
    estimated_duration_seconds: int
    rate_limit: RateLimitResult | None = None


@dataclass(slots=True)
class _JobRuntime:
    job: SearchJob
    semaphore: asyncio.Semaphore
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    results: dict[str, WebSearchResult] = field(default_factory=dict)
    provider_results: dict[str, list[str]] = field(default_factory=dict)
    candidates: list[CandidateContact] = field(default_factory=list)
    budget_error: BudgetExceededError | None = None
    task: asyncio.Task[None] | None = None
    provider_tasks: list[asyncio.Task[None]] = field(default_factory=list)
    sequence: int = 0


def _job_error(error: SearchError, provider: str | None = None) -> JobError:
    source = error.last_error if isinstance(error, RetryExhaustedError) else error
    return JobError(
        code=error.code.value,
        message=error.message,
        retryable=source.retryable or isinstance(source, CircuitOpenError),
        retry_after=error.retry_after_seconds,
        provider=provider,
    )


class SearchOrchestrator:
    """Owns search jobs from submission to a terminal state.

    Each job runs as one asyncio task that fans out to the configured
    providers, at most `max_in_flight_per_job` at a time. All writes to a job
    and every progress emission happen under the job's lock, so events leave
    in sequence order and `get_status` always matches the last event sent.

    Cancellation is cooperative: pending dispatches are skipped, in-flight
    provider calls run to completion and their results are discarded on
    arrival (their cost is still written to the ledger).
    """

    def __init__(
        self,
        *,
        providers: Sequence[SearchProvider],
        rate_limiters: dict[str, RateLimiter],
        breakers: CircuitBreakerRegistry,
        retry_policy: RetryPolicy,
        ledger: CostLedger,
        channel: ProgressChannel,
        importer: ContactImporter,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.providers = list(providers)
        self.rate_limiters = rate_limiters
        self.breakers = breakers
        self.retry_policy = retry_policy
        self.ledger = ledger
        self.channel = channel
        self.importer = importer
        self.config = config or OrchestratorConfig()
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[str, _JobRuntime] = {}

    @property
    def active_jobs(self) -> int:
        return sum(1 for runtime in self._jobs.values() if not runtime.job.status.is_terminal)

    async def submit(self, principal: Principal, request: SearchRequest) -> SubmissionResult:
        query = request.query.strip()
        if not query:
            raise ValidationFailedError("query must not be empty")
        if len(query) > self.config.max_query_length:
            raise ValidationFailedError(f"query must be at most {self.config.max_query_length} characters")
        if not self.providers:
            raise UpstreamUnavailableError("no search providers are configured")

        blocking = self.ledger.blocking_budget(principal.user_id)
        if blocking is not None:
            raise BudgetExceededError(
                f"{blocking.period.value} budget exhausted (${blocking.used:.2f} of ${blocking.limit:.2f})",
                details={"budget": blocking},
            )

        limiter = self._limiter_for(principal)
        rate_limit = await limiter.check_limit(principal.user_id)
        if not rate_limit.allowed:
            raise RateLimitedError(
                "search rate limit reached",
                retry_after_seconds=rate_limit.retry_after_seconds(limiter.now()),
                details={"rate_limit": rate_limit},
            )
        await self._check_address_limit(principal)

        now = self._clock()
        job = SearchJob(
            id=str(uuid4()),
            owner_id=principal.user_id,
            query=query,
            filters=request.filters or SearchFilters(),
            max_results=request.max_results or self.config.default_max_results,
            priority=request.priority,
            created_at=now,
        )
        job.result_summary.providers_total = len(self.providers)
        estimate = self._estimate_seconds(len(self.providers))
        job.progress.estimated_remaining_seconds = float(estimate)

        runtime = _JobRuntime(job=job, semaphore=asyncio.Semaphore(max(1, self.config.max_in_flight_per_job)))
        self._jobs[job.id] = runtime
        runtime.task = asyncio.create_task(self._run(runtime), name=f"search-job-{job.id}")
        logger.info(
            "search submitted job_id=%s owner=%s providers=%s query_length=%s",
            job.id,
            principal.user_id,
            len(self.providers),
            len(query),
        )
        return SubmissionResult(
            job_id=job.id,
            status=job.status,
            estimated_duration_seconds=estimate,
            rate_limit=rate_limit,
        )

    async def cancel(self, job_id: str, principal: Principal, reason: str | None = None) -> SearchJob:
        runtime = self._runtime(job_id, principal)
        async with runtime.lock:
            job = runtime.job
            if job.status.is_terminal:
                return job.model_copy(deep=True)
            job.status = JobStatus.CANCELLED
            job.cancel_reason = reason
            job.completed_at = self._clock()
            job.progress.stage = "cancelled"
            job.progress.message = "Search cancelled"
            job.progress.estimated_remaining_seconds = 0.0
            self._emit(
                runtime,
                EventType.CANCELLED,
                {
                    "reason": reason,
                    "result_count": job.result_summary.result_count,
                    "candidate_count": job.result_summary.candidate_count,
                },
            )
            logger.info("search cancelled job_id=%s by=%s reason=%s", job_id, principal.user_id, reason)
            return job.model_copy(deep=True)

    def get_status(self, job_id: str, principal: Principal) -> SearchJob:
        return self._runtime(job_id, principal).job.model_copy(deep=True)

    def results(self, job_id: str, principal: Principal) -> list[WebSearchResult]:
        return list(self._runtime(job_id, principal).results.values())

    def candidates(self, job_id: str, principal: Principal) -> list[CandidateContact]:
        return [candidate.model_copy(deep=True) for candidate in self._runtime(job_id, principal).candidates]

    async def import_selected(self, job_id: str, principal: Principal, request: ImportRequest) -> ImportResult:
        runtime = self._runtime(job_id, principal)
        return await self.importer.import_selected(
            job_id,
            runtime.candidates,
            request.contact_ids,
            target_lists=request.target_lists,
            tags=request.tags,
        )

    async def health(self) -> list[tuple[ProviderHealth, str]]:
        rows: list[tuple[ProviderHealth, str]] = []
        for provider in self.providers:
            health = await provider.health_check()
            breaker = self.breakers.get(provider.provider_name).snapshot()
            rows.append((health, breaker.state.value))
        return rows

    def prune_finished(self, max_age: timedelta) -> int:
        cutoff = self._clock() - max_age
        expired = [
            job_id
            for job_id, runtime in self._jobs.items()
            if runtime.job.status.is_terminal and runtime.job.completed_at is not None and runtime.job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self.channel.forget(job_id)
            self.importer.forget(job_id)
        return len(expired)

    async def wait_for(self, job_id: str) -> None:
        """Wait until the job's driver task has finished."""
        runtime = self._jobs.get(job_id)
        if runtime is not None and runtime.task is not None:
            await asyncio.shield(runtime.task)

    async def shutdown(self) -> None:
        tasks: list[asyncio.Task[None]] = []
        for runtime in self._jobs.values():
            for task in [runtime.task, *runtime.provider_tasks]:
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for provider in self.providers:
            await provider.close()

    def _limiter_for(self, principal: Principal) -> RateLimiter:
        profile = "admin" if principal.is_admin else "research"
        return self.rate_limiters[profile]

    async def _check_address_limit(self, principal: Principal) -> None:
        # Shared addresses (offices, NAT) get one ceiling across all their users.
        limiter = self.rate_limiters.get("ip_based")
        if limiter is None or principal.is_admin or not principal.client_ip:
            return
        result = await limiter.check_limit(principal.client_ip)
        if not result.allowed:
            raise RateLimitedError(
                "too many searches from this address",
                retry_after_seconds=result.retry_after_seconds(limiter.now()),
                details={"rate_limit": result},
            )

    def _runtime(self, job_id: str, principal: Principal) -> _JobRuntime:
        runtime = self._jobs.get(job_id)
        if runtime is None:
            raise JobNotFoundError(f"search {job_id} not found")
        if not principal.can_access(runtime.job.owner_id):
            raise JobAccessDeniedError("search belongs to another user")
        return runtime

    def _estimate_seconds(self, provider_count: int) -> int:
        waves = math.ceil(provider_count / max(1, self.config.max_in_flight_per_job))
        return int(math.ceil(waves * self.config.estimated_seconds_per_provider))

    def _emit(self, runtime: _JobRuntime, event_type: EventType, payload: dict[str, Any]) -> None:
        runtime.sequence += 1
        job = runtime.job
        job.last_sequence_number = runtime.sequence
        body = {
            "status": job.status.value,
            "stage": job.progress.stage,
            "percent": job.progress.percent,
            "message": job.progress.message,
            "estimated_remaining_seconds": job.progress.estimated_remaining_seconds,
            "cost": job.result_summary.cost,
            **payload,
        }
        self.channel.publish(
            ProgressEvent(
                job_id=job.id,
                sequence_number=runtime.sequence,
                type=event_type,
                payload=body,
                timestamp=self._clock(),
            )
        )

    def _advance(self, runtime: _JobRuntime, stage: str, message: str) -> None:
        summary = runtime.job.result_summary
        finished = summary.providers_completed + summary.providers_failed
        total = max(1, summary.providers_total)
        computed = START_PERCENT + (DISPATCH_PERCENT_SPAN * finished) // total
        progress = runtime.job.progress
        progress.percent = max(progress.percent, min(99, computed))
        progress.stage = stage
        progress.message = message
        progress.estimated_remaining_seconds = float(self._estimate_seconds(max(0, total - finished)))

    async def _run(self, runtime: _JobRuntime) -> None:
        job = runtime.job
        with bind_search_id(job.id), tracer.start_as_current_span("search.job") as span:
            span.set_attribute("search.job_id", job.id)
            span.set_attribute("search.providers", len(self.providers))
            async with runtime.lock:
                if job.status.is_terminal:
                    return
                job.status = JobStatus.RUNNING
                job.started_at = self._clock()
                self._advance(runtime, "searching", f"Searching {len(self.providers)} source(s)")
                self._emit(runtime, EventType.PROGRESS, {"providers_total": len(self.providers)})

            runtime.provider_tasks = [
                asyncio.create_task(self._dispatch(runtime, provider), name=f"search-{job.id}-{provider.provider_name}")
                for provider in self.providers
            ]
            _, pending = await asyncio.wait(runtime.provider_tasks, timeout=self.config.job_timeout_seconds)
            timed_out = bool(pending)
            if timed_out:
                logger.warning("search timed out job_id=%s pending_providers=%s", job.id, len(pending))

            await self._finish(runtime, timed_out)
            span.set_attribute("search.status", job.status.value)
            span.set_attribute("search.result_count", job.result_summary.result_count)

    async def _dispatch(self, runtime: _JobRuntime, provider: SearchProvider) -> None:
        job = runtime.job
        name = provider.provider_name
        async with runtime.semaphore:
            async with runtime.lock:
                if job.status.is_terminal or runtime.budget_error is not None:
                    return
                blocking = self.ledger.blocking_budget(job.owner_id)
                if blocking is not None:
                    runtime.budget_error = BudgetExceededError(
                        f"{blocking.period.value} budget exhausted while searching",
                        details={"budget": blocking},
                    )
                    logger.warning("search budget exhausted job_id=%s provider=%s skipped", job.id, name)
                    return

            request = WebSearchRequest(
                query=job.query,
                filters=job.filters.to_filter_set(),
                max_results=job.max_results,
                options={"priority": job.priority},
            )
            with tracer.start_as_current_span("search.provider_call") as span:
                span.set_attribute("search.job_id", job.id)
                span.set_attribute("search.provider", name)
                try:
                    response = await run_with_retry(
                        lambda: provider.search(request),
                        self.retry_policy,
                        breaker=self.breakers.get(name),
                        sleep=self._sleep,
                    )
                except SearchError as exc:
                    span.set_attribute("search.error_code", exc.code.value)
                    await self._provider_failed(runtime, name, exc)
                    return
                except Exception:
                    logger.exception("search provider crashed job_id=%s provider=%s", job.id, name)
                    await self._provider_failed(runtime, name, InternalError("search provider failed unexpectedly"))
                    return
                span.set_attribute("search.result_count", len(response.results))

            # Cost lands in the ledger before the next dispatch re-checks the budget.
            try:
                await self._provider_succeeded(runtime, name, response)
            except Exception:
                logger.exception("recording provider response failed job_id=%s provider=%s", job.id, name)
                await self._provider_failed(runtime, name, InternalError("provider response could not be recorded"))

    async def _provider_succeeded(self, runtime: _JobRuntime, name: str, response: WebSearchResponse) -> None:
        job = runtime.job
        async with runtime.lock:
            discarded = job.status.is_terminal
            metadata: dict[str, Any] = {"search_id": response.search_id, "result_count": len(response.results)}
            # Late costs stay out of the job's total but are never dropped.
            metadata["discarded_for_job" if discarded else "job_id"] = job.id
            await self.ledger.record_cost(
                user_id=job.owner_id,
                operation="web_search",
                provider=name,
                cost=response.cost,
                metadata=metadata,
            )
            if discarded:
                logger.info(
                    "discarding late provider results job_id=%s provider=%s status=%s results=%s",
                    job.id,
                    name,
                    job.status.value,
                    len(response.results),
                )
                return

            keys: list[str] = []
            new_results = 0
            for result in response.results:
                key = result_key(result.url)
                keys.append(key)
                if key not in runtime.results:
                    runtime.results[key] = result
                    new_results += 1
            runtime.provider_results[name] = keys
            runtime.candidates = materialize(job.id, runtime.results.values())

            summary = job.result_summary
            summary.providers_completed += 1
            summary.result_count = len(runtime.results)
            summary.candidate_count = len(runtime.candidates)
            summary.cost = self.ledger.total_for_job(job.id)
            self._advance(runtime, "merging", f"Received {len(response.results)} result(s) from {name}")
            self._emit(
                runtime,
                EventType.PROGRESS,
                {
                    "provider": name,
                    "new_results": new_results,
                    "result_count": summary.result_count,
                    "candidate_count": summary.candidate_count,
                },
            )

    async def _provider_failed(self, runtime: _JobRuntime, name: str, error: SearchError) -> None:
        job = runtime.job
        async with runtime.lock:
            if job.status.is_terminal:
                return
            job_error = _job_error(error, provider=name)
            job.errors.append(job_error)
            job.result_summary.providers_failed += 1
            logger.warning("search provider failed job_id=%s provider=%s code=%s", job.id, name, job_error.code)
            self._advance(runtime, "provider_failed", f"{name} failed: {job_error.message}")
            self._emit(runtime, EventType.PROGRESS, {"provider": name, "error": job_error.model_dump()})

    async def _finish(self, runtime: _JobRuntime, timed_out: bool) -> None:
        job = runtime.job
        async with runtime.lock:
            if job.status.is_terminal:
                return
            summary = job.result_summary
            summary.timed_out = timed_out
            job.completed_at = self._clock()
            job.progress.estimated_remaining_seconds = 0.0

            failure: JobError | None = None
            if runtime.budget_error is not None:
                failure = _job_error(runtime.budget_error)
            elif summary.providers_completed == 0:
                failure = self._most_significant_error(job.errors, timed_out)

            if failure is None:
                job.status = JobStatus.COMPLETED
                job.progress.percent = 100
                job.progress.stage = "completed"
                job.progress.message = (
                    f"Found {summary.candidate_count} candidate contact(s)"
                    + (" before the time limit" if timed_out else "")
                )
                self._emit(
                    runtime,
                    EventType.COMPLETED,
                    {
                        "result_count": summary.result_count,
                        "candidate_count": summary.candidate_count,
                        "timed_out": timed_out,
                        "results": f"/search/{job.id}/candidates",
                    },
                )
                logger.info(
                    "search completed job_id=%s results=%s candidates=%s cost=%.4f timed_out=%s",
                    job.id,
                    summary.result_count,
                    summary.candidate_count,
                    summary.cost,
                    timed_out,
                )
                return

            job.status = JobStatus.FAILED
            job.error = failure
            job.progress.stage = "failed"
            job.progress.message = failure.message
            self._emit(
                runtime,
                EventType.FAILED,
                {
                    "error": failure.model_dump(),
                    "result_count": summary.result_count,
                    "candidate_count": summary.candidate_count,
                    "timed_out": timed_out,
                },
            )
            logger.warning("search failed job_id=%s code=%s message=%s", job.id, failure.code, failure.message)

    @staticmethod
    def _most_significant_error(errors: list[JobError], timed_out: bool) -> JobError:
        if not errors:
            message = "search timed out before any source responded" if timed_out else "no source returned results"
            return JobError(code="UPSTREAM_UNAVAILABLE", message=message, retryable=True)
        ranked = sorted(errors, key=lambda error: error_severity(ErrorCode(error.code)))
        return ranked[0].model_copy()
