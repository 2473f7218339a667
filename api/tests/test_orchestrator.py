from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from typing import Any

import pytest

from app.core.auth import Principal, PrincipalRole
from app.core.config import Settings
from app.core.errors import (
    AuthenticationFailedError,
    BudgetExceededError,
    JobAccessDeniedError,
    JobNotFoundError,
    QuotaExceededError,
    RateLimitedError,
    SearchError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from app.schemas.search import JobStatus, SearchRequest
from app.services.contact_store import InMemoryContactStore
from app.services.container import ServiceContainer, build_container
from app.services.progress import EventType, ProgressEvent
from app.services.providers.base import ProviderHealth, ProviderMetrics, WebSearchResponse, WebSearchResult

OWNER = Principal(user_id="user-1")


def _slug(url: str) -> str:
    return url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]


class FakeProvider:
    def __init__(
        self,
        name: str,
        urls: list[str] | None = None,
        *,
        error: SearchError | None = None,
        cost: float = 0.01,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.provider_name = name
        self.urls = urls or []
        self.error = error
        self.cost = cost
        self.gate = gate
        self.calls = 0
        self.closed = False
        self.metrics = ProviderMetrics()

    async def search(self, request: Any) -> WebSearchResponse:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        results = [
            WebSearchResult(
                url=url,
                title=f"Story {index}",
                summary="",
                domain="example.com",
                authority=0.5,
                relevance_score=0.5,
                metadata={"author": f"Reporter {_slug(url)}", "email": f"{_slug(url)}@example.com"},
            )
            for index, url in enumerate(self.urls)
        ]
        return WebSearchResponse(results=results, total_results=len(results), query_time_seconds=0.01, cost=self.cost)

    async def health_check(self) -> ProviderHealth:
        return ProviderHealth(provider=self.provider_name, status="healthy", response_time_seconds=0.0, error_rate=0.0)

    async def close(self) -> None:
        self.closed = True


def _container(providers: list[FakeProvider], **overrides: Any) -> ServiceContainer:
    settings = Settings(
        retry_max_attempts=1,
        otel_enabled=False,
        **overrides,
    )
    return build_container(settings, providers=providers, contact_store=InMemoryContactStore())


async def _until(predicate: Callable[[], bool]) -> None:
    for _ in range(500):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def _run(container: ServiceContainer, scenario: Callable[[ServiceContainer], Any]) -> Any:
    async def run() -> Any:
        try:
            return await scenario(container)
        finally:
            await container.close()

    return asyncio.run(run())


def test_job_merges_provider_results_and_completes() -> None:
    first = FakeProvider("alpha", ["https://example.com/a", "https://www.example.com/b/"], cost=0.02)
    second = FakeProvider("beta", ["https://example.com/b?utm_source=x", "https://example.com/c"], cost=0.03)
    container = _container([first, second])
    events: list[ProgressEvent] = []

    async def scenario(c: ServiceContainer) -> Any:
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="climate reporters"))
        c.channel.subscribe(submission.job_id, events.append)
        await c.orchestrator.wait_for(submission.job_id)
        return c.orchestrator.get_status(submission.job_id, OWNER), c.orchestrator.candidates(submission.job_id, OWNER)

    job, candidates = _run(container, scenario)

    assert job.status is JobStatus.COMPLETED
    assert job.progress.percent == 100
    assert job.result_summary.result_count == 3
    assert job.result_summary.candidate_count == len(candidates) == 3
    assert job.result_summary.providers_completed == 2
    assert math.isclose(job.result_summary.cost, 0.05)
    assert math.isclose(container.ledger.total_for_job(job.id), job.result_summary.cost)

    sequences = [event.sequence_number for event in events]
    assert sequences == sorted(sequences) and len(set(sequences)) == len(sequences)
    assert events[-1].type is EventType.COMPLETED
    assert events[-1].payload["results"] == f"/search/{job.id}/candidates"
    assert job.last_sequence_number == events[-1].sequence_number
    percents = [event.payload["percent"] for event in events]
    assert percents == sorted(percents)
    assert first.closed and second.closed


def test_cancel_keeps_partial_results_and_discards_late_ones() -> None:
    gate = asyncio.Event()
    providers = [
        FakeProvider("alpha", ["https://example.com/a"]),
        FakeProvider("beta", ["https://example.com/b"]),
        FakeProvider("gamma", ["https://example.com/c"], gate=gate),
    ]
    container = _container(providers, search_max_in_flight_per_job=3)
    events: list[ProgressEvent] = []

    async def scenario(c: ServiceContainer) -> Any:
        orchestrator = c.orchestrator
        submission = await orchestrator.submit(OWNER, SearchRequest(query="editors"))
        job_id = submission.job_id
        c.channel.subscribe(job_id, events.append)
        await _until(lambda: orchestrator.get_status(job_id, OWNER).result_summary.providers_completed == 2)

        cancelled = await orchestrator.cancel(job_id, OWNER, "changed my mind")
        again = await orchestrator.cancel(job_id, OWNER, "second click")
        gate.set()
        await orchestrator.wait_for(job_id)
        return cancelled, again, orchestrator.get_status(job_id, OWNER), orchestrator.results(job_id, OWNER)

    cancelled, again, final, results = _run(container, scenario)

    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.cancel_reason == "changed my mind"
    assert again.cancel_reason == "changed my mind"
    assert again.completed_at == cancelled.completed_at
    assert again.last_sequence_number == cancelled.last_sequence_number
    assert final.completed_at == cancelled.completed_at
    assert final.last_sequence_number == cancelled.last_sequence_number
    assert final.status is JobStatus.CANCELLED
    assert final.result_summary.result_count == 2
    assert sorted(result.url for result in results) == ["https://example.com/a", "https://example.com/b"]
    assert [event.type for event in events].count(EventType.CANCELLED) == 1
    assert events[-1].type is EventType.CANCELLED

    assert math.isclose(container.ledger.total_for_job(final.id), final.result_summary.cost)
    late = [entry for entry in container.ledger.recent_entries("user-1") if entry.metadata.get("discarded_for_job")]
    assert len(late) == 1 and late[0].provider == "gamma"


def test_cancelling_a_completed_job_changes_nothing() -> None:
    gate = asyncio.Event()
    container = _container([FakeProvider("alpha", ["https://example.com/a"], gate=gate)])
    events: list[ProgressEvent] = []

    async def scenario(c: ServiceContainer) -> Any:
        orchestrator = c.orchestrator
        job_id = (await orchestrator.submit(OWNER, SearchRequest(query="editors"))).job_id
        c.channel.subscribe(job_id, events.append)
        gate.set()
        await orchestrator.wait_for(job_id)
        before = orchestrator.get_status(job_id, OWNER)
        seen = len(events)
        returned = await orchestrator.cancel(job_id, OWNER, "too late")
        return before, returned, orchestrator.get_status(job_id, OWNER), seen

    before, returned, after, seen = _run(container, scenario)

    assert before.status is JobStatus.COMPLETED
    for snapshot in (returned, after):
        assert snapshot.status is JobStatus.COMPLETED
        assert snapshot.cancel_reason is None
        assert snapshot.completed_at == before.completed_at
        assert snapshot.last_sequence_number == before.last_sequence_number
    assert len(events) == seen
    assert [event.type for event in events].count(EventType.COMPLETED) == 1
    assert events[-1].sequence_number == before.last_sequence_number


def test_budget_is_checked_before_rate_limit() -> None:
    container = _container([FakeProvider("alpha", ["https://example.com/a"])], rate_limit_research_max=1)

    async def scenario(c: ServiceContainer) -> Any:
        c.ledger.set_budget("user-1", 0.0)
        with pytest.raises(BudgetExceededError):
            await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))

        c.ledger.clear_budget("user-1")
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        with pytest.raises(RateLimitedError) as exc_info:
            await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        return submission, exc_info.value

    submission, limited = _run(container, scenario)
    assert submission.rate_limit is not None and submission.rate_limit.remaining == 0
    assert limited.retry_after_seconds is not None and limited.retry_after_seconds > 0
    assert limited.details["rate_limit"].allowed is False


def test_admins_use_the_admin_rate_limit_profile() -> None:
    container = _container([FakeProvider("alpha")], rate_limit_research_max=1, rate_limit_admin_max=5)
    admin = Principal(user_id="admin-1", role=PrincipalRole.ADMIN)

    async def scenario(c: ServiceContainer) -> Any:
        submissions = [await c.orchestrator.submit(admin, SearchRequest(query="editors")) for _ in range(3)]
        for submission in submissions:
            await c.orchestrator.wait_for(submission.job_id)
        return submissions

    submissions = _run(container, scenario)
    assert [submission.rate_limit.remaining for submission in submissions] == [4, 3, 2]


def test_users_behind_one_address_share_the_ip_ceiling() -> None:
    container = _container([FakeProvider("alpha")], rate_limit_ip_max=1)
    first = Principal(user_id="user-1", client_ip="203.0.113.7")
    second = Principal(user_id="user-2", client_ip="203.0.113.7")

    async def scenario(c: ServiceContainer) -> Any:
        submission = await c.orchestrator.submit(first, SearchRequest(query="editors"))
        with pytest.raises(RateLimitedError) as exc_info:
            await c.orchestrator.submit(second, SearchRequest(query="editors"))
        other = await c.orchestrator.submit(Principal(user_id="user-3", client_ip="198.51.100.2"), SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        await c.orchestrator.wait_for(other.job_id)
        return exc_info.value

    limited = _run(container, scenario)
    assert limited.details["rate_limit"].limit == 1


def test_submit_validates_query_and_providers() -> None:
    async def scenario(c: ServiceContainer) -> None:
        with pytest.raises(ValidationFailedError):
            await c.orchestrator.submit(OWNER, SearchRequest(query="   "))
        with pytest.raises(ValidationFailedError):
            await c.orchestrator.submit(OWNER, SearchRequest(query="x" * 501))

    _run(_container([FakeProvider("alpha")]), scenario)

    async def no_providers(c: ServiceContainer) -> None:
        with pytest.raises(UpstreamUnavailableError):
            await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))

    _run(_container([]), no_providers)


def test_job_fails_with_most_severe_provider_error() -> None:
    providers = [
        FakeProvider("alpha", error=UpstreamUnavailableError("upstream 503")),
        FakeProvider("beta", error=QuotaExceededError("quota exhausted")),
    ]

    async def scenario(c: ServiceContainer) -> Any:
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        return c.orchestrator.get_status(submission.job_id, OWNER)

    job = _run(_container(providers), scenario)
    assert job.status is JobStatus.FAILED
    assert job.error is not None and job.error.code == "QUOTA_EXCEEDED"
    assert job.error.retryable is False
    assert sorted(error.code for error in job.errors) == ["QUOTA_EXCEEDED", "UPSTREAM_UNAVAILABLE"]
    assert job.result_summary.providers_failed == 2


def test_one_failed_provider_does_not_fail_the_job() -> None:
    providers = [
        FakeProvider("alpha", ["https://example.com/a"]),
        FakeProvider("beta", error=AuthenticationFailedError("bad key")),
    ]

    async def scenario(c: ServiceContainer) -> Any:
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        return c.orchestrator.get_status(submission.job_id, OWNER)

    job = _run(_container(providers), scenario)
    assert job.status is JobStatus.COMPLETED
    assert job.error is None
    assert [(error.provider, error.code) for error in job.errors] == [("beta", "AUTH")]


def test_unrecordable_provider_cost_counts_as_a_failed_provider() -> None:
    broken = FakeProvider("alpha", ["https://example.com/a"], cost=float("inf"))
    healthy = FakeProvider("beta", ["https://example.com/b"])
    container = _container([broken, healthy])

    async def scenario(c: ServiceContainer) -> Any:
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        return c.orchestrator.get_status(submission.job_id, OWNER), c.ledger.total_for_job(submission.job_id)

    job, ledger_total = _run(container, scenario)
    summary = job.result_summary
    assert job.status is JobStatus.COMPLETED
    assert (summary.providers_completed, summary.providers_failed) == (1, 1)
    assert [(error.provider, error.code) for error in job.errors] == [("alpha", "INTERNAL")]
    assert summary.result_count == 1
    assert summary.cost == pytest.approx(ledger_total)


def test_budget_exhausted_mid_job_fails_and_keeps_partial_results() -> None:
    providers = [
        FakeProvider("alpha", ["https://example.com/a"], cost=1.0),
        FakeProvider("beta", ["https://example.com/b"], cost=1.0),
    ]
    container = _container(providers, budget_daily_limit=1.0, search_max_in_flight_per_job=1)

    async def scenario(c: ServiceContainer) -> Any:
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        return c.orchestrator.get_status(submission.job_id, OWNER)

    job = _run(container, scenario)
    assert job.status is JobStatus.FAILED
    assert job.error is not None and job.error.code == "BUDGET_EXCEEDED"
    assert job.result_summary.result_count == 1
    assert providers[1].calls == 0
    assert math.isclose(job.result_summary.cost, 1.0)


def test_timeout_completes_with_partial_results() -> None:
    gate = asyncio.Event()
    providers = [
        FakeProvider("alpha", ["https://example.com/a"]),
        FakeProvider("slow", ["https://example.com/z"], gate=gate),
    ]
    container = _container(providers, search_job_timeout_seconds=0.05)

    async def scenario(c: ServiceContainer) -> Any:
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        return c.orchestrator.get_status(submission.job_id, OWNER)

    job = _run(container, scenario)
    assert job.status is JobStatus.COMPLETED
    assert job.result_summary.timed_out is True
    assert job.result_summary.result_count == 1


def test_timeout_without_any_results_fails() -> None:
    container = _container([FakeProvider("slow", gate=asyncio.Event())], search_job_timeout_seconds=0.05)

    async def scenario(c: ServiceContainer) -> Any:
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        return c.orchestrator.get_status(submission.job_id, OWNER)

    job = _run(container, scenario)
    assert job.status is JobStatus.FAILED
    assert job.error is not None and job.error.code == "UPSTREAM_UNAVAILABLE"
    assert job.result_summary.timed_out is True


def test_jobs_are_scoped_to_their_owner() -> None:
    container = _container([FakeProvider("alpha", ["https://example.com/a"])])

    async def scenario(c: ServiceContainer) -> str:
        submission = await c.orchestrator.submit(OWNER, SearchRequest(query="editors"))
        await c.orchestrator.wait_for(submission.job_id)
        return submission.job_id

    job_id = _run(container, scenario)
    with pytest.raises(JobAccessDeniedError):
        container.orchestrator.get_status(job_id, Principal(user_id="user-2"))
    with pytest.raises(JobNotFoundError):
        container.orchestrator.get_status("missing", OWNER)
    admin = Principal(user_id="admin-1", role=PrincipalRole.ADMIN)
    assert container.orchestrator.get_status(job_id, admin).owner_id == "user-1"
