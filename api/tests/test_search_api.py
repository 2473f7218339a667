from __future__ import annotations

import time
from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.main import app
from app.services.contact_store import InMemoryContactStore
from app.services.container import ServiceContainer, build_container, get_container
from app.services.providers.base import ProviderHealth, ProviderMetrics, WebSearchResponse, WebSearchResult

USER_HEADERS = {"X-User-Id": "user-1"}
OTHER_HEADERS = {"X-User-Id": "user-2"}


class FakeNewsProvider:
    provider_name = "newsdesk"

    def __init__(self) -> None:
        self.metrics = ProviderMetrics()

    async def search(self, request: Any) -> WebSearchResponse:
        self.metrics.requests += 1
        results = [
            WebSearchResult(
                url="https://news.example.com/climate",
                title="Climate desk",
                summary="Contact jane@example.com",
                domain="news.example.com",
                authority=0.6,
                relevance_score=0.9,
                metadata={"author": "Jane Doe"},
            ),
            WebSearchResult(
                url="https://news.example.com/energy",
                title="Energy desk",
                summary="",
                domain="news.example.com",
                authority=0.6,
                relevance_score=0.7,
                metadata={"author": "Sam Lee", "email": "sam@example.com"},
            ),
        ]
        return WebSearchResponse(results=results, total_results=2, query_time_seconds=0.01, cost=0.25)

    async def health_check(self) -> ProviderHealth:
        return ProviderHealth(provider=self.provider_name, status="healthy", response_time_seconds=0.01, error_rate=0.0)

    async def close(self) -> None:
        return None


@pytest.fixture
def search_client() -> Iterator[tuple[TestClient, ServiceContainer]]:
    container = build_container(
        Settings(otel_enabled=False, retry_max_attempts=1, rate_limit_research_max=2),
        providers=[FakeNewsProvider()],
        contact_store=InMemoryContactStore(),
    )
    app.dependency_overrides[get_container] = lambda: container

    with TestClient(app) as client:
        yield client, container

    app.dependency_overrides.clear()


def _submit(client: TestClient, **body: Any) -> Any:
    return client.post("/search", json={"query": "climate reporters", **body}, headers=USER_HEADERS)


def _wait_terminal(client: TestClient, search_id: str) -> dict[str, Any]:
    for _ in range(200):
        body = client.get(f"/search/{search_id}", headers=USER_HEADERS).json()
        if body["status"] in {"completed", "failed", "cancelled"}:
            return body
        time.sleep(0.01)
    raise AssertionError("search did not finish")


def test_submit_returns_accepted_with_rate_limit_headers(search_client) -> None:
    client, _ = search_client
    response = _submit(client, filters={"beats": ["climate"]}, max_results=5)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "submitted"
    assert body["estimated_duration"] > 0
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Remaining"] == "1"

    job = _wait_terminal(client, body["search_id"])
    assert job["status"] == "completed"
    assert job["result_summary"]["candidate_count"] == 2
    assert job["filters"]["beats"] == ["climate"]


def test_rate_limited_submit_returns_429_with_retry_after(search_client) -> None:
    client, _ = search_client
    assert _submit(client).status_code == 202
    assert _submit(client).status_code == 202

    response = _submit(client)
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.json()["detail"]["code"] == "RATE_LIMITED"
    assert response.json()["detail"]["retryable"] is True


def test_submit_requires_identity_and_valid_body(search_client) -> None:
    client, _ = search_client
    assert client.post("/search", json={"query": "editors"}).status_code == 401

    invalid = _submit(client, max_results=0)
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["code"] == "VALIDATION"

    unknown_filter = _submit(client, filters={"topics": ["x"]})
    assert unknown_filter.status_code == 400

    blank = client.post("/search", json={"query": "   "}, headers=USER_HEADERS)
    assert blank.status_code == 400
    assert blank.json()["detail"]["code"] == "VALIDATION"


def test_exhausted_budget_returns_402(search_client) -> None:
    client, container = search_client
    container.ledger.set_budget("user-1", 0.0)

    response = _submit(client)
    assert response.status_code == 402
    assert response.json()["detail"]["code"] == "BUDGET_EXCEEDED"


def test_search_is_private_to_its_owner(search_client) -> None:
    client, _ = search_client
    search_id = _submit(client).json()["search_id"]
    _wait_terminal(client, search_id)

    assert client.get(f"/search/{search_id}", headers=OTHER_HEADERS).status_code == 403
    assert client.get(f"/search/{search_id}", headers={"X-User-Id": "admin-1", "X-User-Role": "admin"}).status_code == 200
    missing = client.get("/search/does-not-exist", headers=USER_HEADERS)
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"


def test_candidates_import_and_reimport(search_client) -> None:
    client, container = search_client
    search_id = _submit(client).json()["search_id"]
    _wait_terminal(client, search_id)

    candidates = client.get(f"/search/{search_id}/candidates", headers=USER_HEADERS).json()
    assert sorted(candidate["email"] for candidate in candidates) == ["jane@example.com", "sam@example.com"]
    results = client.get(f"/search/{search_id}/results", headers=USER_HEADERS).json()
    assert len(results) == 2

    ids = [candidate["id"] for candidate in candidates]
    first = client.post(f"/search/{search_id}/import", json={"contact_ids": ids, "tags": ["ai"]}, headers=USER_HEADERS)
    assert first.status_code == 200
    assert first.json()["imported"] == 2

    second = client.post(f"/search/{search_id}/import", json={"contact_ids": ids}, headers=USER_HEADERS)
    assert second.json()["imported"] == 0
    assert sorted(second.json()["already_imported"]) == sorted(ids)

    empty = client.post(f"/search/{search_id}/import", json={"contact_ids": []}, headers=USER_HEADERS)
    assert empty.status_code == 400
    assert len(container.contact_store) == 2


def test_cancel_after_completion_returns_final_state(search_client) -> None:
    client, _ = search_client
    search_id = _submit(client).json()["search_id"]
    _wait_terminal(client, search_id)

    response = client.post(f"/search/{search_id}/cancel", json={"reason": "too late"}, headers=USER_HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["cancel_reason"] is None


def test_event_stream_for_finished_search_sends_snapshot(search_client) -> None:
    client, _ = search_client
    search_id = _submit(client).json()["search_id"]
    job = _wait_terminal(client, search_id)

    response = client.get(f"/search/{search_id}/events", headers=USER_HEADERS)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert "event: snapshot" in response.text
    assert f"id: {job['last_sequence_number']}" in response.text
    assert "event: progress" not in response.text


def test_costs_endpoints_report_budget_and_alerts(search_client) -> None:
    client, container = search_client
    container.ledger.set_budget("user-1", 0.4)
    search_id = _submit(client).json()["search_id"]
    _wait_terminal(client, search_id)

    budget = client.get("/costs/budget", headers=USER_HEADERS).json()
    assert budget["used"] == pytest.approx(0.25)
    assert budget["limit"] == pytest.approx(0.4)
    assert budget["exceeded"] is False

    assert client.get("/costs/budget", params={"user_id": "user-2"}, headers=USER_HEADERS).status_code == 403

    alerts = client.get("/costs/alerts", headers=USER_HEADERS).json()
    assert [alert["alert_type"] for alert in alerts] == ["budget_threshold"]
    ack = client.post(f"/costs/alerts/{alerts[0]['id']}/acknowledge", headers=USER_HEADERS)
    assert ack.status_code == 204
    assert client.get("/costs/alerts", params={"acknowledged": "false"}, headers=USER_HEADERS).json() == []
    assert client.post("/costs/alerts/missing/acknowledge", headers=USER_HEADERS).status_code == 404


def test_provider_health_reports_breaker_state(search_client) -> None:
    client, _ = search_client
    response = client.get("/health/providers")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["providers"][0]["provider"] == "newsdesk"
    assert body["providers"][0]["breaker_state"] == "closed"
