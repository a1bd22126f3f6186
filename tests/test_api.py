"""Tests for API endpoints."""

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio

from visit_relay import routes
from visit_relay.main import app
from visit_relay.models import VisitorUrls, VisitRecord

NOW = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


class FakeDatabase:
    """Replaces the asyncpg-backed Database for route tests."""

    def __init__(self) -> None:
        self.visits: list[VisitRecord] = []
        self.urls: dict[str, VisitorUrls] = {}

    async def find_by_visitor_id(self, visitor_id: str) -> list[VisitRecord]:
        return [v for v in self.visits if v.visitor_id == visitor_id]

    async def upsert_url_list(
        self, visitor_id: str, urls: list[str], user_id: str | None
    ) -> VisitorUrls:
        existing = self.urls.get(visitor_id)
        record = VisitorUrls(
            id=existing.id if existing else len(self.urls) + 1,
            visitor_id=visitor_id,
            user_id=user_id,
            url=urls,
            created_at=existing.created_at if existing else NOW,
            updated_at=NOW,
        )
        self.urls[visitor_id] = record
        return record


@pytest.fixture
def fake_db(monkeypatch: pytest.MonkeyPatch) -> FakeDatabase:
    fake = FakeDatabase()
    monkeypatch.setattr(routes, "db", fake)
    return fake


@pytest_asyncio.fixture
async def api_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the FastAPI app (lifespan not started)."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def make_visit(record_id: int, visitor_id: str, **visit_info: Any) -> VisitRecord:
    return VisitRecord(
        id=record_id,
        visitor_id=visitor_id,
        user_id="u1",
        action_details=[{"url": "https://www.example.com/domestic-flights/1"}],
        visit_info={"id": f"a{record_id}", **visit_info},
        created_at=NOW,
        updated_at=NOW,
    )


@pytest.mark.asyncio
async def test_get_visits_returns_matches(
    api_client: httpx.AsyncClient, fake_db: FakeDatabase
) -> None:
    """Test GET /visits/{visitorId} returns every stored visit of that visitor."""
    fake_db.visits = [make_visit(1, "v1"), make_visit(2, "v2"), make_visit(3, "v1")]

    response = await api_client.get("/visits/v1")

    assert response.status_code == 200
    data = response.json()
    assert [v["id"] for v in data] == [1, 3]
    assert data[0]["visitorId"] == "v1"
    assert data[0]["actionDetails"][0]["url"].endswith("/domestic-flights/1")
    assert data[0]["visitInfo"]["id"] == "a1"


@pytest.mark.asyncio
async def test_get_visits_unknown_visitor_404(
    api_client: httpx.AsyncClient, fake_db: FakeDatabase
) -> None:
    """Test GET /visits/{visitorId} returns 404 when nothing is stored."""
    response = await api_client.get("/visits/nobody")

    assert response.status_code == 404
    assert response.json()["detail"] == "No visits found for visitorId: nobody"


@pytest.mark.asyncio
async def test_save_visits_creates_record(
    api_client: httpx.AsyncClient, fake_db: FakeDatabase
) -> None:
    """Test POST /visits/save-visits creates a record for a new visitor."""
    body = {"visitorId": "v1", "url": ["https://a", "https://b"], "userId": "u1"}

    response = await api_client.post("/visits/save-visits", json=body)

    assert response.status_code == 200
    data = response.json()
    assert data["visitorId"] == "v1"
    assert data["url"] == ["https://a", "https://b"]
    assert data["userId"] == "u1"


@pytest.mark.asyncio
async def test_save_visits_replaces_existing_record(
    api_client: httpx.AsyncClient, fake_db: FakeDatabase
) -> None:
    """Test that saving twice for one visitor updates instead of duplicating."""
    _ = await api_client.post(
        "/visits/save-visits", json={"visitorId": "v1", "url": ["https://a"], "userId": "u1"}
    )
    response = await api_client.post(
        "/visits/save-visits", json={"visitorId": "v1", "url": ["https://c"], "userId": "u2"}
    )

    data = response.json()
    assert data["id"] == 1
    assert data["url"] == ["https://c"]
    assert data["userId"] == "u2"
    assert len(fake_db.urls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"url": ["https://a"]},
        {"visitorId": "v1"},
        {"visitorId": "v1", "url": "https://a"},
        {"visitorId": "", "url": []},
    ],
)
async def test_save_visits_invalid_body_rejected(
    api_client: httpx.AsyncClient, fake_db: FakeDatabase, body: dict[str, Any]
) -> None:
    """Test that invalid bodies are rejected with a validation error."""
    response = await api_client.post("/visits/save-visits", json=body)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_health_check(api_client: httpx.AsyncClient) -> None:
    """Test /health endpoint."""
    response = await api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "broker": "disconnected"}


@pytest.mark.asyncio
async def test_stats_before_first_cycle(api_client: httpx.AsyncClient) -> None:
    """Test GET /stats before the poller has completed a cycle."""
    response = await api_client.get("/stats")

    assert response.status_code == 200
    data = response.json()
    assert data["broker_state"] == "disconnected"
    assert data["dedup_size"] == 0
    assert data["cycles_completed"] == 0
    assert data["last_success_at"] is None
    assert data["last_report"] is None
