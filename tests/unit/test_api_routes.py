"""Unit tests for API routes."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.quiz_analytics.api.routes import get_orchestrator
from src.quiz_analytics.main import create_app
from src.quiz_analytics.schemas.models import SyncResult, TimeWindow
from src.quiz_analytics.storage import SessionStore, connect, init_database
from src.quiz_analytics.sync.exceptions import (
    InconsistentAttribution,
    InvalidWindow,
    SyncInProgressError,
    UpstreamUnavailable,
)


SHOP = "test-shop.myshopify.com"
HEADERS = {"X-QUIZ-API-KEY": "test-api-key"}


@pytest.fixture
def orchestrator():
    """Stand-in orchestrator; tests set run_sync behavior."""
    fake = MagicMock()
    fake.run_sync = AsyncMock()
    return fake


@pytest.fixture
def client(monkeypatch, tmp_path, orchestrator):
    """Create test client with mocked environment."""
    monkeypatch.setenv("QUIZ_API_KEY", "test-api-key")
    monkeypatch.setenv("QUIZ_DB_PATH", str(tmp_path / "quiz_analytics.db"))
    monkeypatch.setenv("QUIZ_RAW_DIR", str(tmp_path / "raw"))
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379")
    monkeypatch.delenv("SHOPIFY_TOKENS_PATH", raising=False)

    async def override_orchestrator():
        yield orchestrator

    app = create_app()
    app.dependency_overrides[get_orchestrator] = override_orchestrator
    with TestClient(app) as client:
        yield client


def test_sync_missing_api_key(client, orchestrator):
    """Test endpoint rejects request without API key (401)."""
    response = client.post(f"/api/v1/sync/{SHOP}")

    assert response.status_code == 401
    assert "Invalid API key" in response.json()["detail"]
    orchestrator.run_sync.assert_not_called()


def test_sync_invalid_api_key(client):
    response = client.post(f"/api/v1/sync/{SHOP}", headers={"X-QUIZ-API-KEY": "wrong"})

    assert response.status_code == 401


def test_sync_success(client, orchestrator):
    """Test endpoint returns the structured pass result."""
    start = datetime(2024, 6, 1, tzinfo=timezone.utc)
    orchestrator.run_sync.return_value = SyncResult(
        shop=SHOP,
        window_processed=TimeWindow(start=start, end=start + timedelta(days=1)),
        orders_processed=4,
        orders_attributed=3,
        summaries_touched=2,
    )

    response = client.post(f"/api/v1/sync/{SHOP}", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["shop"] == SHOP
    assert body["orders_attributed"] == 3
    assert body["window_processed"]["start"].startswith("2024-06-01T00:00:00")
    orchestrator.run_sync.assert_awaited_once_with(SHOP)


def test_sync_nothing_due(client, orchestrator):
    orchestrator.run_sync.return_value = SyncResult(shop=SHOP)

    response = client.post(f"/api/v1/sync/{SHOP}", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["window_processed"] is None


@pytest.mark.parametrize(
    "error, status_code",
    [
        (SyncInProgressError(SHOP, f"quiz:sync_lock:{SHOP}"), 409),
        (InvalidWindow("Window end must be after start"), 400),
        (UpstreamUnavailable("order_feed", "HTTP 503"), 503),
        (InconsistentAttribution("1001", "ghost"), 500),
    ],
)
def test_sync_error_mapping(client, orchestrator, error, status_code):
    """Test pipeline errors map to HTTP statuses."""
    orchestrator.run_sync.side_effect = error

    response = client.post(f"/api/v1/sync/{SHOP}", headers=HEADERS)

    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)


def test_quiz_report(client, tmp_path):
    """Test report endpoint reads sessions from the configured database."""
    db_path = tmp_path / "quiz_analytics.db"
    init_database(db_path)
    conn = connect(db_path)
    sessions = SessionStore(conn)
    started = datetime.now(timezone.utc) - timedelta(hours=2)
    session = sessions.start_session(SHOP, "quiz-1", started_at=started)
    sessions.record_answer(session.session_id, "q1", "a1", started + timedelta(seconds=5))
    sessions.complete_session(session.session_id, started + timedelta(seconds=45))
    sessions.start_session(SHOP, "quiz-1", started_at=started)
    conn.close()

    response = client.get(f"/api/v1/analytics/{SHOP}/quiz-1", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["total_sessions"] == 2
    assert body["completed_sessions"] == 1
    assert body["completion_rate"] == 50
    assert body["average_completion_seconds"] == 45
    assert body["questions"][0]["answers"][0]["answer_id"] == "a1"


def test_quiz_report_rejects_bad_days(client):
    response = client.get(
        f"/api/v1/analytics/{SHOP}/quiz-1", params={"days": 0}, headers=HEADERS
    )

    assert response.status_code == 422


def test_health_needs_no_api_key(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
