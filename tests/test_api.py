"""Tests for the FastAPI routes.

Covers:
- POST /admin/newsletters — auth, validation, publish, replay, conflict, 503
- GET /admin/newsletters/{issue_id}/delivery — pending count and failure log
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import patch
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.api.deps import get_db
from app.db.models import (
    IDEMPOTENCY_IN_PROGRESS,
    DeliveryFailure,
    DeliveryQueueEntry,
    IdempotencyRecord,
    NewsletterIssue,
)
from app.delivery.queue import FAILURE_RETRIES_EXHAUSTED
from app.newsletter.publisher import PUBLISHED_MESSAGE

from conftest import add_subscriber

API_KEY = "test-operator-key"
AUTH = {"X-API-Key": API_KEY}


def _body(key: str = "publish-1", **overrides) -> dict:
    body = {
        "title": "Newsletter title",
        "text_content": "Newsletter body as plain text",
        "html_content": "<p>Newsletter body as HTML</p>",
        "idempotency_key": key,
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def api(session_factory, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """TestClient with get_db overridden to use the in-memory database."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("OPERATOR_API_KEYS", json.dumps({"admin": API_KEY}))

    from app.core.settings import get_settings

    get_settings.cache_clear()

    from app.api.main import app

    def _override_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_db
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# POST /admin/newsletters
# ---------------------------------------------------------------------------


class TestPublish:
    def test_missing_key_is_rejected(self, api, db_session):
        response = api.post("/admin/newsletters", json=_body())

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "API-Key"
        assert db_session.execute(select(NewsletterIssue)).first() is None

    def test_unknown_key_is_rejected(self, api):
        response = api.post("/admin/newsletters", json=_body(), headers={"X-API-Key": "wrong"})

        assert response.status_code == 401

    def test_publish_fans_out_to_confirmed_subscribers(self, api, db_session):
        add_subscriber(db_session, "confirmed@example.com")
        add_subscriber(db_session, "pending@example.com", confirmed=False)

        response = api.post("/admin/newsletters", json=_body(), headers=AUTH)

        assert response.status_code == 202
        payload = response.json()
        assert payload["status"] == "published"
        assert payload["message"] == PUBLISHED_MESSAGE
        issue_id = UUID(payload["issue_id"])

        db_session.expire_all()
        entries = db_session.execute(select(DeliveryQueueEntry)).scalars().all()
        assert [(e.issue_id, e.subscriber_email) for e in entries] == [(issue_id, "confirmed@example.com")]

    def test_replay_returns_identical_response(self, api, db_session):
        add_subscriber(db_session, "confirmed@example.com")

        first = api.post("/admin/newsletters", json=_body(), headers=AUTH)
        second = api.post("/admin/newsletters", json=_body(), headers=AUTH)

        assert first.status_code == second.status_code == 202
        assert first.content == second.content
        assert first.headers["content-type"] == second.headers["content-type"] == "application/json"

        db_session.expire_all()
        assert len(db_session.execute(select(NewsletterIssue)).all()) == 1
        assert len(db_session.execute(select(DeliveryQueueEntry)).all()) == 1

    def test_replay_ignores_a_changed_body(self, api, db_session):
        first = api.post("/admin/newsletters", json=_body(), headers=AUTH)
        second = api.post("/admin/newsletters", json=_body(title="Another title"), headers=AUTH)

        assert second.content == first.content
        db_session.expire_all()
        [issue] = db_session.execute(select(NewsletterIssue)).scalars().all()
        assert issue.title == "Newsletter title"

    def test_distinct_keys_publish_distinct_issues(self, api, db_session):
        first = api.post("/admin/newsletters", json=_body("key-a"), headers=AUTH)
        second = api.post("/admin/newsletters", json=_body("key-b"), headers=AUTH)

        assert first.json()["issue_id"] != second.json()["issue_id"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"title": ""},
            {"text_content": "   "},
            {"html_content": ""},
            {"idempotency_key": ""},
            {"idempotency_key": "k" * 51},
        ],
    )
    def test_invalid_request_is_rejected(self, api, db_session, overrides):
        response = api.post("/admin/newsletters", json=_body(**overrides), headers=AUTH)

        assert response.status_code == 400
        db_session.expire_all()
        assert db_session.execute(select(IdempotencyRecord)).first() is None
        assert db_session.execute(select(NewsletterIssue)).first() is None

    def test_missing_field_is_unprocessable(self, api):
        body = _body()
        del body["html_content"]

        response = api.post("/admin/newsletters", json=body, headers=AUTH)

        assert response.status_code == 422

    def test_request_in_flight_is_a_conflict(self, api, db_session):
        db_session.add(
            IdempotencyRecord(
                operator_id="admin",
                idempotency_key="publish-1",
                state=IDEMPOTENCY_IN_PROGRESS,
                created_at=datetime.now(timezone.utc),
            )
        )
        db_session.commit()

        response = api.post("/admin/newsletters", json=_body(), headers=AUTH)

        assert response.status_code == 409
        assert response.headers["retry-after"] == "5"

    def test_commit_failure_is_unavailable(self, api, db_session):
        add_subscriber(db_session, "confirmed@example.com")

        with patch(
            "app.newsletter.publisher.Session.commit",
            side_effect=OperationalError("COMMIT", {}, Exception("database is locked")),
        ):
            response = api.post("/admin/newsletters", json=_body(), headers=AUTH)

        assert response.status_code == 503
        assert "retry-after" in response.headers
        db_session.expire_all()
        assert db_session.execute(select(NewsletterIssue)).first() is None
        assert db_session.execute(select(DeliveryQueueEntry)).first() is None


# ---------------------------------------------------------------------------
# GET /admin/newsletters/{issue_id}/delivery
# ---------------------------------------------------------------------------


class TestDeliveryStatus:
    def test_requires_auth(self, api):
        response = api.get(f"/admin/newsletters/{uuid4()}/delivery")

        assert response.status_code == 401

    def test_unknown_issue(self, api):
        response = api.get(f"/admin/newsletters/{uuid4()}/delivery", headers=AUTH)

        assert response.status_code == 404

    def test_reports_pending_and_failures(self, api, db_session):
        add_subscriber(db_session, "one@example.com")
        add_subscriber(db_session, "two@example.com")
        issue_id = UUID(api.post("/admin/newsletters", json=_body(), headers=AUTH).json()["issue_id"])

        db_session.add(
            DeliveryFailure(
                issue_id=issue_id,
                subscriber_email="gone@example.com",
                n_retries=5,
                reason=FAILURE_RETRIES_EXHAUSTED,
                last_error="HTTP 503: unavailable",
                failed_at=datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc),
            )
        )
        db_session.commit()

        response = api.get(f"/admin/newsletters/{issue_id}/delivery", headers=AUTH)

        assert response.status_code == 200
        payload = response.json()
        assert payload["issue_id"] == str(issue_id)
        assert payload["pending"] == 2
        [failure] = payload["failures"]
        assert failure["subscriber_email"] == "gone@example.com"
        assert failure["reason"] == FAILURE_RETRIES_EXHAUSTED
        assert failure["n_retries"] == 5
        assert failure["last_error"] == "HTTP 503: unavailable"
        assert failure["failed_at"].startswith("2026-10-19T10:00:00")
