"""Tests for app/delivery/email_client.py.

All network calls are mocked via ``unittest.mock.patch`` on ``httpx.post``.
"""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from app.delivery.email_client import EmailClient, SendOutcome, classify_status


def _client() -> EmailClient:
    return EmailClient(
        base_url="http://email.test/",
        sender="newsletter@example.com",
        authorization_token="server-token",
        timeout_ms=2500,
    )


def _response(status_code: int, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


class TestClassifyStatus:
    @pytest.mark.parametrize("status", [200, 201, 204])
    def test_success(self, status):
        assert classify_status(status) is SendOutcome.SUCCESS

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_transient(self, status):
        assert classify_status(status) is SendOutcome.TRANSIENT_FAILURE

    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    def test_permanent(self, status):
        assert classify_status(status) is SendOutcome.PERMANENT_FAILURE


class TestSend:
    @patch("app.delivery.email_client.httpx.post")
    def test_request_shape(self, mock_post):
        mock_post.return_value = _response(200)

        result = _client().send("ursula@example.com", "Subject", "<p>html</p>", "text")

        assert result.outcome is SendOutcome.SUCCESS
        assert result.status_code == 200
        mock_post.assert_called_once_with(
            "http://email.test/email",
            json={
                "From": "newsletter@example.com",
                "To": "ursula@example.com",
                "Subject": "Subject",
                "HtmlBody": "<p>html</p>",
                "TextBody": "text",
            },
            headers={"X-Postmark-Server-Token": "server-token"},
            timeout=2.5,
        )

    @patch("app.delivery.email_client.httpx.post")
    def test_server_error_is_transient(self, mock_post):
        mock_post.return_value = _response(503, "try later")

        result = _client().send("ursula@example.com", "s", "h", "t")

        assert result.outcome is SendOutcome.TRANSIENT_FAILURE
        assert result.detail == "HTTP 503: try later"

    @patch("app.delivery.email_client.httpx.post")
    def test_unprocessable_recipient_is_permanent(self, mock_post):
        mock_post.return_value = _response(422, "Invalid 'To' address")

        result = _client().send("ursula@example.com", "s", "h", "t")

        assert result.outcome is SendOutcome.PERMANENT_FAILURE
        assert result.status_code == 422

    @patch("app.delivery.email_client.httpx.post")
    def test_timeout_is_transient(self, mock_post):
        mock_post.side_effect = httpx.ReadTimeout("timed out")

        result = _client().send("ursula@example.com", "s", "h", "t")

        assert result.outcome is SendOutcome.TRANSIENT_FAILURE
        assert result.status_code is None
        assert result.detail.startswith("timeout")

    @patch("app.delivery.email_client.httpx.post")
    def test_connection_error_is_transient(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("connection refused")

        result = _client().send("ursula@example.com", "s", "h", "t")

        assert result.outcome is SendOutcome.TRANSIENT_FAILURE
        assert result.detail.startswith("transport error")

    def test_defaults_come_from_settings(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("EMAIL_BASE_URL", "http://configured.test")
        monkeypatch.setenv("EMAIL_SENDER", "from@example.com")
        monkeypatch.setenv("EMAIL_TIMEOUT_MS", "1000")
        from app.core.settings import get_settings

        get_settings.cache_clear()
        try:
            client = EmailClient()
        finally:
            get_settings.cache_clear()

        assert client.base_url == "http://configured.test"
        assert client.sender == "from@example.com"
        assert client.timeout_ms == 1000
