"""HTTP email transport client.

Sends one message per call through a Postmark-style API
(``POST {base_url}/email``).  The client never retries: every call
returns a :class:`SendResult` classifying the attempt, and retry policy
lives with the delivery worker.

Classification
--------------
- 2xx: ``SUCCESS``
- 408, 429, 5xx, timeouts, connection errors: ``TRANSIENT_FAILURE``
- any other 4xx: ``PERMANENT_FAILURE`` (the request itself is wrong, for
  example an address the provider refuses)

Safety: recipient addresses are never logged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import httpx

from app.core.settings import get_settings

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 429})


class SendOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class SendResult:
    outcome: SendOutcome
    status_code: int | None = None
    detail: str | None = None


def classify_status(status_code: int) -> SendOutcome:
    if 200 <= status_code < 300:
        return SendOutcome.SUCCESS
    if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:
        return SendOutcome.TRANSIENT_FAILURE
    return SendOutcome.PERMANENT_FAILURE


class EmailClient:
    """Synchronous client for the outbound email API.

    Parameters
    ----------
    base_url:
        API base URL.  Defaults to ``settings.email_base_url``.
    sender:
        ``From`` address.  Defaults to ``settings.email_sender``.
    authorization_token:
        Server token sent as ``X-Postmark-Server-Token``.
    timeout_ms:
        Per-request timeout.  Defaults to ``settings.email_timeout_ms``.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        sender: str | None = None,
        authorization_token: str | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.email_base_url).rstrip("/")
        self.sender = sender or settings.email_sender
        self._authorization_token = authorization_token or settings.email_authorization_token
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.email_timeout_ms

    def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> SendResult:
        """Attempt a single delivery and classify the result."""
        payload = {
            "From": self.sender,
            "To": recipient,
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
        }
        try:
            response = httpx.post(
                f"{self.base_url}/email",
                json=payload,
                headers={"X-Postmark-Server-Token": self._authorization_token},
                timeout=self.timeout_ms / 1000,
            )
        except httpx.TimeoutException as exc:
            logger.warning("Email API request timed out after %dms", self.timeout_ms)
            return SendResult(SendOutcome.TRANSIENT_FAILURE, detail=f"timeout: {exc}")
        except httpx.TransportError as exc:
            logger.warning("Email API unreachable at %s: %s", self.base_url, type(exc).__name__)
            return SendResult(SendOutcome.TRANSIENT_FAILURE, detail=f"transport error: {exc}")

        outcome = classify_status(response.status_code)
        if outcome is SendOutcome.SUCCESS:
            return SendResult(outcome, status_code=response.status_code)

        logger.warning("Email API rejected message with HTTP %d (%s)", response.status_code, outcome.value)
        return SendResult(
            outcome,
            status_code=response.status_code,
            detail=f"HTTP {response.status_code}: {response.text[:512]}",
        )
