"""Newsletter publishing — idempotent claim, issue insert and fan-out.

``publish`` writes the idempotency claim, the issue and one queue entry
per confirmed subscriber in a single transaction.  If that transaction
commits, the complete fan-out exists; if it does not, nothing does.  The
acknowledgment is saved against the key afterwards and replayed
byte-for-byte to every later request carrying the same key.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.settings import get_settings
from app.db.repositories import NewsletterIssueRepository
from app.delivery.queue import IssueDeliveryQueue
from app.newsletter.idempotency import ClaimStatus, IdempotencyStore, SavedResponse
from app.subscribers.directory import SubscriberDirectory

logger = logging.getLogger(__name__)

PUBLISHED_MESSAGE = "The newsletter issue has been published!"
MAX_IDEMPOTENCY_KEY_LENGTH = 50


class PublishConflictError(RuntimeError):
    """Another request with the same idempotency key is still being processed."""


class PublishUnavailableError(RuntimeError):
    """The publish transaction could not be committed; nothing was persisted."""


@dataclass(frozen=True)
class IssueDraft:
    title: str
    text_content: str
    html_content: str


def validate_publish_request(idempotency_key: str, draft: IssueDraft) -> None:
    if not idempotency_key or not idempotency_key.strip():
        raise ValueError("The idempotency key cannot be empty")
    if len(idempotency_key) >= MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValueError(
            f"The idempotency key must be shorter than {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
        )
    for field in ("title", "text_content", "html_content"):
        if not getattr(draft, field).strip():
            raise ValueError(f"{field} cannot be empty")


def build_acknowledgment(issue_id: UUID) -> SavedResponse:
    """The response returned for a successfully published issue."""
    body = json.dumps(
        {"issue_id": str(issue_id), "status": "published", "message": PUBLISHED_MESSAGE},
        separators=(",", ":"),
    ).encode("utf-8")
    return SavedResponse(
        status_code=202,
        headers=(("content-type", "application/json"),),
        body=body,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NewsletterPublisher:
    """Publish newsletter issues exactly once per (operator, idempotency key)."""

    def __init__(
        self,
        db_session: Session,
        *,
        recovery_after_s: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db_session
        self.idempotency = IdempotencyStore(db_session)
        self.issues = NewsletterIssueRepository(db_session)
        self.directory = SubscriberDirectory(db_session)
        self.queue = IssueDeliveryQueue(db_session)
        self.recovery_after_s = (
            recovery_after_s if recovery_after_s is not None else get_settings().idempotency_recovery_after_s
        )
        self._clock = clock

    def publish(self, operator_id: str, idempotency_key: str, draft: IssueDraft) -> SavedResponse:
        """Publish *draft* or replay the response already saved for the key.

        Raises
        ------
        ValueError
            If the request is malformed.  Nothing is written.
        PublishConflictError
            If the key is claimed but not yet completed.  Retry later.
        PublishUnavailableError
            If the transaction failed.  Nothing was persisted; retry.
        """
        validate_publish_request(idempotency_key, draft)
        now = self._clock()

        try:
            outcome = self.idempotency.try_claim(operator_id, idempotency_key, now=now)
            if outcome.status is ClaimStatus.COMPLETED:
                self.db.rollback()
                logger.info("Replaying saved response for operator %s key %s", operator_id, idempotency_key)
                return outcome.saved_response
            if outcome.status is ClaimStatus.CONFLICT:
                self.db.rollback()
                return self._recover_or_conflict(operator_id, idempotency_key, now)

            issue = self.issues.create(
                title=draft.title,
                text_content=draft.text_content,
                html_content=draft.html_content,
                created_at=now,
            )
            issue_id = issue.id
            recipients = self.directory.list_confirmed_emails()
            enqueued = self.queue.enqueue_fanout(issue_id, recipients, now=now)
            self.idempotency.attach_issue(operator_id, idempotency_key, issue_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning(
                "Publish transaction for operator %s key %s failed: %s", operator_id, idempotency_key, exc
            )
            raise PublishUnavailableError("The newsletter could not be published, please retry") from exc

        logger.info("Published issue %s with %d queued deliveries", issue_id, enqueued)
        return self._complete(operator_id, idempotency_key, build_acknowledgment(issue_id))

    def _complete(self, operator_id: str, idempotency_key: str, response: SavedResponse) -> SavedResponse:
        # The issue is already committed, so a failure here must not fail the
        # request; the claim stays in_progress until recovery completes it.
        try:
            saved = self.idempotency.complete(operator_id, idempotency_key, response, now=self._clock())
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not save response for operator %s key %s", operator_id, idempotency_key)
            return response
        return saved

    def _recover_or_conflict(self, operator_id: str, idempotency_key: str, now: datetime) -> SavedResponse:
        stale = self.idempotency.find_stale_claim(
            operator_id,
            idempotency_key,
            older_than=now - timedelta(seconds=self.recovery_after_s),
        )
        if stale is None or stale.issue_id is None:
            self.db.rollback()
            raise PublishConflictError(
                f"A request with idempotency key {idempotency_key!r} is already being processed"
            )

        logger.warning(
            "Completing abandoned idempotency claim for operator %s key %s (issue %s)",
            operator_id,
            idempotency_key,
            stale.issue_id,
        )
        return self._complete(operator_id, idempotency_key, build_acknowledgment(stale.issue_id))
