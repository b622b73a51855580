"""Durable outbox of per-recipient newsletter deliveries.

Entries move ``pending -> claimed -> {done, rescheduled, failed_terminal}``.
A claim is a lease (``claimed_by`` + ``claimed_until``) taken with an atomic
conditional UPDATE, so claimants need no shared memory and may live in
separate processes.  Candidate rows are read with ``FOR UPDATE SKIP
LOCKED`` where the backend supports it; elsewhere the conditional UPDATE
alone decides the winner.

Every resolution is fenced on ``claimed_by`` so a worker whose lease
expired and was taken over cannot touch the entry again.  Methods flush
but never commit.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from app.db.models import DeliveryQueueEntry, NewsletterIssue
from app.db.repositories import DeliveryFailureRepository

logger = logging.getLogger(__name__)

FAILURE_RETRIES_EXHAUSTED = "retries_exhausted"
FAILURE_PERMANENT = "permanent_failure"

VALID_FAILURE_REASONS: frozenset[str] = frozenset({FAILURE_RETRIES_EXHAUSTED, FAILURE_PERMANENT})

# Rows inspected per claim attempt when the backend cannot skip locked rows.
_CLAIM_CANDIDATES = 5


@dataclass(frozen=True)
class ClaimedDelivery:
    """Snapshot of a claimed entry together with the issue content to send."""

    entry_id: UUID
    issue_id: UUID
    subscriber_email: str
    n_retries: int
    title: str
    text_content: str
    html_content: str


class IssueDeliveryQueue:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.failures = DeliveryFailureRepository(db_session)

    # -- fan-out ------------------------------------------------------------

    def enqueue_fanout(self, issue_id: UUID, recipients: Iterable[str], *, now: datetime) -> int:
        """Insert one pending entry per recipient, eligible from *now*."""
        entries = [
            DeliveryQueueEntry(
                issue_id=issue_id,
                subscriber_email=email,
                n_retries=0,
                execute_after=now,
            )
            for email in recipients
        ]
        self.db.add_all(entries)
        self.db.flush()
        return len(entries)

    # -- claim --------------------------------------------------------------

    def claim_one(self, worker_id: str, *, now: datetime, lease_s: float) -> ClaimedDelivery | None:
        """Lease one due entry to *worker_id*, or return ``None`` if nothing is due."""
        lease_free = or_(
            DeliveryQueueEntry.claimed_until.is_(None),
            DeliveryQueueEntry.claimed_until <= now,
        )
        candidates = self.db.execute(
            select(DeliveryQueueEntry.id)
            .where(DeliveryQueueEntry.execute_after <= now, lease_free)
            .order_by(DeliveryQueueEntry.execute_after.asc())
            .limit(_CLAIM_CANDIDATES)
            .with_for_update(skip_locked=True)
        ).scalars().all()

        lease_until = now + timedelta(seconds=lease_s)
        for entry_id in candidates:
            result = self.db.execute(
                update(DeliveryQueueEntry)
                .where(DeliveryQueueEntry.id == entry_id, lease_free)
                .values(claimed_by=worker_id, claimed_until=lease_until)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return self._snapshot(entry_id)
        return None

    def _snapshot(self, entry_id: UUID) -> ClaimedDelivery:
        row = self.db.execute(
            select(
                DeliveryQueueEntry.id,
                DeliveryQueueEntry.issue_id,
                DeliveryQueueEntry.subscriber_email,
                DeliveryQueueEntry.n_retries,
                NewsletterIssue.title,
                NewsletterIssue.text_content,
                NewsletterIssue.html_content,
            )
            .join(NewsletterIssue, NewsletterIssue.id == DeliveryQueueEntry.issue_id)
            .where(DeliveryQueueEntry.id == entry_id)
        ).one()
        return ClaimedDelivery(
            entry_id=row.id,
            issue_id=row.issue_id,
            subscriber_email=row.subscriber_email,
            n_retries=row.n_retries,
            title=row.title,
            text_content=row.text_content,
            html_content=row.html_content,
        )

    # -- resolution ---------------------------------------------------------

    def _owned(self, claim: ClaimedDelivery, worker_id: str):
        return (
            DeliveryQueueEntry.id == claim.entry_id,
            DeliveryQueueEntry.claimed_by == worker_id,
        )

    def mark_delivered(self, claim: ClaimedDelivery, worker_id: str) -> bool:
        """Remove a delivered entry.  ``False`` means the lease was lost."""
        result = self.db.execute(
            delete(DeliveryQueueEntry)
            .where(*self._owned(claim, worker_id))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def reschedule(self, claim: ClaimedDelivery, worker_id: str, *, execute_after: datetime) -> bool:
        """Release the lease and push the entry to *execute_after* with one more retry counted."""
        result = self.db.execute(
            update(DeliveryQueueEntry)
            .where(*self._owned(claim, worker_id))
            .values(
                n_retries=claim.n_retries + 1,
                execute_after=execute_after,
                claimed_by=None,
                claimed_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def fail_terminal(
        self,
        claim: ClaimedDelivery,
        worker_id: str,
        *,
        reason: str,
        n_retries: int,
        last_error: str | None,
        now: datetime,
    ) -> bool:
        """Move the entry out of the active queue into the failure log."""
        if reason not in VALID_FAILURE_REASONS:
            raise ValueError(f"Invalid failure reason {reason!r}; must be one of {sorted(VALID_FAILURE_REASONS)}")

        result = self.db.execute(
            delete(DeliveryQueueEntry)
            .where(*self._owned(claim, worker_id))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        self.failures.create(
            issue_id=claim.issue_id,
            subscriber_email=claim.subscriber_email,
            n_retries=n_retries,
            reason=reason,
            last_error=last_error,
            failed_at=now,
        )
        return True

    # -- inspection ---------------------------------------------------------

    def pending_count(self, issue_id: UUID | None = None) -> int:
        """Number of entries still in the active queue, optionally for one issue."""
        stmt = select(func.count()).select_from(DeliveryQueueEntry)
        if issue_id is not None:
            stmt = stmt.where(DeliveryQueueEntry.issue_id == issue_id)
        return self.db.execute(stmt).scalar_one()
