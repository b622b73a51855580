"""Delivery worker — drains the issue delivery queue.

One cycle claims a single due entry, sends it outside any database
transaction, then resolves the entry in a fresh transaction:

- success: entry deleted
- transient failure: ``n_retries + 1``; rescheduled with exponential
  backoff while below ``max_retries``, otherwise moved to the failure log
- permanent failure or an unusable recipient address: failure log

A crash after the send but before the resolution commits leaves the lease
to expire, after which the entry is sent again.  Delivery is therefore
at-least-once per (issue, recipient).
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy.orm import Session, sessionmaker

from app.core.settings import get_settings
from app.db.session import get_session_factory
from app.delivery.email_client import EmailClient, SendOutcome, SendResult
from app.delivery.queue import FAILURE_PERMANENT, FAILURE_RETRIES_EXHAUSTED, ClaimedDelivery, IssueDeliveryQueue
from app.subscribers.directory import normalize_email

logger = logging.getLogger(__name__)


class ExecutionOutcome(str, Enum):
    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"


def retry_backoff(n_retries: int, base_s: float, max_s: float) -> timedelta:
    """Delay before retry number *n_retries* (1-based): ``base * 2**(n-1)``, capped at *max_s*."""
    if n_retries < 1:
        raise ValueError("n_retries must be at least 1")
    return timedelta(seconds=min(base_s * 2 ** (n_retries - 1), max_s))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryWorker:
    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session],
        email_client: EmailClient,
        *,
        worker_id: str = "delivery-worker",
        max_retries: int | None = None,
        backoff_base_s: float | None = None,
        backoff_max_s: float | None = None,
        lease_s: float | None = None,
        poll_interval_s: float | None = None,
        error_backoff_s: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self.email_client = email_client
        self.worker_id = worker_id
        self.max_retries = max_retries if max_retries is not None else settings.delivery_max_retries
        self.backoff_base_s = backoff_base_s if backoff_base_s is not None else settings.delivery_backoff_base_s
        self.backoff_max_s = backoff_max_s if backoff_max_s is not None else settings.delivery_backoff_max_s
        self.lease_s = lease_s if lease_s is not None else settings.delivery_lease_s
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.delivery_poll_interval_s
        self.error_backoff_s = error_backoff_s if error_backoff_s is not None else settings.delivery_error_backoff_s
        self._clock = clock

    # -- one cycle ----------------------------------------------------------

    def run_once(self) -> ExecutionOutcome:
        with self._session_factory() as db:
            claim = IssueDeliveryQueue(db).claim_one(self.worker_id, now=self._clock(), lease_s=self.lease_s)
            db.commit()
        if claim is None:
            return ExecutionOutcome.EMPTY_QUEUE

        result = self._attempt(claim)

        with self._session_factory() as db:
            self._resolve(IssueDeliveryQueue(db), claim, result)
            db.commit()
        return ExecutionOutcome.TASK_COMPLETED

    def _attempt(self, claim: ClaimedDelivery) -> SendResult:
        try:
            recipient = normalize_email(claim.subscriber_email)
        except ValueError:
            logger.warning("Skipping delivery %s: stored recipient is not a valid address", claim.entry_id)
            return SendResult(SendOutcome.PERMANENT_FAILURE, detail="invalid recipient address")
        return self.email_client.send(recipient, claim.title, claim.html_content, claim.text_content)

    def _resolve(self, queue: IssueDeliveryQueue, claim: ClaimedDelivery, result: SendResult) -> None:
        now = self._clock()

        if result.outcome is SendOutcome.SUCCESS:
            owned = queue.mark_delivered(claim, self.worker_id)
        elif result.outcome is SendOutcome.TRANSIENT_FAILURE:
            n_retries = claim.n_retries + 1
            if n_retries < self.max_retries:
                delay = retry_backoff(n_retries, self.backoff_base_s, self.backoff_max_s)
                owned = queue.reschedule(claim, self.worker_id, execute_after=now + delay)
                if owned:
                    logger.info(
                        "Delivery %s failed transiently (retry %d/%d), next attempt in %ss",
                        claim.entry_id,
                        n_retries,
                        self.max_retries,
                        delay.total_seconds(),
                    )
            else:
                owned = queue.fail_terminal(
                    claim,
                    self.worker_id,
                    reason=FAILURE_RETRIES_EXHAUSTED,
                    n_retries=n_retries,
                    last_error=result.detail,
                    now=now,
                )
                if owned:
                    logger.warning(
                        "Delivery %s for issue %s exhausted %d retries", claim.entry_id, claim.issue_id, n_retries
                    )
        else:
            owned = queue.fail_terminal(
                claim,
                self.worker_id,
                reason=FAILURE_PERMANENT,
                n_retries=claim.n_retries,
                last_error=result.detail,
                now=now,
            )
            if owned:
                logger.warning("Delivery %s for issue %s failed permanently", claim.entry_id, claim.issue_id)

        if not owned:
            logger.warning(
                "Worker %s lost its lease on delivery %s before resolving it", self.worker_id, claim.entry_id
            )

    # -- loop ---------------------------------------------------------------

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        """Process the queue until *stop_event* is set."""
        logger.info("Delivery worker %s started", self.worker_id)
        while not stop_event.is_set():
            try:
                outcome = self.run_once()
            except Exception:
                logger.exception("Delivery worker %s failed a cycle", self.worker_id)
                stop_event.wait(self.error_backoff_s)
                continue
            if outcome is ExecutionOutcome.EMPTY_QUEUE:
                stop_event.wait(self.poll_interval_s)
        logger.info("Delivery worker %s stopped", self.worker_id)


def build_delivery_worker(worker_id: str) -> DeliveryWorker:
    """Worker wired to the configured database and email API."""
    return DeliveryWorker(get_session_factory(), EmailClient(), worker_id=worker_id)
