"""Idempotency store for operator commands.

Each (operator_id, idempotency_key) pair owns at most one ``idempotency``
row.  The row is inserted as ``in_progress`` inside the caller's unit of
work, so the primary key itself is the claim: a concurrent duplicate
blocks on, then fails, the same insert instead of racing past a read.

None of the methods here commit.  The caller owns the transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models import IDEMPOTENCY_COMPLETED, IDEMPOTENCY_IN_PROGRESS, IdempotencyRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SavedResponse:
    """An HTTP response captured for verbatim replay."""

    status_code: int
    headers: tuple[tuple[str, str], ...]
    body: bytes


class ClaimStatus(str, Enum):
    FRESH = "fresh"
    CONFLICT = "conflict"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ClaimOutcome:
    status: ClaimStatus
    saved_response: SavedResponse | None = None


def _saved_response(record: IdempotencyRecord) -> SavedResponse:
    return SavedResponse(
        status_code=record.response_status,
        headers=tuple((str(name), str(value)) for name, value in record.response_headers or []),
        body=bytes(record.response_body or b""),
    )


class IdempotencyStore:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def _get(self, operator_id: str, idempotency_key: str) -> IdempotencyRecord | None:
        stmt = select(IdempotencyRecord).where(
            IdempotencyRecord.operator_id == operator_id,
            IdempotencyRecord.idempotency_key == idempotency_key,
        ).execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def try_claim(
        self,
        operator_id: str,
        idempotency_key: str,
        *,
        now: datetime | None = None,
    ) -> ClaimOutcome:
        """Insert the ``in_progress`` placeholder for the key pair.

        Must be the first write of the unit of work: on a key collision the
        whole unit is rolled back before the existing row is inspected.
        """
        stmt = insert(IdempotencyRecord).values(
            operator_id=operator_id,
            idempotency_key=idempotency_key,
            state=IDEMPOTENCY_IN_PROGRESS,
            created_at=now or datetime.now(timezone.utc),
        )
        try:
            self.db.execute(stmt)
        except IntegrityError:
            self.db.rollback()
        else:
            return ClaimOutcome(status=ClaimStatus.FRESH)

        existing = self._get(operator_id, idempotency_key)
        if existing is None:
            # The competing claim rolled back after our insert failed.
            logger.info("Idempotency claim for operator %s vanished during lookup", operator_id)
            return ClaimOutcome(status=ClaimStatus.CONFLICT)
        if existing.state == IDEMPOTENCY_COMPLETED:
            return ClaimOutcome(status=ClaimStatus.COMPLETED, saved_response=_saved_response(existing))
        return ClaimOutcome(status=ClaimStatus.CONFLICT)

    def attach_issue(self, operator_id: str, idempotency_key: str, issue_id: UUID) -> None:
        """Record which issue a fresh claim produced."""
        self.db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.operator_id == operator_id,
                IdempotencyRecord.idempotency_key == idempotency_key,
            )
            .values(issue_id=issue_id)
        )

    def complete(
        self,
        operator_id: str,
        idempotency_key: str,
        response: SavedResponse,
        *,
        now: datetime | None = None,
    ) -> SavedResponse:
        """Mark the record ``completed`` with *response* and return the stored response.

        The first completion wins: completing an already completed record
        leaves it untouched and returns what was saved originally.  Raises
        ``KeyError`` when no record exists for the key pair.
        """
        result = self.db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.operator_id == operator_id,
                IdempotencyRecord.idempotency_key == idempotency_key,
                IdempotencyRecord.state == IDEMPOTENCY_IN_PROGRESS,
            )
            .values(
                state=IDEMPOTENCY_COMPLETED,
                response_status=response.status_code,
                response_headers=[[name, value] for name, value in response.headers],
                response_body=response.body,
                completed_at=now or datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return response

        existing = self._get(operator_id, idempotency_key)
        if existing is None:
            raise KeyError(f"No idempotency record for operator {operator_id!r} and key {idempotency_key!r}")
        return _saved_response(existing)

    def find_stale_claim(
        self,
        operator_id: str,
        idempotency_key: str,
        older_than: datetime,
    ) -> IdempotencyRecord | None:
        """Return the ``in_progress`` record if it was claimed at or before *older_than*."""
        stmt = select(IdempotencyRecord).where(
            IdempotencyRecord.operator_id == operator_id,
            IdempotencyRecord.idempotency_key == idempotency_key,
            IdempotencyRecord.state == IDEMPOTENCY_IN_PROGRESS,
            IdempotencyRecord.created_at <= older_than,
        ).execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()
