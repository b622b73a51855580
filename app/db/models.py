from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    func,
    text as sql_text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

SUBSCRIBER_PENDING = "pending_confirmation"
SUBSCRIBER_CONFIRMED = "confirmed"

IDEMPOTENCY_IN_PROGRESS = "in_progress"
IDEMPOTENCY_COMPLETED = "completed"


class Subscriber(Base):
    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(1024), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SUBSCRIBER_PENDING, server_default=sql_text("'pending_confirmation'")
    )
    subscribed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class NewsletterIssue(Base):
    """A published issue.  Immutable once created."""

    __tablename__ = "newsletter_issues"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    text_content: Mapped[str] = mapped_column(Text, nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class IdempotencyRecord(Base):
    """Claim placeholder and saved response for one (operator, key) pair.

    ``in_progress`` rows are committed together with the issue and its
    fan-out, so a visible ``in_progress`` row always has ``issue_id`` set.
    ``completed`` rows carry the exact response replayed to later requests.
    """

    __tablename__ = "idempotency"

    operator_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(
        String(16), nullable=False, default=IDEMPOTENCY_IN_PROGRESS, server_default=sql_text("'in_progress'")
    )
    issue_id: Mapped[UUID | None] = mapped_column(nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_headers: Mapped[list | None] = mapped_column(JSON, nullable=True)
    response_body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DeliveryQueueEntry(Base):
    """One pending (issue, recipient) delivery task.

    ``claimed_by``/``claimed_until`` form the worker lease; an entry whose
    lease has expired is eligible again.
    """

    __tablename__ = "issue_delivery_queue"
    __table_args__ = (
        UniqueConstraint("issue_id", "subscriber_email", name="uq_issue_delivery_queue_issue_email"),
        Index("ix_issue_delivery_queue_execute_after", "execute_after"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    issue_id: Mapped[UUID] = mapped_column(ForeignKey("newsletter_issues.id"), nullable=False)
    subscriber_email: Mapped[str] = mapped_column(String(320), nullable=False)
    n_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    execute_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claimed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DeliveryFailure(Base):
    """Terminal delivery failure, kept for operator inspection."""

    __tablename__ = "issue_delivery_failures"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    issue_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    subscriber_email: Mapped[str] = mapped_column(String(320), nullable=False)
    n_retries: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
