"""Subscriber directory — the read side used by newsletter fan-out."""
from __future__ import annotations

import logging

from pydantic import EmailStr, TypeAdapter
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import SUBSCRIBER_CONFIRMED, SUBSCRIBER_PENDING, Subscriber
from app.db.repositories import SubscriberRepository
from app.domain.subscriber_name import parse_subscriber_name

logger = logging.getLogger(__name__)

_VALID_STATUSES = frozenset({SUBSCRIBER_PENDING, SUBSCRIBER_CONFIRMED})
_email_adapter = TypeAdapter(EmailStr)


def normalize_email(raw: str) -> str:
    """Return *raw* lowercased and stripped, or raise ``ValueError``."""
    stripped = raw.strip().lower()
    # pydantic's ValidationError is a ValueError subclass
    return _email_adapter.validate_python(stripped)


class SubscriberDirectory:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.subscribers = SubscriberRepository(db_session)

    def list_confirmed_emails(self) -> list[str]:
        """Return the email of every confirmed subscriber, sorted."""
        stmt = (
            select(Subscriber.email)
            .where(Subscriber.status == SUBSCRIBER_CONFIRMED)
            .order_by(Subscriber.email.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def add_subscriber(
        self,
        email: str,
        display_name: str,
        status: str = SUBSCRIBER_PENDING,
    ) -> Subscriber:
        """Validate and insert a subscriber.  Flushes, does not commit."""
        if status not in _VALID_STATUSES:
            raise ValueError(f"Unknown subscriber status {status!r}; must be one of {sorted(_VALID_STATUSES)}")

        subscriber = self.subscribers.create(
            email=normalize_email(email),
            display_name=parse_subscriber_name(display_name),
            status=status,
        )
        logger.info("Added subscriber %s with status %s", subscriber.id, status)
        return subscriber
