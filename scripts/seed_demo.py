#!/usr/bin/env python3
"""Seed demo data: confirmed and pending subscribers.

Usage:
    python scripts/seed_demo.py          # uses DATABASE_URL from env / .env
    DATABASE_URL=... python scripts/seed_demo.py
"""
from __future__ import annotations

import sys

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from app.core.settings import get_settings
from app.db.base import Base
from app.db.models import SUBSCRIBER_CONFIRMED, SUBSCRIBER_PENDING
from app.subscribers.directory import SubscriberDirectory


def seed(session: Session) -> None:
    """Insert demo subscribers, skipping any that already exist."""
    directory = SubscriberDirectory(session)

    demo_subscribers = [
        # (display name, email, status)
        ("Ursula Le Guin", "ursula.leguin@example.com", SUBSCRIBER_CONFIRMED),
        ("Octavia Butler", "octavia.butler@example.com", SUBSCRIBER_CONFIRMED),
        ("Ted Chiang", "ted.chiang@example.com", SUBSCRIBER_CONFIRMED),
        ("N. K. Jemisin", "nk.jemisin@example.com", SUBSCRIBER_PENDING),
        ("Iain Banks", "iain.banks@example.co.uk", SUBSCRIBER_PENDING),
    ]

    created = 0
    for name, email, status in demo_subscribers:
        if directory.subscribers.get_by_email(email) is not None:
            continue
        directory.add_subscriber(email, name, status=status)
        created += 1

    session.commit()
    print(f"Seeded {created} subscribers ({len(directory.list_confirmed_emails())} confirmed in total).")


def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed(session)


if __name__ == "__main__":
    main()
