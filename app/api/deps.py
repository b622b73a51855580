"""FastAPI dependency injection — database sessions, operator auth and services."""
from __future__ import annotations

import secrets
from collections.abc import Generator

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.settings import get_settings
from app.db.session import get_session_factory
from app.newsletter.publisher import NewsletterPublisher


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_current_operator(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> str:
    """Resolve the operator owning *x_api_key*; reject anything else with 401."""
    if x_api_key:
        for operator_id, api_key in get_settings().operator_api_keys.items():
            if secrets.compare_digest(x_api_key.encode("utf-8"), api_key.encode("utf-8")):
                return operator_id
    raise HTTPException(
        status_code=401,
        detail="Authentication required",
        headers={"WWW-Authenticate": "API-Key"},
    )


def get_publisher(db: Session = Depends(get_db)) -> NewsletterPublisher:
    """Return a NewsletterPublisher bound to the current DB session."""
    return NewsletterPublisher(db)
