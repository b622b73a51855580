from __future__ import annotations

from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: UUID) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())


class SubscriberRepository(BaseRepository[models.Subscriber]):
    model = models.Subscriber

    def get_by_email(self, email: str) -> models.Subscriber | None:
        stmt = select(models.Subscriber).where(models.Subscriber.email == email)
        return self.db.execute(stmt).scalar_one_or_none()


class NewsletterIssueRepository(BaseRepository[models.NewsletterIssue]):
    model = models.NewsletterIssue


class DeliveryFailureRepository(BaseRepository[models.DeliveryFailure]):
    model = models.DeliveryFailure

    def list_for_issue(self, issue_id: UUID) -> list[models.DeliveryFailure]:
        stmt = (
            select(models.DeliveryFailure)
            .where(models.DeliveryFailure.issue_id == issue_id)
            .order_by(models.DeliveryFailure.failed_at.asc(), models.DeliveryFailure.subscriber_email.asc())
        )
        return list(self.db.execute(stmt).scalars().all())
