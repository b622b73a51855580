"""Newsletter routes — POST /admin/newsletters, GET /admin/newsletters/{issue_id}/delivery."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_current_operator, get_db, get_publisher
from app.db.repositories import DeliveryFailureRepository, NewsletterIssueRepository
from app.delivery.queue import IssueDeliveryQueue
from app.newsletter.publisher import (
    IssueDraft,
    NewsletterPublisher,
    PublishConflictError,
    PublishUnavailableError,
)

router = APIRouter(prefix="/admin/newsletters", tags=["newsletters"])

RETRY_AFTER_SECONDS = "5"


class PublishBody(BaseModel):
    title: str
    text_content: str
    html_content: str
    idempotency_key: str


@router.post("", summary="Publish a newsletter issue to all confirmed subscribers", status_code=202)
def publish_newsletter(
    body: PublishBody,
    operator_id: str = Depends(get_current_operator),
    publisher: NewsletterPublisher = Depends(get_publisher),
) -> Response:
    draft = IssueDraft(title=body.title, text_content=body.text_content, html_content=body.html_content)
    try:
        saved = publisher.publish(operator_id, body.idempotency_key, draft)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PublishConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc), headers={"Retry-After": RETRY_AFTER_SECONDS})
    except PublishUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc), headers={"Retry-After": RETRY_AFTER_SECONDS})

    return Response(content=saved.body, status_code=saved.status_code, headers=dict(saved.headers))


@router.get("/{issue_id}/delivery", summary="Delivery progress and terminal failures for an issue")
def get_delivery_status(
    issue_id: UUID,
    _operator_id: str = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    if NewsletterIssueRepository(db).get(issue_id) is None:
        raise HTTPException(status_code=404, detail=f"Newsletter issue {issue_id} not found")

    failures = DeliveryFailureRepository(db).list_for_issue(issue_id)
    return {
        "issue_id": str(issue_id),
        "pending": IssueDeliveryQueue(db).pending_count(issue_id),
        "failures": [
            {
                "subscriber_email": failure.subscriber_email,
                "reason": failure.reason,
                "n_retries": failure.n_retries,
                "last_error": failure.last_error,
                "failed_at": failure.failed_at.isoformat() if failure.failed_at else None,
            }
            for failure in failures
        ],
    }
