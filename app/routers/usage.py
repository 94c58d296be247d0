"""
Usage endpoints — per-chapter chat turns (daily) and generations (monthly).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.limiter import limiter
from app.middleware.auth import AuthContext, get_current_user
from app.schemas.billing import ChapterUsageResponse, RecordUsageRequest, RecordUsageResponse
from app.services import entitlement_service
from app.services.errors import SubscriptionNotFound
from app.services.usage_ledger import KIND_DAILY, UsageLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["Usage"])


def _entitled_subscription(db: Session, user_id: str, track_id: Optional[str]):
    subscription = entitlement_service.find_entitled_subscription(db, user_id, track_id)
    if subscription is None:
        raise SubscriptionNotFound(f"No active subscription for user {user_id}")
    return subscription


@router.get("/chapter-status", response_model=ChapterUsageResponse)
@limiter.limit("120/minute")
def chapter_status(
    request: Request,
    chapter_id: str = Query(..., min_length=1),
    track_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
):
    subscription = _entitled_subscription(db, user.user_id, track_id)
    return UsageLedger.usage_status(db, subscription, chapter_id)


@router.post("/record", response_model=RecordUsageResponse)
@limiter.limit("60/minute")
def record_usage(
    request: Request,
    body: RecordUsageRequest,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
):
    """
    Count one chat turn (daily) or generation (monthly) for a chapter.
    Rejected with 429 once the period's limit is used up.
    """
    subscription = _entitled_subscription(db, user.user_id, body.track_id)
    subscription_id = subscription.id
    kind = body.kind.value

    count = UsageLedger.consume(db, subscription_id, body.content_unit_id, kind)
    if count is None:
        period = "Daily" if kind == KIND_DAILY else "Monthly"
        raise HTTPException(
            status_code=429,
            detail=f"{period} limit reached for this chapter. Upgrade or try again later.",
        )
    return RecordUsageResponse(
        subscription_id=subscription_id,
        content_unit_id=body.content_unit_id,
        kind=body.kind,
        count=count,
        remaining=UsageLedger.remaining(db, subscription_id, body.content_unit_id, kind),
    )
