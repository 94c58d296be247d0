"""
Track endpoints — scoping a temporary entitlement to a newly saved track.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.limiter import limiter
from app.middleware.auth import AuthContext, get_current_user
from app.schemas.billing import LinkSubscriptionResponse
from app.services import entitlement_service, subscription_resolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracks", tags=["Tracks"])


@router.post("/{track_id}/link-subscription", response_model=LinkSubscriptionResponse)
@limiter.limit("10/minute")
def link_subscription(
    request: Request,
    track_id: str,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
):
    """
    Called once the track has been created: links the user's temporary
    entitlement to it and uses up one track save.
    """
    if not entitlement_service.can_save_track(db, user.user_id):
        raise HTTPException(
            status_code=402,
            detail="No track save available. Purchase a plan to save this track.",
        )

    subscription = subscription_resolver.link_temporary_subscription(db, user.user_id, track_id)
    saved = subscription_resolver.record_track_save(db, user.user_id, track_id)
    covering = subscription or saved
    if covering is None:
        logger.warning("Track %s saved by user %s without a covering subscription", track_id, user.user_id)

    return LinkSubscriptionResponse(
        linked=subscription is not None,
        subscription_id=covering.id if covering else None,
        can_save_track=entitlement_service.can_save_track(db, user.user_id),
    )
