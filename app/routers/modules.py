"""
Module access endpoint — time-based unlocking of a track's modules.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.limiter import limiter
from app.middleware.auth import AuthContext, get_current_user
from app.schemas.billing import ModuleAccessResponse
from app.services import entitlement_service

router = APIRouter(prefix="/modules", tags=["Module Access"])


@router.get("/check-access", response_model=ModuleAccessResponse)
@limiter.limit("120/minute")
def check_access(
    request: Request,
    track_id: str = Query(..., min_length=1),
    module_index: int = Query(..., ge=0, description="Zero-based module position in the track"),
    chapter_index: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
):
    decision = entitlement_service.check_module_access(
        db, user.user_id, track_id, module_index, chapter_index
    )
    return ModuleAccessResponse(
        track_id=track_id,
        module_index=module_index,
        chapter_index=chapter_index,
        **decision,
    )
