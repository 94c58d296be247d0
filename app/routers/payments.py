"""
Payment endpoints — Razorpay order creation, checkout verification and
subscription status.

Required environment variables:
    RAZORPAY_KEY_ID      — Razorpay key id (rzp_live_... or rzp_test_...)
    RAZORPAY_KEY_SECRET  — Razorpay key secret, also used to check signatures
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.core.limiter import limiter
from app.middleware.auth import AuthContext, get_current_user
from app.schemas.billing import (
    CreateOrderRequest,
    CreateOrderResponse,
    CreateTrackOrderRequest,
    PaymentPurpose,
    PaymentResponse,
    SubscriptionStatusResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from app.services import entitlement_service, order_intent_service, payment_verifier
from app.services.order_intent_service import OrderIntent
from app.services.plans import PLANS_CATALOG
from app.services.razorpay_client import RazorpayClient, get_gateway_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def _order_response(intent: OrderIntent, gateway: RazorpayClient) -> CreateOrderResponse:
    return CreateOrderResponse(
        order_id=intent.gateway_order_id,
        amount=intent.amount,
        currency=intent.currency,
        payment_id=intent.payment_record_id,
        key_id=gateway.key_id,
    )


@router.post("/create-order", response_model=CreateOrderResponse)
@limiter.limit("10/minute")
def create_order(
    request: Request,
    body: CreateOrderRequest,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
    gateway: RazorpayClient = Depends(get_gateway_client),
):
    """
    Create a Razorpay order for track access (or a temporary entitlement when
    no track exists yet).
    """
    intent = order_intent_service.create_order(
        db,
        gateway,
        user_id=user.user_id,
        plan_tier=body.plan_tier.value,
        purpose=body.purpose.value,
        track_id=body.track_id,
    )
    return _order_response(intent, gateway)


@router.post("/create-track-order", response_model=CreateOrderResponse)
@limiter.limit("10/minute")
def create_track_order(
    request: Request,
    body: CreateTrackOrderRequest,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
    gateway: RazorpayClient = Depends(get_gateway_client),
):
    """Create a Razorpay order for saving an additional track."""
    intent = order_intent_service.create_order(
        db,
        gateway,
        user_id=user.user_id,
        plan_tier=body.plan_tier.value,
        purpose=PaymentPurpose.track_content_save.value,
        track_id=body.track_id,
    )
    return _order_response(intent, gateway)


@router.post("/verify", response_model=VerifyPaymentResponse)
@limiter.limit("20/minute")
def verify_payment(
    request: Request,
    body: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
    gateway: RazorpayClient = Depends(get_gateway_client),
):
    """
    Verify the checkout callback and apply its subscription effect.

    Posting the same callback twice returns the completed payment unchanged.
    """
    payment = payment_verifier.verify_payment(
        db,
        gateway,
        user_id=user.user_id,
        gateway_order_id=body.razorpay_order_id,
        gateway_payment_id=body.razorpay_payment_id,
        signature=body.razorpay_signature,
        payment_record_id=body.payment_id,
    )
    return VerifyPaymentResponse(
        success=True, payment=PaymentResponse.model_validate(payment)
    )


@router.get("/subscription-status", response_model=SubscriptionStatusResponse)
@limiter.limit("60/minute")
def subscription_status(
    request: Request,
    track_id: Optional[str] = Query(None, description="Omit for the temporary entitlement"),
    db: Session = Depends(get_db),
    user: AuthContext = Depends(get_current_user),
):
    return entitlement_service.get_subscription_status(db, user.user_id, track_id)


@router.get("/plans")
@limiter.limit("30/minute")
def list_plans(request: Request):
    """Plans catalog with prices in the configured currency."""
    return {
        "currency": get_settings().PAYMENT_CURRENCY,
        "plans": PLANS_CATALOG,
    }
