"""
Payment verification — validates the checkout callback and completes the payment.

State machine: pending → completed | failed. The pending → completed move is a
conditional UPDATE, so two concurrent callbacks for the same order produce
exactly one completion and one subscription effect. Replays of a completed
payment return it unchanged.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.models import Payment
from app.services import audit_sink, ledger_store, subscription_resolver
from app.services.errors import (
    AlreadyFailed,
    ConflictError,
    PaymentNotFound,
    PersistenceRace,
    SignatureMismatch,
)
from app.services.order_intent_service import PURPOSE_TRACK_ACCESS, PURPOSE_TRACK_CONTENT_SAVE
from app.services.razorpay_client import RazorpayClient

logger = logging.getLogger(__name__)


def _apply_subscription_effect(db: Session, payment: Payment, now: datetime) -> None:
    if payment.purpose == PURPOSE_TRACK_ACCESS:
        subscription_resolver.resolve(db, payment, now)
    elif payment.purpose == PURPOSE_TRACK_CONTENT_SAVE:
        subscription_resolver.apply_content_save(db, payment, now)
    else:
        logger.warning("Payment %s has unknown purpose %s", payment.id, payment.purpose)


def _resume_if_unresolved(db: Session, payment: Payment, now: datetime) -> None:
    # Content-save effects are counters and are never replayed
    if payment.purpose != PURPOSE_TRACK_ACCESS or payment.subscription_id is not None:
        return
    logger.warning("Payment %s completed without a subscription; resuming", payment.id)
    subscription_resolver.resolve(db, payment, now)


def verify_payment(
    db: Session,
    gateway: RazorpayClient,
    user_id: str,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
    payment_record_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """
    Verify a checkout callback for one of the user's orders.

    Raises:
        PaymentNotFound: no payment for this user and order (or record id mismatch).
        AlreadyFailed: the payment was already marked failed.
        SignatureMismatch: the callback signature is invalid; payment marked failed.
    """
    now = now or datetime.utcnow()

    payment = ledger_store.find_payment_by_order_id(db, gateway_order_id, user_id=user_id)
    if payment is None or (payment_record_id is not None and payment.id != payment_record_id):
        raise PaymentNotFound(f"No payment for order {gateway_order_id} and user {user_id}")

    if payment.status == "completed":
        logger.info("Payment %s already completed; returning it", payment.id)
        _resume_if_unresolved(db, payment, now)
        db.refresh(payment)
        return payment
    if payment.status == "failed":
        raise AlreadyFailed(f"Payment {payment.id} was already marked failed")

    if not gateway.verify_signature(gateway_order_id, gateway_payment_id, signature):
        ledger_store.mark_payment_failed(db, payment.id, "Invalid payment signature")
        logger.error(
            "Signature mismatch for order %s (payment %s, user %s)",
            gateway_order_id, payment.id, user_id,
        )
        audit_sink.publish(
            "payment.failed",
            {"payment_id": payment.id, "user_id": user_id, "reason": "signature_mismatch"},
        )
        raise SignatureMismatch(f"Invalid signature for order {gateway_order_id}")

    payment_id = payment.id
    try:
        won = ledger_store.mark_payment_completed(
            db, payment_id, gateway_payment_id, signature, completed_at=now
        )
    except ConflictError as e:
        raise PersistenceRace(
            f"Gateway payment {gateway_payment_id} is already recorded on another payment"
        ) from e
    db.refresh(payment)

    if not won:
        # Another callback for the same order completed it first
        if payment.status == "completed":
            return payment
        raise AlreadyFailed(f"Payment {payment_id} is {payment.status}")

    logger.info(
        "Payment %s completed (order=%s, user=%s, amount=%s, purpose=%s)",
        payment_id, gateway_order_id, user_id, payment.amount, payment.purpose,
    )
    audit_sink.publish(
        "payment.completed",
        {
            "payment_id": payment_id,
            "user_id": user_id,
            "amount": payment.amount,
            "purpose": payment.purpose,
            "track_id": payment.track_id,
        },
    )

    _apply_subscription_effect(db, payment, now)
    db.refresh(payment)
    return payment
