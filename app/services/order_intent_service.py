"""
Order intent service — creates (or recovers) the Payment row for a purchase.

Flow:
    1. Ask Razorpay for an order. No order id → GatewayUnavailable, nothing saved.
    2. A payment already stored for that order id is returned unchanged.
    3. Otherwise insert a pending payment keyed by the order id.

On a unique-constraint conflict the payment is looked up again by order id;
if it is not there, the conflict came from a legacy index on a null field, so
stale orphaned pending rows are swept and the insert is retried exactly once.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models import Payment
from app.services import audit_sink, ledger_store
from app.services.errors import (
    ConflictError,
    DuplicateIntent,
    GatewayUnavailable,
    InvalidOrderRequest,
    OrphanedRecordConflict,
)
from app.services.plans import get_plan, plan_from_amount
from app.services.razorpay_client import RazorpayClient

logger = logging.getLogger(__name__)

PURPOSE_TRACK_ACCESS = "track_access"
PURPOSE_TRACK_CONTENT_SAVE = "track_content_save"


@dataclass
class OrderIntent:
    gateway_order_id: str
    amount: int
    currency: str
    payment_record_id: int

    @classmethod
    def from_payment(cls, payment: Payment) -> "OrderIntent":
        return cls(
            gateway_order_id=payment.gateway_order_id,
            amount=payment.amount,
            currency=payment.currency or get_settings().PAYMENT_CURRENCY,
            payment_record_id=payment.id,
        )


def _create_receipt(user_id: str) -> str:
    return f"rcpt_{user_id}_{int(time.time() * 1000)}"[:40]


def _new_payment(
    user_id: str,
    order_id: str,
    amount: int,
    currency: str,
    purpose: str,
    track_id: Optional[str],
    receipt: str,
) -> Payment:
    # Tier is re-derived from the amount so the cached fields can never disagree
    plan = plan_from_amount(amount)
    return Payment(
        user_id=user_id,
        gateway_order_id=order_id,
        amount=amount,
        currency=currency,
        plan_tier=plan["id"],
        plan_amount=plan["amount"],
        purpose=purpose,
        track_id=track_id,
        status="pending",
        receipt=receipt,
        metadata_json={
            "receipt": receipt,
            "initial_access": purpose == PURPOSE_TRACK_ACCESS and track_id is None,
        },
    )


def _recover_from_conflict(
    db: Session,
    user_id: str,
    order_id: str,
    build_payment,
) -> Payment:
    settings = get_settings()

    existing = ledger_store.find_payment_by_order_id(db, order_id)
    if existing:
        logger.warning(
            "Duplicate intent for order %s, returning payment %s", order_id, existing.id
        )
        return existing

    cutoff = datetime.utcnow() - timedelta(hours=settings.ORPHAN_SWEEP_WINDOW_HOURS)
    swept = ledger_store.delete_orphaned_payments(db, user_id, older_than=cutoff)
    logger.warning(
        "Payment insert for order %s conflicted on a legacy key; swept %d orphaned "
        "pending payment(s) for user %s, retrying once",
        order_id, swept, user_id,
    )

    try:
        return ledger_store.insert_payment(db, build_payment())
    except ConflictError as e:
        existing = ledger_store.find_payment_by_order_id(db, order_id)
        if existing:
            return existing
        raise OrphanedRecordConflict(
            f"Payment for order {order_id} still conflicts after orphan sweep"
        ) from e


def create_order(
    db: Session,
    gateway: RazorpayClient,
    user_id: str,
    plan_tier: str,
    purpose: str,
    track_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> OrderIntent:
    """
    Create a gateway order and its pending Payment record.

    Raises:
        GatewayUnavailable: the gateway call failed; nothing was persisted.
        OrphanedRecordConflict: the insert could not be recovered; retryable.
    """
    settings = get_settings()
    if purpose == PURPOSE_TRACK_CONTENT_SAVE and not track_id:
        raise InvalidOrderRequest("track_content_save payments require a track id")

    plan = get_plan(plan_tier)
    amount = plan["amount"]
    currency = settings.PAYMENT_CURRENCY
    receipt = _create_receipt(user_id)

    order = gateway.create_order(
        amount_minor=amount * 100,
        currency=currency,
        receipt=receipt,
        notes={
            "user_id": user_id,
            "plan_tier": plan["id"],
            "purpose": purpose,
            "track_id": track_id,
        },
        timeout=timeout,
    )
    order_id = (order.get("id") or "").strip() if isinstance(order, dict) else ""
    if not order_id:
        raise GatewayUnavailable("Gateway did not return an order id")

    def build_payment() -> Payment:
        return _new_payment(user_id, order_id, amount, currency, purpose, track_id, receipt)

    payment = ledger_store.find_payment_by_order_id(db, order_id)
    if payment:
        logger.warning("Payment for order %s already exists: %s", order_id, payment.id)
    else:
        payment = _insert_payment(db, user_id, order_id, build_payment)

    if payment.user_id != user_id:
        raise DuplicateIntent(f"Order {order_id} belongs to another user")

    return OrderIntent.from_payment(payment)


def _insert_payment(db: Session, user_id: str, order_id: str, build_payment) -> Payment:
    try:
        payment = ledger_store.insert_payment(db, build_payment())
    except ConflictError:
        return _recover_from_conflict(db, user_id, order_id, build_payment)

    logger.info(
        "Created pending payment %s for order %s (user=%s, tier=%s, purpose=%s, track=%s)",
        payment.id, order_id, user_id, payment.plan_tier, payment.purpose, payment.track_id,
    )
    audit_sink.publish(
        "payment.created",
        {
            "payment_id": payment.id,
            "user_id": user_id,
            "order_id": order_id,
            "amount": payment.amount,
            "purpose": payment.purpose,
            "track_id": payment.track_id,
        },
    )
    return payment
