"""
Payment model — one purchase attempt against the Razorpay gateway.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index

from .base import Base


class Payment(Base):
    """
    Payments table - one row per gateway order.

    Attributes:
        id: Internal identifier (auto-increment primary key)
        user_id: Owning user (from the authentication context)
        gateway_order_id: Razorpay order id (unique). Nullable only for legacy
            rows written before the column became mandatory.
        gateway_payment_id: Razorpay payment id, set on completion (unique)
        gateway_signature: Signature supplied with the successful callback
        amount: Amount actually charged, in major currency units. This is the
            single source of truth for the plan tier.
        currency: ISO currency code
        plan_tier / plan_amount: Cached tier derived from ``amount``
        purpose: track_access | track_content_save
        track_id: Target content track (null = not yet linked)
        subscription_id: Subscription funded by this payment, once resolved
        status: pending | completed | failed
        receipt: Receipt reference sent to the gateway
        metadata_json: Free JSON (gateway notes, corrections)
        error_message: Reason for a failed transition
        created_at / completed_at: Timestamps

    Indexes:
        - gateway_order_id: at most one payment per gateway order
        - (user_id, status): orphan sweeps and history queries
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)

    gateway_order_id = Column(String(100), nullable=True, unique=True, index=True)
    gateway_payment_id = Column(String(100), nullable=True, unique=True)
    gateway_signature = Column(String(256), nullable=True)

    amount = Column(Integer, nullable=False)
    currency = Column(String(8), default="INR")
    plan_tier = Column(String(20), nullable=False)            # basic|premium
    plan_amount = Column(Integer, nullable=False)

    purpose = Column(String(32), nullable=False)              # track_access|track_content_save
    track_id = Column(String(64), nullable=True, index=True)
    subscription_id = Column(Integer, nullable=True)

    status = Column(String(20), default="pending", index=True)  # pending|completed|failed
    receipt = Column(String(64), nullable=True)
    metadata_json = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_payments_user_status", "user_id", "status"),
    )
