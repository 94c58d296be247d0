from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index
from .base import Base


class Subscription(Base):
    """
    Subscription — one entitlement window, scoped to a content track.

    A null ``track_id`` marks a temporary entitlement: the user paid before the
    track existed, and the record is linked once the track is saved.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    track_id = Column(String(64), nullable=True, index=True)

    # Plan info (derived from the funding payment's amount)
    plan_tier = Column(String(20), nullable=False)            # basic|premium
    plan_amount = Column(Integer, nullable=False)

    # Lifecycle
    start_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    renewed_at = Column(DateTime, nullable=True)
    expiry_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False)

    # Plan quotas
    daily_chat_limit = Column(Integer, nullable=False)
    monthly_generation_limit = Column(Integer, nullable=False)
    tracks_saved = Column(Integer, default=0, nullable=False)
    max_tracks_per_payment = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# At most one active subscription per (user, track). NULL tracks never collide,
# so temporary entitlements may coexist.
Index(
    "uq_subscriptions_user_track_active",
    Subscription.user_id,
    Subscription.track_id,
    unique=True,
    sqlite_where=Subscription.is_active == True,  # noqa: E712
    postgresql_where=Subscription.is_active == True,  # noqa: E712
)
Index("idx_subscriptions_expiry_active", Subscription.expiry_date, Subscription.is_active)
