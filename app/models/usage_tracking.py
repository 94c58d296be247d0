from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import Base


class UsageTracking(Base):
    """
    Usage tracking — metered consumption ledger paired 1:1 with a subscription.
    """
    __tablename__ = "usage_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    subscription_id = Column(
        Integer,
        ForeignKey("subscriptions.id"),
        unique=True,
        index=True,
        nullable=False,
    )
    tracks_saved = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    counters = relationship("UsageCounter", back_populates="usage_tracking")


class UsageCounter(Base):
    """
    One counter per (content unit, kind, period key).

    kind="daily"   → period_key "YYYY-MM-DD" (interactive chat turns)
    kind="monthly" → period_key "YYYY-MM"    (generation calls)
    """
    __tablename__ = "usage_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    usage_tracking_id = Column(
        Integer, ForeignKey("usage_tracking.id"), nullable=False, index=True
    )
    content_unit_id = Column(String(64), nullable=False)
    kind = Column(String(10), nullable=False)                 # daily|monthly
    period_key = Column(String(10), nullable=False)
    count = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    usage_tracking = relationship("UsageTracking", back_populates="counters")

    __table_args__ = (
        UniqueConstraint(
            "usage_tracking_id", "content_unit_id", "kind", "period_key",
            name="uq_usage_counters_unit_period",
        ),
    )
