"""
Module access gating — how many modules of a track a subscription unlocks.

Rule: the initial payment unlocks the first module immediately and every full
period (30 days) since the subscription started unlocks one more. Chapters
are gated exactly like the module they belong to.
"""
import math
from datetime import datetime, timedelta
from typing import Optional

from app.models import Subscription

UNLOCK_PERIOD = timedelta(days=30)


def is_expired(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    return subscription.expiry_date is not None and subscription.expiry_date < now


def unlocked_module_count(subscription: Optional[Subscription], now: Optional[datetime] = None) -> int:
    """Number of leading modules the subscription unlocks (0 when inactive or expired)."""
    if subscription is None or not subscription.is_active:
        return 0

    now = now or datetime.utcnow()
    if is_expired(subscription, now):
        return 0

    elapsed = now - subscription.start_date
    periods = math.floor(elapsed / UNLOCK_PERIOD) if elapsed > timedelta(0) else 0
    return max(1, periods + 1)


def module_accessible(
    subscription: Optional[Subscription], module_index: int, now: Optional[datetime] = None
) -> bool:
    """module_index is the zero-based position of the module within its track."""
    if module_index < 0:
        return False
    return module_index < unlocked_module_count(subscription, now)


def chapter_accessible(
    subscription: Optional[Subscription],
    module_index: int,
    chapter_index: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    # No gating below the module: every chapter of an unlocked module is open
    return module_accessible(subscription, module_index, now)
