"""
Read-side entitlement queries: which subscription covers a request, module
gating for a track, and the subscription status view.

Expiry is applied lazily: any read that finds an expired but still active
subscription deactivates it before answering.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models import Subscription
from app.services import access_calculator, ledger_store, subscription_resolver
from app.services.plans import plan_from_amount

logger = logging.getLogger(__name__)


def deactivate_if_expired(db: Session, subscription: Subscription, now: datetime) -> bool:
    """Returns True when the subscription was expired (and is now inactive)."""
    if not access_calculator.is_expired(subscription, now):
        return False
    if subscription.is_active:
        logger.info(
            "Subscription %s expired at %s; deactivating",
            subscription.id, subscription.expiry_date,
        )
        ledger_store.deactivate_subscription(db, subscription.id)
        db.refresh(subscription)
    return True


def _usable(db: Session, subscription: Optional[Subscription], now: datetime) -> Optional[Subscription]:
    if subscription is None or not subscription.is_active:
        return None
    if deactivate_if_expired(db, subscription, now):
        return None
    return subscription


def find_entitled_subscription(
    db: Session, user_id: str, track_id: Optional[str], now: Optional[datetime] = None
) -> Optional[Subscription]:
    """
    Subscription that pays for usage inside a track.

    Tries the track's own subscription, then the temporary one, then the
    user's most recent live subscription.
    """
    now = now or datetime.utcnow()

    if track_id:
        subscription = _usable(
            db, ledger_store.find_subscription(db, user_id, track_id, active_only=True), now
        )
        if subscription:
            return subscription

    subscription = _usable(
        db, ledger_store.find_subscription(db, user_id, None, active_only=True), now
    )
    if subscription:
        return subscription

    if not get_settings().SUBSCRIPTION_LATEST_FALLBACK:
        return None
    return ledger_store.latest_subscription(db, user_id, active_only=True, not_expired_at=now)


def check_module_access(
    db: Session,
    user_id: str,
    track_id: str,
    module_index: int,
    chapter_index: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Access decision for one module (or chapter) of a track.

    The track's own subscription decides when it is live; otherwise the same
    fallback chain as usage gating applies (temporary, then most recent).
    """
    now = now or datetime.utcnow()
    exact = ledger_store.find_subscription(db, user_id, track_id, active_only=True)
    expired = exact is not None and deactivate_if_expired(db, exact, now)

    subscription = None if expired else exact
    if subscription is None:
        subscription = find_entitled_subscription(db, user_id, track_id, now)
    if subscription is None:
        return {
            "has_access": False,
            "is_locked": True,
            "unlocked_module_count": 0,
            "reason": "Subscription expired" if expired else "No active subscription for this track",
        }

    unlocked = access_calculator.unlocked_module_count(subscription, now)
    has_access = access_calculator.chapter_accessible(subscription, module_index, chapter_index, now)
    return {
        "has_access": has_access,
        "is_locked": not has_access,
        "unlocked_module_count": unlocked,
        "reason": None if has_access else f"Module {module_index + 1} unlocks in a later period",
    }


def can_save_track(db: Session, user_id: str, now: Optional[datetime] = None) -> bool:
    """Whether the user has an active subscription with a free save slot."""
    now = now or datetime.utcnow()
    subscription = ledger_store.find_subscription_with_save_slot(db, user_id, any_track=True)
    return _usable(db, subscription, now) is not None


def correct_subscription_from_payment(db: Session, subscription: Subscription) -> bool:
    """
    Re-derive the subscription's tier and limits from the payment that funded it.

    Returns True when a correction was written.
    """
    if subscription.payment_id is None:
        return False
    payment = ledger_store.get_payment(db, subscription.payment_id)
    if payment is None or payment.status != "completed":
        return False

    plan = plan_from_amount(payment.amount)
    if (
        subscription.plan_tier == plan["id"]
        and subscription.plan_amount == plan["amount"]
        and subscription.daily_chat_limit == plan["daily_chat_limit"]
        and subscription.monthly_generation_limit == plan["monthly_generation_limit"]
    ):
        return False

    logger.warning(
        "Subscription %s tier %s disagrees with payment %s amount %s; correcting to %s",
        subscription.id, subscription.plan_tier, payment.id, payment.amount, plan["id"],
    )
    subscription.plan_tier = plan["id"]
    subscription.plan_amount = plan["amount"]
    subscription.daily_chat_limit = plan["daily_chat_limit"]
    subscription.monthly_generation_limit = plan["monthly_generation_limit"]
    ledger_store.save(db, subscription)
    return True


def _serialize(subscription: Subscription, now: datetime) -> dict[str, Any]:
    return {
        "id": subscription.id,
        "track_id": subscription.track_id,
        "plan_tier": subscription.plan_tier,
        "plan_amount": subscription.plan_amount,
        "start_date": subscription.start_date,
        "expiry_date": subscription.expiry_date,
        "is_active": subscription.is_active,
        "daily_chat_limit": subscription.daily_chat_limit,
        "monthly_generation_limit": subscription.monthly_generation_limit,
        "tracks_saved": subscription.tracks_saved,
        "max_tracks_per_payment": subscription.max_tracks_per_payment,
        "unlocked_module_count": access_calculator.unlocked_module_count(subscription, now),
    }


def get_subscription_status(
    db: Session, user_id: str, track_id: Optional[str] = None, now: Optional[datetime] = None
) -> dict[str, Any]:
    """
    Current subscription for a track (or the temporary one when track_id is None).

    A completed payment whose subscription was never written (crash between
    the payment update and the subscription write) is resolved here.
    """
    now = now or datetime.utcnow()

    subscription = _usable(
        db, ledger_store.find_subscription(db, user_id, track_id, active_only=True), now
    )

    if subscription is None:
        payment = ledger_store.latest_completed_payment(db, user_id, track_id)
        if payment is not None and payment.subscription_id is None:
            logger.warning(
                "Completed payment %s has no subscription; resolving it now", payment.id
            )
            subscription = _usable(db, subscription_resolver.resolve(db, payment, now), now)

    if subscription is None:
        return {
            "has_subscription": False,
            "subscription": None,
            "can_save_track": can_save_track(db, user_id, now),
        }

    correct_subscription_from_payment(db, subscription)
    return {
        "has_subscription": True,
        "subscription": _serialize(subscription, now),
        "can_save_track": can_save_track(db, user_id, now),
    }
