"""
Subscription resolver — turns a completed payment into exactly one entitlement.

Subscriptions are scoped to individual content tracks. A payment made before
the user has a track produces a temporary subscription (track_id = NULL) that
is linked once the track exists. Under no circumstances may a payment for one
track mutate the subscription of another.

Lookup order (first confident match wins):
    1. The subscription for exactly (user, payment.track_id).
    2. For track-less payments: the most recent active, unexpired temporary
       subscription.
    3. The user's most recent active, unexpired subscription of any track
       (lenient last resort, disabled with SUBSCRIPTION_LATEST_FALLBACK=false).

Decision table:
    same track (or both NULL)        → renew in place
    temporary + payment with a track → link, then renew
    anything else                    → create a new subscription
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models import Payment, Subscription
from app.services import audit_sink, ledger_store
from app.services.errors import ConflictError, CrossTrackConflict, PersistenceRace
from app.services.plans import (
    MAX_TRACKS_PER_PAYMENT,
    SUBSCRIPTION_PERIOD_MONTHS,
    add_months,
    plan_from_amount,
)

logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_RENEW = "renew"
ACTION_LINK = "link"


# ---------------------------------------------------------------------------
# Lookup strategies
# ---------------------------------------------------------------------------

def _exact_track(db: Session, payment: Payment, now: datetime) -> Optional[Subscription]:
    if payment.track_id is None:
        return None
    subscription = ledger_store.find_subscription(
        db, payment.user_id, payment.track_id, active_only=False
    )
    if subscription and subscription.track_id != payment.track_id:
        logger.error(
            "Lookup for track %s returned subscription %s of track %s; ignoring it",
            payment.track_id, subscription.id, subscription.track_id,
        )
        return None
    return subscription


def _temporary(db: Session, payment: Payment, now: datetime) -> Optional[Subscription]:
    if payment.track_id is not None:
        return None
    return ledger_store.find_subscription(
        db, payment.user_id, None, active_only=True, not_expired_at=now
    )


def _latest_any_track(db: Session, payment: Payment, now: datetime) -> Optional[Subscription]:
    if not get_settings().SUBSCRIPTION_LATEST_FALLBACK:
        return None
    return ledger_store.latest_subscription(
        db, payment.user_id, active_only=True, not_expired_at=now
    )


LOOKUP_STRATEGIES: list[Callable[[Session, Payment, datetime], Optional[Subscription]]] = [
    _exact_track,
    _temporary,
    _latest_any_track,
]


def find_subscription_for_payment(
    db: Session, payment: Payment, now: datetime
) -> Optional[Subscription]:
    for strategy in LOOKUP_STRATEGIES:
        subscription = strategy(db, payment, now)
        if subscription is not None:
            return subscription
    return None


def decide_action(subscription: Optional[Subscription], payment: Payment) -> str:
    if subscription is None:
        return ACTION_CREATE
    if subscription.track_id == payment.track_id:
        return ACTION_RENEW
    if subscription.track_id is None and payment.track_id is not None:
        return ACTION_LINK
    # Different tracks, or a track-scoped record for a track-less payment
    return ACTION_CREATE


def _is_compatible(subscription: Subscription, payment: Payment) -> bool:
    return decide_action(subscription, payment) in (ACTION_RENEW, ACTION_LINK)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _correct_payment_tier(db: Session, payment: Payment, plan: dict) -> None:
    if payment.plan_tier == plan["id"] and payment.plan_amount == plan["amount"]:
        return
    logger.warning(
        "Correcting payment %s tier from %s (%s) to %s (%s) to match amount %s",
        payment.id, payment.plan_tier, payment.plan_amount,
        plan["id"], plan["amount"], payment.amount,
    )
    metadata = dict(payment.metadata_json or {})
    metadata["tier_corrected_from"] = {
        "plan_tier": payment.plan_tier,
        "plan_amount": payment.plan_amount,
    }
    payment.plan_tier = plan["id"]
    payment.plan_amount = plan["amount"]
    payment.metadata_json = metadata
    ledger_store.save(db, payment)


def _apply_payment(subscription: Subscription, payment: Payment, plan: dict, now: datetime) -> None:
    """Renew a subscription in place from a payment. Refuses cross-track writes."""
    if subscription.track_id is not None and subscription.track_id != payment.track_id:
        logger.error(
            "Refusing to apply payment %s (track %s) to subscription %s of track %s",
            payment.id, payment.track_id, subscription.id, subscription.track_id,
        )
        raise CrossTrackConflict(
            f"Subscription {subscription.id} belongs to track {subscription.track_id}"
        )

    still_running = (
        subscription.is_active
        and subscription.expiry_date is not None
        and subscription.expiry_date > now
    )
    period_base = subscription.expiry_date if still_running else now

    if subscription.track_id is None and payment.track_id is not None:
        subscription.track_id = payment.track_id
    subscription.plan_tier = plan["id"]
    subscription.plan_amount = plan["amount"]
    subscription.daily_chat_limit = plan["daily_chat_limit"]
    subscription.monthly_generation_limit = plan["monthly_generation_limit"]
    if not still_running or subscription.start_date is None:
        # A lapsed entitlement restarts module unlocking from the first module
        subscription.start_date = now
    subscription.renewed_at = now
    subscription.expiry_date = add_months(period_base, SUBSCRIPTION_PERIOD_MONTHS)
    subscription.payment_id = payment.id
    subscription.is_active = True
    subscription.tracks_saved = 0
    if not subscription.max_tracks_per_payment:
        subscription.max_tracks_per_payment = MAX_TRACKS_PER_PAYMENT


def _renew(
    db: Session, subscription: Subscription, payment: Payment, plan: dict, now: datetime
) -> Subscription:
    if subscription.payment_id == payment.id:
        return subscription

    subscription_id = subscription.id
    user_id, track_id = payment.user_id, payment.track_id
    previous_track = subscription.track_id
    _apply_payment(subscription, payment, plan, now)
    try:
        ledger_store.save(db, subscription)
    except ConflictError:
        # Reactivating or linking collided with another active record for the track
        logger.warning(
            "Subscription %s conflicts with an active record for (%s, %s); renewing that one",
            subscription_id, user_id, track_id,
        )
        other = ledger_store.find_subscription(
            db, user_id, track_id, active_only=True, exclude_id=subscription_id
        )
        if other is None:
            raise PersistenceRace(
                f"Could not renew subscription {subscription_id} for track {track_id}"
            )
        if other.payment_id == payment.id:
            return other
        _apply_payment(other, payment, plan, now)
        try:
            ledger_store.save(db, other)
        except ConflictError as e:
            raise PersistenceRace(f"Subscription {other.id} changed concurrently") from e
        return other

    if previous_track is None and subscription.track_id is not None:
        logger.info("Linked temporary subscription %s to track %s", subscription_id, track_id)
        audit_sink.publish(
            "subscription.linked",
            {"subscription_id": subscription_id, "user_id": user_id, "track_id": track_id},
        )
    logger.info(
        "Renewed subscription %s (user=%s, track=%s, tier=%s, expires=%s)",
        subscription_id, user_id, track_id, plan["id"], subscription.expiry_date,
    )
    return subscription


def _find_after_insert_conflict(db: Session, payment: Payment) -> Optional[Subscription]:
    user_id, track_id = payment.user_id, payment.track_id
    candidates = (
        lambda: ledger_store.find_subscription(db, user_id, track_id, active_only=True),
        lambda: ledger_store.find_subscription(db, user_id, track_id, active_only=False),
        lambda: ledger_store.latest_subscription(db, user_id, active_only=False),
    )
    for candidate in candidates:
        subscription = candidate()
        if subscription is not None and _is_compatible(subscription, payment):
            return subscription
    return None


def _create(db: Session, payment: Payment, plan: dict, now: datetime) -> Subscription:
    subscription = Subscription(
        user_id=payment.user_id,
        track_id=payment.track_id,
        plan_tier=plan["id"],
        plan_amount=plan["amount"],
        start_date=now,
        renewed_at=now,
        expiry_date=add_months(now, SUBSCRIPTION_PERIOD_MONTHS),
        is_active=True,
        payment_id=payment.id,
        daily_chat_limit=plan["daily_chat_limit"],
        monthly_generation_limit=plan["monthly_generation_limit"],
        tracks_saved=0,
        max_tracks_per_payment=MAX_TRACKS_PER_PAYMENT,
    )
    try:
        subscription = ledger_store.insert_subscription(db, subscription)
    except ConflictError:
        logger.warning(
            "Subscription insert for (%s, %s) raced with another writer; falling back",
            payment.user_id, payment.track_id,
        )
        existing = _find_after_insert_conflict(db, payment)
        if existing is None:
            raise PersistenceRace(
                f"No subscription found after insert conflict for payment {payment.id}"
            )
        return _renew(db, existing, payment, plan, now)

    logger.info(
        "Created subscription %s (user=%s, track=%s, tier=%s)",
        subscription.id, payment.user_id, payment.track_id or "temporary", plan["id"],
    )
    audit_sink.publish(
        "subscription.created",
        {
            "subscription_id": subscription.id,
            "user_id": payment.user_id,
            "track_id": payment.track_id,
            "plan_tier": plan["id"],
        },
    )
    return subscription


def resolve(db: Session, payment: Payment, now: Optional[datetime] = None) -> Subscription:
    """
    Find or create the subscription funded by a completed payment.

    Idempotent per payment: a payment that already funded a subscription
    returns that subscription untouched.
    """
    if payment.status != "completed":
        raise ValueError(f"Payment {payment.id} is {payment.status}, not completed")

    now = now or datetime.utcnow()

    if payment.subscription_id is not None:
        funded = ledger_store.get_subscription(db, payment.subscription_id)
        if funded is not None:
            return funded

    plan = plan_from_amount(payment.amount)
    _correct_payment_tier(db, payment, plan)

    existing = find_subscription_for_payment(db, payment, now)
    action = decide_action(existing, payment)
    if action == ACTION_CREATE:
        if existing is not None:
            logger.info(
                "Subscription %s belongs to track %s; creating a separate one for track %s",
                existing.id, existing.track_id, payment.track_id,
            )
        subscription = _create(db, payment, plan, now)
    else:
        subscription = _renew(db, existing, payment, plan, now)

    ledger_store.ensure_usage_tracking(db, subscription)

    payment.subscription_id = subscription.id
    ledger_store.save(db, payment)
    return subscription


# ---------------------------------------------------------------------------
# Track linking and saves
# ---------------------------------------------------------------------------

def link_temporary_subscription(
    db: Session, user_id: str, track_id: str, now: Optional[datetime] = None
) -> Optional[Subscription]:
    """
    Scope the user's temporary entitlement to a newly created track.

    Returns the subscription now covering the track, or None when the user has
    no usable temporary entitlement.
    """
    now = now or datetime.utcnow()

    existing = ledger_store.find_subscription(db, user_id, track_id, active_only=True)
    if existing is not None:
        return existing

    temporary = ledger_store.find_subscription(db, user_id, None, active_only=True)
    if temporary is None:
        return None
    if temporary.expiry_date < now:
        ledger_store.deactivate_subscription(db, temporary.id)
        return None

    temporary_id, payment_id = temporary.id, temporary.payment_id
    try:
        linked = ledger_store.link_subscription_track(db, temporary_id, track_id)
    except ConflictError:
        # An active subscription for this track appeared concurrently
        return ledger_store.find_subscription(db, user_id, track_id, active_only=True)

    subscription = ledger_store.get_subscription(db, temporary_id)
    if not linked:
        # Linked concurrently; only report it if it went to this track
        return subscription if subscription.track_id == track_id else None

    if payment_id is not None:
        ledger_store.link_payment_track(db, payment_id, track_id)
    logger.info("Linked temporary subscription %s to track %s", temporary_id, track_id)
    audit_sink.publish(
        "subscription.linked",
        {"subscription_id": temporary_id, "user_id": user_id, "track_id": track_id},
    )
    return subscription


def record_track_save(
    db: Session, user_id: str, track_id: Optional[str] = None, now: Optional[datetime] = None
) -> Optional[Subscription]:
    """Count one saved track against the entitlement that covers it."""
    now = now or datetime.utcnow()

    subscription = None
    if track_id:
        subscription = ledger_store.find_subscription(db, user_id, track_id, active_only=True)
        if subscription is None:
            subscription = ledger_store.find_subscription_with_save_slot(db, user_id, None)
    if subscription is None:
        subscription = ledger_store.find_subscription_with_save_slot(db, user_id, any_track=True)
    if subscription is None:
        logger.warning("No available subscription for track save (user=%s)", user_id)
        return None

    if subscription.expiry_date < now:
        ledger_store.deactivate_subscription(db, subscription.id)
        return None

    subscription_id = subscription.id
    ledger_store.increment_tracks_saved(db, subscription_id)
    usage = ledger_store.ensure_usage_tracking(db, subscription)
    ledger_store.increment_usage_tracks_saved(db, usage.id)
    return ledger_store.get_subscription(db, subscription_id)


def apply_content_save(db: Session, payment: Payment, now: Optional[datetime] = None) -> Optional[Subscription]:
    """Subscription effect of a verified track_content_save payment."""
    if payment.subscription_id is not None:
        return ledger_store.get_subscription(db, payment.subscription_id)

    subscription = record_track_save(db, payment.user_id, payment.track_id, now)
    if subscription is not None:
        payment.subscription_id = subscription.id
        ledger_store.save(db, payment)
    return subscription
