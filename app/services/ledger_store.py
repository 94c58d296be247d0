"""
Ledger store — persistence for payments, subscriptions and usage counters.

Unique constraints are the only concurrency primitive: every write commits
immediately and a violated constraint is reported as ``ConflictError`` after
the session has been rolled back. Status transitions and counters use
conditional / relative UPDATEs so concurrent writers never read-modify-write.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Payment, Subscription, UsageTracking, UsageCounter
from app.services.errors import ConflictError

logger = logging.getLogger(__name__)


def _commit(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(str(e.orig)) from e


def _execute_update(db: Session, stmt) -> int:
    result = db.execute(stmt.execution_options(synchronize_session=False))
    _commit(db)
    return result.rowcount


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def insert_payment(db: Session, payment: Payment) -> Payment:
    db.add(payment)
    _commit(db)
    db.refresh(payment)
    return payment


def save(db: Session, record) -> None:
    """Flush pending attribute changes of an already-persistent record."""
    db.add(record)
    _commit(db)


def get_payment(db: Session, payment_id: int) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.id == payment_id).first()


def find_payment_by_order_id(
    db: Session, gateway_order_id: str, user_id: Optional[str] = None
) -> Optional[Payment]:
    query = db.query(Payment).filter(Payment.gateway_order_id == gateway_order_id)
    if user_id is not None:
        query = query.filter(Payment.user_id == user_id)
    return query.first()


def delete_orphaned_payments(db: Session, user_id: str, older_than: datetime) -> int:
    """
    Delete this user's stale pending payments that never got a gateway order id.
    """
    deleted = (
        db.query(Payment)
        .filter(
            Payment.user_id == user_id,
            Payment.status == "pending",
            or_(Payment.gateway_order_id.is_(None), Payment.gateway_order_id == ""),
            Payment.created_at < older_than,
        )
        .delete(synchronize_session=False)
    )
    _commit(db)
    return deleted


def mark_payment_completed(
    db: Session,
    payment_id: int,
    gateway_payment_id: str,
    signature: str,
    completed_at: datetime,
) -> bool:
    """pending → completed. Returns False when another writer got there first."""
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == "pending")
        .values(
            status="completed",
            gateway_payment_id=gateway_payment_id,
            gateway_signature=signature,
            completed_at=completed_at,
        )
    )
    return _execute_update(db, stmt) == 1


def mark_payment_failed(db: Session, payment_id: int, reason: str) -> bool:
    """pending → failed. Returns False when the payment already left pending."""
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == "pending")
        .values(status="failed", error_message=reason[:1000])
    )
    return _execute_update(db, stmt) == 1


def link_payment_track(db: Session, payment_id: int, track_id: str) -> bool:
    """Set a payment's track id, only if it has none yet."""
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.track_id.is_(None))
        .values(track_id=track_id)
    )
    return _execute_update(db, stmt) == 1


def latest_completed_payment(
    db: Session, user_id: str, track_id: Optional[str]
) -> Optional[Payment]:
    query = db.query(Payment).filter(
        Payment.user_id == user_id,
        Payment.status == "completed",
        Payment.purpose == "track_access",
    )
    if track_id is None:
        query = query.filter(Payment.track_id.is_(None))
    else:
        query = query.filter(Payment.track_id == track_id)
    return query.order_by(Payment.completed_at.desc(), Payment.id.desc()).first()


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def insert_subscription(db: Session, subscription: Subscription) -> Subscription:
    db.add(subscription)
    _commit(db)
    db.refresh(subscription)
    return subscription


def get_subscription(db: Session, subscription_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.id == subscription_id).first()


def _track_filter(track_id: Optional[str]):
    if track_id is None:
        return Subscription.track_id.is_(None)
    return Subscription.track_id == track_id


def find_subscription(
    db: Session,
    user_id: str,
    track_id: Optional[str],
    active_only: bool = True,
    exclude_id: Optional[int] = None,
    not_expired_at: Optional[datetime] = None,
) -> Optional[Subscription]:
    """Most relevant subscription for exactly (user, track): active first, then newest."""
    query = db.query(Subscription).filter(
        Subscription.user_id == user_id, _track_filter(track_id)
    )
    if active_only:
        query = query.filter(Subscription.is_active == True)  # noqa: E712
    if exclude_id is not None:
        query = query.filter(Subscription.id != exclude_id)
    if not_expired_at is not None:
        query = query.filter(Subscription.expiry_date > not_expired_at)
    return query.order_by(
        Subscription.is_active.desc(),
        Subscription.created_at.desc(),
        Subscription.id.desc(),
    ).first()


def latest_subscription(
    db: Session,
    user_id: str,
    active_only: bool = True,
    not_expired_at: Optional[datetime] = None,
) -> Optional[Subscription]:
    """The user's most recent subscription of any track."""
    query = db.query(Subscription).filter(Subscription.user_id == user_id)
    if active_only:
        query = query.filter(Subscription.is_active == True)  # noqa: E712
    if not_expired_at is not None:
        query = query.filter(Subscription.expiry_date > not_expired_at)
    return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()


def find_subscription_with_save_slot(
    db: Session, user_id: str, track_id: Optional[str] = None, any_track: bool = False
) -> Optional[Subscription]:
    query = db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.is_active == True,  # noqa: E712
        Subscription.tracks_saved < Subscription.max_tracks_per_payment,
    )
    if not any_track:
        query = query.filter(_track_filter(track_id))
    return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()


def link_subscription_track(db: Session, subscription_id: int, track_id: str) -> bool:
    """Temporary → track-scoped. Only succeeds while the track id is still null."""
    stmt = (
        update(Subscription)
        .where(Subscription.id == subscription_id, Subscription.track_id.is_(None))
        .values(track_id=track_id, updated_at=datetime.utcnow())
    )
    return _execute_update(db, stmt) == 1


def deactivate_subscription(db: Session, subscription_id: int) -> None:
    stmt = (
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(is_active=False, updated_at=datetime.utcnow())
    )
    _execute_update(db, stmt)


def increment_tracks_saved(db: Session, subscription_id: int) -> None:
    stmt = (
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(tracks_saved=Subscription.tracks_saved + 1, updated_at=datetime.utcnow())
    )
    _execute_update(db, stmt)


# ---------------------------------------------------------------------------
# Usage tracking
# ---------------------------------------------------------------------------

def get_usage_tracking(db: Session, subscription_id: int) -> Optional[UsageTracking]:
    return (
        db.query(UsageTracking)
        .filter(UsageTracking.subscription_id == subscription_id)
        .first()
    )


def ensure_usage_tracking(db: Session, subscription: Subscription) -> UsageTracking:
    """Return the subscription's usage ledger, creating it on first use."""
    usage = get_usage_tracking(db, subscription.id)
    if usage:
        return usage

    subscription_id = subscription.id
    usage = UsageTracking(user_id=subscription.user_id, subscription_id=subscription_id)
    db.add(usage)
    try:
        _commit(db)
    except ConflictError:
        # Created concurrently
        usage = get_usage_tracking(db, subscription_id)
        if usage is None:
            raise
        return usage
    db.refresh(usage)
    return usage


def increment_usage_tracks_saved(db: Session, usage_tracking_id: int) -> None:
    stmt = (
        update(UsageTracking)
        .where(UsageTracking.id == usage_tracking_id)
        .values(tracks_saved=UsageTracking.tracks_saved + 1, last_updated=datetime.utcnow())
    )
    _execute_update(db, stmt)


def _counter_filter(usage_tracking_id: int, content_unit_id: str, kind: str, period_key: str):
    return (
        UsageCounter.usage_tracking_id == usage_tracking_id,
        UsageCounter.content_unit_id == content_unit_id,
        UsageCounter.kind == kind,
        UsageCounter.period_key == period_key,
    )


def get_counter(
    db: Session, usage_tracking_id: int, content_unit_id: str, kind: str, period_key: str
) -> int:
    count = (
        db.query(UsageCounter.count)
        .filter(*_counter_filter(usage_tracking_id, content_unit_id, kind, period_key))
        .scalar()
    )
    return count or 0


def increment_counter(
    db: Session, usage_tracking_id: int, content_unit_id: str, kind: str, period_key: str
) -> int:
    """
    Atomically add one to a (unit, kind, period) counter and return the new value.

    The first hit of a period key inserts the row; a concurrent first hit loses
    the insert race and falls back to the relative UPDATE.
    """
    stmt = (
        update(UsageCounter)
        .where(*_counter_filter(usage_tracking_id, content_unit_id, kind, period_key))
        .values(count=UsageCounter.count + 1, updated_at=datetime.utcnow())
    )
    if _execute_update(db, stmt) == 0:
        db.add(
            UsageCounter(
                usage_tracking_id=usage_tracking_id,
                content_unit_id=content_unit_id,
                kind=kind,
                period_key=period_key,
                count=1,
            )
        )
        try:
            _commit(db)
        except ConflictError:
            logger.debug(
                "Counter %s/%s/%s created concurrently, incrementing instead",
                content_unit_id, kind, period_key,
            )
            _execute_update(db, stmt)

    return get_counter(db, usage_tracking_id, content_unit_id, kind, period_key)


def increment_counter_within_limit(
    db: Session,
    usage_tracking_id: int,
    content_unit_id: str,
    kind: str,
    period_key: str,
    limit: int,
) -> Optional[int]:
    """
    Like increment_counter, but only while the counter is below limit.

    The check and the increment are one conditional UPDATE, so concurrent
    callers can never push a counter past its limit. Returns None when the
    limit is already used up.
    """
    if limit <= 0:
        return None

    stmt = (
        update(UsageCounter)
        .where(
            *_counter_filter(usage_tracking_id, content_unit_id, kind, period_key),
            UsageCounter.count < limit,
        )
        .values(count=UsageCounter.count + 1, updated_at=datetime.utcnow())
    )
    if _execute_update(db, stmt) == 0:
        if get_counter(db, usage_tracking_id, content_unit_id, kind, period_key) > 0:
            return None
        db.add(
            UsageCounter(
                usage_tracking_id=usage_tracking_id,
                content_unit_id=content_unit_id,
                kind=kind,
                period_key=period_key,
                count=1,
            )
        )
        try:
            _commit(db)
        except ConflictError:
            logger.debug(
                "Counter %s/%s/%s created concurrently, retrying within limit %d",
                content_unit_id, kind, period_key, limit,
            )
            if _execute_update(db, stmt) == 0:
                return None

    return get_counter(db, usage_tracking_id, content_unit_id, kind, period_key)
