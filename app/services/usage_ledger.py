"""
UsageLedger — per-subscription, per-content-unit metered usage.

Usage:
    count = UsageLedger.consume(db, subscription_id, chapter_id, KIND_DAILY)
    if count is None:
        raise HTTPException(status_code=429, detail="Daily limit reached")

Daily counters (interactive turns) are keyed by calendar day, monthly counters
(generation calls) by calendar month. Limits are read from the subscription
at use time so an upgrade applies to the very next check.
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.models import Subscription
from app.services import ledger_store
from app.services.errors import SubscriptionNotFound
from app.services.plans import plan_from_amount

logger = logging.getLogger(__name__)

KIND_DAILY = "daily"
KIND_MONTHLY = "monthly"
USAGE_KINDS = (KIND_DAILY, KIND_MONTHLY)


class UsageLedger:

    @staticmethod
    def period_key(kind: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.utcnow()
        if kind == KIND_DAILY:
            return now.strftime("%Y-%m-%d")
        if kind == KIND_MONTHLY:
            return now.strftime("%Y-%m")
        raise ValueError(f"Unknown usage kind: {kind}")

    @staticmethod
    def limit_for(subscription: Subscription, kind: str) -> int:
        """
        Current limit for a usage kind.

        Subscriptions written before limits were stored carry 0 / NULL; those
        fall back to the plan derived from the amount paid.
        """
        if kind == KIND_DAILY:
            limit = subscription.daily_chat_limit
            field = "daily_chat_limit"
        elif kind == KIND_MONTHLY:
            limit = subscription.monthly_generation_limit
            field = "monthly_generation_limit"
        else:
            raise ValueError(f"Unknown usage kind: {kind}")

        if not limit:
            limit = plan_from_amount(subscription.plan_amount)[field]
        return limit

    @staticmethod
    def _get_subscription(db: Session, subscription_id: int) -> Subscription:
        subscription = ledger_store.get_subscription(db, subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        return subscription

    @staticmethod
    def used(
        db: Session,
        subscription_id: int,
        content_unit_id: str,
        kind: str,
        now: Optional[datetime] = None,
    ) -> int:
        key = UsageLedger.period_key(kind, now)
        usage = ledger_store.get_usage_tracking(db, subscription_id)
        if usage is None:
            return 0
        return ledger_store.get_counter(db, usage.id, content_unit_id, kind, key)

    @staticmethod
    def record_usage(
        db: Session,
        subscription_id: int,
        content_unit_id: str,
        kind: str,
        now: Optional[datetime] = None,
    ) -> int:
        """Add one use to the current period's counter and return the new count."""
        key = UsageLedger.period_key(kind, now)
        subscription = UsageLedger._get_subscription(db, subscription_id)
        usage = ledger_store.ensure_usage_tracking(db, subscription)
        count = ledger_store.increment_counter(db, usage.id, content_unit_id, kind, key)
        logger.debug(
            "Usage %s/%s for subscription %s (%s) is now %d",
            content_unit_id, kind, subscription_id, key, count,
        )
        return count

    @staticmethod
    def consume(
        db: Session,
        subscription_id: int,
        content_unit_id: str,
        kind: str,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Record one use only if the limit allows it; None once it is used up."""
        key = UsageLedger.period_key(kind, now)
        subscription = UsageLedger._get_subscription(db, subscription_id)
        limit = UsageLedger.limit_for(subscription, kind)
        usage = ledger_store.ensure_usage_tracking(db, subscription)
        count = ledger_store.increment_counter_within_limit(
            db, usage.id, content_unit_id, kind, key, limit
        )
        if count is None:
            logger.info(
                "Usage %s/%s for subscription %s (%s) is at its limit of %d",
                content_unit_id, kind, subscription_id, key, limit,
            )
        return count

    @staticmethod
    def remaining(
        db: Session,
        subscription_id: int,
        content_unit_id: str,
        kind: str,
        now: Optional[datetime] = None,
    ) -> int:
        subscription = UsageLedger._get_subscription(db, subscription_id)
        limit = UsageLedger.limit_for(subscription, kind)
        used = UsageLedger.used(db, subscription_id, content_unit_id, kind, now)
        return max(0, limit - used)

    @staticmethod
    def usage_status(
        db: Session,
        subscription: Subscription,
        content_unit_id: str,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Used / limit / remaining for both kinds of one content unit."""
        status: dict[str, Any] = {
            "subscription_id": subscription.id,
            "content_unit_id": content_unit_id,
        }
        for kind in USAGE_KINDS:
            limit = UsageLedger.limit_for(subscription, kind)
            used = UsageLedger.used(db, subscription.id, content_unit_id, kind, now)
            status[kind] = {
                "used": used,
                "limit": limit,
                "remaining": max(0, limit - used),
            }
        return status
