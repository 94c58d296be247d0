from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models import Subscription
from app.services import access_calculator, ledger_store, subscription_resolver
from app.services.errors import CrossTrackConflict
from app.services.plans import add_months


def _snapshot(subscription: Subscription) -> tuple:
    return (
        subscription.track_id,
        subscription.plan_tier,
        subscription.start_date,
        subscription.expiry_date,
        subscription.payment_id,
        subscription.is_active,
        subscription.tracks_saved,
    )


def test_first_payment_creates_track_subscription(db_session: Session, make_payment, now):
    payment = make_payment(amount=99, track_id="track-1")

    subscription = subscription_resolver.resolve(db_session, payment, now)

    assert subscription.user_id == "user-1"
    assert subscription.track_id == "track-1"
    assert subscription.plan_tier == "basic"
    assert subscription.daily_chat_limit == 3
    assert subscription.monthly_generation_limit == 3
    assert subscription.is_active is True
    assert subscription.start_date == now
    assert subscription.expiry_date == add_months(now, 1)
    assert subscription.tracks_saved == 0
    assert subscription.max_tracks_per_payment == 1
    assert ledger_store.get_usage_tracking(db_session, subscription.id) is not None
    assert access_calculator.unlocked_module_count(subscription, now) == 1

    db_session.refresh(payment)
    assert payment.subscription_id == subscription.id


def test_renewal_updates_in_place_and_unlocks_second_module(db_session: Session, make_payment, now):
    first = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    first_id, started = first.id, first.start_date

    renewed = subscription_resolver.resolve(
        db_session, make_payment(amount=199, track_id="track-1"), now + timedelta(days=25)
    )

    later = now + timedelta(days=31)
    assert renewed.id == first_id
    assert renewed.start_date == started
    assert renewed.plan_tier == "premium"
    assert renewed.daily_chat_limit == 5
    assert renewed.expiry_date > later + timedelta(days=27)
    assert access_calculator.unlocked_module_count(renewed, later) == 2
    assert db_session.query(Subscription).count() == 1


def test_early_renewal_extends_from_current_expiry(db_session: Session, make_payment, now):
    first = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    expiry = first.expiry_date

    renewed = subscription_resolver.resolve(
        db_session, make_payment(track_id="track-1"), now + timedelta(days=10)
    )

    assert renewed.expiry_date == add_months(expiry, 1)


def test_renewal_resets_tracks_saved(db_session: Session, make_payment, now):
    first = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    ledger_store.increment_tracks_saved(db_session, first.id)

    renewed = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)

    assert renewed.tracks_saved == 0


def test_lapsed_subscription_is_reactivated(db_session: Session, make_payment, now):
    first = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    ledger_store.deactivate_subscription(db_session, first.id)

    later = now + timedelta(days=70)
    renewed = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), later)

    assert renewed.id == first.id
    assert renewed.is_active is True
    assert renewed.expiry_date == add_months(later, 1)
    assert renewed.start_date == later
    assert access_calculator.unlocked_module_count(renewed, later) == 1


def test_renewal_after_long_lapse_unlocks_only_first_module(db_session: Session, make_payment, now):
    first = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    first_id = first.id

    # Never deactivated: expiry is only enforced lazily on read
    later = now + timedelta(days=365)
    renewed = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), later)

    assert renewed.id == first_id
    assert renewed.start_date == later
    assert renewed.expiry_date == add_months(later, 1)
    assert access_calculator.unlocked_module_count(renewed, later) == 1
    assert access_calculator.unlocked_module_count(renewed, later + timedelta(days=20)) == 1


def test_temporary_link_then_new_track_creates_new_subscription(db_session: Session, make_payment, now):
    initial = make_payment(track_id=None)
    temporary = subscription_resolver.resolve(db_session, initial, now)
    assert temporary.track_id is None
    temporary_id = temporary.id

    linked = subscription_resolver.link_temporary_subscription(db_session, "user-1", "track-2", now)
    assert linked.id == temporary_id
    assert linked.track_id == "track-2"
    db_session.refresh(initial)
    assert initial.track_id == "track-2"
    before = _snapshot(ledger_store.get_subscription(db_session, temporary_id))

    third = subscription_resolver.resolve(db_session, make_payment(track_id="track-3"), now)

    assert third.id != temporary_id
    assert third.track_id == "track-3"
    assert _snapshot(ledger_store.get_subscription(db_session, temporary_id)) == before


def test_payment_for_other_track_never_touches_existing(db_session: Session, make_payment, now):
    track_one = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    before = _snapshot(track_one)
    track_one_id = track_one.id

    track_two = subscription_resolver.resolve(
        db_session, make_payment(amount=199, track_id="track-2"), now + timedelta(days=3)
    )

    assert track_two.id != track_one_id
    assert track_two.track_id == "track-2"
    assert _snapshot(ledger_store.get_subscription(db_session, track_one_id)) == before


def test_track_payment_links_temporary_subscription(db_session: Session, make_payment, now):
    temporary = subscription_resolver.resolve(db_session, make_payment(track_id=None), now)
    temporary_id = temporary.id

    payment = make_payment(amount=199, track_id="track-1")
    subscription = subscription_resolver.resolve(db_session, payment, now)

    assert subscription.id == temporary_id
    assert subscription.track_id == "track-1"
    assert subscription.payment_id == payment.id
    assert subscription.plan_tier == "premium"


def test_expired_temporary_is_not_linked_to_new_track(db_session: Session, make_payment, now):
    temporary = subscription_resolver.resolve(db_session, make_payment(track_id=None), now)
    temporary_id = temporary.id
    before = _snapshot(temporary)

    later = now + timedelta(days=200)
    subscription = subscription_resolver.resolve(db_session, make_payment(track_id="track-new"), later)

    assert subscription.id != temporary_id
    assert subscription.track_id == "track-new"
    assert subscription.start_date == later
    assert access_calculator.unlocked_module_count(subscription, later) == 1
    assert _snapshot(ledger_store.get_subscription(db_session, temporary_id)) == before


def test_expired_temporary_is_not_renewed_by_trackless_payment(db_session: Session, make_payment, now):
    temporary = subscription_resolver.resolve(db_session, make_payment(track_id=None), now)
    temporary_id = temporary.id

    later = now + timedelta(days=200)
    fresh = subscription_resolver.resolve(db_session, make_payment(track_id=None), later)

    assert fresh.id != temporary_id
    assert fresh.track_id is None
    assert access_calculator.unlocked_module_count(fresh, later) == 1


def test_track_payment_without_fallback_keeps_temporary(db_session: Session, make_payment, now, monkeypatch):
    monkeypatch.setattr(get_settings(), "SUBSCRIPTION_LATEST_FALLBACK", False)
    temporary = subscription_resolver.resolve(db_session, make_payment(track_id=None), now)
    temporary_id = temporary.id

    subscription = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)

    assert subscription.id != temporary_id
    assert ledger_store.get_subscription(db_session, temporary_id).track_id is None


def test_trackless_payment_never_adopts_track_subscription(db_session: Session, make_payment, now):
    track_one = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    before = _snapshot(track_one)
    track_one_id = track_one.id

    temporary = subscription_resolver.resolve(db_session, make_payment(track_id=None), now)

    assert temporary.id != track_one_id
    assert temporary.track_id is None
    assert _snapshot(ledger_store.get_subscription(db_session, track_one_id)) == before


def test_resolve_is_idempotent_per_payment(db_session: Session, make_payment, now):
    payment = make_payment(track_id="track-1")
    first = subscription_resolver.resolve(db_session, payment, now)
    expiry = first.expiry_date

    again = subscription_resolver.resolve(db_session, payment, now + timedelta(days=5))

    assert again.id == first.id
    assert again.expiry_date == expiry
    assert db_session.query(Subscription).count() == 1


def test_resolve_requires_completed_payment(db_session: Session, make_payment, now):
    with pytest.raises(ValueError):
        subscription_resolver.resolve(db_session, make_payment(status="pending", track_id="track-1"), now)


def test_resolve_corrects_stale_payment_tier(db_session: Session, make_payment, now):
    payment = make_payment(amount=199, track_id="track-1", plan_tier="basic")

    subscription = subscription_resolver.resolve(db_session, payment, now)

    db_session.refresh(payment)
    assert payment.plan_tier == "premium"
    assert payment.plan_amount == 199
    assert subscription.plan_tier == "premium"


def test_insert_race_renews_the_winner(db_session: Session, make_payment, now, monkeypatch):
    rival_payment = make_payment(track_id="track-1")
    payment = make_payment(amount=199, track_id="track-1")
    real_insert = ledger_store.insert_subscription
    state = {}

    def racing_insert(db, subscription):
        if "winner" not in state:
            # A concurrent resolve for the same track commits first
            rival = Subscription(
                user_id="user-1", track_id="track-1", plan_tier="basic", plan_amount=99,
                start_date=now, expiry_date=add_months(now, 1), is_active=True,
                payment_id=rival_payment.id, daily_chat_limit=3, monthly_generation_limit=3,
            )
            state["winner"] = real_insert(db, rival).id
        return real_insert(db, subscription)

    monkeypatch.setattr(ledger_store, "insert_subscription", racing_insert)
    monkeypatch.setattr(subscription_resolver, "find_subscription_for_payment", lambda db, p, at: None)

    subscription = subscription_resolver.resolve(db_session, payment, now)

    assert subscription.id == state["winner"]
    assert subscription.payment_id == payment.id
    assert subscription.plan_tier == "premium"
    assert db_session.query(Subscription).count() == 1


def test_cross_track_update_is_refused(db_session: Session, make_payment, now, monkeypatch):
    track_one = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    before = _snapshot(track_one)
    track_one_id = track_one.id

    # A broken decision must still not corrupt the other track
    monkeypatch.setattr(subscription_resolver, "decide_action", lambda sub, p: "renew")
    monkeypatch.setattr(get_settings(), "SUBSCRIPTION_LATEST_FALLBACK", True)

    with pytest.raises(CrossTrackConflict):
        subscription_resolver.resolve(db_session, make_payment(track_id="track-2"), now)

    db_session.rollback()
    assert _snapshot(ledger_store.get_subscription(db_session, track_one_id)) == before


def test_decide_action_table(db_session: Session, make_payment):
    scoped = Subscription(track_id="track-1")
    temporary = Subscription(track_id=None)

    assert subscription_resolver.decide_action(None, make_payment(track_id="track-1")) == "create"
    assert subscription_resolver.decide_action(scoped, make_payment(track_id="track-1")) == "renew"
    assert subscription_resolver.decide_action(temporary, make_payment(track_id=None)) == "renew"
    assert subscription_resolver.decide_action(temporary, make_payment(track_id="track-1")) == "link"
    assert subscription_resolver.decide_action(scoped, make_payment(track_id="track-2")) == "create"
    assert subscription_resolver.decide_action(scoped, make_payment(track_id=None)) == "create"


def test_link_keeps_existing_track_subscription(db_session: Session, make_payment, now, monkeypatch):
    monkeypatch.setattr(get_settings(), "SUBSCRIPTION_LATEST_FALLBACK", False)
    temporary = subscription_resolver.resolve(db_session, make_payment(track_id=None), now)
    temporary_id = temporary.id
    scoped = subscription_resolver.resolve(db_session, make_payment(track_id="track-1"), now)
    scoped_id = scoped.id

    result = subscription_resolver.link_temporary_subscription(db_session, "user-1", "track-1", now)

    assert result.id == scoped_id
    assert ledger_store.get_subscription(db_session, temporary_id).track_id is None


def test_link_without_temporary_returns_none(db_session: Session, now):
    assert subscription_resolver.link_temporary_subscription(db_session, "user-1", "track-1", now) is None


def test_link_ignores_expired_temporary(db_session: Session, make_payment, now):
    temporary = subscription_resolver.resolve(db_session, make_payment(track_id=None), now)
    temporary_id = temporary.id

    result = subscription_resolver.link_temporary_subscription(
        db_session, "user-1", "track-1", now + timedelta(days=40)
    )

    assert result is None
    expired = ledger_store.get_subscription(db_session, temporary_id)
    assert expired.is_active is False
    assert expired.track_id is None
