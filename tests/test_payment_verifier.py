from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from app.models import Payment, Subscription, UsageTracking
from app.services import audit_sink, ledger_store, order_intent_service, payment_verifier
from app.services.errors import AlreadyFailed, PaymentNotFound, SignatureMismatch


def _order(db_session, gateway, plan_tier="basic", track_id=None, purpose="track_access", user_id="user-1"):
    return order_intent_service.create_order(
        db_session, gateway, user_id=user_id, plan_tier=plan_tier,
        purpose=purpose, track_id=track_id,
    )


def _verify(db_session, gateway, intent, payment_id="pay_1", signature=None, user_id="user-1", **kwargs):
    if signature is None:
        signature = gateway.sign(intent.gateway_order_id, payment_id)
    return payment_verifier.verify_payment(
        db_session, gateway, user_id=user_id,
        gateway_order_id=intent.gateway_order_id,
        gateway_payment_id=payment_id,
        signature=signature,
        **kwargs,
    )


def test_valid_callback_completes_payment_and_creates_subscription(db_session: Session, gateway):
    intent = _order(db_session, gateway, plan_tier="premium", track_id="track-1")

    payment = _verify(db_session, gateway, intent, payment_record_id=intent.payment_record_id)

    assert payment.status == "completed"
    assert payment.gateway_payment_id == "pay_1"
    assert payment.completed_at is not None
    assert payment.subscription_id is not None

    subscription = ledger_store.get_subscription(db_session, payment.subscription_id)
    assert subscription.track_id == "track-1"
    assert subscription.plan_tier == "premium"
    assert subscription.daily_chat_limit == 5
    assert subscription.payment_id == payment.id
    assert ledger_store.get_usage_tracking(db_session, subscription.id) is not None


def test_replay_returns_completed_payment_without_second_effect(db_session: Session, gateway):
    intent = _order(db_session, gateway, track_id="track-1")
    events = []
    subscriber = lambda event_type, payload: events.append(event_type)
    audit_sink.subscribe(subscriber)
    try:
        first = _verify(db_session, gateway, intent)
        second = _verify(db_session, gateway, intent)
    finally:
        audit_sink.unsubscribe(subscriber)

    assert first.id == second.id
    assert second.status == "completed"
    assert db_session.query(Subscription).count() == 1
    assert events.count("payment.completed") == 1
    assert events.count("subscription.created") == 1


def test_signature_mismatch_marks_payment_failed(db_session: Session, gateway):
    intent = _order(db_session, gateway, track_id="track-1")

    with pytest.raises(SignatureMismatch) as exc_info:
        _verify(db_session, gateway, intent, signature="forged")
    assert exc_info.value.retryable is False

    payment = ledger_store.get_payment(db_session, intent.payment_record_id)
    assert payment.status == "failed"
    assert db_session.query(Subscription).count() == 0

    # A later, correctly signed callback cannot revive it
    with pytest.raises(AlreadyFailed):
        _verify(db_session, gateway, intent)
    assert db_session.query(Subscription).count() == 0


def test_non_ascii_signature_is_rejected(db_session: Session, gateway):
    intent = _order(db_session, gateway, track_id="track-1")

    with pytest.raises(SignatureMismatch):
        _verify(db_session, gateway, intent, signature="\u00e9" * 64)

    assert ledger_store.get_payment(db_session, intent.payment_record_id).status == "failed"
    assert db_session.query(Subscription).count() == 0


def test_unknown_order_is_not_found(db_session: Session, gateway):
    with pytest.raises(PaymentNotFound):
        payment_verifier.verify_payment(
            db_session, gateway, user_id="user-1",
            gateway_order_id="order_missing", gateway_payment_id="pay_1",
            signature=gateway.sign("order_missing", "pay_1"),
        )


def test_order_of_another_user_is_not_found(db_session: Session, gateway):
    intent = _order(db_session, gateway, user_id="user-2")

    with pytest.raises(PaymentNotFound):
        _verify(db_session, gateway, intent, user_id="user-1")

    assert ledger_store.get_payment(db_session, intent.payment_record_id).status == "pending"


def test_record_id_must_match_order(db_session: Session, gateway):
    intent = _order(db_session, gateway)

    with pytest.raises(PaymentNotFound):
        _verify(db_session, gateway, intent, payment_record_id=intent.payment_record_id + 100)


def test_replay_resumes_missing_subscription(db_session: Session, gateway, make_payment):
    """The process died after completing the payment but before the subscription write."""
    payment = make_payment(amount=99, track_id="track-1")
    intent = order_intent_service.OrderIntent.from_payment(payment)

    result = _verify(db_session, gateway, intent, payment_id=payment.gateway_payment_id)

    assert result.subscription_id is not None
    subscription = ledger_store.get_subscription(db_session, result.subscription_id)
    assert subscription.track_id == "track-1"
    assert db_session.query(Subscription).count() == 1


def test_concurrent_winner_applies_the_only_effect(db_session: Session, gateway, monkeypatch):
    intent = _order(db_session, gateway, track_id="track-1")
    real_complete = ledger_store.mark_payment_completed

    def lose_race(db, payment_id, gateway_payment_id, signature, completed_at):
        # The other callback completes the payment first
        real_complete(db, payment_id, gateway_payment_id, signature, completed_at)
        return False

    monkeypatch.setattr(ledger_store, "mark_payment_completed", lose_race)

    payment = _verify(db_session, gateway, intent)

    assert payment.status == "completed"
    # The winner owns the subscription effect
    assert db_session.query(Subscription).count() == 0


def test_amount_overrides_stale_tier_label(db_session: Session, gateway):
    intent = _order(db_session, gateway, plan_tier="premium", track_id="track-1")
    payment = ledger_store.get_payment(db_session, intent.payment_record_id)
    payment.plan_tier = "basic"
    payment.plan_amount = 99
    db_session.commit()

    payment = _verify(db_session, gateway, intent)

    assert payment.plan_tier == "premium"
    assert payment.plan_amount == 199
    assert payment.metadata_json["tier_corrected_from"]["plan_tier"] == "basic"
    subscription = ledger_store.get_subscription(db_session, payment.subscription_id)
    assert subscription.plan_tier == "premium"
    assert subscription.monthly_generation_limit == 5


def test_content_save_payment_records_a_save(db_session: Session, gateway):
    access = _order(db_session, gateway, track_id="track-1")
    _verify(db_session, gateway, access, payment_id="pay_access")

    save = _order(db_session, gateway, track_id="track-1", purpose="track_content_save")
    payment = _verify(db_session, gateway, save, payment_id="pay_save")

    assert payment.status == "completed"
    subscription = ledger_store.get_subscription(db_session, payment.subscription_id)
    assert subscription.tracks_saved == 1
    usage = db_session.query(UsageTracking).filter(
        UsageTracking.subscription_id == subscription.id
    ).one()
    assert usage.tracks_saved == 1
    assert db_session.query(Subscription).count() == 1


def test_failing_audit_subscriber_does_not_roll_back(db_session: Session, gateway):
    intent = _order(db_session, gateway, track_id="track-1")
    subscriber = MagicMock(side_effect=RuntimeError("notification service down"))
    audit_sink.subscribe(subscriber)
    try:
        payment = _verify(db_session, gateway, intent)
    finally:
        audit_sink.unsubscribe(subscriber)

    assert subscriber.called
    assert payment.status == "completed"
    assert db_session.query(Payment).filter(Payment.status == "completed").count() == 1
    assert db_session.query(Subscription).count() == 1
