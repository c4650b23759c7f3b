from datetime import timedelta

import pytest

from consultation_system.app import credits
from consultation_system.app.errors import InsufficientCredit, NotFound, ValidationError
from consultation_system.app.models import Plan, UserSubscription

from conftest import NOW, make_plan


def assert_within_totals(subscription):
    assert 0 <= subscription.text_sessions_remaining <= subscription.total_text_sessions
    assert 0 <= subscription.voice_calls_remaining <= subscription.total_voice_calls
    assert 0 <= subscription.video_calls_remaining <= subscription.total_video_calls


def test_purchase_sets_counters_from_plan(db, patient, plan, now):
    subscription = credits.purchase(db, patient.id, plan.id, now=now)
    assert subscription.text_sessions_remaining == subscription.total_text_sessions == 10
    assert subscription.voice_calls_remaining == 2
    assert subscription.video_calls_remaining == 1
    assert subscription.expires_at is not None
    assert credits.get_active_subscription(db, patient.id, now=now).id == subscription.id


def test_debit_until_exhausted(db, subscription):
    for expected in (1, 0):
        updated = credits.debit(db, subscription.id, "voice", now=NOW)
        assert updated.voice_calls_remaining == expected
        assert_within_totals(updated)
    with pytest.raises(InsufficientCredit) as excinfo:
        credits.debit(db, subscription.id, "voice", now=NOW)
    assert excinfo.value.extra["session_type"] == "voice"
    db.refresh(subscription)
    assert subscription.voice_calls_remaining == 0


def test_debit_accepts_audio_alias(db, subscription):
    assert credits.debit(db, subscription.id, "audio", now=NOW).voice_calls_remaining == 1


def test_concurrent_debits_cannot_overspend(session_factory, subscription):
    first, second = session_factory(), session_factory()
    # Both callers read one remaining video credit before either writes.
    assert credits.get_subscription(first, subscription.id).video_calls_remaining == 1
    assert credits.get_subscription(second, subscription.id).video_calls_remaining == 1

    credits.debit(first, subscription.id, "video", now=NOW)
    with pytest.raises(InsufficientCredit):
        credits.debit(second, subscription.id, "video", now=NOW)
    second.rollback()

    check = session_factory()
    assert credits.get_subscription(check, subscription.id).video_calls_remaining == 0
    for session in (first, second, check):
        session.close()


def test_credit_is_capped_at_total(db, subscription):
    assert credits.credit(db, subscription.id, "text") is False
    db.refresh(subscription)
    assert subscription.text_sessions_remaining == 10

    credits.debit(db, subscription.id, "text", now=NOW)
    assert credits.credit(db, subscription.id, "text") is True
    db.refresh(subscription)
    assert subscription.text_sessions_remaining == 10
    assert_within_totals(subscription)


def test_unknown_subscription(db):
    with pytest.raises(NotFound):
        credits.debit(db, 404, "text", now=NOW)
    with pytest.raises(NotFound):
        credits.credit(db, 404, "text")


def test_purchase_replaces_without_carry_over(db, patient, subscription, now):
    credits.debit(db, subscription.id, "text", now=NOW)
    premium = make_plan(db, name="Premium Life", text=60, voice=10, video=5, price=3999)
    renewed = credits.purchase(db, patient.id, premium.id, carry_over=False, now=now)
    assert renewed.text_sessions_remaining == renewed.total_text_sessions == 60
    db.refresh(subscription)
    assert subscription.is_active is False
    assert db.query(UserSubscription).filter_by(patient_id=patient.id, is_active=True).count() == 1


def test_purchase_with_carry_over_extends_totals(db, patient, subscription, now):
    credits.debit(db, subscription.id, "text", now=NOW)
    renewed = credits.purchase(db, patient.id, subscription.plan_id, carry_over=True, now=now)
    assert renewed.text_sessions_remaining == 19
    assert renewed.total_text_sessions == 19
    assert renewed.video_calls_remaining == 2
    assert_within_totals(renewed)


def test_purchase_inactive_plan(db, patient, plan, now):
    plan.is_active = False
    db.commit()
    with pytest.raises(ValidationError):
        credits.purchase(db, patient.id, plan.id, now=now)


def test_expired_subscription_is_not_usable(db, patient, subscription, now):
    later = now + timedelta(days=40)
    assert credits.get_active_subscription(db, patient.id, now=later) is None
    assert credits.expire_subscriptions(db, now=later) == 1
    assert credits.expire_subscriptions(db, now=later) == 0
    db.refresh(subscription)
    assert subscription.is_active is False


def test_lapsed_subscription_cannot_be_debited(db, subscription, now):
    with pytest.raises(InsufficientCredit) as excinfo:
        credits.debit(db, subscription.id, "text", now=now + timedelta(days=40))
    assert "no longer active" in excinfo.value.detail
    db.refresh(subscription)
    assert subscription.text_sessions_remaining == 10


def test_deactivated_subscription_cannot_be_debited(db, patient, subscription, plan, now):
    credits.purchase(db, patient.id, plan.id, now=now)
    with pytest.raises(InsufficientCredit):
        credits.debit(db, subscription.id, "text", now=now)
    db.refresh(subscription)
    assert subscription.is_active is False
    assert subscription.text_sessions_remaining == 10


def test_plan_activated_event(db, patient, plan):
    subscription = credits.handle_plan_activated(db, {"patientId": patient.id, "planId": plan.id})
    assert subscription.plan_id == plan.id
    with pytest.raises(ValidationError):
        credits.handle_plan_activated(db, {"planId": plan.id})


def test_seed_plans_is_idempotent(db):
    assert credits.seed_plans(db) == 6
    assert credits.seed_plans(db) == 0
    premium = db.query(Plan).filter_by(name="Premium Life", currency="MWK").one()
    assert (premium.text_sessions, premium.voice_calls, premium.video_calls) == (60, 10, 5)
    assert db.query(Plan).filter_by(currency="USD").count() == 3
