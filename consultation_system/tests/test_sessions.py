from datetime import timedelta
from decimal import Decimal

import pytest

from consultation_system.app import appointments, credits, sessions, wallet
from consultation_system.app.errors import (
    CreditExhausted, InsufficientCredit, InvalidState, InvalidTransition, ValidationError,
)
from consultation_system.app.models import ConsultationSession, WalletTransaction

from conftest import NOW, book, book_confirmed, make_plan

START = NOW + timedelta(hours=1)


def test_start_session_spends_one_credit(db, confirmed_appointment, subscription, redis_client):
    session = sessions.start_session(db, confirmed_appointment.id, now=START, redis_client=redis_client)
    assert session.status == "active"
    assert session.allotted_minutes == 30
    assert session.remaining_time_minutes == 30
    db.refresh(subscription)
    assert subscription.video_calls_remaining == 0
    assert redis_client.get(f"session:{session.id}") is not None


def test_start_session_twice_returns_the_same_session(db, confirmed_appointment, subscription, patient, doctor):
    first = sessions.start_session(db, confirmed_appointment.id, actor=patient, now=START)
    second = sessions.start_session(db, confirmed_appointment.id, actor=doctor, now=START + timedelta(seconds=5))
    assert first.id == second.id
    db.refresh(subscription)
    assert subscription.video_calls_remaining == 0


def test_start_session_before_scheduled_time(db, confirmed_appointment, subscription):
    with pytest.raises(InvalidState):
        sessions.start_session(db, confirmed_appointment.id, now=START - timedelta(minutes=10))
    db.refresh(subscription)
    assert subscription.video_calls_remaining == 1


def test_start_session_requires_confirmed(db, patient, doctor, subscription, now):
    pending = book(db, patient, doctor, now)
    with pytest.raises(InvalidTransition):
        sessions.start_session(db, pending.id, now=START)


def test_second_text_session_exhausts_credit(db, patient, doctor, now):
    plan = make_plan(db, name="Single Text", text=1, voice=0, video=0)
    subscription = credits.purchase(db, patient.id, plan.id, now=now - timedelta(days=1))
    first = book_confirmed(db, patient, doctor, now, consultation_type="text")
    second = book_confirmed(db, patient, doctor, now, at=START + timedelta(minutes=5), consultation_type="text")

    sessions.start_session(db, first.id, now=START)
    db.refresh(subscription)
    assert subscription.text_sessions_remaining == 0

    with pytest.raises(InsufficientCredit) as excinfo:
        sessions.start_session(db, second.id, now=START + timedelta(minutes=5))
    assert isinstance(excinfo.value, CreditExhausted)
    assert db.query(ConsultationSession).filter_by(appointment_id=second.id).count() == 0
    db.refresh(subscription)
    assert subscription.text_sessions_remaining == 0


def test_start_session_without_subscription(db, patient, doctor, now):
    appointment = book_confirmed(db, patient, doctor, now)
    with pytest.raises(CreditExhausted):
        sessions.start_session(db, appointment.id, now=START)


def test_heartbeat_recomputes_from_wall_clock(db, confirmed_appointment, subscription):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    session = sessions.heartbeat(db, session.id, now=START + timedelta(minutes=5, seconds=30))
    assert session.remaining_time_minutes == 25
    # Client was offline for a while: the next heartbeat catches up.
    session = sessions.heartbeat(db, session.id, now=START + timedelta(minutes=20))
    assert session.remaining_time_minutes == 10
    assert session.status == "active"


def test_stale_heartbeat_never_adds_time(db, confirmed_appointment, subscription):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    sessions.heartbeat(db, session.id, now=START + timedelta(minutes=10))
    session = sessions.heartbeat(db, session.id, now=START + timedelta(minutes=2))
    assert session.remaining_time_minutes == 20


def test_manual_end_after_grace_bills_the_doctor(db, confirmed_appointment, subscription, doctor, redis_client):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    ended = sessions.end_session(db, session.id, "manual", now=START + timedelta(minutes=12, seconds=40),
                                 redis_client=redis_client)
    assert ended.status == "ended"
    assert ended.end_reason == "manual"
    assert ended.duration_minutes == 12
    assert ended.billable is True

    db.refresh(confirmed_appointment)
    assert confirmed_appointment.status == "completed"
    doctor_wallet = wallet.get_wallet(db, doctor.id)
    assert doctor_wallet.currency == "MWK"
    assert Decimal(str(doctor_wallet.balance)) == Decimal("6000.00")
    db.refresh(subscription)
    assert subscription.video_calls_remaining == 0
    for user_id in (confirmed_appointment.patient_id, doctor.id):
        assert "session_ended" in redis_client.lindex(f"activity:{user_id}", 0)


def test_end_session_is_idempotent(db, confirmed_appointment, subscription, doctor):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    first = sessions.end_session(db, session.id, "manual", now=START + timedelta(minutes=8))
    duration = first.duration_minutes
    second = sessions.end_session(db, session.id, "manual", now=START + timedelta(minutes=15))
    assert second.duration_minutes == duration == 8
    assert db.query(WalletTransaction).count() == 1
    assert wallet.verify_wallet(db, doctor.id)["consistent"]
    assert Decimal(str(wallet.get_wallet(db, doctor.id).balance)) == Decimal("6000.00")


def test_end_within_grace_restores_credit_and_cancels(db, confirmed_appointment, subscription, doctor):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    ended = sessions.end_session(db, session.id, "manual", now=START + timedelta(seconds=20))
    assert ended.billable is False
    assert ended.duration_minutes == 0
    db.refresh(subscription)
    assert subscription.video_calls_remaining == subscription.total_video_calls == 1
    db.refresh(confirmed_appointment)
    assert confirmed_appointment.status == "cancelled"
    assert db.query(WalletTransaction).count() == 0


def test_heartbeat_at_zero_ends_with_timeout(db, patient, doctor, now):
    plan = make_plan(db, name="One Minute", text=2, voice=0, video=0, session_minutes=1)
    credits.purchase(db, patient.id, plan.id, now=now - timedelta(days=1))
    appointment = book_confirmed(db, patient, doctor, now, consultation_type="text")
    session = sessions.start_session(db, appointment.id, now=START)
    assert session.remaining_time_minutes == 1

    ended = sessions.heartbeat(db, session.id, now=START + timedelta(seconds=61))
    assert ended.status == "ended"
    assert ended.end_reason == "timeout"
    assert ended.remaining_time_minutes == 0
    assert ended.duration_minutes == 1
    assert Decimal(str(wallet.get_wallet(db, doctor.id).balance)) == Decimal("4000.00")


def test_timeout_duration_is_capped_at_allotment(db, confirmed_appointment, subscription):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    ended = sessions.heartbeat(db, session.id, now=START + timedelta(minutes=47))
    assert ended.end_reason == "timeout"
    assert ended.duration_minutes == 30


def test_timeout_cannot_be_claimed_early(db, confirmed_appointment, subscription):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    with pytest.raises(ValidationError) as excinfo:
        sessions.end_session(db, session.id, "timeout", now=START + timedelta(minutes=5))
    assert excinfo.value.field == "reason"
    db.refresh(session)
    assert session.status == "active"
    assert session.remaining_time_minutes == 30

    ended = sessions.end_session(db, session.id, "timeout", now=START + timedelta(minutes=30))
    assert ended.end_reason == "timeout"
    assert ended.duration_minutes == 30


def test_cancel_with_session_inside_grace(db, confirmed_appointment, subscription, patient):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    cancelled = appointments.cancel_appointment(db, confirmed_appointment.id, "Wrong patient file", patient,
                                                now=START + timedelta(seconds=30))
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_by == "patient"
    db.refresh(session)
    assert session.status == "ended"
    db.refresh(subscription)
    assert subscription.video_calls_remaining == 1


def test_cancel_with_session_past_grace_is_refused(db, confirmed_appointment, subscription, patient):
    sessions.start_session(db, confirmed_appointment.id, now=START)
    with pytest.raises(InvalidState):
        appointments.cancel_appointment(db, confirmed_appointment.id, "Too late", patient,
                                        now=START + timedelta(minutes=3))


def test_concurrent_session_starts_spend_one_credit(session_factory, patient, doctor, now):
    setup = session_factory()
    plan = make_plan(setup, name="Single Video", text=0, voice=0, video=1)
    subscription_id = credits.purchase(setup, patient.id, plan.id, now=now - timedelta(days=1)).id
    appointment_id = book_confirmed(setup, patient, doctor, now).id
    setup.close()

    patient_side, doctor_side = session_factory(), session_factory()
    first = sessions.start_session(patient_side, appointment_id, now=START)
    second = sessions.start_session(doctor_side, appointment_id, now=START + timedelta(seconds=2))
    assert first.id == second.id

    check = session_factory()
    assert credits.get_subscription(check, subscription_id).video_calls_remaining == 0
    assert check.query(ConsultationSession).count() == 1
    for session in (patient_side, doctor_side, check):
        session.close()


def test_heartbeat_active_sessions(db, confirmed_appointment, subscription):
    session = sessions.start_session(db, confirmed_appointment.id, now=START)
    assert sessions.heartbeat_active_sessions(db, now=START + timedelta(minutes=4)) == [(session.id, 26, "active")]
    assert sessions.heartbeat_active_sessions(db, now=START + timedelta(minutes=31)) == [(session.id, 0, "ended")]
    assert sessions.heartbeat_active_sessions(db, now=START + timedelta(minutes=32)) == []
