# sessions.py
# Session timer engine.
#
# Remaining time is always recomputed from the wall clock against
# ``started_at``; heartbeats only publish the result. A missed heartbeat is
# therefore corrected by the next one and a session can never run past its
# allotment.
import os
import logging
from datetime import timedelta

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import credits, wallet, notifications
from .appointments import get_appointment, participant_role, transition
from .errors import CreditExhausted, InsufficientCredit, InvalidState, InvalidTransition, NotFound, ValidationError
from .models import (
    ConsultationSession, SessionStatus, EndReason, AppointmentStatus, utcnow,
)
from .utils import utc, cache_session, cache_appointment

SESSION_GRACE_SECONDS = int(os.getenv('SESSION_GRACE_SECONDS', 60))
DEFAULT_SESSION_MINUTES = int(os.getenv('DEFAULT_SESSION_MINUTES', 30))
HEARTBEAT_INTERVAL_SECONDS = int(os.getenv('HEARTBEAT_INTERVAL_SECONDS', 60))

SESSIONS_STARTED = Counter("sessions_started_total", "Consultation sessions started", ["consultation_type"])
SESSIONS_ENDED = Counter("sessions_ended_total", "Consultation sessions ended", ["reason", "billable"])


def get_session(db: Session, session_id):
    session = db.query(ConsultationSession).filter_by(id=session_id).first()
    if not session:
        raise NotFound(f"Session {session_id} not found")
    return session


def elapsed_seconds(session, now):
    return max(0.0, (now - utc(session.started_at)).total_seconds())


def remaining_minutes(session, now):
    """Whole minutes left, floor-rounded, never above the last published value."""
    used = int(elapsed_seconds(session, now) // 60)
    return max(0, min(session.remaining_time_minutes, session.allotted_minutes - used))


def start_session(db: Session, appointment_id, actor=None, now=None, redis_client=None):
    """Open the session for a confirmed appointment, spending one credit.

    Opening an appointment that already has an active session returns that
    session, so both participants can call this without double-spending.
    """
    now = now or utcnow()
    appointment = get_appointment(db, appointment_id)
    if actor is not None:
        participant_role(appointment, actor)

    existing = db.query(ConsultationSession).filter_by(appointment_id=appointment.id).first()
    if existing is not None:
        if existing.status == SessionStatus.ACTIVE.value:
            return existing
        raise InvalidState(f"Appointment {appointment.id} already had session {existing.id}")

    if appointment.status != AppointmentStatus.CONFIRMED.value:
        raise InvalidTransition(f"Appointment {appointment.id} is {appointment.status}, not confirmed",
                                status=appointment.status)
    if utc(appointment.scheduled_at) > now:
        raise InvalidState(f"Appointment {appointment.id} is scheduled for {utc(appointment.scheduled_at).isoformat()}")

    subscription = credits.get_active_subscription(db, appointment.patient_id, now=now)
    if subscription is None:
        raise CreditExhausted(f"Patient {appointment.patient_id} has no active subscription",
                              session_type=appointment.consultation_type)
    try:
        credits.debit(db, subscription.id, appointment.consultation_type, commit=False, now=now)
    except InsufficientCredit as e:
        db.rollback()
        raise CreditExhausted(e.detail, session_type=appointment.consultation_type)

    allotted = subscription.plan.session_minutes or DEFAULT_SESSION_MINUTES
    session = ConsultationSession(
        appointment_id=appointment.id,
        subscription_id=subscription.id,
        consultation_type=appointment.consultation_type,
        started_at=now,
        last_activity_at=now,
        allotted_minutes=allotted,
        remaining_time_minutes=allotted,
        status=SessionStatus.ACTIVE.value,
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError:
        # The other participant opened it first; their debit stands, ours is rolled back.
        db.rollback()
        existing = db.query(ConsultationSession).filter_by(appointment_id=appointment.id).first()
        if existing is not None and existing.status == SessionStatus.ACTIVE.value:
            return existing
        raise InvalidState(f"Appointment {appointment.id} session could not be opened")
    db.refresh(session)
    SESSIONS_STARTED.labels(consultation_type=session.consultation_type).inc()
    logging.info(f"Session {session.id} started for appointment {appointment.id} ({allotted} min allotted)")
    cache_session(redis_client, session)
    return session


def heartbeat(db: Session, session_id, actor=None, now=None, redis_client=None):
    now = now or utcnow()
    session = get_session(db, session_id)
    if actor is not None:
        participant_role(session.appointment, actor)
    if session.status == SessionStatus.ENDED.value:
        return session

    remaining = remaining_minutes(session, now)
    if remaining == 0:
        return end_session(db, session.id, EndReason.TIMEOUT, now=now, redis_client=redis_client)

    result = db.execute(
        update(ConsultationSession)
        .where(ConsultationSession.id == session.id,
               ConsultationSession.status == SessionStatus.ACTIVE.value,
               ConsultationSession.remaining_time_minutes >= remaining)
        .values(remaining_time_minutes=remaining, last_activity_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(session)
    if result.rowcount != 1:
        logging.info(f"Heartbeat for session {session.id} superseded ({session.status}, "
                     f"{session.remaining_time_minutes} min)")
    cache_session(redis_client, session)
    return session


def end_session(db: Session, session_id, reason, actor=None, now=None, redis_client=None,
                cancelled_by=None, cancellation_reason=None):
    """Close a session once. Later calls return the ended record unchanged.

    Sessions closed inside the grace window are not billed: the credit goes
    back to the patient and the appointment is cancelled. Otherwise the
    appointment completes and the doctor's wallet is credited.
    """
    now = now or utcnow()
    reason = EndReason(reason)
    session = get_session(db, session_id)
    appointment = session.appointment
    if actor is not None:
        cancelled_by = cancelled_by or participant_role(appointment, actor)
    if session.status == SessionStatus.ENDED.value:
        return session
    if reason == EndReason.TIMEOUT and remaining_minutes(session, now) > 0:
        raise ValidationError(f"Session {session.id} still has {remaining_minutes(session, now)} min remaining",
                              field="reason")

    elapsed = elapsed_seconds(session, now)
    used = min(session.allotted_minutes, int(elapsed // 60))
    ended_at = min(now, utc(session.started_at) + timedelta(minutes=session.allotted_minutes))
    billable = elapsed >= SESSION_GRACE_SECONDS
    remaining = 0 if reason == EndReason.TIMEOUT else max(0, session.allotted_minutes - used)

    claimed = db.execute(
        update(ConsultationSession)
        .where(ConsultationSession.id == session.id, ConsultationSession.status == SessionStatus.ACTIVE.value)
        .values(status=SessionStatus.ENDED.value, ended_at=ended_at, duration_minutes=used,
                end_reason=reason.value, billable=billable, remaining_time_minutes=remaining,
                last_activity_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        db.refresh(session)
        return session

    try:
        if billable:
            transition(db, appointment, AppointmentStatus.COMPLETED, "system", now=now, commit=False)
            doctor_wallet = wallet.get_or_create_wallet(db, appointment.doctor_id)
            amount = wallet.rate_for(session.consultation_type, doctor_wallet.currency)
            wallet.credit_for_session(
                db, appointment.doctor_id, session.id, amount, commit=False,
                description=f"Payment for {session.consultation_type} session {session.id}",
            )
        else:
            credits.credit(db, session.subscription_id, session.consultation_type, commit=False)
            transition(db, appointment, AppointmentStatus.CANCELLED, cancelled_by or "system", now=now,
                       commit=False, cancelled_by=cancelled_by or "system",
                       cancellation_reason=cancellation_reason or "Session ended within the grace window")
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(session)
    SESSIONS_ENDED.labels(reason=reason.value, billable=str(billable).lower()).inc()
    logging.info(f"Session {session.id} ended ({reason.value}) after {used} min, billable={billable}")
    cache_session(redis_client, session)
    cache_appointment(redis_client, appointment)
    notifications.session_ended(redis_client, session, appointment)
    if not billable:
        notifications.appointment_cancelled(redis_client, appointment)
    return session


def active_sessions(db: Session):
    return db.query(ConsultationSession).filter_by(status=SessionStatus.ACTIVE.value).all()


def heartbeat_active_sessions(db: Session, now=None, redis_client=None):
    """Run the authoritative timer over every active session."""
    now = now or utcnow()
    results = []
    for session in active_sessions(db):
        session = heartbeat(db, session.id, now=now, redis_client=redis_client)
        results.append((session.id, session.remaining_time_minutes, session.status))
    return results
