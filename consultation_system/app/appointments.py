# appointments.py
# Appointment state machine.
#
# Every status change goes through ``transition``, which applies the change
# with a single conditional UPDATE on (id, status, version). Whoever loses a
# race gets InvalidTransition when the status moved on underneath them, or
# ConflictError when only the version did.
import logging

from prometheus_client import Counter
from sqlalchemy import update, delete, or_, and_
from sqlalchemy.orm import Session

from . import notifications
from .dependencies import UserRole
from .errors import ValidationError, InvalidTransition, Expired, InvalidState, NotFound, PermissionDenied, ConflictError
from .models import (
    Appointment, AppointmentEvent, AppointmentStatus, ConsultationSession, SessionStatus, User, TRANSITIONS,
    TERMINAL_STATUSES, utcnow,
)
from .utils import (
    utc, combine_utc, parse_date_string, parse_time_string, parse_consultation_type, cache_appointment,
    evict_appointment,
)

APPOINTMENT_TRANSITIONS = Counter("appointment_transitions_total", "Appointment status transitions",
                                  ["from_status", "to_status"])

DELETABLE_STATUSES = {AppointmentStatus.PENDING, AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED}


def get_appointment(db: Session, appointment_id):
    appointment = db.query(Appointment).filter_by(id=appointment_id).first()
    if not appointment:
        raise NotFound(f"Appointment {appointment_id} not found")
    return appointment


def participant_role(appointment, actor):
    """Return 'patient' or 'doctor' for a participant, 'admin' for admins; otherwise refuse."""
    if actor.role == UserRole.ADMIN.value:
        return UserRole.ADMIN.value
    if actor.role == UserRole.DOCTOR.value and actor.id == appointment.doctor_id:
        return UserRole.DOCTOR.value
    if actor.role == UserRole.PATIENT.value and actor.id == appointment.patient_id:
        return UserRole.PATIENT.value
    raise PermissionDenied(f"User {actor.id} is not a participant of appointment {appointment.id}")


def _require(appointment, actor, role):
    actual = participant_role(appointment, actor)
    if actual != role.value and actual != UserRole.ADMIN.value:
        raise PermissionDenied(f"Only the appointment's {role.value} can do this")
    return actual


def transition(db: Session, appointment, target, actor, now=None, commit=True, **values):
    """Move appointment to target if the transition table allows it, atomically."""
    now = now or utcnow()
    current = AppointmentStatus(appointment.status)
    target = AppointmentStatus(target)
    if target not in TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move appointment {appointment.id} from {current.value} to {target.value}",
                                status=current.value)

    expected_version = appointment.version
    result = db.execute(
        update(Appointment)
        .where(Appointment.id == appointment.id,
               Appointment.status == current.value,
               Appointment.version == expected_version)
        .values(status=target.value, version=expected_version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(appointment)
        logging.warning(f"Lost race on appointment {appointment.id}: wanted {current.value}->{target.value}, "
                        f"found {appointment.status} v{appointment.version}")
        if appointment.status != current.value:
            raise InvalidTransition(
                f"Appointment {appointment.id} is now {appointment.status}", status=appointment.status,
            )
        raise ConflictError(f"Appointment {appointment.id} was modified concurrently", status=appointment.status)

    db.add(AppointmentEvent(appointment_id=appointment.id, from_status=current.value, to_status=target.value,
                            actor=actor, created_at=now))
    if commit:
        db.commit()
    else:
        db.flush()
    db.refresh(appointment)
    APPOINTMENT_TRANSITIONS.labels(from_status=current.value, to_status=target.value).inc()
    logging.info(f"Appointment {appointment.id}: {current.value} -> {target.value} by {actor}")
    return appointment


def create_appointment(db: Session, patient: User, doctor_id, date, time, consultation_type, reason=None,
                       now=None, redis_client=None):
    now = now or utcnow()
    if patient.role != UserRole.PATIENT.value:
        raise PermissionDenied("Only patients can book appointments")
    if not doctor_id:
        raise ValidationError("doctorId is required", field="doctorId")
    scheduled_date = parse_date_string(date)
    scheduled_time = parse_time_string(time)
    consultation_type = parse_consultation_type(consultation_type)
    scheduled_at = combine_utc(scheduled_date, scheduled_time)
    if scheduled_at < now:
        raise ValidationError("Appointment date/time is in the past", field="date")

    doctor = db.query(User).filter_by(id=doctor_id, role=UserRole.DOCTOR.value).first()
    if not doctor:
        raise NotFound(f"Doctor {doctor_id} not found")

    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        scheduled_at=scheduled_at,
        consultation_type=consultation_type.value,
        reason=reason,
        status=AppointmentStatus.PENDING.value,
        version=1,
        created_at=now,
        updated_at=now,
        reschedule_pending=False,
    )
    try:
        db.add(appointment)
        db.flush()
        db.add(AppointmentEvent(appointment_id=appointment.id, from_status=None,
                                to_status=AppointmentStatus.PENDING.value, actor=UserRole.PATIENT.value,
                                created_at=now))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(appointment)
    logging.info(f"Patient {patient.id} booked {consultation_type.value} appointment {appointment.id} "
                 f"with doctor {doctor.id} for {scheduled_at.isoformat()}")
    cache_appointment(redis_client, appointment)
    return appointment


def accept_appointment(db: Session, appointment_id, actor: User, now=None, redis_client=None):
    now = now or utcnow()
    appointment = get_appointment(db, appointment_id)
    _require(appointment, actor, UserRole.DOCTOR)
    if appointment.status != AppointmentStatus.PENDING.value:
        raise InvalidTransition(f"Appointment {appointment.id} is {appointment.status}, not pending",
                                status=appointment.status)
    if utc(appointment.scheduled_at) < now:
        raise Expired(f"Appointment {appointment.id} is past its scheduled time; delete it instead",
                      status=appointment.status)
    transition(db, appointment, AppointmentStatus.CONFIRMED, UserRole.DOCTOR.value, now=now)
    cache_appointment(redis_client, appointment)
    notifications.appointment_accepted(redis_client, appointment)
    return appointment


def reject_appointment(db: Session, appointment_id, actor: User, reason=None, now=None, redis_client=None):
    now = now or utcnow()
    appointment = get_appointment(db, appointment_id)
    _require(appointment, actor, UserRole.DOCTOR)
    if appointment.status != AppointmentStatus.PENDING.value:
        raise InvalidTransition(f"Appointment {appointment.id} is {appointment.status}, not pending",
                                status=appointment.status)
    transition(db, appointment, AppointmentStatus.CANCELLED, UserRole.DOCTOR.value, now=now,
               cancelled_by=UserRole.DOCTOR.value, cancellation_reason=reason or "Rejected by doctor")
    cache_appointment(redis_client, appointment)
    notifications.appointment_rejected(redis_client, appointment)
    return appointment


def propose_reschedule(db: Session, appointment_id, new_date, new_time, actor: User, reason=None, now=None,
                       redis_client=None):
    now = now or utcnow()
    appointment = get_appointment(db, appointment_id)
    _require(appointment, actor, UserRole.DOCTOR)
    if appointment.status != AppointmentStatus.CONFIRMED.value:
        raise InvalidTransition(f"Appointment {appointment.id} is {appointment.status}, not confirmed",
                                status=appointment.status)
    if appointment.session is not None:
        raise InvalidState(f"Appointment {appointment.id} already has a session")

    proposed_date = parse_date_string(new_date)
    proposed_time = parse_time_string(new_time)
    proposed_at = combine_utc(proposed_date, proposed_time)
    if proposed_at < now:
        raise ValidationError("Proposed date/time is in the past", field="date")

    transition(db, appointment, AppointmentStatus.RESCHEDULE_PROPOSED, UserRole.DOCTOR.value, now=now,
               reschedule_pending=True, reschedule_proposed_date=proposed_date,
               reschedule_proposed_time=proposed_time, reschedule_proposed_at=proposed_at,
               reschedule_reason=reason)
    cache_appointment(redis_client, appointment)
    notifications.reschedule_proposed(redis_client, appointment)
    return appointment


def respond_to_reschedule(db: Session, appointment_id, accept, actor: User, now=None, redis_client=None):
    now = now or utcnow()
    appointment = get_appointment(db, appointment_id)
    _require(appointment, actor, UserRole.PATIENT)
    if appointment.status != AppointmentStatus.RESCHEDULE_PROPOSED.value:
        raise InvalidTransition(f"Appointment {appointment.id} has no pending reschedule proposal",
                                status=appointment.status)

    cleared = dict(reschedule_pending=False, reschedule_proposed_date=None, reschedule_proposed_time=None,
                   reschedule_proposed_at=None)
    if accept:
        if utc(appointment.reschedule_proposed_at) < now:
            raise Expired(f"The proposed time for appointment {appointment.id} has passed",
                          status=appointment.status)
        transition(db, appointment, AppointmentStatus.CONFIRMED, UserRole.PATIENT.value, now=now,
                   scheduled_date=appointment.reschedule_proposed_date,
                   scheduled_time=appointment.reschedule_proposed_time,
                   scheduled_at=appointment.reschedule_proposed_at, **cleared)
        notifications.notify(redis_client, appointment.doctor_id, "reschedule_accepted", "Reschedule accepted",
                             f"The patient accepted {appointment.scheduled_date} at "
                             f"{appointment.scheduled_time.strftime('%H:%M')}.", related_id=appointment.id)
    else:
        transition(db, appointment, AppointmentStatus.CANCELLED, UserRole.PATIENT.value, now=now,
                   cancelled_by=UserRole.PATIENT.value, cancellation_reason="Reschedule declined", **cleared)
        notifications.appointment_cancelled(redis_client, appointment)
    cache_appointment(redis_client, appointment)
    return appointment


def active_session_for(db: Session, appointment_id):
    return (
        db.query(ConsultationSession)
        .filter_by(appointment_id=appointment_id, status=SessionStatus.ACTIVE.value)
        .first()
    )


def cancel_appointment(db: Session, appointment_id, reason, actor: User, now=None, redis_client=None):
    """Cancel from any non-terminal state.

    No credit is spent before a session starts. If a session is running and
    still inside the grace window it is closed unbilled and its credit goes
    back; past the grace window the session has to be ended instead.
    """
    from .sessions import end_session, elapsed_seconds, SESSION_GRACE_SECONDS

    now = now or utcnow()
    appointment = get_appointment(db, appointment_id)
    role = participant_role(appointment, actor)
    if AppointmentStatus(appointment.status) in TERMINAL_STATUSES:
        raise InvalidTransition(f"Appointment {appointment.id} is already {appointment.status}",
                                status=appointment.status)

    session = active_session_for(db, appointment.id)
    if session is not None:
        if elapsed_seconds(session, now) >= SESSION_GRACE_SECONDS:
            raise InvalidState(f"Session {session.id} is in progress; end the session instead")
        end_session(db, session.id, "manual", now=now, redis_client=redis_client,
                    cancelled_by=role, cancellation_reason=reason)
        db.refresh(appointment)
        return appointment

    transition(db, appointment, AppointmentStatus.CANCELLED, role, now=now,
               cancelled_by=role, cancellation_reason=reason)
    cache_appointment(redis_client, appointment)
    notifications.appointment_cancelled(redis_client, appointment)
    return appointment


def delete_appointment(db: Session, appointment_id, actor: User, redis_client=None):
    appointment = get_appointment(db, appointment_id)
    _require(appointment, actor, UserRole.DOCTOR)
    if AppointmentStatus(appointment.status) not in DELETABLE_STATUSES:
        raise InvalidState(f"Appointment {appointment.id} is {appointment.status} and cannot be deleted")

    try:
        # Only unbilled sessions closed inside the grace window can hang off these statuses.
        db.execute(delete(ConsultationSession)
                   .where(ConsultationSession.appointment_id == appointment.id,
                          ConsultationSession.status == SessionStatus.ENDED.value)
                   .execution_options(synchronize_session=False))
        result = db.execute(
            delete(Appointment)
            .where(Appointment.id == appointment.id,
                   Appointment.status.in_([s.value for s in DELETABLE_STATUSES]))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(appointment)
            raise InvalidState(f"Appointment {appointment.id} is {appointment.status} and cannot be deleted")
        db.commit()
    except InvalidState:
        raise
    except Exception:
        db.rollback()
        raise
    evict_appointment(redis_client, appointment_id)
    logging.info(f"Doctor {actor.id} deleted appointment {appointment_id}")
    return appointment_id


def expire_stale_pending(db: Session, now=None, redis_client=None):
    """Expire pending offers and reschedule proposals whose time has passed.

    Idempotent: already-expired appointments are not selected again, and a
    row that changed underneath us is skipped.
    """
    now = now or utcnow()
    candidates = (
        db.query(Appointment)
        .filter(or_(
            and_(Appointment.status == AppointmentStatus.PENDING.value, Appointment.scheduled_at < now),
            and_(Appointment.status == AppointmentStatus.RESCHEDULE_PROPOSED.value,
                 Appointment.reschedule_proposed_at < now),
        ))
        .order_by(Appointment.scheduled_at)
        .all()
    )
    expired = []
    for appointment in candidates:
        try:
            transition(db, appointment, AppointmentStatus.EXPIRED, "system", now=now, reschedule_pending=False)
        except (InvalidTransition, ConflictError) as e:
            logging.info(f"Skipped expiring appointment {appointment.id}: {e.detail}")
            continue
        expired.append(appointment.id)
        cache_appointment(redis_client, appointment)
        notifications.notify(redis_client, appointment.patient_id, "appointment_expired", "Appointment expired",
                             "Your appointment request expired before the doctor responded.",
                             related_id=appointment.id)
    if expired:
        logging.info(f"Expired {len(expired)} stale appointment(s): {expired}")
    return expired


def list_appointments(db: Session, user: User, status=None):
    query = db.query(Appointment)
    if user.role == UserRole.DOCTOR.value:
        query = query.filter(Appointment.doctor_id == user.id)
    elif user.role == UserRole.PATIENT.value:
        query = query.filter(Appointment.patient_id == user.id)
    if status is not None:
        query = query.filter(Appointment.status == AppointmentStatus(status).value)
    return query.order_by(Appointment.scheduled_at.desc(), Appointment.id.desc()).all()


def status_history(db: Session, appointment_id):
    events = (
        db.query(AppointmentEvent)
        .filter_by(appointment_id=appointment_id)
        .order_by(AppointmentEvent.id)
        .all()
    )
    return [event.to_status for event in events]
