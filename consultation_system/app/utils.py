import json
import os
import logging
from datetime import datetime, date, time, timezone

from .errors import ValidationError
from .models import AppointmentStatus, ConsultationType, Appointment, ConsultationSession, UserSubscription

CACHE_EXPIRY_SECONDS = int(os.getenv('CACHE_EXPIRY_SECONDS', 3600))

# Numeric status codes used on the wire by older clients.
STATUS_CODES = {
    AppointmentStatus.PENDING: 0,
    AppointmentStatus.CONFIRMED: 1,
    AppointmentStatus.CANCELLED: 2,
    AppointmentStatus.COMPLETED: 3,
    AppointmentStatus.EXPIRED: 4,
    AppointmentStatus.RESCHEDULE_PROPOSED: 5,
}
STATUSES_BY_CODE = {code: status for status, code in STATUS_CODES.items()}

CONSULTATION_TYPE_ALIASES = {"audio": ConsultationType.VOICE}


def utc(dt):
    """Return dt as an aware UTC datetime; naive values are assumed to be UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def combine_utc(day: date, at: time):
    return datetime.combine(day, at).replace(tzinfo=timezone.utc)


def parse_date_string(date_str):
    if isinstance(date_str, date):
        return date_str
    try:
        return datetime.strptime(date_str, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date '{date_str}', expected YYYY-MM-DD", field="date")


def parse_time_string(time_str):
    """Helper function to parse time strings in either 'HH:MM' or 'h:mma' formats."""
    if isinstance(time_str, time):
        return time_str
    for fmt in ("%H:%M", "%H:%M:%S", "%I%p", "%I:%M%p"):
        try:
            return datetime.strptime(str(time_str).strip(), fmt).time()
        except ValueError:
            continue
    raise ValidationError(f"Invalid time '{time_str}', expected HH:MM", field="time")


def parse_consultation_type(value):
    if isinstance(value, ConsultationType):
        return value
    value = str(value or "").strip().lower()
    if value in CONSULTATION_TYPE_ALIASES:
        return CONSULTATION_TYPE_ALIASES[value]
    try:
        return ConsultationType(value)
    except ValueError:
        raise ValidationError(f"Unknown consultation type '{value}'", field="type")


def parse_status(value):
    """Accept either the string enum or its numeric wire code."""
    if isinstance(value, AppointmentStatus):
        return value
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        try:
            return STATUSES_BY_CODE[int(value)]
        except KeyError:
            raise ValidationError(f"Unknown status code {value}", field="status")
    try:
        return AppointmentStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown status '{value}'", field="status")


def _iso(value):
    return value.isoformat() if value is not None else None


def serialize_appointment(appointment: Appointment):
    status = AppointmentStatus(appointment.status)
    serialized = {
        "id": appointment.id,
        "patient_id": appointment.patient_id,
        "doctor_id": appointment.doctor_id,
        "scheduled_date": _iso(appointment.scheduled_date),
        "scheduled_time": appointment.scheduled_time.strftime("%H:%M"),
        "scheduled_at": _iso(utc(appointment.scheduled_at)),
        "consultation_type": appointment.consultation_type,
        "reason": appointment.reason,
        "status": status.value,
        "status_code": STATUS_CODES[status],
        "version": appointment.version,
        "created_at": _iso(utc(appointment.created_at)),
        "updated_at": _iso(utc(appointment.updated_at)),
        "cancellation_reason": appointment.cancellation_reason,
        "cancelled_by": appointment.cancelled_by,
        "reschedule_pending": appointment.reschedule_pending,
    }
    if appointment.reschedule_pending:
        serialized.update({
            "reschedule_proposed_date": _iso(appointment.reschedule_proposed_date),
            "reschedule_proposed_time": appointment.reschedule_proposed_time.strftime("%H:%M"),
            "reschedule_reason": appointment.reschedule_reason,
        })
    return serialized


def serialize_session(session: ConsultationSession):
    return {
        "id": session.id,
        "appointment_id": session.appointment_id,
        "consultation_type": session.consultation_type,
        "status": session.status,
        "started_at": _iso(utc(session.started_at)),
        "last_activity_at": _iso(utc(session.last_activity_at)),
        "allotted_minutes": session.allotted_minutes,
        "remaining_time_minutes": session.remaining_time_minutes,
        "ended_at": _iso(utc(session.ended_at)),
        "duration_minutes": session.duration_minutes,
        "end_reason": session.end_reason,
        "billable": session.billable,
    }


def serialize_subscription(subscription: UserSubscription):
    return {
        "id": subscription.id,
        "patient_id": subscription.patient_id,
        "plan_id": subscription.plan_id,
        "text_sessions_remaining": subscription.text_sessions_remaining,
        "voice_calls_remaining": subscription.voice_calls_remaining,
        "video_calls_remaining": subscription.video_calls_remaining,
        "total_text_sessions": subscription.total_text_sessions,
        "total_voice_calls": subscription.total_voice_calls,
        "total_video_calls": subscription.total_video_calls,
        "activated_at": _iso(utc(subscription.activated_at)),
        "expires_at": _iso(utc(subscription.expires_at)),
        "is_active": subscription.is_active,
    }


def serialize_plan(plan):
    return {
        "id": plan.id,
        "name": plan.name,
        "price": str(plan.price),
        "currency": plan.currency,
        "text_sessions": plan.text_sessions,
        "voice_calls": plan.voice_calls,
        "video_calls": plan.video_calls,
        "session_minutes": plan.session_minutes,
        "duration_days": plan.duration_days,
    }


def serialize_wallet(wallet):
    return {
        "id": wallet.id,
        "doctor_id": wallet.doctor_id,
        "balance": str(wallet.balance),
        "currency": wallet.currency,
    }


def serialize_transaction(transaction):
    return {
        "id": transaction.id,
        "wallet_id": transaction.wallet_id,
        "type": transaction.type,
        "amount": str(transaction.amount),
        "status": transaction.status,
        "related_session_id": transaction.related_session_id,
        "payment_method": transaction.payment_method,
        "description": transaction.description,
        "failure_reason": transaction.failure_reason,
        "created_at": _iso(utc(transaction.created_at)),
        "processed_at": _iso(utc(transaction.processed_at)),
    }


def appointment_cache_key(appointment_id):
    return f"appointment:{appointment_id}"


def session_cache_key(session_id):
    return f"session:{session_id}"


def cache_appointment(redis_client, appointment):
    """Write the authoritative appointment snapshot through to Redis."""
    if redis_client is None:
        return
    try:
        redis_client.setex(appointment_cache_key(appointment.id), CACHE_EXPIRY_SECONDS,
                           json.dumps(serialize_appointment(appointment)))
    except Exception as e:
        logging.warning(f"Could not cache appointment {appointment.id}: {e}")


def cache_session(redis_client, session):
    if redis_client is None:
        return
    try:
        redis_client.setex(session_cache_key(session.id), CACHE_EXPIRY_SECONDS,
                           json.dumps(serialize_session(session)))
    except Exception as e:
        logging.warning(f"Could not cache session {session.id}: {e}")


def evict_appointment(redis_client, appointment_id):
    if redis_client is None:
        return
    try:
        redis_client.delete(appointment_cache_key(appointment_id))
    except Exception as e:
        logging.warning(f"Could not evict appointment {appointment_id} from cache: {e}")
