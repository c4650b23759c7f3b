# notifications.py
# Best-effort activity feed. Failures are logged and never reach the caller.

import json
import os
import logging
from datetime import datetime, timezone

ACTIVITY_FEED_LENGTH = int(os.getenv("ACTIVITY_FEED_LENGTH", 100))


def activity_key(user_id):
    return f"activity:{user_id}"


def notify(redis_client, user_id, type, title, description, related_id=None, timestamp=None):
    payload = {
        "type": type,
        "title": title,
        "description": description,
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
        "relatedId": related_id,
    }
    if redis_client is None:
        return payload
    try:
        key = activity_key(user_id)
        redis_client.lpush(key, json.dumps(payload))
        redis_client.ltrim(key, 0, ACTIVITY_FEED_LENGTH - 1)
    except Exception as e:
        logging.warning(f"Activity notification '{type}' for user {user_id} not delivered: {e}")
    return payload


def recent_activity(redis_client, user_id, limit=20):
    raw = redis_client.lrange(activity_key(user_id), 0, limit - 1)
    return [json.loads(item) for item in raw]


def appointment_accepted(redis_client, appointment):
    return notify(redis_client, appointment.patient_id, "appointment_accepted", "Appointment accepted",
                  f"Your {appointment.consultation_type} appointment on {appointment.scheduled_date} "
                  f"at {appointment.scheduled_time.strftime('%H:%M')} was accepted.",
                  related_id=appointment.id)


def appointment_rejected(redis_client, appointment):
    return notify(redis_client, appointment.patient_id, "appointment_rejected", "Appointment rejected",
                  f"Your appointment request for {appointment.scheduled_date} was declined.",
                  related_id=appointment.id)


def appointment_cancelled(redis_client, appointment):
    # Tell the other party.
    recipient = appointment.doctor_id if appointment.cancelled_by == "patient" else appointment.patient_id
    return notify(redis_client, recipient, "appointment_cancelled", "Appointment cancelled",
                  appointment.cancellation_reason or "The appointment was cancelled.",
                  related_id=appointment.id)


def reschedule_proposed(redis_client, appointment):
    return notify(redis_client, appointment.patient_id, "reschedule_proposed", "New time proposed",
                  f"Your doctor proposed {appointment.reschedule_proposed_date} at "
                  f"{appointment.reschedule_proposed_time.strftime('%H:%M')}.",
                  related_id=appointment.id)


def session_ended(redis_client, session, appointment):
    description = f"Session ended after {session.duration_minutes} minute(s) ({session.end_reason})."
    for user_id in (appointment.patient_id, appointment.doctor_id):
        notify(redis_client, user_id, "session_ended", "Session ended", description, related_id=session.id)


def withdrawal_requested(redis_client, doctor_id, transaction):
    return notify(redis_client, doctor_id, "withdrawal_requested", "Withdrawal requested",
                  f"Withdrawal of {transaction.amount} via {transaction.payment_method} is pending.",
                  related_id=transaction.id)
