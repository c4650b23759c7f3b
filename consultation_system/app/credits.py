# credits.py
# Subscription credit ledger.
#
# Counters are only ever changed with a conditional UPDATE so two concurrent
# session starts can never both spend the last credit, and a restore can never
# push a counter above the plan total.
import os
import logging
from datetime import timedelta

from prometheus_client import Counter
from sqlalchemy import update, or_
from sqlalchemy.orm import Session

from .errors import InsufficientCredit, NotFound, ValidationError
from .models import UserSubscription, Plan, utcnow
from .utils import utc, parse_consultation_type

CARRY_OVER_UNUSED_CREDITS = os.getenv('CARRY_OVER_UNUSED_CREDITS', 'false').lower() in ('1', 'true', 'yes')

LEDGER_OPERATIONS = Counter("credit_ledger_operations_total", "Credit ledger operations",
                            ["operation", "result"])

DEFAULT_PLANS = [
    {"name": "Basic Life", "price": 999, "currency": "MWK", "text_sessions": 10, "voice_calls": 2, "video_calls": 1},
    {"name": "Executive Life", "price": 1999, "currency": "MWK", "text_sessions": 30, "voice_calls": 5, "video_calls": 3},
    {"name": "Premium Life", "price": 3999, "currency": "MWK", "text_sessions": 60, "voice_calls": 10, "video_calls": 5},
    {"name": "Basic Life", "price": 100, "currency": "USD", "text_sessions": 10, "voice_calls": 2, "video_calls": 1},
    {"name": "Executive Life", "price": 200, "currency": "USD", "text_sessions": 30, "voice_calls": 5, "video_calls": 3},
    {"name": "Premium Life", "price": 400, "currency": "USD", "text_sessions": 60, "voice_calls": 10, "video_calls": 5},
]


def seed_plans(db: Session):
    created = 0
    for values in DEFAULT_PLANS:
        existing = db.query(Plan).filter_by(name=values["name"], currency=values["currency"]).first()
        if existing:
            continue
        db.add(Plan(duration_days=30, **values))
        created += 1
    db.commit()
    logging.info(f"Seeded {created} plan(s)")
    return created


def get_subscription(db: Session, subscription_id):
    subscription = db.query(UserSubscription).filter_by(id=subscription_id).first()
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    return subscription


def get_active_subscription(db: Session, patient_id, now=None):
    """The patient's current subscription, or None if they have none that is usable."""
    now = now or utcnow()
    subscription = (
        db.query(UserSubscription)
        .filter(UserSubscription.patient_id == patient_id, UserSubscription.is_active.is_(True))
        .order_by(UserSubscription.activated_at.desc(), UserSubscription.id.desc())
        .first()
    )
    if subscription and subscription.expires_at and utc(subscription.expires_at) <= now:
        return None
    return subscription


def debit(db: Session, subscription_id, session_type, commit=True, now=None):
    """Spend exactly one credit of session_type. Raises InsufficientCredit at zero
    or when the subscription is no longer active.
    """
    now = now or utcnow()
    session_type = parse_consultation_type(session_type).value
    remaining_col, _ = UserSubscription.columns_for(session_type)
    remaining = getattr(UserSubscription, remaining_col)
    result = db.execute(
        update(UserSubscription)
        .where(UserSubscription.id == subscription_id, remaining > 0,
               UserSubscription.is_active.is_(True),
               or_(UserSubscription.expires_at.is_(None), UserSubscription.expires_at > now))
        .values({remaining_col: remaining - 1})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        subscription = get_subscription(db, subscription_id)
        db.refresh(subscription)
        LEDGER_OPERATIONS.labels(operation="debit", result="insufficient").inc()
        if not subscription.is_active or (subscription.expires_at and utc(subscription.expires_at) <= now):
            detail = f"Subscription {subscription_id} is no longer active"
        else:
            detail = f"No {session_type} credits remaining on subscription {subscription_id}"
        raise InsufficientCredit(detail, subscription_id=subscription.id, session_type=session_type)
    if commit:
        db.commit()
    subscription = get_subscription(db, subscription_id)
    db.refresh(subscription)
    LEDGER_OPERATIONS.labels(operation="debit", result="ok").inc()
    logging.info(f"Debited one {session_type} credit from subscription {subscription_id} "
                 f"({getattr(subscription, remaining_col)} left)")
    return subscription


def credit(db: Session, subscription_id, session_type, commit=True):
    """Restore one credit of session_type, never beyond the purchased total.

    Returns True when a credit was actually restored, False when the counter
    was already at its total.
    """
    session_type = parse_consultation_type(session_type).value
    remaining_col, total_col = UserSubscription.columns_for(session_type)
    remaining = getattr(UserSubscription, remaining_col)
    total = getattr(UserSubscription, total_col)
    result = db.execute(
        update(UserSubscription)
        .where(UserSubscription.id == subscription_id, remaining < total)
        .values({remaining_col: remaining + 1})
        .execution_options(synchronize_session=False)
    )
    restored = result.rowcount == 1
    if not restored:
        # Raises NotFound for an unknown id; otherwise the counter is capped.
        get_subscription(db, subscription_id)
        logging.warning(f"Credit restore on subscription {subscription_id} skipped: {session_type} already at total")
    if commit:
        db.commit()
    LEDGER_OPERATIONS.labels(operation="credit", result="ok" if restored else "capped").inc()
    if restored:
        logging.info(f"Restored one {session_type} credit to subscription {subscription_id}")
    return restored


def purchase(db: Session, patient_id, plan_id, carry_over=None, now=None):
    """Activate plan_id for the patient, replacing any active subscription."""
    now = now or utcnow()
    carry_over = CARRY_OVER_UNUSED_CREDITS if carry_over is None else carry_over
    plan = db.query(Plan).filter_by(id=plan_id).first()
    if not plan or not plan.is_active:
        raise ValidationError(f"Plan {plan_id} is not available", field="planId")

    try:
        previous = (
            db.query(UserSubscription)
            .filter(UserSubscription.patient_id == patient_id, UserSubscription.is_active.is_(True))
            .with_for_update()
            .all()
        )
        leftover = {"text": 0, "voice": 0, "video": 0}
        for old in previous:
            if carry_over and not (old.expires_at and utc(old.expires_at) <= now):
                leftover["text"] += old.text_sessions_remaining
                leftover["voice"] += old.voice_calls_remaining
                leftover["video"] += old.video_calls_remaining
            old.is_active = False

        subscription = UserSubscription(
            patient_id=patient_id,
            plan_id=plan.id,
            total_text_sessions=plan.text_sessions + leftover["text"],
            total_voice_calls=plan.voice_calls + leftover["voice"],
            total_video_calls=plan.video_calls + leftover["video"],
            text_sessions_remaining=plan.text_sessions + leftover["text"],
            voice_calls_remaining=plan.voice_calls + leftover["voice"],
            video_calls_remaining=plan.video_calls + leftover["video"],
            activated_at=now,
            expires_at=now + timedelta(days=plan.duration_days) if plan.duration_days else None,
            is_active=True,
        )
        db.add(subscription)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(subscription)
    LEDGER_OPERATIONS.labels(operation="purchase", result="ok").inc()
    logging.info(f"Patient {patient_id} activated plan {plan.id} ({plan.name}), "
                 f"replacing {len(previous)} subscription(s), carry_over={carry_over}")
    return subscription


def handle_plan_activated(db: Session, event):
    """React to the payment gateway's 'plan activated' event."""
    patient_id = event.get("patient_id") or event.get("patientId")
    plan_id = event.get("plan_id") or event.get("planId")
    if not patient_id or not plan_id:
        raise ValidationError("Plan activation event requires patient_id and plan_id", field="event")
    return purchase(db, int(patient_id), int(plan_id))


def expire_subscriptions(db: Session, now=None):
    """Deactivate subscriptions whose expiry has passed. Safe to run repeatedly."""
    now = now or utcnow()
    result = db.execute(
        update(UserSubscription)
        .where(UserSubscription.is_active.is_(True),
               UserSubscription.expires_at.isnot(None),
               UserSubscription.expires_at <= now)
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logging.info(f"Deactivated {result.rowcount} expired subscription(s)")
    return result.rowcount
