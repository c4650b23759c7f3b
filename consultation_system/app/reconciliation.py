# reconciliation.py
import json
import os
import time
import logging

from sqlalchemy.orm import Session

from . import credits
from .appointments import expire_stale_pending
from .dependencies import SessionLocal, get_redis_client
from .models import Appointment, ConsultationSession, Wallet, utcnow
from .sessions import heartbeat_active_sessions
from .utils import serialize_appointment, serialize_session, cache_appointment, cache_session
from .wallet import verify_wallet

RECONCILE_INTERVAL_SECONDS = int(os.getenv('RECONCILE_INTERVAL_SECONDS', 30))
LOCK_KEY = "lock:reconciliation"


def acquire_lock(redis_client, lock_key, ttl=60):
    return redis_client.set(lock_key, "locked", nx=True, ex=ttl)


def release_lock(redis_client, lock_key):
    redis_client.delete(lock_key)


def compare_snapshots(authoritative, cached):
    """List the fields where the cached snapshot disagrees with the database."""
    discrepancies = []
    for field, value in authoritative.items():
        if cached.get(field) != value:
            discrepancies.append(f"{field}: cached={cached.get(field)!r} actual={value!r}")
    return discrepancies


def _sync_cached(db: Session, redis_client, pattern, model, serialize, write):
    corrections = []
    for key in redis_client.scan_iter(match=pattern):
        try:
            record_id = int(key.split(":", 1)[1])
        except (IndexError, ValueError):
            continue
        record = db.query(model).filter_by(id=record_id).first()
        if record is None:
            redis_client.delete(key)
            corrections.append({"key": key, "discrepancies": ["deleted"]})
            logging.info(f"Evicted {key}: no longer in the database")
            continue
        raw = redis_client.get(key)
        cached = json.loads(raw) if raw else {}
        diff = compare_snapshots(serialize(record), cached)
        if diff:
            write(redis_client, record)
            corrections.append({"key": key, "discrepancies": diff})
            logging.info(f"Discrepancy found for {key}: {diff}; cache overwritten")
    return corrections


def sync_cache(db: Session, redis_client):
    corrections = _sync_cached(db, redis_client, "appointment:*", Appointment, serialize_appointment,
                               cache_appointment)
    corrections += _sync_cached(db, redis_client, "session:*", ConsultationSession, serialize_session,
                                cache_session)
    return corrections


def audit_wallets(db: Session):
    drift = []
    for wallet in db.query(Wallet).all():
        report = verify_wallet(db, wallet.doctor_id)
        if not report["consistent"]:
            logging.error(f"Wallet drift for doctor {wallet.doctor_id}: balance {report['actual']} "
                          f"but ledger says {report['expected']}")
            drift.append(report)
    return drift


def reconcile_once(db: Session, redis_client, now=None):
    """One reconciliation pass. Returns a summary, or {'skipped': True} if another pass holds the lock."""
    now = now or utcnow()
    if not acquire_lock(redis_client, LOCK_KEY, ttl=max(RECONCILE_INTERVAL_SECONDS * 2, 60)):
        logging.info("Reconciliation skipped because another process is running.")
        return {"skipped": True}
    try:
        summary = {
            "skipped": False,
            "expired_appointments": expire_stale_pending(db, now=now, redis_client=redis_client),
            "sessions": heartbeat_active_sessions(db, now=now, redis_client=redis_client),
            "subscriptions_deactivated": credits.expire_subscriptions(db, now=now),
        }
        summary["cache_corrections"] = sync_cache(db, redis_client)
        summary["wallet_drift"] = audit_wallets(db)
    finally:
        release_lock(redis_client, LOCK_KEY)
    logging.info(
        f"Reconciliation: {len(summary['expired_appointments'])} expired, {len(summary['sessions'])} active "
        f"session(s) checked, {len(summary['cache_corrections'])} cache correction(s), "
        f"{summary['subscriptions_deactivated']} subscription(s) deactivated"
    )
    return summary


def run_forever(interval=RECONCILE_INTERVAL_SECONDS):
    redis_client = get_redis_client()
    logging.info(f"Reconciliation loop started (every {interval}s)")
    while True:
        db = SessionLocal()
        try:
            reconcile_once(db, redis_client)
        except Exception:
            logging.exception("Reconciliation pass failed; retrying next interval")
        finally:
            db.close()
        time.sleep(interval)
