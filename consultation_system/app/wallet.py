# wallet.py
# Doctor wallet and transaction ledger.
#
# The balance only moves together with a completed transaction row in the same
# database transaction: credits on billable sessions, debits when a payout
# completes. Pending and failed withdrawals never touch the balance.
import json
import os
import uuid
import logging
from decimal import Decimal, InvalidOperation

from prometheus_client import Counter
from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import InsufficientBalance, NotFound, ValidationError, InvalidTransition, ConflictError
from .models import Wallet, WalletTransaction, TransactionType, TransactionStatus, User, utcnow
from .utils import parse_consultation_type

CENTS = Decimal("0.01")

DEFAULT_RATES = {
    "MWK": {"text": "4000.00", "voice": "5000.00", "video": "6000.00"},
    "USD": {"text": "4.00", "voice": "5.00", "video": "6.00"},
}
SESSION_RATES = json.loads(os.getenv('SESSION_RATES', 'null')) or DEFAULT_RATES

# Per-currency (minimum, maximum) withdrawal amounts.
WITHDRAWAL_LIMITS = {
    "MWK": (Decimal("1000"), Decimal("1000000")),
}

WALLET_OPERATIONS = Counter("wallet_operations_total", "Wallet ledger operations", ["operation", "result"])


def to_amount(value):
    try:
        amount = Decimal(str(value)).quantize(CENTS)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount '{value}'", field="amount")
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0", field="amount")
    return amount


def currency_for_doctor(doctor: User):
    return "MWK" if (doctor.country or "").strip().lower() == "malawi" else "USD"


def rate_for(consultation_type, currency):
    consultation_type = parse_consultation_type(consultation_type)
    try:
        return Decimal(str(SESSION_RATES[currency][consultation_type.value])).quantize(CENTS)
    except KeyError:
        raise ValidationError(f"No {consultation_type.value} rate configured for {currency}", field="currency")


def get_wallet(db: Session, doctor_id):
    wallet = db.query(Wallet).filter_by(doctor_id=doctor_id).first()
    if not wallet:
        raise NotFound(f"Wallet for doctor {doctor_id} not found")
    return wallet


def get_or_create_wallet(db: Session, doctor_id):
    wallet = db.query(Wallet).filter_by(doctor_id=doctor_id).first()
    if wallet:
        return wallet
    doctor = db.query(User).filter_by(id=doctor_id).first()
    if not doctor:
        raise NotFound(f"Doctor {doctor_id} not found")
    wallet = Wallet(doctor_id=doctor_id, balance=Decimal("0.00"), currency=currency_for_doctor(doctor))
    db.add(wallet)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Wallet for doctor {doctor_id} was created concurrently, retry")
    return wallet


def credit_for_session(db: Session, doctor_id, session_id, amount, description=None, commit=True):
    """Credit the doctor for a billable session, at most once per session."""
    amount = to_amount(amount)
    wallet = get_or_create_wallet(db, doctor_id)
    if session_id is None:
        idempotency_key = f"manual:{uuid.uuid4()}"
    else:
        idempotency_key = f"session:{session_id}"
        existing = db.query(WalletTransaction).filter_by(wallet_id=wallet.id, idempotency_key=idempotency_key).first()
        if existing:
            logging.info(f"Session {session_id} already credited (transaction {existing.id})")
            WALLET_OPERATIONS.labels(operation="credit", result="duplicate").inc()
            return existing

    transaction = WalletTransaction(
        wallet_id=wallet.id,
        type=TransactionType.CREDIT.value,
        amount=amount,
        status=TransactionStatus.COMPLETED.value,
        related_session_id=session_id,
        description=description or f"Payment for session {session_id}",
        idempotency_key=idempotency_key,
        processed_at=utcnow(),
    )
    db.add(transaction)
    db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id)
        .values(balance=Wallet.balance + amount)
        .execution_options(synchronize_session=False)
    )
    try:
        db.flush()
        if commit:
            db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Session {session_id} was credited concurrently")
    db.refresh(wallet)
    WALLET_OPERATIONS.labels(operation="credit", result="ok").inc()
    logging.info(f"Credited {amount} {wallet.currency} to doctor {doctor_id} for session {session_id} "
                 f"(balance {wallet.balance})")
    return transaction


def pending_withdrawals_total(db: Session, wallet_id):
    total = (
        db.query(func.coalesce(func.sum(WalletTransaction.amount), 0))
        .filter(WalletTransaction.wallet_id == wallet_id,
                WalletTransaction.type == TransactionType.DEBIT.value,
                WalletTransaction.status == TransactionStatus.PENDING.value)
        .scalar()
    )
    return Decimal(str(total)).quantize(CENTS)


def request_withdrawal(db: Session, doctor_id, amount, method, details=None, idempotency_key=None):
    """Record a pending withdrawal. The balance is not touched until the payout completes."""
    amount = to_amount(amount)
    if not method:
        raise ValidationError("A payment method is required", field="method")

    wallet = get_or_create_wallet(db, doctor_id)
    # Keys are namespaced per wallet; two doctors may reuse the same client key.
    key = f"withdrawal:{wallet.id}:{idempotency_key or uuid.uuid4()}"
    if idempotency_key:
        existing = db.query(WalletTransaction).filter_by(wallet_id=wallet.id, idempotency_key=key).first()
        if existing:
            return existing

    limits = WITHDRAWAL_LIMITS.get(wallet.currency)
    if limits:
        minimum, maximum = limits
        if amount < minimum:
            raise ValidationError(f"Minimum withdrawal amount is {wallet.currency} {minimum:,}", field="amount")
        if amount > maximum:
            raise ValidationError(f"Maximum withdrawal amount is {wallet.currency} {maximum:,}", field="amount")

    available = Decimal(str(wallet.balance)).quantize(CENTS) - pending_withdrawals_total(db, wallet.id)
    if amount > available:
        db.rollback()
        WALLET_OPERATIONS.labels(operation="withdraw_request", result="insufficient").inc()
        raise InsufficientBalance(
            f"Requested {amount} exceeds available balance {available}",
            available_balance=str(available), requested_amount=str(amount),
        )

    transaction = WalletTransaction(
        wallet_id=wallet.id,
        type=TransactionType.DEBIT.value,
        amount=amount,
        status=TransactionStatus.PENDING.value,
        payment_method=method,
        payment_details=details or {},
        description=f"Withdrawal via {method}",
        idempotency_key=key,
    )
    db.add(transaction)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("A withdrawal with this idempotency key already exists")
    db.refresh(transaction)
    WALLET_OPERATIONS.labels(operation="withdraw_request", result="ok").inc()
    logging.info(f"Doctor {doctor_id} requested withdrawal {transaction.id} of {amount} {wallet.currency} via {method}")
    return transaction


def _get_transaction(db: Session, transaction_id):
    transaction = db.query(WalletTransaction).filter_by(id=transaction_id).first()
    if not transaction:
        raise NotFound(f"Transaction {transaction_id} not found")
    return transaction


def complete_withdrawal(db: Session, transaction_id, now=None):
    """Mark a pending withdrawal paid and debit the balance exactly once.

    Duplicate completion callbacks return the already-completed transaction.
    If the balance no longer covers the amount the withdrawal is failed instead.
    """
    now = now or utcnow()
    transaction = _get_transaction(db, transaction_id)
    if transaction.type != TransactionType.DEBIT.value:
        raise InvalidTransition(f"Transaction {transaction_id} is not a withdrawal", status=transaction.status)
    if transaction.status == TransactionStatus.COMPLETED.value:
        return transaction
    if transaction.status != TransactionStatus.PENDING.value:
        raise InvalidTransition(f"Withdrawal {transaction_id} is {transaction.status}", status=transaction.status)

    claimed = db.execute(
        update(WalletTransaction)
        .where(WalletTransaction.id == transaction_id,
               WalletTransaction.status == TransactionStatus.PENDING.value)
        .values(status=TransactionStatus.COMPLETED.value, processed_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        db.refresh(transaction)
        if transaction.status == TransactionStatus.COMPLETED.value:
            return transaction
        raise InvalidTransition(f"Withdrawal {transaction_id} is {transaction.status}", status=transaction.status)

    debited = db.execute(
        update(Wallet)
        .where(Wallet.id == transaction.wallet_id, Wallet.balance >= transaction.amount)
        .values(balance=Wallet.balance - transaction.amount)
        .execution_options(synchronize_session=False)
    )
    if debited.rowcount != 1:
        db.rollback()
        fail_withdrawal(db, transaction_id, "Insufficient balance at payout time", now=now)
        WALLET_OPERATIONS.labels(operation="withdraw_complete", result="insufficient").inc()
        raise InsufficientBalance(f"Balance no longer covers withdrawal {transaction_id}")

    db.commit()
    db.refresh(transaction)
    WALLET_OPERATIONS.labels(operation="withdraw_complete", result="ok").inc()
    logging.info(f"Withdrawal {transaction_id} completed ({transaction.amount})")
    return transaction


def fail_withdrawal(db: Session, transaction_id, reason, now=None):
    now = now or utcnow()
    transaction = _get_transaction(db, transaction_id)
    if transaction.status == TransactionStatus.FAILED.value:
        return transaction
    result = db.execute(
        update(WalletTransaction)
        .where(WalletTransaction.id == transaction_id,
               WalletTransaction.type == TransactionType.DEBIT.value,
               WalletTransaction.status == TransactionStatus.PENDING.value)
        .values(status=TransactionStatus.FAILED.value, failure_reason=reason, processed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(transaction)
        raise InvalidTransition(f"Withdrawal {transaction_id} is {transaction.status}", status=transaction.status)
    db.commit()
    db.refresh(transaction)
    WALLET_OPERATIONS.labels(operation="withdraw_fail", result="ok").inc()
    logging.info(f"Withdrawal {transaction_id} failed: {reason}")
    return transaction


def list_transactions(db: Session, doctor_id, page=1, page_size=20):
    if page < 1 or page_size < 1:
        raise ValidationError("page and pageSize must be positive", field="page")
    wallet = get_or_create_wallet(db, doctor_id)
    query = db.query(WalletTransaction).filter(WalletTransaction.wallet_id == wallet.id)
    total = query.count()
    items = (
        query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total


def verify_wallet(db: Session, doctor_id):
    """Recompute the balance from completed transactions and compare."""
    wallet = get_wallet(db, doctor_id)

    def completed_sum(tx_type):
        value = (
            db.query(func.coalesce(func.sum(WalletTransaction.amount), 0))
            .filter(WalletTransaction.wallet_id == wallet.id,
                    WalletTransaction.type == tx_type,
                    WalletTransaction.status == TransactionStatus.COMPLETED.value)
            .scalar()
        )
        return Decimal(str(value)).quantize(CENTS)

    expected = completed_sum(TransactionType.CREDIT.value) - completed_sum(TransactionType.DEBIT.value)
    actual = Decimal(str(wallet.balance)).quantize(CENTS)
    return {"doctor_id": doctor_id, "expected": expected, "actual": actual, "consistent": expected == actual}
