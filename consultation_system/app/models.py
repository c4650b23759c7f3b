# models.py
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Time, ForeignKey, UniqueConstraint, Index, Boolean, Numeric, Text, JSON,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXPIRED = "expired"
    RESCHEDULE_PROPOSED = "reschedule_proposed"


TERMINAL_STATUSES = {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED}

# Legal appointment transitions. Anything not listed here is rejected.
TRANSITIONS = {
    AppointmentStatus.PENDING: {
        AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.RESCHEDULE_PROPOSED,
    },
    AppointmentStatus.RESCHEDULE_PROPOSED: {
        AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.EXPIRED,
    },
}


class ConsultationType(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    VIDEO = "video"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class EndReason(str, Enum):
    MANUAL = "manual"
    TIMEOUT = "timeout"


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False)  # 'doctor', 'patient', or 'admin'
    country = Column(String, nullable=True)


class Plan(Base):
    __tablename__ = 'plans'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    text_sessions = Column(Integer, nullable=False, default=0)
    voice_calls = Column(Integer, nullable=False, default=0)
    video_calls = Column(Integer, nullable=False, default=0)
    session_minutes = Column(Integer, nullable=True)  # None = minute-unbounded
    duration_days = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint('name', 'currency', name='_plan_name_currency_uc'),
    )


class Appointment(Base):
    __tablename__ = 'appointments'
    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    doctor_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Time, nullable=False)
    # Denormalized from scheduled_date + scheduled_time so expiry can be queried.
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    consultation_type = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=AppointmentStatus.PENDING.value)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String, nullable=True)  # 'patient', 'doctor' or 'system'
    reschedule_pending = Column(Boolean, nullable=False, default=False)
    reschedule_proposed_date = Column(Date, nullable=True)
    reschedule_proposed_time = Column(Time, nullable=True)
    reschedule_proposed_at = Column(DateTime(timezone=True), nullable=True)
    reschedule_reason = Column(Text, nullable=True)

    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    session = relationship("ConsultationSession", back_populates="appointment", uselist=False)

    __table_args__ = (
        Index('idx_appointment_status_scheduled', 'status', 'scheduled_at'),
        Index('idx_appointment_doctor', 'doctor_id'),
        Index('idx_appointment_patient', 'patient_id'),
    )


class AppointmentEvent(Base):
    """Append-only status history, one row per successful transition."""
    __tablename__ = 'appointment_events'
    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, nullable=False, index=True)
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=False)
    actor = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ConsultationSession(Base):
    __tablename__ = 'sessions'
    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey('appointments.id'), nullable=False, unique=True)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id'), nullable=False)
    consultation_type = Column(String, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_activity_at = Column(DateTime(timezone=True), nullable=False)
    allotted_minutes = Column(Integer, nullable=False)
    remaining_time_minutes = Column(Integer, nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    end_reason = Column(String, nullable=True)
    billable = Column(Boolean, nullable=True)
    status = Column(String, nullable=False, default=SessionStatus.ACTIVE.value)

    appointment = relationship("Appointment", back_populates="session")

    __table_args__ = (
        Index('idx_session_status', 'status'),
    )


class UserSubscription(Base):
    __tablename__ = 'subscriptions'
    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    plan_id = Column(Integer, ForeignKey('plans.id'), nullable=False)
    text_sessions_remaining = Column(Integer, nullable=False, default=0)
    voice_calls_remaining = Column(Integer, nullable=False, default=0)
    video_calls_remaining = Column(Integer, nullable=False, default=0)
    total_text_sessions = Column(Integer, nullable=False, default=0)
    total_voice_calls = Column(Integer, nullable=False, default=0)
    total_video_calls = Column(Integer, nullable=False, default=0)
    activated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    plan = relationship("Plan")

    __table_args__ = (
        Index('idx_subscription_patient_active', 'patient_id', 'is_active'),
    )

    @staticmethod
    def columns_for(consultation_type):
        """Return the (remaining, total) column names for a consultation type."""
        consultation_type = ConsultationType(consultation_type)
        if consultation_type == ConsultationType.TEXT:
            return 'text_sessions_remaining', 'total_text_sessions'
        if consultation_type == ConsultationType.VOICE:
            return 'voice_calls_remaining', 'total_voice_calls'
        return 'video_calls_remaining', 'total_video_calls'


class Wallet(Base):
    __tablename__ = 'wallets'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('users.id'), nullable=False, unique=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)

    transactions = relationship("WalletTransaction", back_populates="wallet")


class WalletTransaction(Base):
    __tablename__ = 'wallet_transactions'
    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey('wallets.id'), nullable=False)
    type = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String, nullable=False, default=TransactionStatus.PENDING.value)
    related_session_id = Column(Integer, ForeignKey('sessions.id'), nullable=True)
    payment_method = Column(String, nullable=True)
    payment_details = Column(JSON, nullable=True)
    description = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)
    idempotency_key = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    wallet = relationship("Wallet", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint('wallet_id', 'idempotency_key', name='uq_wallet_tx_idempotency'),
        Index('idx_wallet_tx_wallet_created', 'wallet_id', 'created_at'),
    )
