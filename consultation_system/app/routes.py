from decimal import Decimal
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from pydantic import BaseModel
import json
import logging

from . import appointments, credits, sessions, wallet, notifications
from .models import User, Plan, AppointmentStatus, EndReason
from .utils import (
    CACHE_EXPIRY_SECONDS, parse_status, serialize_appointment, serialize_session, serialize_subscription,
    serialize_plan, serialize_wallet, serialize_transaction,
)
from .dependencies import get_redis_client, get_db, UserRole
from .errors import ValidationError, ConflictError, InvalidTransition, NotFound
from .auth import authenticate_user, create_access_token, get_current_user, get_password_hash, role_required

router = APIRouter()

PLANS_CACHE_KEY = "plans:active"


class UserRegistration(BaseModel):
    name: str
    email: str
    password: str
    role: str
    country: Optional[str] = None


class CreateAppointmentRequest(BaseModel):
    doctorId: int
    date: str
    time: str
    type: str
    reason: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    status: Union[int, str]
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    action: str  # 'propose', 'accept' or 'decline'
    date: Optional[str] = None
    time: Optional[str] = None
    reason: Optional[str] = None


class PurchaseRequest(BaseModel):
    planId: int


class StartSessionRequest(BaseModel):
    appointmentId: int


class HeartbeatRequest(BaseModel):
    sessionId: int


class EndSessionRequest(BaseModel):
    sessionId: int
    reason: str = EndReason.MANUAL.value


class WithdrawRequest(BaseModel):
    amount: Decimal
    method: str
    details: Optional[dict] = None
    idempotencyKey: Optional[str] = None


class FailWithdrawalRequest(BaseModel):
    reason: str


@router.post("/register")
def register_user(user: UserRegistration, db: Session = Depends(get_db)):
    if not all([user.name, user.email, user.password, user.role]):
        raise ValidationError("All fields are required", field="email")

    if user.role not in [UserRole.DOCTOR.value, UserRole.PATIENT.value, UserRole.ADMIN.value]:
        raise ValidationError("Invalid role", field="role")

    existing_user = db.query(User).filter(User.email == user.email).first()
    if existing_user:
        raise ConflictError("Email already registered")

    new_user = User(name=user.name, email=user.email, hashed_password=get_password_hash(user.password),
                    role=user.role, country=user.country)
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    logging.info(f"Registered {new_user.role} {new_user.id}")
    return {"message": "User registered successfully", "id": new_user.id}


@router.post("/token")
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(data={"sub": user.email, "role": user.role})
    return {"access_token": access_token, "token_type": "bearer"}


@router.get("/plans")
def list_plans(currency: Optional[str] = Query(None), db: Session = Depends(get_db),
               redis_client=Depends(get_redis_client)):
    cached_plans = redis_client.get(PLANS_CACHE_KEY)
    if cached_plans:
        logging.info(f"Retrieved from Redis: {PLANS_CACHE_KEY}")
        plans = json.loads(cached_plans)
    else:
        logging.info(f"Retrieved from database: {PLANS_CACHE_KEY}")
        plans = [serialize_plan(plan) for plan in
                 db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.currency, Plan.price).all()]
        redis_client.setex(PLANS_CACHE_KEY, CACHE_EXPIRY_SECONDS, json.dumps(plans))
    if currency:
        plans = [plan for plan in plans if plan["currency"] == currency.upper()]
    return plans


@router.post("/appointment")
@role_required([UserRole.PATIENT.value])
def create_appointment(
        request: CreateAppointmentRequest,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    appointment = appointments.create_appointment(
        db, current_user, request.doctorId, request.date, request.time, request.type, reason=request.reason,
        redis_client=redis_client,
    )
    return serialize_appointment(appointment)


@router.get("/appointments")
def list_appointments(
        status: Optional[str] = Query(None),
        db: Session = Depends(get_db),
        current_user: User = Depends(get_current_user)
):
    status = parse_status(status) if status is not None else None
    return [serialize_appointment(a) for a in appointments.list_appointments(db, current_user, status=status)]


@router.get("/appointment/{appointment_id}")
def get_appointment(
        appointment_id: int,
        db: Session = Depends(get_db),
        current_user: User = Depends(get_current_user)
):
    appointment = appointments.get_appointment(db, appointment_id)
    appointments.participant_role(appointment, current_user)
    return serialize_appointment(appointment)


@router.patch("/appointment/{appointment_id}/status")
def update_appointment_status(
        appointment_id: int,
        request: UpdateStatusRequest,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    target = parse_status(request.status)
    if target == AppointmentStatus.CONFIRMED:
        appointment = appointments.accept_appointment(db, appointment_id, current_user, redis_client=redis_client)
    elif target == AppointmentStatus.CANCELLED:
        appointment = appointments.get_appointment(db, appointment_id)
        if appointment.status == AppointmentStatus.PENDING.value and current_user.role == UserRole.DOCTOR.value:
            appointment = appointments.reject_appointment(db, appointment_id, current_user, reason=request.reason,
                                                          redis_client=redis_client)
        else:
            appointment = appointments.cancel_appointment(db, appointment_id, request.reason, current_user,
                                                          redis_client=redis_client)
    else:
        raise InvalidTransition(f"Status {target.value} cannot be set directly", status=target.value)
    return serialize_appointment(appointment)


@router.patch("/appointment/{appointment_id}")
def reschedule_appointment(
        appointment_id: int,
        request: RescheduleRequest,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    if request.action == "propose":
        appointment = appointments.propose_reschedule(db, appointment_id, request.date, request.time, current_user,
                                                      reason=request.reason, redis_client=redis_client)
    elif request.action in ("accept", "decline"):
        appointment = appointments.respond_to_reschedule(db, appointment_id, request.action == "accept",
                                                         current_user, redis_client=redis_client)
    else:
        raise ValidationError(f"Unknown reschedule action '{request.action}'", field="action")
    return serialize_appointment(appointment)


@router.delete("/appointment/{appointment_id}")
@role_required([UserRole.DOCTOR.value])
def delete_appointment(
        appointment_id: int,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    appointments.delete_appointment(db, appointment_id, current_user, redis_client=redis_client)
    return {"message": "Appointment deleted successfully", "id": appointment_id}


@router.get("/subscription")
@role_required([UserRole.PATIENT.value])
def get_subscription(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    subscription = credits.get_active_subscription(db, current_user.id)
    if subscription is None:
        raise NotFound(f"Patient {current_user.id} has no active subscription")
    return serialize_subscription(subscription)


@router.post("/subscription/purchase")
@role_required([UserRole.PATIENT.value])
def purchase_subscription(
        request: PurchaseRequest,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    subscription = credits.purchase(db, current_user.id, request.planId)
    notifications.notify(redis_client, current_user.id, "plan_activated", "Plan activated",
                         f"Your {subscription.plan.name} plan is active.", related_id=subscription.id)
    return serialize_subscription(subscription)


@router.post("/session/start")
def start_session(
        request: StartSessionRequest,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    session = sessions.start_session(db, request.appointmentId, actor=current_user, redis_client=redis_client)
    response = serialize_session(session)
    response["heartbeat_interval_seconds"] = sessions.HEARTBEAT_INTERVAL_SECONDS
    return response


@router.post("/session/heartbeat")
def session_heartbeat(
        request: HeartbeatRequest,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    session = sessions.heartbeat(db, request.sessionId, actor=current_user, redis_client=redis_client)
    return serialize_session(session)


@router.post("/session/end")
def end_session(
        request: EndSessionRequest,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    try:
        reason = EndReason(request.reason)
    except ValueError:
        raise ValidationError(f"Unknown end reason '{request.reason}'", field="reason")
    session = sessions.end_session(db, request.sessionId, reason, actor=current_user, redis_client=redis_client)
    return serialize_session(session)


@router.get("/session/{session_id}")
def get_session(session_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    session = sessions.get_session(db, session_id)
    appointments.participant_role(session.appointment, current_user)
    return serialize_session(session)


@router.get("/wallet")
@role_required([UserRole.DOCTOR.value])
def get_wallet(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    doctor_wallet = wallet.get_or_create_wallet(db, current_user.id)
    db.commit()
    pending = wallet.pending_withdrawals_total(db, doctor_wallet.id)
    response = serialize_wallet(doctor_wallet)
    response["pending_withdrawals"] = str(pending)
    response["available_balance"] = str(Decimal(str(doctor_wallet.balance)) - pending)
    return response


@router.get("/wallet/transactions")
@role_required([UserRole.DOCTOR.value])
def list_wallet_transactions(
        page: int = Query(1),
        page_size: int = Query(20, alias="pageSize"),
        db: Session = Depends(get_db),
        current_user: User = Depends(get_current_user)
):
    items, total = wallet.list_transactions(db, current_user.id, page=page, page_size=page_size)
    db.commit()
    return {"items": [serialize_transaction(t) for t in items], "total": total, "page": page, "pageSize": page_size}


@router.post("/wallet/withdraw")
@role_required([UserRole.DOCTOR.value])
def request_withdrawal(
        request: WithdrawRequest,
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client),
        current_user: User = Depends(get_current_user)
):
    transaction = wallet.request_withdrawal(db, current_user.id, request.amount, request.method,
                                            details=request.details, idempotency_key=request.idempotencyKey)
    notifications.withdrawal_requested(redis_client, current_user.id, transaction)
    return serialize_transaction(transaction)


@router.post("/admin/withdrawals/{transaction_id}/complete")
@role_required([UserRole.ADMIN.value])
def complete_withdrawal(transaction_id: int, db: Session = Depends(get_db),
                        current_user: User = Depends(get_current_user)):
    logging.info(f"Admin {current_user.id} completing withdrawal {transaction_id}")
    return serialize_transaction(wallet.complete_withdrawal(db, transaction_id))


@router.post("/admin/withdrawals/{transaction_id}/fail")
@role_required([UserRole.ADMIN.value])
def fail_withdrawal(transaction_id: int, request: FailWithdrawalRequest, db: Session = Depends(get_db),
                    current_user: User = Depends(get_current_user)):
    logging.info(f"Admin {current_user.id} failing withdrawal {transaction_id}")
    return serialize_transaction(wallet.fail_withdrawal(db, transaction_id, request.reason))


@router.get("/notifications")
def get_notifications(limit: int = Query(20), redis_client=Depends(get_redis_client),
                      current_user: User = Depends(get_current_user)):
    return notifications.recent_activity(redis_client, current_user.id, limit=limit)
