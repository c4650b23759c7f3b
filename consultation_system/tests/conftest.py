import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from consultation_system.app import create_app, credits
from consultation_system.app.appointments import create_appointment, accept_appointment
from consultation_system.app.auth import create_access_token
from consultation_system.app.dependencies import get_db, get_redis_client
from consultation_system.app.models import Base, User, Plan

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'consultation.db'}",
                           connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def now():
    return NOW


def make_user(db, role, name, country=None):
    user = User(name=name, email=f"{name.lower().replace(' ', '.')}@example.com", hashed_password="not-a-hash",
                role=role, country=country)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def doctor(db):
    return make_user(db, "doctor", "Doctor Banda", country="Malawi")


@pytest.fixture
def other_doctor(db):
    return make_user(db, "doctor", "Doctor Smith", country="Kenya")


@pytest.fixture
def patient(db):
    return make_user(db, "patient", "Patient Phiri")


@pytest.fixture
def other_patient(db):
    return make_user(db, "patient", "Patient Mwale")


@pytest.fixture
def admin(db):
    return make_user(db, "admin", "Admin User")


def make_plan(db, name="Basic Life", currency="MWK", text=10, voice=2, video=1, session_minutes=30, price=999):
    plan = Plan(name=name, price=price, currency=currency, text_sessions=text, voice_calls=voice,
                video_calls=video, session_minutes=session_minutes, duration_days=30, is_active=True)
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def plan(db):
    return make_plan(db)


@pytest.fixture
def subscription(db, patient, plan, now):
    return credits.purchase(db, patient.id, plan.id, carry_over=False, now=now - timedelta(days=1))


def book(db, patient, doctor, now, at=None, consultation_type="video", redis_client=None):
    """Create a pending appointment `at` (default: one hour after now)."""
    at = at or now + timedelta(hours=1)
    return create_appointment(db, patient, doctor.id, at.strftime("%Y-%m-%d"), at.strftime("%H:%M"),
                              consultation_type, reason="Follow-up", now=now, redis_client=redis_client)


def book_confirmed(db, patient, doctor, now, at=None, consultation_type="video", redis_client=None):
    appointment = book(db, patient, doctor, now, at=at, consultation_type=consultation_type,
                       redis_client=redis_client)
    return accept_appointment(db, appointment.id, doctor, now=now, redis_client=redis_client)


@pytest.fixture
def confirmed_appointment(db, patient, doctor, subscription, now, redis_client):
    return book_confirmed(db, patient, doctor, now, redis_client=redis_client)


@pytest.fixture
def client(session_factory, redis_client):
    app = create_app()

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_client] = lambda: redis_client
    with TestClient(app) as test_client:
        yield test_client


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}
