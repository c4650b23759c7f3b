import json
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
import requests

from consultation_system.app.client import ConsultationClient
from consultation_system.app.errors import (
    TransientError, ServiceUnavailable, InvalidTransition, ValidationError, ConflictError,
)
from consultation_system.app.resilience import CircuitBreaker, CircuitState, with_retry


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def make_response(status_code, payload=None):
    response = mock.Mock()
    response.status_code = status_code
    response.content = b"" if payload is None else json.dumps(payload).encode()
    response.json.return_value = payload
    return response


def appointment(status="pending", version=1, appointment_id=1):
    return {"id": appointment_id, "status": status, "version": version}


def session(remaining, status="active", session_id=9):
    return {"id": session_id, "status": status, "remaining_time_minutes": remaining}


@pytest.fixture
def http():
    return mock.Mock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def api(http, sleeps):
    return ConsultationClient("http://api.test/", token="abc", http=http, sleep=sleeps.append)


def test_sends_bearer_token_and_caches_response(api, http):
    http.request.return_value = make_response(200, appointment())
    assert api.get_appointment(1) == appointment()
    args, kwargs = http.request.call_args
    assert args == ("GET", "http://api.test/appointment/1")
    assert kwargs["headers"]["Authorization"] == "Bearer abc"
    assert kwargs["timeout"] == 5.0
    assert api.cache.appointments[1]["status"] == "pending"


def test_login_stores_token(api, http):
    http.request.return_value = make_response(200, {"access_token": "new-token", "token_type": "bearer"})
    assert api.login("grace@example.com", "pw") == "new-token"
    assert api.token == "new-token"


def test_retries_server_errors_with_backoff(api, http, sleeps):
    http.request.side_effect = [make_response(503), make_response(502), make_response(200, appointment())]
    assert api.get_appointment(1)["status"] == "pending"
    assert http.request.call_count == 3
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_max_attempts(api, http, sleeps):
    http.request.side_effect = requests.ConnectionError("connection refused")
    with pytest.raises(TransientError):
        api.get_appointment(1)
    assert http.request.call_count == 3
    assert sleeps == [0.5, 1.0]
    assert api.cache.appointments == {}


def test_client_errors_are_not_retried(api, http):
    http.request.return_value = make_response(
        422, {"error": "validation_error", "detail": "Appointment date/time is in the past", "field": "date"})
    with pytest.raises(ValidationError) as excinfo:
        api.create_appointment(2, "2020-01-01", "10:00", "text")
    assert excinfo.value.field == "date"
    assert http.request.call_count == 1
    assert api.cache.appointments == {}


def test_lost_race_refreshes_cache_from_server(api, http):
    api.cache.put_appointment(appointment("pending"))
    http.request.side_effect = [
        make_response(409, {"error": "invalid_transition", "detail": "Appointment 1 is now confirmed",
                            "status": "confirmed"}),
        make_response(200, appointment("confirmed", version=2)),
    ]
    with pytest.raises(InvalidTransition) as excinfo:
        api.cancel(1, "Changed my mind")
    assert excinfo.value.extra["status"] == "confirmed"
    assert api.cache.appointments[1]["status"] == "confirmed"


def test_conflict_is_not_applied_optimistically(api, http):
    api.cache.put_appointment(appointment("confirmed", version=2))
    http.request.side_effect = [
        make_response(409, {"error": "conflict", "detail": "modified concurrently"}),
        make_response(200, appointment("reschedule_proposed", version=3)),
    ]
    with pytest.raises(ConflictError):
        api.propose_reschedule(1, "2025-01-12", "09:30")
    assert api.cache.appointments[1]["version"] == 3


def test_circuit_opens_and_recovers(http, sleeps):
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=clock)
    api = ConsultationClient("http://api.test", http=http, breaker=breaker, max_attempts=1, sleep=sleeps.append)
    http.request.side_effect = requests.Timeout("timed out")

    for _ in range(2):
        with pytest.raises(TransientError):
            api.get_wallet()
    assert breaker.state("http://api.test") == CircuitState.OPEN

    with pytest.raises(ServiceUnavailable):
        api.get_wallet()
    assert http.request.call_count == 2

    clock.advance(31)
    http.request.side_effect = None
    http.request.return_value = make_response(200, {"balance": "0.00"})
    assert api.get_wallet() == {"balance": "0.00"}
    assert breaker.state("http://api.test") == CircuitState.CLOSED


def test_failed_trial_call_reopens_circuit():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=10, clock=clock)
    for _ in range(3):
        breaker.record_failure("backend")
    assert breaker.is_open("backend")
    clock.advance(10)
    assert not breaker.is_open("backend")
    assert breaker.state("backend") == CircuitState.HALF_OPEN
    breaker.record_failure("backend")
    assert breaker.is_open("backend")


def test_retry_does_not_retry_open_circuit():
    calls = []

    @with_retry(max_attempts=3, delay=0.1, retry_on=(TransientError, ServiceUnavailable), sleep=lambda s: None)
    def call():
        calls.append(1)
        raise ServiceUnavailable("open")

    with pytest.raises(ServiceUnavailable):
        call()
    assert calls == [1]


def test_retry_backs_off_exponentially_then_reraises():
    calls, sleeps = [], []

    @with_retry(max_attempts=4, delay=0.25, sleep=sleeps.append)
    def call():
        calls.append(1)
        raise TransientError("still down")

    with pytest.raises(TransientError):
        call()
    assert len(calls) == 4
    assert sleeps == [0.25, 0.5, 1.0]


def test_reconcile_overwrites_stale_cache(api, http):
    api.cache.put_appointment(appointment("pending", version=1, appointment_id=1))
    api.cache.put_appointment(appointment("cancelled", version=2, appointment_id=2))
    api.cache.put_appointment(appointment("pending", version=1, appointment_id=3))
    api.cache.put_session(session(25))

    http.request.side_effect = [
        make_response(200, [appointment("confirmed", version=2, appointment_id=1),
                            appointment("cancelled", version=2, appointment_id=2)]),
        make_response(200, session(18)),
    ]
    report = api.reconcile()

    assert report["conflicts"] == [
        {"appointment_id": 1, "cached": "pending", "actual": "confirmed"},
        {"appointment_id": 3, "cached": "present", "actual": "deleted"},
    ]
    assert report["session_drift"] == [{"session_id": 9, "cached": 25, "actual": 18, "status": "active"}]
    assert api.cache.appointments[1]["status"] == "confirmed"
    assert 3 not in api.cache.appointments
    assert api.cache.sessions[9]["remaining_time_minutes"] == 18


def test_ended_sessions_leave_the_cache(api, http):
    api.cache.put_session(session(1))
    http.request.side_effect = [make_response(200, []), make_response(200, session(0, status="ended"))]
    report = api.reconcile()
    assert report["session_drift"][0]["status"] == "ended"
    assert api.cache.sessions == {}
