# client.py
# HTTP client for patient/doctor apps.
#
# The local cache is written only from server responses. Nothing is updated
# optimistically: a mutating call either returns the authoritative record,
# which replaces the cached one, or raises. On InvalidTransition/ConflictError
# the affected appointment is re-fetched before the error is re-raised so the
# cache never keeps showing the losing state.
import time
import logging

import requests

from .errors import error_from_payload, TransientError, ServiceUnavailable, InvalidTransition, ConflictError
from .resilience import CircuitBreaker, with_retry


class LocalCache:
    def __init__(self):
        self.appointments = {}
        self.sessions = {}

    def put_appointment(self, snapshot):
        previous = self.appointments.get(snapshot["id"])
        self.appointments[snapshot["id"]] = snapshot
        return previous

    def put_session(self, snapshot):
        if snapshot["status"] == "active":
            self.sessions[snapshot["id"]] = snapshot
        else:
            self.sessions.pop(snapshot["id"], None)
        return snapshot


class ConsultationClient:
    def __init__(self, base_url, token=None, timeout=5.0, max_attempts=3, backoff=0.5, breaker=None,
                 http=None, sleep=time.sleep):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=30)
        self.http = http or requests.Session()
        self.cache = LocalCache()
        self._request = with_retry(max_attempts=max_attempts, delay=backoff, sleep=sleep)(self._send)

    def _send(self, method, path, **kwargs):
        if self.breaker.is_open(self.base_url):
            raise ServiceUnavailable(f"{self.base_url} is unavailable, try again later")
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.http.request(method, f"{self.base_url}{path}", headers=headers,
                                         timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            self.breaker.record_failure(self.base_url)
            raise TransientError(f"{method} {path} failed: {e}")
        if response.status_code >= 500:
            self.breaker.record_failure(self.base_url)
            raise TransientError(f"{method} {path} returned {response.status_code}")
        self.breaker.record_success(self.base_url)
        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            raise error_from_payload(payload, response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _appointment_call(self, appointment_id, method, path, **kwargs):
        try:
            snapshot = self._request(method, path, **kwargs)
        except (InvalidTransition, ConflictError):
            self.get_appointment(appointment_id)
            raise
        self.cache.put_appointment(snapshot)
        return snapshot

    def login(self, email, password):
        payload = self._request("POST", "/token", data={"username": email, "password": password})
        self.token = payload["access_token"]
        return self.token

    def create_appointment(self, doctor_id, date, time, consultation_type, reason=None):
        snapshot = self._request("POST", "/appointment", json={
            "doctorId": doctor_id, "date": date, "time": time, "type": consultation_type, "reason": reason,
        })
        self.cache.put_appointment(snapshot)
        return snapshot

    def get_appointment(self, appointment_id):
        snapshot = self._request("GET", f"/appointment/{appointment_id}")
        self.cache.put_appointment(snapshot)
        return snapshot

    def list_appointments(self):
        return self._request("GET", "/appointments")

    def update_status(self, appointment_id, status, reason=None):
        return self._appointment_call(appointment_id, "PATCH", f"/appointment/{appointment_id}/status",
                                      json={"status": status, "reason": reason})

    def accept(self, appointment_id):
        return self.update_status(appointment_id, "confirmed")

    def reject(self, appointment_id, reason=None):
        return self.update_status(appointment_id, "cancelled", reason)

    def cancel(self, appointment_id, reason=None):
        return self.update_status(appointment_id, "cancelled", reason)

    def propose_reschedule(self, appointment_id, date, time, reason=None):
        return self._appointment_call(appointment_id, "PATCH", f"/appointment/{appointment_id}", json={
            "action": "propose", "date": date, "time": time, "reason": reason,
        })

    def respond_to_reschedule(self, appointment_id, accept):
        return self._appointment_call(appointment_id, "PATCH", f"/appointment/{appointment_id}",
                                      json={"action": "accept" if accept else "decline"})

    def delete_appointment(self, appointment_id):
        self._request("DELETE", f"/appointment/{appointment_id}")
        self.cache.appointments.pop(appointment_id, None)

    def get_subscription(self):
        return self._request("GET", "/subscription")

    def purchase(self, plan_id):
        return self._request("POST", "/subscription/purchase", json={"planId": plan_id})

    def start_session(self, appointment_id):
        return self.cache.put_session(self._request("POST", "/session/start", json={"appointmentId": appointment_id}))

    def heartbeat(self, session_id):
        return self.cache.put_session(self._request("POST", "/session/heartbeat", json={"sessionId": session_id}))

    def end_session(self, session_id, reason="manual"):
        return self.cache.put_session(self._request("POST", "/session/end",
                                                    json={"sessionId": session_id, "reason": reason}))

    def get_wallet(self):
        return self._request("GET", "/wallet")

    def list_transactions(self, page=1, page_size=20):
        return self._request("GET", "/wallet/transactions", params={"page": page, "pageSize": page_size})

    def withdraw(self, amount, method, details=None):
        return self._request("POST", "/wallet/withdraw",
                             json={"amount": str(amount), "method": method, "details": details or {}})

    def reconcile(self):
        """Overwrite the local cache with server state and report what was stale."""
        conflicts = []
        authoritative = self.list_appointments()
        seen = set()
        for snapshot in authoritative:
            seen.add(snapshot["id"])
            previous = self.cache.put_appointment(snapshot)
            if previous is not None and (previous["status"], previous["version"]) != (snapshot["status"], snapshot["version"]):
                conflicts.append({"appointment_id": snapshot["id"], "cached": previous["status"],
                                  "actual": snapshot["status"]})
        for appointment_id in set(self.cache.appointments) - seen:
            self.cache.appointments.pop(appointment_id)
            conflicts.append({"appointment_id": appointment_id, "cached": "present", "actual": "deleted"})

        drift = []
        for session_id, cached in list(self.cache.sessions.items()):
            actual = self.heartbeat(session_id)
            if actual["remaining_time_minutes"] != cached["remaining_time_minutes"] or actual["status"] != "active":
                drift.append({"session_id": session_id, "cached": cached["remaining_time_minutes"],
                              "actual": actual["remaining_time_minutes"], "status": actual["status"]})
        if conflicts or drift:
            logging.info(f"Client reconciliation corrected {len(conflicts)} appointment(s), {len(drift)} session(s)")
        return {"conflicts": conflicts, "session_drift": drift}
