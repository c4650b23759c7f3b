# errors.py
from fastapi import Request
from fastapi.responses import JSONResponse
import logging


class ConsultationError(Exception):
    """Base class for every error the booking and ledger services raise."""
    status_code = 400
    kind = "error"

    def __init__(self, detail, **extra):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self):
        payload = {"error": self.kind, "detail": self.detail}
        payload.update(self.extra)
        return payload


class ValidationError(ConsultationError):
    status_code = 422
    kind = "validation_error"

    def __init__(self, detail, field=None, **extra):
        super().__init__(detail, field=field, **extra)
        self.field = field


class NotFound(ConsultationError):
    status_code = 404
    kind = "not_found"


class PermissionDenied(ConsultationError):
    status_code = 403
    kind = "permission_denied"


class InvalidTransition(ConsultationError):
    status_code = 409
    kind = "invalid_transition"


class InvalidState(ConsultationError):
    status_code = 409
    kind = "invalid_state"


class Expired(ConsultationError):
    status_code = 410
    kind = "expired"


class InsufficientCredit(ConsultationError):
    status_code = 402
    kind = "insufficient_credit"


class CreditExhausted(InsufficientCredit):
    kind = "credit_exhausted"


class InsufficientBalance(ConsultationError):
    status_code = 402
    kind = "insufficient_balance"


class ConflictError(ConsultationError):
    status_code = 409
    kind = "conflict"


class TransientError(ConsultationError):
    status_code = 503
    kind = "transient_error"


class ServiceUnavailable(ConsultationError):
    status_code = 503
    kind = "service_unavailable"


ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        ValidationError, NotFound, PermissionDenied, InvalidTransition, InvalidState, Expired,
        InsufficientCredit, CreditExhausted, InsufficientBalance, ConflictError, TransientError,
        ServiceUnavailable,
    )
}


def error_from_payload(payload, status_code=None):
    """Rebuild a domain error from its JSON rendering (used by the client)."""
    payload = dict(payload or {})
    kind = payload.pop("error", None)
    detail = payload.pop("detail", None) or f"Request failed with status {status_code}"
    cls = ERRORS_BY_KIND.get(kind)
    if cls is None:
        if status_code is not None and status_code >= 500:
            return TransientError(detail, status=status_code)
        return ConsultationError(detail, status=status_code)
    return cls(detail, **payload)


async def consultation_error_handler(request: Request, exc: ConsultationError):
    logging.info(f"{request.method} {request.url.path} -> {exc.kind}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
