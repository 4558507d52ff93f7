# Overview: Typed failure kinds raised by the service layer.

"""
Error taxonomy for the order / stock / payment core.

Every service failure is one of these kinds. Callers branch on the class
(or on ``kind``); the webhook route maps ``http_status`` onto its response.

- NotFoundError: entity absent, or present but in another business
- ForbiddenError: role or ownership check failed
- InvalidStateError: operation not permitted in the current status
- ValidationError: malformed input (non-positive amounts, zero delta, ...)
- ConcurrencyConflictError: optimistic retry budget exhausted
- GatewayError: the payment gateway call failed
"""


class DomainError(Exception):
    """Base class for service-layer failures."""

    kind = "domain_error"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind, "details": self.details}


class NotFoundError(DomainError):
    kind = "not_found"
    http_status = 404


class ForbiddenError(DomainError):
    kind = "forbidden"
    http_status = 403


class InvalidStateError(DomainError):
    kind = "invalid_state"
    http_status = 409


class ValidationError(DomainError, ValueError):
    """400-level input problem."""

    kind = "validation"
    http_status = 400


class ConcurrencyConflictError(DomainError):
    kind = "concurrency_conflict"
    http_status = 409


class GatewayError(DomainError):
    """The external payment gateway rejected or failed a call."""

    kind = "gateway_error"
    http_status = 502
