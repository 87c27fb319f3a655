"""Exceptions raised by the payment integrity layer."""

from typing import Any, Optional


class PaymentIntegrityError(Exception):
    """Base exception for all payment integrity errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class AuthorityViolation(PaymentIntegrityError):
    """A subsystem attempted a transition it may not make and enforcement blocked it."""

    def __init__(self, message: str, request: Any = None):
        super().__init__(message, code="authority_violation")
        self.request = request


class InvariantViolation(PaymentIntegrityError):
    """A mutation would break a payment or session data invariant."""

    def __init__(self, message: str):
        super().__init__(message, code="invariant_violation")


class RecordNotFound(PaymentIntegrityError):
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", code="not_found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidCallback(PaymentIntegrityError):
    """A gateway callback payload could not be parsed."""

    def __init__(self, message: str):
        super().__init__(message, code="invalid_callback")


class EnforcementChangeDenied(PaymentIntegrityError):
    """An enforcement level change lacked a permitted context or a reason."""

    def __init__(self, message: str):
        super().__init__(message, code="enforcement_change_denied")


class GatewayError(PaymentIntegrityError):
    """The payment gateway rejected a request or returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None, raw_response: Any = None):
        super().__init__(message, code="gateway_error")
        self.status_code = status_code
        self.raw_response = raw_response


class GatewayUnreachable(GatewayError):
    """The payment gateway could not be reached or did not answer in time."""
