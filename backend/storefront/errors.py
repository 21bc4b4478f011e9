# Overview: Domain error taxonomy shared by services and routes.

"""
Storefront error taxonomy.

Services raise these; routes translate them into JSON responses with the
matching HTTP status. Anything that is NOT a StorefrontError (database
OperationalError, StaleDataError after the last retry, programming errors)
is treated as a transient/infrastructure failure and surfaces as a 5xx.
"""

from __future__ import annotations


class StorefrontError(Exception):
    """Base class for expected business rejections."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(StorefrontError):
    """400-level input problem, optionally with field-level messages."""
    status_code = 400

    def __init__(self, message: str, field_errors: dict[str, str] | None = None):
        super().__init__(message)
        self.field_errors = field_errors or {}

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.field_errors:
            body["field_errors"] = self.field_errors
        return body


class NotFoundError(StorefrontError):
    status_code = 404


class AuthorizationError(StorefrontError):
    """Caller is authenticated but not allowed to touch this resource."""
    status_code = 403


class ConflictError(StorefrontError):
    """409-level business rule conflict. Nothing was mutated."""
    status_code = 409


class InsufficientStock(ConflictError):
    def __init__(self, message: str, *, variant_id: int | None = None,
                 requested: int | None = None, available: int | None = None):
        super().__init__(message)
        self.variant_id = variant_id
        self.requested = requested
        self.available = available


class InvalidStatusTransition(ConflictError):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Cannot change status from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class InvalidAdjustment(ConflictError):
    pass


class DuplicateSlug(ConflictError):
    pass


class PaymentStateError(ConflictError):
    pass


class GatewayError(StorefrontError):
    """The external payment gateway refused or could not be reached."""
    status_code = 502
