# fuel_dispatch/errors.py
from typing import Dict, Optional


class DeliveryError(Exception):
    """Base class for errors reported back to the caller."""

    status_code = 500

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(DeliveryError):
    status_code = 400


class PermissionDenied(DeliveryError):
    status_code = 403


class NotFoundError(DeliveryError):
    status_code = 404


class ConflictError(DeliveryError):
    """Transition not legal from the current state, or a conditional write was lost."""

    status_code = 409


class UpstreamError(DeliveryError):
    """The payment gateway or identity service failed."""

    status_code = 502


class SignatureError(DeliveryError):
    status_code = 400
