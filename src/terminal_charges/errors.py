"""Typed failures raised by the charge engine and its collaborators."""

from typing import Optional


class ChargeError(Exception):
    """Base class for errors that carry a user-facing message and an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ChargeError):
    """Charge, order, terminal or assignment does not exist."""

    status_code = 404


class ConflictError(ChargeError):
    """Terminal busy, duplicate assignment, or an entity in an unexpected state."""

    status_code = 409


class UnauthorizedError(ChargeError):
    """Bad webhook signature or access to a terminal outside the caller's organization."""

    status_code = 401


class UpstreamUnavailableError(ChargeError):
    """Gateway network failure, 5xx response or authentication failure."""

    status_code = 503

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        upstream_status: Optional[int] = None,
    ):
        super().__init__(message, status_code)
        self.upstream_status = upstream_status


class ChargeValidationError(ChargeError):
    """Malformed amount or identifiers."""

    status_code = 400
