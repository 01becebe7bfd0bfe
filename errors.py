from typing import Optional


class ComplaintError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ValidationError(ComplaintError):
    """Malformed or oversized submission"""

    status_code = 400


class AuthenticationError(ComplaintError):
    status_code = 401


class NotFoundError(ComplaintError):
    """Referenced record or blob does not exist"""

    status_code = 404


class ConflictError(ComplaintError):
    status_code = 409


class StoreFailure(ComplaintError):
    """A relational or blob store operation failed.

    The message is meant for the caller; `cause` keeps the underlying
    exception so the response can carry it for diagnostics.
    """

    status_code = 500
