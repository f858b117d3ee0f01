"""
API Error Taxonomy

Every failure an API client can raise, with the user-facing message as
the exception text. Authentication failures are singled out: the sync
engine pauses on them instead of counting a retry.
"""

from typing import Optional


class ExpenseAPIError(Exception):
    """Base exception for API client errors."""

    default_message = "Unexpected server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MissingAuthSessionError(ExpenseAPIError):
    """No signed-in session to call the server with."""

    default_message = "Sign in is required before syncing to the server."


class UnauthorizedError(ExpenseAPIError):
    """The server rejected the session."""

    default_message = "Your session expired. Please sign in again."


class InvalidResponseError(ExpenseAPIError):
    default_message = "The server returned an invalid response."


class ServerError(ExpenseAPIError):
    """The server answered with an error, or the request could not be prepared."""
    pass


class LimitExceededError(ExpenseAPIError):
    """The daily voice limit was reached."""

    default_message = "Daily voice limit reached"


def is_authentication_error(error: BaseException) -> bool:
    return isinstance(error, (MissingAuthSessionError, UnauthorizedError))
