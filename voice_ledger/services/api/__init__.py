"""
API Client Package

The device's view of the server: parse captures, update/delete/restore
expense rows, and exchange metadata.
"""

from voice_ledger.services.api.errors import (
    ExpenseAPIError,
    InvalidResponseError,
    LimitExceededError,
    MissingAuthSessionError,
    ServerError,
    UnauthorizedError,
    is_authentication_error,
)
from voice_ledger.services.api.interface import ExpenseAPIClientInterface
from voice_ledger.services.api.local_client import InProcessExpenseAPIClient
from voice_ledger.services.api.http_client import HttpExpenseAPIClient, jwt_subject
from voice_ledger.services.api.fallback import FallbackExpenseAPIClient

__all__ = [
    # Interface
    "ExpenseAPIClientInterface",
    # Errors
    "ExpenseAPIError",
    "InvalidResponseError",
    "LimitExceededError",
    "MissingAuthSessionError",
    "ServerError",
    "UnauthorizedError",
    "is_authentication_error",
    # Implementations
    "FallbackExpenseAPIClient",
    "HttpExpenseAPIClient",
    "InProcessExpenseAPIClient",
    "jwt_subject",
]
