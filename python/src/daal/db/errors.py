"""
Data access error taxonomy.

Adapters raise these internally; the envelope decorator in base.py turns every
one of them into a failed APIResponse, so callers never see them directly.
"""

from __future__ import annotations


class DaalError(Exception):
    """Base class for all data access errors."""


class ValidationError(DaalError):
    """The request is malformed or would be unsafe to execute."""


class AuthError(DaalError):
    """
    Invalid credentials, missing/expired token, or an unauthorized response.

    `revoke` marks failures that invalidate the current session; a rejected
    sign-in attempt does not end an existing session.
    """

    def __init__(self, message: str, revoke: bool = True) -> None:
        super().__init__(message)
        self.revoke = revoke


class NotFoundError(DaalError):
    """A referenced table or record does not exist."""


class NetworkError(DaalError):
    """Transport failure or non-2xx HTTP status."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class BackendError(DaalError):
    """The underlying client, driver or store failed in an unclassified way."""
