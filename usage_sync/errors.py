"""
Error types shared by the client, the server and the CLI.

Every failure the reconciliation engine can report derives from
UsageSyncError so callers can catch the whole family at one seam.
"""

from typing import List, Optional


class UsageSyncError(Exception):
    """Base class for all usage-sync failures."""


class AuthenticationError(UsageSyncError):
    """Bearer credential is missing, unknown or expired."""


class ValidationError(UsageSyncError):
    """Submission payload is malformed or out of range.

    Carries the itemized list of problems so the server can return them
    verbatim and the client can print them one per line.
    """

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])


class NetworkError(UsageSyncError):
    """Server could not be reached or did not answer in time."""


class SubmissionError(UsageSyncError):
    """Server rejected a submission for a reason the client cannot classify."""

    def __init__(self, status_code: int, message: str, details: Optional[List[str]] = None):
        super().__init__(f"{message} (HTTP {status_code})")
        self.status_code = status_code
        self.message = message
        self.details = list(details or [])


class PersistenceError(UsageSyncError):
    """Storage failed mid-write; the transaction was rolled back."""
