"""
Domain exceptions for the ledger.

Settlement failures fall into two groups: conditions that will
never succeed on retry (NotFound, PermissionDenied, Malformed)
and transaction contention (TransientConflict), which is safe
to retry because the whole transaction was aborted.

A debt that is already closed is not an error. Closing it again
returns the original settlement result.
"""


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class NotFound(LedgerError):
    """Raised when a referenced document does not exist."""
    pass


class PermissionDenied(LedgerError):
    """Raised when the actor is not a member of the apartment."""
    pass


class Malformed(LedgerError):
    """
    Raised when a stored debt fails its integrity checks.

    Points at an earlier data-integrity bug. Never retried and
    never repaired in place.
    """
    pass


class InvalidRequest(LedgerError):
    """Raised when caller input is rejected before any write."""
    pass


class TransientConflict(LedgerError):
    """Raised when a concurrent write aborted the transaction."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class MalformedDocument(LedgerError):
    """Raised when a stored document cannot be mapped to its schema."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Document {path} is malformed: {reason}")
        self.path = path
        self.reason = reason
