"""Error taxonomy for the distributor ledger.

Three failure classes reach callers:

* :class:`ValidationError` - the request was rejected before any write.
* :class:`PersistenceError` - a store call failed; zero or partial writes may
  have happened (``partial_writes`` names what may remain).
* :class:`DerivedSyncWarning` - a production or transport sibling could not be
  kept in step with its sale while the sale itself was written.

Update and delete operations collect sibling problems in a :class:`SyncResult`
instead of raising, so the caller decides whether to surface them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence


class LedgerError(Exception):
    """Base class for every error raised by the ledger packages."""


class ValidationError(LedgerError, ValueError):
    """Raised when required input is missing or invalid before any write."""


class MissingReferenceError(ValidationError):
    """Raised when a referenced customer or transaction is unknown."""


class PersistenceError(LedgerError):
    """Raised when the ledger store rejects or fails a read or write."""

    def __init__(self, message: str, *, partial_writes: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.partial_writes = tuple(partial_writes)


class DerivedSyncWarning(LedgerError):
    """A derived record fell out of step with its originating sale."""

    def __init__(self, message: str, *, sale_id: Optional[str] = None, record=None) -> None:
        super().__init__(message)
        self.sale_id = sale_id
        self.record = record


@dataclass
class SyncResult:
    """Outcome of a primary ledger mutation and its sibling bookkeeping."""

    primary_ok: bool = True
    sibling_warnings: List[DerivedSyncWarning] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return self.primary_ok and not self.sibling_warnings

    def raise_for_warnings(self) -> None:
        """Escalate the first collected sibling warning, if any."""
        if self.sibling_warnings:
            raise self.sibling_warnings[0]


_USER_MESSAGES = (
    (MissingReferenceError, "The referenced customer or transaction does not exist."),
    (ValidationError, "Some required information is missing or invalid."),
    (PersistenceError, "The ledger could not be saved. Please try again."),
    (DerivedSyncWarning, "The sale was saved but its production or transport records need review."),
)


def user_message(error: BaseException) -> str:
    """Return the single human-readable message for ``error``'s failure class."""
    for error_type, message in _USER_MESSAGES:
        if isinstance(error, error_type):
            return message
    return "An unexpected error occurred."


__all__ = [
    "LedgerError",
    "ValidationError",
    "MissingReferenceError",
    "PersistenceError",
    "DerivedSyncWarning",
    "SyncResult",
    "user_message",
]
