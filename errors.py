"""Error taxonomy shared by the catalog, the loan ledger and both UI layers.

Every error carries a short machine-readable ``code`` and a ``details``
dict (offending field, requested vs. available quantity, ...) so the API
and the CLI can render a useful message without parsing strings.
"""

from typing import Any, Dict


class LibraryError(Exception):
    """Base class for all catalog and ledger failures."""

    code = "library_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(LibraryError):
    """Bad input shape or range."""

    code = "validation_error"


class NotFoundError(LibraryError):
    code = "not_found"


class UnavailableError(LibraryError):
    """Not enough copies on the shelf when availability was checked."""

    code = "unavailable"


class ConcurrentConflictError(LibraryError):
    """The atomic decrement found fewer copies than the earlier read did.

    Retryable: callers retry once (see ``library.retry_on_conflict``).
    """

    code = "concurrent_conflict"


class NoActiveLoanError(LibraryError):
    code = "no_active_loan"


class ActiveLoansError(LibraryError):
    """A book cannot be deleted while copies of it are still on loan."""

    code = "active_loans"
