"""Typed exceptions for ledger failures.

Services raise these; the API boundary converts them into error responses
(see api.actions.dispatch_action). Each class carries a machine-readable
code that matches api.base.ErrorCodes.
"""


class LedgerError(Exception):
    """Base class for all ledger errors."""

    code = "INTERNAL_ERROR"


class ValidationError(LedgerError, ValueError):
    """
    Input is missing or malformed (no customer, no line items, bad amount).

    The caller should correct the input and resubmit.
    """

    code = "VALIDATION_ERROR"


class NotFoundError(LedgerError, LookupError):
    """Referenced record does not exist within the caller's company."""

    code = "NOT_FOUND"


class AuthorizationError(LedgerError):
    """
    No signed-in user, or the company is not owned by the caller.

    Raised before any read or write happens.
    """

    code = "AUTHORIZATION_DENIED"


class NotAuthenticatedError(AuthorizationError):
    """No user context is set."""

    code = "NOT_AUTHENTICATED"


class StateError(LedgerError):
    """Operation is not allowed in the record's current state."""

    code = "INVALID_STATE"


class AlreadyConvertedError(StateError):
    """Estimate was already converted to a sales invoice."""

    code = "ALREADY_CONVERTED"


class InvalidStateError(StateError):
    """Status transition or conversion not allowed from the current status."""

    code = "INVALID_STATE"


class OverAllocationError(StateError):
    """
    Allocation exceeds the payment's remaining amount or the invoice's
    outstanding balance.
    """

    code = "OVER_ALLOCATION"


class PersistenceError(LedgerError):
    """Database operation failed. The message is the driver's message."""

    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, pgcode: str | None = None):
        self.pgcode = pgcode
        super().__init__(message)

    @property
    def is_unique_violation(self) -> bool:
        """Whether the failure was a unique constraint violation (SQLSTATE 23505)."""
        return self.pgcode == "23505"

    @property
    def is_foreign_key_violation(self) -> bool:
        """Whether the row is still referenced elsewhere (SQLSTATE 23503)."""
        return self.pgcode == "23503"
