"""Propagate user identity through the call stack using contextvars."""

from contextvars import ContextVar
from uuid import UUID
from contextlib import contextmanager

from ledger.exceptions import NotAuthenticatedError

_current_user_id: ContextVar[UUID | None] = ContextVar("current_user_id", default=None)


def get_current_user_id() -> UUID:
    """
    Get current user ID from context.

    Raises NotAuthenticatedError if no user context is set, before any
    tenant data is read or written.
    """
    user_id = _current_user_id.get()
    if user_id is None:
        raise NotAuthenticatedError("You must be signed in.")
    return user_id


def set_current_user_id(user_id: UUID) -> None:
    """
    Set current user ID in context.

    Called by UserContextMiddleware once the auth collaborator has resolved
    the caller.
    """
    _current_user_id.set(user_id)


def clear_current_user_id() -> None:
    """
    Clear user context.

    Must be called in a finally block to prevent context leakage between
    requests.
    """
    _current_user_id.set(None)


@contextmanager
def user_context(user_id: UUID):
    """
    Context manager for temporarily setting user context.

    Example:
        with user_context(owner_id):
            estimate = estimate_service.get(company_id, estimate_id)
    """
    previous = _current_user_id.get()
    set_current_user_id(user_id)
    try:
        yield
    finally:
        if previous is None:
            clear_current_user_id()
        else:
            set_current_user_id(previous)
