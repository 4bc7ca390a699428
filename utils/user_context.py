"""Propagate the authenticated user and organization through the call stack."""

from contextvars import ContextVar
from uuid import UUID

_current_user_id: ContextVar[UUID | None] = ContextVar("current_user_id", default=None)
_current_organization_id: ContextVar[int | None] = ContextVar(
    "current_organization_id", default=None
)


def current_request_context() -> tuple[UUID | None, int | None]:
    """
    (user_id, organization_id) of the current request.

    Both are None outside an authenticated request; organization tokens
    carry an organization and no user.
    """
    return _current_user_id.get(), _current_organization_id.get()


def set_request_context(user_id: UUID | None, organization_id: int | None) -> None:
    """
    Set user and organization for the current request.

    Called by auth middleware after validating the bearer token.
    """
    _current_user_id.set(user_id)
    _current_organization_id.set(organization_id)


def clear_request_context() -> None:
    """
    Clear request context.

    Must be called in a finally block to prevent context leakage.
    """
    _current_user_id.set(None)
    _current_organization_id.set(None)
