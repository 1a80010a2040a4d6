"""
Exception taxonomy for the sync engine.

Remote failures are classified by the gateway and consumed by the outbound
worker and the coordinator. Local failures never propagate past the store.
"""

from typing import Optional


class PlankyError(Exception):
    """Base exception for all Planky errors."""


# ============================================================================
# Remote failures
# ============================================================================


class RemoteError(PlankyError):
    """A classified failure returned by the remote board service."""

    retriable = False

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NetworkUnavailable(RemoteError):
    """The server could not be reached (connect error, timeout, transport)."""

    retriable = True


class RateLimited(RemoteError):
    """The server asked us to slow down."""

    retriable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code)


class ServerError(RemoteError):
    """The server failed with a 5xx response."""

    retriable = True


class Unauthorized(RemoteError):
    """The session token was rejected; a fresh login is required."""


class NotFound(RemoteError):
    """The target card, list or board no longer exists."""


class InvalidRequest(RemoteError):
    """The server rejected the payload, or returned one we cannot read."""


class MissingList(RemoteError):
    """The board has no list for a status; retried until the board is fixed."""

    retriable = True


# ============================================================================
# Local failures
# ============================================================================


class LocalPersistenceError(PlankyError):
    """Writing state to disk failed."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Could not write {path}: {reason}")


class TodoNotFoundError(PlankyError):
    """Todo with given ID doesn't exist."""

    def __init__(self, todo_id: str) -> None:
        self.todo_id = todo_id
        super().__init__(f"Todo {todo_id} not found")


class InvalidInputError(PlankyError):
    """Input validation failed."""


class NotLoggedInError(PlankyError):
    """No remote session is configured."""

    def __init__(self) -> None:
        super().__init__("Planka is not configured. Log in first.")
