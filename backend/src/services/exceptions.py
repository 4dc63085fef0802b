"""Shared exceptions for service layer operations."""


class AuthError(Exception):
    """Base class for authentication and session failures."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class UnauthorizedError(AuthError):
    """Bad, expired or unknown credential or session."""


class ServiceUnavailableError(AuthError):
    """
    Upstream identity or OAuth provider unreachable or not configured.

    Distinct from UnauthorizedError so clients can tell "bad credentials" from
    "retry later".
    """


class NotFoundError(AuthError):
    """Session or profile absent."""



class BadRequestError(AuthError):
    """Well-formed request that cannot be served, such as a spent login ticket."""
