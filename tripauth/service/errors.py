from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines both an HTTP-style status_code and a stable
    error_code so any transport can map failures without inspecting messages:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - timeout (504)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidProfile(ValidationError):
    """Account attributes are missing or ill-typed."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """A bearer token failed verification."""


class MalformedToken(TokenError):
    pass


class BadSignature(TokenError):
    pass


class WrongTokenType(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class TokenNotYetValid(TokenError):
    pass


class AuthenticationFailed(AuthenticationError):
    """The identity provider round trip did not produce a usable identity.

    The upstream cause, when there is one, is chained on ``__cause__``.
    """


class ExchangeFailed(AuthenticationFailed):
    pass


class ProfileFetchFailed(AuthenticationFailed):
    pass


class EmailNotVerified(AuthenticationFailed):
    pass


class SessionInvalid(AuthenticationError):
    """Session is deactivated or past its expiry."""


class SubjectMismatch(AuthenticationError):
    """Token subject does not own the session it resolved to."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SessionNotFound(NotFoundError):
    pass


class AccountNotFound(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateIdentity(ConflictError):
    """Another active account already holds this external id, email or username."""


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class OperationTimeout(ServerError):
    """A store or identity-provider call exceeded its deadline (504)."""
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidProfile",
    "AuthenticationError",
    "TokenError",
    "MalformedToken",
    "BadSignature",
    "WrongTokenType",
    "TokenExpired",
    "TokenNotYetValid",
    "AuthenticationFailed",
    "ExchangeFailed",
    "ProfileFetchFailed",
    "EmailNotVerified",
    "SessionInvalid",
    "SubjectMismatch",
    "NotFoundError",
    "SessionNotFound",
    "AccountNotFound",
    "ConflictError",
    "DuplicateIdentity",
    "ServerError",
    "OperationTimeout",
]
