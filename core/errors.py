"""
core/errors.py -- Error taxonomy raised by the authentication core.

Every failure a core operation can report is one of these kinds. The core
never builds HTTP responses; api/main.py maps each kind to a status code in a
single exception handler, so the mapping lives at the transport boundary.

InvalidCredentials is deliberately undifferentiated: wrong email, wrong
password and wrong MFA code all surface as the same kind so responses never
reveal which factor failed (account enumeration).

Layer rule: core/ is the kernel. No imports from api/, auth/, or notify/.
"""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class for every error the core raises on purpose."""

    code: str = "auth_error"
    default_message: str = "Authentication error."

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    default_message = "Invalid email, password, or verification code."


class InvalidToken(AuthError):
    """A refresh, reset, verification, or MFA ticket token is unusable."""

    code = "invalid_token"
    default_message = "Invalid or expired token."


class TokenExpired(InvalidToken):
    code = "token_expired"
    default_message = "Token has expired."


class TokenMalformed(InvalidToken):
    code = "token_malformed"
    default_message = "Token is malformed."


class TokenAlreadyConsumed(InvalidToken):
    code = "token_consumed"
    default_message = "Token has already been used."


class TooManyRequests(AuthError):
    code = "rate_limited"
    default_message = "Too many requests."


class AccountInactive(AuthError):
    code = "account_inactive"
    default_message = "This account has been deactivated."


class EmailNotVerified(AuthError):
    code = "email_not_verified"
    default_message = "Please verify your email address first."


class Unavailable(AuthError):
    """A downstream dependency (database, mail relay) failed or timed out."""

    code = "unavailable"
    default_message = "Service temporarily unavailable."


class AlreadyExists(AuthError):
    code = "conflict"
    default_message = "A user with that email already exists."


class ValidationFailed(AuthError):
    code = "validation_error"
    default_message = "Request validation failed."

    def __init__(self, errors: list[str], message: Optional[str] = None) -> None:
        self.errors = list(errors)
        super().__init__(message, detail="; ".join(self.errors) or None)


class NotFound(AuthError):
    code = "not_found"
    default_message = "Not found."


class Forbidden(AuthError):
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class StaleRecordError(Exception):
    """Optimistic save lost: the row changed since it was read.

    Raised by the store, not by the core flows. Flows that consume a token
    translate it to InvalidToken because the concurrent writer consumed it first.
    """


class DeliveryError(Exception):
    """A notification could not be rendered or handed to the mail transport.

    Not an AuthError: flows log it and carry on, so it never reaches a client.
    """
