from __future__ import annotations


class AuthError(Exception):
    """
    Base for every failure that is reported to the caller as "unauthorized".
    The concrete subclass is kept for logs only; responses never expose it.
    """


# ---- credentials ----
class InvalidCredentials(AuthError):
    pass


class UnknownIdentity(InvalidCredentials):
    pass


class BadPassword(InvalidCredentials):
    pass


# ---- tokens ----
class TokenError(AuthError):
    pass


class MissingToken(TokenError):
    pass


class MalformedToken(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


class BadSignature(TokenError):
    pass


# ---- sessions ----
class SessionNotFound(AuthError):
    """Revoked, rotated, swept or never issued."""


# ---- administrative / server side ----
class IdentityExists(Exception):
    pass


class ConfigurationError(RuntimeError):
    """Fatal at startup: missing secrets or an invalid duration ordering."""


class InternalFault(Exception):
    """Registry or codec failure unrelated to the caller's input."""
