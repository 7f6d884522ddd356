"""Typed errors for the login flow.

Rate-limit outcomes are distinct subclasses so callers can branch on the
type instead of matching message text::

    try:
        tracker.check_rate_limit(ip, email)
    except AttemptsRemainingWarning as warning:
        # soft: keep going, surface warning.remaining to the user
        ...
    except TooManyAttempts:
        # hard: deny without checking credentials
        ...
"""


class AUTH_ERROR_CODES:
    INVALID_CREDENTIALS = "auth/invalid-credentials"
    TOO_MANY_REQUESTS = "auth/too-many-requests"
    ATTEMPTS_REMAINING = "auth/attempts-remaining"
    SERVER_ERROR = "auth/server-error"


class AuthError(Exception):
    """Authentication failure that is safe to show to the end user."""

    def __init__(self, message: str, code: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class RateLimitError(AuthError):
    """Base for the outcomes of a rate-limit check."""


def attempt_noun(count: int) -> str:
    """``attempt`` for one, ``attempts`` otherwise."""
    return "attempt" if count == 1 else "attempts"


class TooManyAttempts(RateLimitError):
    """The (origin, identifier) pair used up its allowance for the window.

    ``attempts`` is the failure count that triggered the lockout, when known.
    """

    def __init__(
        self,
        window_minutes: int,
        message: str | None = None,
        attempts: int | None = None,
    ) -> None:
        # Rolling window: state the duration, never an unlock time
        super().__init__(
            message
            or "Too many failed login attempts. "
            f"Please try again after {window_minutes} minutes.",
            AUTH_ERROR_CODES.TOO_MANY_REQUESTS,
            {"window_minutes": window_minutes},
        )
        self.window_minutes = window_minutes
        self.attempts = attempts


class AttemptsRemainingWarning(RateLimitError):
    """Soft outcome: the attempt may proceed but the lockout is close."""

    def __init__(self, remaining: int, message: str | None = None) -> None:
        super().__init__(
            message
            or f"{remaining} login {attempt_noun(remaining)} remaining "
            "before temporary lockout.",
            AUTH_ERROR_CODES.ATTEMPTS_REMAINING,
            {"remaining": remaining},
        )
        self.remaining = remaining


class StorageUnavailable(Exception):
    """The attempt store could not be read or written.

    Internal only: the attempt tracker converts it to the fail-open default
    and it never reaches the login flow.
    """
