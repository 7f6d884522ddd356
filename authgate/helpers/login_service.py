"""Password login flow.

Runs the rate-limit pre-check, verifies credentials, accounts for failures
and writes audit events.  The user-facing message after a failure comes
from the same threshold rule the pre-check uses
(:meth:`AttemptTracker.failure_error`).
"""

import logging

from authgate.helpers import audit, auth_db, user_store
from authgate.helpers.errors import (
    AUTH_ERROR_CODES,
    AttemptsRemainingWarning,
    AuthError,
    TooManyAttempts,
    attempt_noun,
)
from authgate.helpers.rate_limit import AttemptTracker, get_attempt_tracker

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


class LoginService:
    def __init__(self, tracker: AttemptTracker) -> None:
        self.tracker = tracker

    @staticmethod
    def _verify_credentials(email: str, password: str) -> tuple[dict | None, str]:
        """Return ``(userinfo, "")`` on success or ``(None, reason)``."""
        with auth_db.get_session() as db:
            user = user_store.get_user_by_email(db, email)
            if user is None:
                return None, "User not found"
            if not user.is_active:
                return None, "Account disabled"
            if not user_store.verify_password(user, password):
                return None, "Invalid password"
            user_store.record_login(db, user)
            return {
                "id": user.id,
                "email": user.email,
                "name": user.display_name,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "role": user.role or "user",
                "is_verified": bool(user.is_verified),
            }, ""

    async def login(self, email: str, password: str, ip: str) -> dict:
        """Authenticate *email* / *password* coming from *ip*.

        Returns the user info dict.  When the pre-check warned, the dict
        carries a ``warning`` key with the message and remaining count.

        Raises:
            TooManyAttempts: the pair is locked out; credentials were not
                checked and no attempt was counted.
            AuthError: invalid credentials (message depends on how many
                attempts are left) or an unexpected server error.
        """
        identifier = user_store.normalize_email(email or "")
        if not identifier or not password:
            raise AuthError(
                "Email and password are required",
                AUTH_ERROR_CODES.INVALID_CREDENTIALS,
            )

        try:
            warning = None
            try:
                self.tracker.check_rate_limit(ip, identifier)
            except AttemptsRemainingWarning as e:
                warning = e
            except TooManyAttempts as e:
                await audit.log_auth_event(
                    audit.LOGIN_LOCKED,
                    email=identifier,
                    ip=ip,
                    attempt_count=e.attempts,
                )
                raise

            userinfo, reason = self._verify_credentials(identifier, password)
            if userinfo is None:
                raise await self._failed_login_error(ip, identifier, reason)

            await audit.log_auth_event(
                audit.LOGIN_SUCCESS,
                email=identifier,
                ip=ip,
                user_id=userinfo["id"],
            )
            if warning is not None:
                userinfo["warning"] = warning.to_dict() | {
                    "remaining": warning.remaining
                }
            return userinfo
        except AuthError:
            raise
        except Exception as e:
            logger.exception("Login error for %s", identifier)
            raise AuthError(
                "Failed to log in",
                AUTH_ERROR_CODES.SERVER_ERROR,
                {"original_error": str(e)},
            ) from e

    async def _failed_login_error(self, ip: str, email: str, reason: str) -> AuthError:
        """Count the failure, audit it, and build the error to raise."""
        attempts = self.tracker.increment_attempt(ip, email)

        await audit.log_auth_event(
            audit.LOGIN_FAILED,
            email=email,
            ip=ip,
            attempt_count=attempts,
            reason=reason,
        )

        outcome = self.tracker.failure_error(attempts)
        if isinstance(outcome, TooManyAttempts):
            return outcome
        if isinstance(outcome, AttemptsRemainingWarning):
            remaining = outcome.remaining
            return AuthError(
                f"Invalid credentials. {remaining} {attempt_noun(remaining)} "
                "remaining before temporary lockout.",
                AUTH_ERROR_CODES.INVALID_CREDENTIALS,
                {"remaining": remaining},
            )
        return AuthError(INVALID_CREDENTIALS_MESSAGE, AUTH_ERROR_CODES.INVALID_CREDENTIALS)


_login_service: LoginService | None = None


def get_login_service() -> LoginService:
    """Return the shared LoginService bound to the global AttemptTracker."""
    global _login_service  # noqa: PLW0603
    tracker = get_attempt_tracker()
    if _login_service is None or _login_service.tracker is not tracker:
        _login_service = LoginService(tracker)
    return _login_service
