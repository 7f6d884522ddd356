"""Brute force protection for login.

Counts failed logins per (origin, identifier) pair inside a rolling window
and decides whether the next attempt is allowed, allowed with a warning, or
blocked.  All mutable state lives in an :class:`AttemptStore`; the tracker
itself only holds configuration, so it is safe to share between request
threads and worker processes.

Expiry is lazy: a record whose window has lapsed reads as zero and is
restarted by the next failure.  Nothing runs in the background.

Storage failures fail open.  A login is never blocked because the counter
store is down; the failure is logged and the count reads as zero.

Usage::

    from authgate.helpers.rate_limit import get_attempt_tracker

    tracker = get_attempt_tracker()
    tracker.check_rate_limit(ip, email)         # may raise RateLimitError

    # on failed credential check only
    attempts = tracker.increment_attempt(ip, email)
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from authgate.helpers.attempt_store import (
    AttemptRecord,
    AttemptStore,
    as_utc,
    create_attempt_store,
)
from authgate.helpers.errors import (
    AttemptsRemainingWarning,
    RateLimitError,
    StorageUnavailable,
    TooManyAttempts,
)

logger = logging.getLogger(__name__)


def _positive_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class RateLimitConfig:
    max_attempts: int = 5
    window_minutes: int = 15
    warning_threshold: int = 2  # warn when this many attempts or fewer remain

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if self.window_minutes <= 0:
            raise ValueError("window_minutes must be positive")

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_minutes)

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Read ``LOGIN_MAX_ATTEMPTS`` and ``LOGIN_WINDOW_MINUTES``."""
        return cls(
            max_attempts=_positive_int_env("LOGIN_MAX_ATTEMPTS", 5),
            window_minutes=_positive_int_env("LOGIN_WINDOW_MINUTES", 15),
        )


def effective_count(
    record: AttemptRecord | None, now: datetime, window: timedelta
) -> int:
    """Failures that still count at *now*; zero once the window has lapsed."""
    if record is None:
        return 0
    if now > record.last_reset + window:
        return 0
    return record.attempt_count


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttemptTracker:
    """Decides whether an (origin, identifier) pair may attempt a login."""

    def __init__(
        self,
        store: AttemptStore,
        config: RateLimitConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.config = config or RateLimitConfig()
        self._clock = clock

    @staticmethod
    def _validate_key(origin: str, identifier: str) -> None:
        if not origin:
            raise ValueError("origin must be a non-empty string")
        if not identifier:
            raise ValueError("identifier must be a non-empty string")

    def failure_error(self, attempts: int) -> RateLimitError | None:
        """Map a failure count to its rate-limit outcome.

        Shared by the pre-check and the post-failure message.
        """
        remaining = self.config.max_attempts - attempts
        if remaining <= 0:
            return TooManyAttempts(self.config.window_minutes, attempts=attempts)
        if remaining <= self.config.warning_threshold:
            return AttemptsRemainingWarning(remaining)
        return None

    def get_current_attempts(
        self, origin: str, identifier: str, now: datetime | None = None
    ) -> int:
        """Return the failures counted in the current window (0 on storage error)."""
        self._validate_key(origin, identifier)
        now = as_utc(now or self._clock())
        try:
            record = self.store.get(origin, identifier)
        except StorageUnavailable:
            logger.exception(
                "Error fetching login attempts for %s; failing open", origin
            )
            return 0
        return effective_count(record, now, self.config.window)

    def check_rate_limit(
        self, origin: str, identifier: str, now: datetime | None = None
    ) -> None:
        """Raise the rate-limit outcome for this key, if any.

        Raises:
            TooManyAttempts: the window allowance is used up; deny the login
                without checking credentials.
            AttemptsRemainingWarning: few attempts remain; the caller should
                still verify credentials and show ``remaining`` to the user.
        """
        attempts = self.get_current_attempts(origin, identifier, now)
        error = self.failure_error(attempts)
        if error is not None:
            raise error

    def increment_attempt(
        self, origin: str, identifier: str, now: datetime | None = None
    ) -> int:
        """Record one failed credential check and return the new count.

        Returns 0 when the store is unavailable; never raises for storage
        errors and never retries.
        """
        self._validate_key(origin, identifier)
        now = as_utc(now or self._clock())
        try:
            return self.store.increment(origin, identifier, now, self.config.window)
        except StorageUnavailable:
            logger.exception(
                "Failed to increment login attempts for %s; failing open", origin
            )
            return 0

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records whose window has lapsed.

        Optional housekeeping to bound table growth; correctness never
        depends on it.
        """
        now = as_utc(now or self._clock())
        try:
            purged = self.store.purge_expired(now, self.config.window)
        except StorageUnavailable:
            logger.exception("Failed to purge expired login attempts")
            return 0
        if purged:
            logger.info("Purged %d expired login attempt records", purged)
        return purged


# ---------------------------------------------------------------------------
# Module-level singleton (initialized in run_ui.py)
# ---------------------------------------------------------------------------

_tracker: AttemptTracker | None = None


def init_attempt_tracker(
    store: AttemptStore | None = None, config: RateLimitConfig | None = None
) -> AttemptTracker:
    """Initialize the global AttemptTracker from arguments or env vars."""
    global _tracker  # noqa: PLW0603
    _tracker = AttemptTracker(
        store or create_attempt_store(), config or RateLimitConfig.from_env()
    )
    logger.info(
        "Login rate limit: %d attempts per %d minutes",
        _tracker.config.max_attempts,
        _tracker.config.window_minutes,
    )
    return _tracker


def get_attempt_tracker() -> AttemptTracker:
    """Return the global AttemptTracker.

    Raises:
        RuntimeError: If :func:`init_attempt_tracker` has not been called.
    """
    if _tracker is None:
        raise RuntimeError(
            "AttemptTracker not initialized. Call init_attempt_tracker() first."
        )
    return _tracker
