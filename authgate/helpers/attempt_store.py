"""Persistent failed-login counters keyed by (origin, identifier).

The store is the only place attempt state lives, so any number of worker
processes can share one tracker configuration.  Two implementations:

* :class:`SqlAttemptStore`: the ``failed_attempts`` table in the auth
  database.  The increment is one ``INSERT ... ON CONFLICT DO UPDATE``
  statement, so concurrent failures for the same key never lose updates.
* :class:`InMemoryAttemptStore`: a locked dict for single-process setups
  and tests.  State resets on restart.

Both raise :class:`~authgate.helpers.errors.StorageUnavailable` when the
backend fails; turning that into fail-open behaviour is the tracker's job.
"""

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, case, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from authgate.helpers import auth_db
from authgate.helpers.auth_db import Base
from authgate.helpers.errors import StorageUnavailable


@dataclass(frozen=True)
class AttemptRecord:
    origin: str
    identifier: str
    attempt_count: int
    last_reset: datetime
    last_attempt: datetime


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes; every stored value is UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AttemptStore(ABC):
    """Storage contract used by :class:`~authgate.helpers.rate_limit.AttemptTracker`."""

    @abstractmethod
    def get(self, origin: str, identifier: str) -> AttemptRecord | None:
        """Return the stored record for the key, or ``None``."""

    @abstractmethod
    def increment(
        self, origin: str, identifier: str, now: datetime, window: timedelta
    ) -> int:
        """Atomically count one failure and return the new count.

        A missing record, or one whose window started before ``now - window``,
        restarts at 1 with ``last_reset = now``.  Otherwise the count grows by
        one and ``last_reset`` is kept.  ``last_attempt`` is always ``now``.
        """

    @abstractmethod
    def purge_expired(self, now: datetime, window: timedelta) -> int:
        """Delete records whose window has lapsed; return how many."""


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------


class FailedAttempt(Base):
    __tablename__ = "failed_attempts"

    ip_address = Column(String, primary_key=True)
    identifier = Column(String, primary_key=True)  # normalized email
    attempt_count = Column(Integer, nullable=False, default=0)
    last_reset = Column(DateTime(timezone=True), nullable=False)
    last_attempt = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_failed_attempts_last_reset", "last_reset"),)

    def to_record(self) -> AttemptRecord:
        return AttemptRecord(
            origin=self.ip_address,
            identifier=self.identifier,
            attempt_count=self.attempt_count,
            last_reset=as_utc(self.last_reset),
            last_attempt=as_utc(self.last_attempt),
        )


# Dialects with INSERT ... ON CONFLICT DO UPDATE ... RETURNING
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class SqlAttemptStore(AttemptStore):
    """Attempt store backed by the ``failed_attempts`` table."""

    def get(self, origin: str, identifier: str) -> AttemptRecord | None:
        try:
            with auth_db.get_session() as db:
                row = db.get(FailedAttempt, (origin, identifier))
                return row.to_record() if row else None
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"Failed to read attempts: {e}") from e

    def increment(
        self, origin: str, identifier: str, now: datetime, window: timedelta
    ) -> int:
        now = as_utc(now)
        cutoff = now - window
        table = FailedAttempt.__table__
        try:
            with auth_db.get_session() as db:
                dialect = db.get_bind().dialect.name
                insert = _UPSERT_INSERTS.get(dialect)
                if insert is None:
                    raise StorageUnavailable(
                        f"Atomic attempt increment is not supported on {dialect}"
                    )
                stmt = insert(table).values(
                    ip_address=origin,
                    identifier=identifier,
                    attempt_count=1,
                    last_reset=now,
                    last_attempt=now,
                )
                expired = table.c.last_reset < cutoff
                # SET expressions all see the pre-update row
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.ip_address, table.c.identifier],
                    set_={
                        "attempt_count": case(
                            (expired, 1), else_=table.c.attempt_count + 1
                        ),
                        "last_reset": case(
                            (expired, stmt.excluded.last_reset),
                            else_=table.c.last_reset,
                        ),
                        "last_attempt": stmt.excluded.last_attempt,
                    },
                ).returning(table.c.attempt_count)
                return db.execute(stmt).scalar_one()
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"Failed to increment attempts: {e}") from e

    def purge_expired(self, now: datetime, window: timedelta) -> int:
        cutoff = as_utc(now) - window
        try:
            with auth_db.get_session() as db:
                result = db.execute(
                    delete(FailedAttempt).where(FailedAttempt.last_reset < cutoff)
                )
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"Failed to purge attempts: {e}") from e


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryAttemptStore(AttemptStore):
    """Process-local attempt store.  Every read-modify-write holds one lock.

    Once ``max_records`` keys are held, adding a new key first drops every
    record whose window has lapsed, so memory tracks the keys that are
    still active rather than every key ever seen.
    """

    def __init__(self, max_records: int = 10_000) -> None:
        self._records: dict[tuple[str, str], AttemptRecord] = {}
        self._lock = threading.Lock()
        self.max_records = max_records

    def get(self, origin: str, identifier: str) -> AttemptRecord | None:
        with self._lock:
            return self._records.get((origin, identifier))

    def increment(
        self, origin: str, identifier: str, now: datetime, window: timedelta
    ) -> int:
        now = as_utc(now)
        key = (origin, identifier)
        with self._lock:
            record = self._records.get(key)
            if record is None and len(self._records) >= self.max_records:
                self._drop_lapsed(now - window)
            if record is None or record.last_reset < now - window:
                record = AttemptRecord(origin, identifier, 1, now, now)
            else:
                record = replace(
                    record, attempt_count=record.attempt_count + 1, last_attempt=now
                )
            self._records[key] = record
            return record.attempt_count

    def purge_expired(self, now: datetime, window: timedelta) -> int:
        with self._lock:
            return self._drop_lapsed(as_utc(now) - window)

    def _drop_lapsed(self, cutoff: datetime) -> int:
        # caller holds self._lock
        stale = [k for k, r in self._records.items() if r.last_reset < cutoff]
        for key in stale:
            del self._records[key]
        return len(stale)


def create_attempt_store(kind: str | None = None) -> AttemptStore:
    """Build the store named by *kind* or ``LOGIN_ATTEMPT_STORE``.

    ``database`` (default) uses the auth database.  ``memory`` keeps counters
    in this process only: they reset on restart, and lapsed records are
    dropped once the store holds ``max_records`` keys.
    """
    kind = (kind or os.environ.get("LOGIN_ATTEMPT_STORE", "database")).lower()
    if kind == "database":
        return SqlAttemptStore()
    if kind == "memory":
        return InMemoryAttemptStore()
    raise ValueError(f"Unknown LOGIN_ATTEMPT_STORE: {kind!r}")
