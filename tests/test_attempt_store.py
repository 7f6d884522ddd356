"""Tests for the attempt stores.

Covers the ``failed_attempts`` upsert, error wrapping into
StorageUnavailable, store selection from env, and that concurrent failures
for one key are all counted.
"""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from authgate.helpers import attempt_store, auth_db
from authgate.helpers.attempt_store import (
    FailedAttempt,
    InMemoryAttemptStore,
    SqlAttemptStore,
    as_utc,
    create_attempt_store,
)
from authgate.helpers.errors import StorageUnavailable
from authgate.helpers.rate_limit import AttemptTracker, RateLimitConfig

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
WINDOW = timedelta(minutes=15)


@contextmanager
def _broken_session():
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))
    yield  # pragma: no cover


class TestAsUtc:
    def test_naive_is_treated_as_utc(self):
        assert as_utc(datetime(2026, 1, 1, 12)) == T0
        assert as_utc(datetime(2026, 1, 1, 12)).tzinfo is timezone.utc

    def test_other_offsets_are_converted(self):
        plus_two = timezone(timedelta(hours=2))
        value = datetime(2026, 1, 1, 14, tzinfo=plus_two)
        assert as_utc(value) == T0
        assert as_utc(value).tzinfo is timezone.utc


class TestSqlAttemptStore:
    @pytest.fixture
    def store(self, auth_db_wired):
        return SqlAttemptStore()

    def test_get_missing_returns_none(self, store):
        assert store.get("1.2.3.4", "a@b.com") is None

    def test_first_increment_creates_row(self, store):
        assert store.increment("1.2.3.4", "a@b.com", T0, WINDOW) == 1

        with auth_db.get_session() as db:
            row = db.get(FailedAttempt, ("1.2.3.4", "a@b.com"))
            assert row.attempt_count == 1
            assert as_utc(row.last_reset) == T0
            assert as_utc(row.last_attempt) == T0

    def test_one_row_per_key(self, store):
        for _ in range(3):
            store.increment("1.2.3.4", "a@b.com", T0, WINDOW)
        store.increment("1.2.3.4", "c@d.com", T0, WINDOW)

        with auth_db.get_session() as db:
            assert db.query(FailedAttempt).count() == 2

    def test_record_fields(self, store):
        store.increment("1.2.3.4", "a@b.com", T0, WINDOW)
        store.increment("1.2.3.4", "a@b.com", T0 + timedelta(minutes=2), WINDOW)

        record = store.get("1.2.3.4", "a@b.com")
        assert record.origin == "1.2.3.4"
        assert record.identifier == "a@b.com"
        assert record.attempt_count == 2
        assert record.last_reset == T0
        assert record.last_attempt == T0 + timedelta(minutes=2)

    def test_expired_row_restarts_in_place(self, store):
        for _ in range(5):
            store.increment("1.2.3.4", "a@b.com", T0, WINDOW)

        later = T0 + timedelta(minutes=16)
        assert store.increment("1.2.3.4", "a@b.com", later, WINDOW) == 1

        record = store.get("1.2.3.4", "a@b.com")
        assert record.last_reset == later
        assert record.attempt_count == 1

    def test_row_at_window_edge_keeps_counting(self, store):
        store.increment("1.2.3.4", "a@b.com", T0, WINDOW)
        assert store.increment("1.2.3.4", "a@b.com", T0 + WINDOW, WINDOW) == 2

    def test_purge_expired(self, store):
        store.increment("1.2.3.4", "old@b.com", T0, WINDOW)
        store.increment("1.2.3.4", "new@b.com", T0 + timedelta(minutes=10), WINDOW)

        assert store.purge_expired(T0 + timedelta(minutes=20), WINDOW) == 1
        assert store.get("1.2.3.4", "old@b.com") is None
        assert store.get("1.2.3.4", "new@b.com") is not None

    @pytest.mark.parametrize(
        "call",
        [
            lambda s: s.get("1.2.3.4", "a@b.com"),
            lambda s: s.increment("1.2.3.4", "a@b.com", T0, WINDOW),
            lambda s: s.purge_expired(T0, WINDOW),
        ],
        ids=["get", "increment", "purge_expired"],
    )
    def test_database_errors_become_storage_unavailable(
        self, store, monkeypatch, call
    ):
        monkeypatch.setattr(attempt_store.auth_db, "get_session", _broken_session)
        with pytest.raises(StorageUnavailable, match="database is locked"):
            call(store)

    def test_unsupported_dialect(self, store, monkeypatch):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "mssql"

        @contextmanager
        def _fake_session():
            yield session

        monkeypatch.setattr(attempt_store.auth_db, "get_session", _fake_session)
        with pytest.raises(StorageUnavailable, match="mssql"):
            store.increment("1.2.3.4", "a@b.com", T0, WINDOW)
        session.execute.assert_not_called()

    def test_storage_outage_fails_open_through_tracker(self, store, monkeypatch):
        tracker = AttemptTracker(store, RateLimitConfig())
        for _ in range(5):
            store.increment("1.2.3.4", "a@b.com", T0, WINDOW)

        monkeypatch.setattr(attempt_store.auth_db, "get_session", _broken_session)

        # Would be blocked with a working store
        assert tracker.check_rate_limit("1.2.3.4", "a@b.com", T0) is None
        assert tracker.increment_attempt("1.2.3.4", "a@b.com", T0) == 0


class TestInMemoryAttemptStore:
    def test_get_returns_none_for_unknown_key(self):
        assert InMemoryAttemptStore().get("1.2.3.4", "a@b.com") is None

    def test_increment_and_restart(self):
        store = InMemoryAttemptStore()
        assert store.increment("1.2.3.4", "a@b.com", T0, WINDOW) == 1
        assert store.increment("1.2.3.4", "a@b.com", T0, WINDOW) == 2
        later = T0 + timedelta(minutes=30)
        assert store.increment("1.2.3.4", "a@b.com", later, WINDOW) == 1
        assert store.get("1.2.3.4", "a@b.com").last_reset == later

    def test_lapsed_records_dropped_when_full(self):
        store = InMemoryAttemptStore(max_records=3)
        for i in range(3):
            store.increment(f"10.0.0.{i}", "a@b.com", T0, WINDOW)

        later = T0 + timedelta(minutes=30)
        store.increment("10.0.0.9", "a@b.com", later, WINDOW)

        assert store.get("10.0.0.0", "a@b.com") is None
        assert store.get("10.0.0.9", "a@b.com").attempt_count == 1

    def test_active_records_kept_when_full(self):
        store = InMemoryAttemptStore(max_records=2)
        store.increment("10.0.0.1", "a@b.com", T0, WINDOW)
        store.increment("10.0.0.2", "a@b.com", T0, WINDOW)

        store.increment("10.0.0.3", "a@b.com", T0 + timedelta(minutes=1), WINDOW)

        assert store.get("10.0.0.1", "a@b.com").attempt_count == 1
        assert store.get("10.0.0.3", "a@b.com").attempt_count == 1


class TestConcurrentIncrements:
    THREADS = 8
    PER_THREAD = 5

    def _hammer(self, tracker):
        def work(_):
            return [
                tracker.increment_attempt("1.2.3.4", "a@b.com", T0)
                for _ in range(self.PER_THREAD)
            ]

        with ThreadPoolExecutor(max_workers=self.THREADS) as pool:
            results = [n for batch in pool.map(work, range(self.THREADS)) for n in batch]
        return results

    @pytest.mark.parametrize("kind", ["memory", "database"])
    def test_no_lost_updates(self, request, kind):
        if kind == "database":
            request.getfixturevalue("auth_db_wired")
            store = SqlAttemptStore()
        else:
            store = InMemoryAttemptStore()
        tracker = AttemptTracker(store, RateLimitConfig())

        results = self._hammer(tracker)

        total = self.THREADS * self.PER_THREAD
        # Every increment saw a distinct post-increment value
        assert sorted(results) == list(range(1, total + 1))
        assert store.get("1.2.3.4", "a@b.com").attempt_count == total


class TestCreateAttemptStore:
    def test_default_is_database(self, monkeypatch):
        monkeypatch.delenv("LOGIN_ATTEMPT_STORE", raising=False)
        assert isinstance(create_attempt_store(), SqlAttemptStore)

    def test_memory_from_env(self, monkeypatch):
        monkeypatch.setenv("LOGIN_ATTEMPT_STORE", "Memory")
        assert isinstance(create_attempt_store(), InMemoryAttemptStore)

    def test_explicit_kind_wins(self, monkeypatch):
        monkeypatch.setenv("LOGIN_ATTEMPT_STORE", "memory")
        assert isinstance(create_attempt_store("database"), SqlAttemptStore)

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="redis"):
            create_attempt_store("redis")
