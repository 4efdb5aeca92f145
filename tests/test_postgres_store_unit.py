from contextlib import contextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from airsocial.logging import get_logger
from airsocial.storage.errors import ConstraintViolation, StorageError
from airsocial.storage.postgres import PostgresStore


def _violation(cls, constraint=None, column=None):
    """Driver error carrying the diagnostics Postgres would attach."""

    class _WithDiag(cls):
        diag = SimpleNamespace(constraint_name=constraint, column_name=column)

    return _WithDiag("simulated")


class FakeCursor:
    def __init__(self, row=None, rows=(), rowcount=0):
        self.row = row
        self.rows = list(rows)
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, results):
        self.results = results
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(list(results))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*results)
    store.logger = get_logger("test")
    return store


def _token_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": 7,
        "user_id": 1,
        "device_id": "d1",
        "token_hash": "h",
        "expires_at": now,
        "revoked_at": None,
        "created_at": now,
    }
    row.update(overrides)
    return row


class TestErrorTranslation:
    def test_unique_email(self):
        store = _store(_violation(errors.UniqueViolation, "users_email_key"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("a@x.io", "a", "hash")
        assert excinfo.value.kind == "unique"
        assert excinfo.value.detail["field"] == "email"

    def test_unique_username(self):
        store = _store(_violation(errors.UniqueViolation, "users_username_key"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("a@x.io", "a", "hash")
        assert excinfo.value.detail["field"] == "username"

    @pytest.mark.parametrize(
        "error_cls,kind",
        [
            (errors.ForeignKeyViolation, "foreign_key"),
            (errors.CheckViolation, "check"),
            (errors.NotNullViolation, "not_null"),
            (errors.SerializationFailure, "serialization"),
        ],
    )
    def test_constraint_kinds(self, error_cls, kind):
        store = _store(_violation(error_cls, "some_constraint", "email"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.get_user(1)
        assert excinfo.value.kind == kind

    def test_other_driver_errors_are_storage_errors(self):
        store = _store(errors.OperationalError("server closed the connection"))
        with pytest.raises(StorageError) as excinfo:
            store.get_user_by_email("a@x.io")
        assert not isinstance(excinfo.value, ConstraintViolation)
        assert excinfo.value.detail == {"operation": "get_user_by_email"}


class TestRefreshTokens:
    def test_create_revokes_previous_device_token_first(self):
        store = _store(FakeCursor(rowcount=1), FakeCursor(row=_token_row()))
        token = store.create_refresh_token(1, "d1", "h", datetime.now(timezone.utc))

        assert token.id == 7
        first, second = store.pool.conn.statements
        assert first[0].startswith("UPDATE refresh_tokens SET revoked_at = now()")
        assert first[1] == (1, "d1")
        assert second[0].startswith("INSERT INTO refresh_tokens")

    def test_create_retries_once_on_device_race(self):
        race = _violation(errors.UniqueViolation, "refresh_tokens_active_device_idx")
        store = _store(
            FakeCursor(rowcount=0),
            race,
            FakeCursor(rowcount=1),
            FakeCursor(row=_token_row(id=8)),
        )
        token = store.create_refresh_token(1, "d1", "h", datetime.now(timezone.utc))
        assert token.id == 8

    def test_create_gives_up_after_second_race(self):
        race = _violation(errors.UniqueViolation, "refresh_tokens_active_device_idx")
        store = _store(FakeCursor(), race, FakeCursor(), race)
        with pytest.raises(ConstraintViolation):
            store.create_refresh_token(1, "d1", "h", datetime.now(timezone.utc))

    def test_conditional_revoke(self):
        store = _store(FakeCursor(row={"id": 7}), FakeCursor(row=None))
        assert store.revoke_refresh_token(7) is True
        assert store.revoke_refresh_token(7) is False

    def test_revoke_counts(self):
        store = _store(FakeCursor(rowcount=2), FakeCursor(rowcount=3))
        assert store.revoke_device_refresh_tokens(1, "d1") == 2
        assert store.revoke_user_refresh_tokens(1) == 3

    def test_missing_token(self):
        store = _store(FakeCursor(row=None))
        assert store.get_refresh_token_by_hash("nope") is None
