from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from realmauth.storage.models import (
    Account,
    EmailChangeRequest,
    LoginLockout,
    PendingToken,
    Redemption,
)
from realmauth.storage.postgres import PostgresStore, _constraint_violation

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows, rowcount=None):
        self.rows = rows
        self.rowcount = len(rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Returns scripted results in order and records every statement."""

    def __init__(self, *results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeResult([])

    @contextmanager
    def transaction(self):
        yield self


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool or DummyPool()
    store.dsn = "postgresql://unit-test"
    return store


def _account_row(**overrides):
    row = {
        "id": "acct-1",
        "email": "row@example.com",
        "wallet_address": None,
        "password_hash": "$argon2id$hash",
        "password_algo": "argon2id",
        "unique_hash": "unique",
        "verified": False,
        "verification_token": None,
        "verification_expires_at": None,
        "failed_attempts": None,
        "temp_banned": None,
        "permanent_banned": None,
        "unban_at": None,
        "email_change": None,
        "password_reset_token": None,
        "password_reset_expires_at": None,
        "created_at": NOW,
        "updated_at": NOW,
        "version": 3,
    }
    row.update(overrides)
    return row


def test_row_to_account_builds_nested_records():
    row = _account_row(
        verification_token="v" * 300,
        verification_expires_at=NOW,
        failed_attempts=5,
        temp_banned=True,
        permanent_banned=False,
        unban_at=NOW + timedelta(minutes=60),
        email_change={
            "previous_email": "row@example.com",
            "pending_email": "next@example.com",
            "change_token": {"token": "c", "expires_at": NOW.isoformat()},
            "last_change_at": None,
        },
    )
    account = PostgresStore._row_to_account(row)

    assert account.version == 3
    assert account.verification == PendingToken(token="v" * 300, expires_at=NOW)
    assert account.lockout == LoginLockout(
        failed_attempts=5, temp_banned=True, unban_at=NOW + timedelta(minutes=60)
    )
    assert account.email_change.pending_email == "next@example.com"
    assert account.email_change.change_token.expires_at == NOW
    assert account.password_reset is None


def test_row_without_optional_columns_maps_to_none():
    account = PostgresStore._row_to_account(_account_row())
    assert account.verification is None
    assert account.lockout is None
    assert account.email_change is None


def test_account_params_flatten_nested_records():
    account = Account.new(email="params@example.com")
    account.lockout = LoginLockout(failed_attempts=2)
    account.password_reset = PendingToken(token="r", expires_at=NOW)
    account.email_change = EmailChangeRequest(last_change_at=NOW)

    params = PostgresStore._account_params(account)

    assert params["failed_attempts"] == 2
    assert params["temp_banned"] is False
    assert params["verification_token"] is None
    assert params["password_reset_token"] == "r"
    assert params["password_reset_expires_at"] == NOW
    assert params["email_change"].obj["last_change_at"] == NOW.isoformat()


def test_constraint_names_map_to_fields():
    email = _constraint_violation(SimpleNamespace(diag=SimpleNamespace(constraint_name="account_email_key")))
    assert email.detail == {"field": "email"}
    purpose = _constraint_violation(
        SimpleNamespace(diag=SimpleNamespace(constraint_name="invite_redemption_purpose_account_key"))
    )
    assert purpose.detail == {"field": "purpose"}
    unknown = _constraint_violation(SimpleNamespace(diag=SimpleNamespace(constraint_name=None)))
    assert unknown.detail == {"field": "unknown"}


def test_get_account_returns_none_when_missing():
    conn = FakeConnection(FakeResult([]))
    assert _store(FakePool(conn)).get_account("missing") is None
    sql, params = conn.statements[0]
    assert sql == "SELECT * FROM account WHERE id = %s"
    assert params == ("missing",)


def test_update_account_checks_expected_version():
    conn = FakeConnection(FakeResult([]))
    account = Account.new(email="stale@example.com")
    assert _store(FakePool(conn)).update_account(account, 7) is None
    sql, params = conn.statements[0]
    assert "WHERE id = %(id)s AND version = %(expected_version)s" in sql
    assert params["expected_version"] == 7


def test_update_account_returns_new_version():
    conn = FakeConnection(FakeResult([_account_row(version=4, verified=True)]))
    account = Account.new(email="row@example.com")
    updated = _store(FakePool(conn)).update_account(account, 3)
    assert updated.version == 4
    assert updated.verified


def test_delete_account_uses_rowcount():
    conn = FakeConnection(FakeResult([], rowcount=1), FakeResult([], rowcount=0))
    store = _store(FakePool(conn))
    assert store.delete_account("acct-1", 3)
    assert not store.delete_account("acct-1", 3)


def test_record_redemption_returns_none_when_count_moved():
    conn = FakeConnection(FakeResult([]))
    store = _store(FakePool(conn))
    assert store.record_redemption("ALPHA-1", 2, Redemption("acct-1", NOW)) is None
    assert len(conn.statements) == 1
    sql, params = conn.statements[0]
    assert "times_used = %s AND times_used < max_uses" in sql
    assert params == ("ALPHA-1", 2)


def test_record_redemption_inserts_row_and_reloads_invite():
    invite_row = {
        "code": "ALPHA-1",
        "purpose": "ALPHA",
        "multi_use": True,
        "max_uses": 3,
        "times_used": 1,
        "expires_at": NOW + timedelta(days=1),
        "created_at": NOW,
    }
    conn = FakeConnection(
        FakeResult([invite_row]),
        FakeResult([]),
        FakeResult([{"redeemed_by": "acct-1", "redeemed_at": NOW}]),
    )
    invite = _store(FakePool(conn)).record_redemption("ALPHA-1", 0, Redemption("acct-1", NOW))

    assert invite.times_used == 1
    assert invite.redemptions == [Redemption("acct-1", NOW)]
    insert_sql, insert_params = conn.statements[1]
    assert insert_sql.startswith("INSERT INTO invite_redemption")
    assert insert_params == ("ALPHA-1", "ALPHA", "acct-1", NOW)
