from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from memberguard.logging import get_logger
from memberguard.service.errors import PolicyViolation, TransportFailure
from memberguard.service.guarded_store import TimedStore
from memberguard.storage.common import derive_cipher
from memberguard.storage.errors import ConstraintViolation, StoreTimeout
from memberguard.storage.models import Account
from memberguard.storage.postgres import _ACCOUNT_COLUMNS, PostgresStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and answers them from a queue of canned results."""

    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.statements = []
        self.rolled_back = False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        rows = self.results.pop(0) if self.results else []
        return FakeCursor(rows)

    @contextmanager
    def transaction(self):
        try:
            yield self
        except Exception:
            self.rolled_back = True
            raise


class FakePool:
    def __init__(self, conn, error=None):
        self.conn = conn
        self.error = error

    @contextmanager
    def connection(self, timeout=None):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(conn=None, pool_error=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn or FakeConnection(), error=pool_error)
    store.timeout = 1.0
    store.logger = get_logger("test")
    store._cipher = derive_cipher("unit-test-key")
    return store


def _row(**overrides):
    row = {
        "id": "acct-1",
        "email": "Reader@Example.com",
        "normalized_email": "reader@example.com",
        "password_hash": "hash",
        "first_name": None,
        "two_factor_enabled": True,
        "two_factor_secret": None,
        "failed_access_count": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


class TestRowMapping:
    def test_account_params_encrypt_secret_and_rows_decrypt_it(self):
        store = _store()
        account = Account.new("reader@example.com", "reader@example.com", "hash")
        account.two_factor_secret = "JBSWY3DPEHPK3PXP"

        params = store._account_params(account)
        stored_secret = params[_ACCOUNT_COLUMNS.index("two_factor_secret")]

        assert stored_secret != "JBSWY3DPEHPK3PXP"
        mapped = store._row_to_account(_row(two_factor_secret=stored_secret))
        assert mapped.two_factor_secret == "JBSWY3DPEHPK3PXP"

    def test_nullable_columns_get_defaults(self):
        account = _store()._row_to_account(_row())

        assert account.first_name == ""
        assert account.failed_access_count == 0
        assert account.two_factor_enabled is True

    def test_undecryptable_secret_maps_to_none(self):
        account = _store()._row_to_account(_row(two_factor_secret="not-a-fernet-token"))
        assert account.two_factor_secret is None


class TestSchema:
    def test_missing_tables_are_reported(self):
        conn = FakeConnection(
            results=[[{"oid": "member_account"}], [{"oid": None}], [{"oid": "x"}], [], [{"oid": "y"}]]
        )
        with pytest.raises(RuntimeError, match="password_history, password_reset_token"):
            _store(conn)._verify_required_schema()

    def test_complete_schema_passes(self):
        conn = FakeConnection(results=[[{"oid": "t"}]] * 5)
        _store(conn)._verify_required_schema()
        assert len(conn.statements) == 5


class TestStatements:
    def test_duplicate_email_maps_to_constraint_violation(self):
        conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
        account = Account.new("Reader+x@Example.com", "", "hash")

        with pytest.raises(ConstraintViolation):
            _store(conn).create_account(account)
        assert account.normalized_email == "reader@example.com"

    def test_failed_access_is_a_single_conditional_update(self):
        conn = FakeConnection(results=[[_row(failed_access_count=2, lockout_end_at=NOW)]])

        account = _store(conn).register_failed_access(
            "acct-1", threshold=2, lockout_duration=timedelta(minutes=1), now=NOW
        )

        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE member_account SET failed_access_count = failed_access_count + 1")
        assert params == (2, NOW + timedelta(minutes=1), "acct-1")
        assert account.failed_access_count == 2

    def test_failed_access_for_unknown_account(self):
        with pytest.raises(ConstraintViolation):
            _store(FakeConnection(results=[[]])).register_failed_access(
                "missing", threshold=2, lockout_duration=timedelta(minutes=1), now=NOW
            )

    def test_reset_token_consumption_is_conditional(self):
        conn = FakeConnection(results=[[{"account_id": "acct-1"}], []])
        store = _store(conn)

        assert store.consume_reset_token("digest", now=NOW) == "acct-1"
        assert store.consume_reset_token("digest", now=NOW) is None

        sql, params = conn.statements[0]
        assert "consumed_at IS NULL AND expires_at > %s" in sql
        assert params == (NOW, "digest", NOW)

    def test_get_reset_token_maps_row(self):
        conn = FakeConnection(
            results=[
                [
                    {
                        "token_hash": "digest",
                        "account_id": "acct-1",
                        "expires_at": NOW + timedelta(hours=1),
                        "created_at": NOW,
                        "consumed_at": None,
                    }
                ]
            ]
        )
        token = _store(conn).get_reset_token("digest")

        assert token.account_id == "acct-1"
        assert token.expires_at == NOW + timedelta(hours=1)
        assert token.consumed_at is None

    def test_recovery_code_without_match_is_not_consumed(self):
        conn = FakeConnection(results=[[{"id": 1, "code_hash": "aaa"}]])

        assert not _store(conn).consume_recovery_code("acct-1", "bbb", now=NOW)
        assert len(conn.statements) == 1


class TestAtomicWrites:
    def test_password_write_stops_when_precondition_fails(self):
        conn = FakeConnection(results=[[_row(last_password_changed_at=NOW)]])
        seen = []

        def _too_soon(current):
            seen.append(current.last_password_changed_at)
            raise PolicyViolation("wait", reason="min_age")

        with pytest.raises(PolicyViolation):
            _store(conn).set_password(
                "acct-1",
                "hash-2",
                changed_at=NOW,
                expires_at=NOW + timedelta(minutes=2),
                precondition=_too_soon,
            )

        assert seen == [NOW]
        assert conn.rolled_back
        assert len(conn.statements) == 1
        assert conn.statements[0][0].endswith("FOR UPDATE")

    def test_password_write_with_passing_precondition(self):
        conn = FakeConnection(results=[[_row()], [_row(password_hash="hash-2")], []])

        updated = _store(conn).set_password(
            "acct-1",
            "hash-2",
            changed_at=NOW,
            expires_at=NOW + timedelta(minutes=2),
            precondition=lambda current: None,
        )

        assert updated.password_hash == "hash-2"
        assert [sql.split()[0] for sql, _ in conn.statements] == ["SELECT", "UPDATE", "INSERT"]

    def test_enable_two_factor_swaps_codes_in_one_transaction(self):
        conn = FakeConnection(results=[[_row(two_factor_enabled=True)]])

        enabled = _store(conn).enable_two_factor("acct-1", ["c1", "c2"])

        assert enabled.two_factor_enabled
        verbs = [sql.split()[0] for sql, _ in conn.statements]
        assert verbs == ["UPDATE", "DELETE", "INSERT", "INSERT"]

    def test_enable_two_factor_for_unknown_account_keeps_codes(self):
        conn = FakeConnection(results=[[]])

        with pytest.raises(ConstraintViolation):
            _store(conn).enable_two_factor("missing", ["c1"])
        assert conn.rolled_back
        assert len(conn.statements) == 1

    def test_cancelled_statement_rolls_back_and_reports_timeout(self):
        conn = FakeConnection(error=errors.QueryCanceled("statement timeout"))

        with pytest.raises(StoreTimeout):
            _store(conn).update_account("acct-1", lambda account: None)
        assert conn.rolled_back

    def test_pool_checkout_timeout_reports_timeout(self):
        with pytest.raises(StoreTimeout):
            _store(pool_error=PoolTimeout("couldn't get a connection")).get_account("acct-1")

    def test_store_timeout_reaches_callers_as_transport_failure(self):
        conn = FakeConnection(error=errors.QueryCanceled("statement timeout"))
        timed = TimedStore(_store(conn), timeout=1.0)
        try:
            with pytest.raises(TransportFailure):
                timed.update_account("acct-1", lambda account: None)
        finally:
            timed.shutdown()
        assert conn.rolled_back
