import threading
import time

import pytest

from memberguard.service.errors import TransportFailure
from memberguard.service.guarded_store import TimedStore, is_read_operation
from memberguard.storage.errors import ConstraintViolation, StoreTimeout


class SlowStore:
    label = "slow"

    def __init__(self):
        self.release = threading.Event()
        self.sessions = {}

    def get_account(self, account_id):
        self.release.wait(timeout=5)
        return account_id

    def update_account(self, account_id, mutator):
        time.sleep(0.2)
        working = dict(self.sessions)
        mutator(working)
        self.sessions = working
        return working

    def set_password(self, account_id, password_hash):
        raise StoreTimeout("QueryCanceled")

    def echo(self, value, *, suffix=""):
        return f"{value}{suffix}"

    def broken(self):
        raise ConstraintViolation("account not found", {"account_id": "x"})


@pytest.fixture
def slow_store():
    store = SlowStore()
    yield store
    store.release.set()


def test_calls_pass_through_with_arguments(slow_store):
    timed = TimedStore(slow_store, timeout=1.0)
    try:
        assert timed.echo("a", suffix="b") == "ab"
        assert timed.label == "slow"
        assert timed.inner is slow_store
    finally:
        timed.shutdown()


def test_storage_errors_propagate_unchanged(slow_store):
    timed = TimedStore(slow_store, timeout=1.0)
    try:
        with pytest.raises(ConstraintViolation):
            timed.broken()
    finally:
        timed.shutdown()


def test_slow_read_becomes_transport_failure(slow_store):
    timed = TimedStore(slow_store, timeout=0.05)
    try:
        with pytest.raises(TransportFailure) as excinfo:
            timed.get_account("acct-1")
        assert excinfo.value.status_code == 503
        assert excinfo.value.detail == {"operation": "get_account"}
    finally:
        slow_store.release.set()
        timed.shutdown()


def test_shutdown_is_idempotent(slow_store):
    timed = TimedStore(slow_store, timeout=1.0)
    timed.shutdown()
    timed.shutdown(wait=False)


def test_slow_write_runs_to_completion(slow_store):
    timed = TimedStore(slow_store, timeout=0.05)
    try:
        result = timed.update_account("acct-1", lambda s: s.update(current="token-2"))

        assert result == {"current": "token-2"}
        assert slow_store.sessions == {"current": "token-2"}
    finally:
        timed.shutdown()


def test_write_aborted_by_store_becomes_transport_failure(slow_store):
    timed = TimedStore(slow_store, timeout=1.0)
    try:
        with pytest.raises(TransportFailure) as excinfo:
            timed.set_password("acct-1", "hash")
        assert excinfo.value.detail == {"operation": "set_password"}
    finally:
        timed.shutdown()


def test_read_and_write_operations_are_told_apart():
    assert is_read_operation("get_account")
    assert is_read_operation("list_password_history")
    assert is_read_operation("count_recovery_codes")
    assert not is_read_operation("update_account")
    assert not is_read_operation("consume_reset_token")
