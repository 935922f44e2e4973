import logging

import psycopg2
import pytest

from keydesk import app_context
from keydesk.app.audit import AuditEvent, LoggingAuditSink, emit_audit
from keydesk.app.errors import TransientStorageFailure
from keydesk.app.storage import dict_cursor, managed_connection


class FakeCursor:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self) -> None:
        self.committed = False
        self.rolled_back = False
        self.closed = False
        self.cursors = []

    def cursor(self, cursor_factory=None):
        cursor = FakeCursor()
        self.cursors.append(cursor)
        return cursor

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self.rolled_back = True

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_conn(monkeypatch):
    conn = FakeConnection()
    monkeypatch.setattr(app_context, "_get_conn", lambda: conn)
    return conn


def test_managed_connection_commits_and_closes(fake_conn):
    with managed_connection() as (conn, managed):
        assert conn is fake_conn
        assert managed is True

    assert fake_conn.committed
    assert fake_conn.closed


def test_managed_connection_rolls_back_on_error(fake_conn):
    with pytest.raises(RuntimeError):
        with managed_connection():
            raise RuntimeError("boom")

    assert fake_conn.rolled_back
    assert not fake_conn.committed
    assert fake_conn.closed


def test_caller_owned_connection_is_left_alone():
    conn = FakeConnection()

    with managed_connection(conn) as (yielded, managed):
        assert yielded is conn
        assert managed is False

    assert not conn.committed
    assert not conn.closed


def test_operational_errors_become_transient_failures(fake_conn):
    with pytest.raises(TransientStorageFailure) as excinfo:
        with dict_cursor():
            raise psycopg2.OperationalError("server closed the connection")

    assert excinfo.value.status_code == 503
    assert fake_conn.rolled_back
    assert fake_conn.cursors[0].closed


def test_connect_failure_becomes_transient_failure(monkeypatch):
    def refuse():
        raise psycopg2.OperationalError("could not connect")

    monkeypatch.setattr(app_context, "_get_conn", refuse)

    with pytest.raises(TransientStorageFailure):
        with managed_connection():
            pass


def test_emit_audit_never_raises():
    class BrokenSink:
        def record(self, event: AuditEvent) -> None:
            raise RuntimeError("sink down")

    emit_audit(BrokenSink(), "subscriptions.created", actor="alice")
    emit_audit(None, "subscriptions.created")


def test_logging_sink_writes_audit_line(caplog):
    with caplog.at_level(logging.INFO, logger="keydesk.audit"):
        emit_audit(LoggingAuditSink(), "subscriptions.disabled", actor="alice", subject="KEY1")

    assert "[AUDIT] subscriptions.disabled actor=alice subject=KEY1" in caplog.text
