import psycopg2
import pytest

from newsdesk.utils import db as db_module
from newsdesk.utils.db import DatabaseClient


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def execute(self, sql, params=None):
        self.conn.statements.append(sql)
        if self.conn.execute_error is not None:
            raise self.conn.execute_error

    def fetchone(self):
        return {'id': 'issue-1', 'status': 'draft'}

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, execute_error=None):
        self.execute_error = execute_error
        self.statements = []
        self.committed = False
        self.rolled_back = False
        self.closed = False
        self.cursors = []

    def cursor(self):
        cursor = FakeCursor(self)
        self.cursors.append(cursor)
        return cursor

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv('DATABASE_URL', 'postgresql://localhost/newsdesk_test')
    sleeps = []
    monkeypatch.setattr(db_module.time, 'sleep', sleeps.append)
    database = DatabaseClient()
    database.sleeps = sleeps
    return database


def test_statement_error_propagates_with_its_own_type(client, monkeypatch) -> None:
    connections = []

    def connect():
        conn = FakeConnection(execute_error=psycopg2.OperationalError('server closed the connection'))
        connections.append(conn)
        return conn

    monkeypatch.setattr(client, '_create_connection', connect)

    with pytest.raises(psycopg2.OperationalError, match='server closed the connection'):
        client.get_issue('issue-1')

    assert len(connections) == 1
    conn = connections[0]
    assert conn.rolled_back is True
    assert conn.committed is False
    assert conn.closed is True
    assert conn.cursors[0].closed is True


def test_connection_is_retried_with_linear_backoff(client, monkeypatch) -> None:
    attempts = []

    def flaky_connect():
        attempts.append(1)
        if len(attempts) < 3:
            raise psycopg2.OperationalError('SSL SYSCALL error: EOF detected')
        return FakeConnection()

    monkeypatch.setattr(client, '_create_connection', flaky_connect)

    issue = client.get_issue('issue-1')

    assert issue == {'id': 'issue-1', 'status': 'draft'}
    assert len(attempts) == 3
    assert client.sleeps == [1, 2]


def test_connection_gives_up_after_three_attempts(client, monkeypatch) -> None:
    attempts = []

    def dead_connect():
        attempts.append(1)
        raise psycopg2.InterfaceError('connection already closed')

    monkeypatch.setattr(client, '_create_connection', dead_connect)

    with pytest.raises(psycopg2.InterfaceError):
        client.ping()

    assert len(attempts) == 3


def test_successful_statement_commits_and_closes(client, monkeypatch) -> None:
    conn = FakeConnection()
    monkeypatch.setattr(client, '_create_connection', lambda: conn)

    assert client.ping() is True
    assert conn.committed is True
    assert conn.closed is True
    assert conn.statements == ['SELECT 1']
