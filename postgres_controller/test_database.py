"""
Tests for CommandExecutor

psycopg2.connect is mocked; no database is needed.
"""

from unittest.mock import MagicMock, call, patch

import psycopg2
import pytest

from postgres_controller.database import CommandExecutor
from postgres_controller.errors import CommandExecutionError, ProvisioningError
from postgres_controller.models import Endpoint

ENDPOINT = Endpoint(ip="10.0.0.5", port=31432)


def _connection():
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    return conn, cursor


def _executor() -> CommandExecutor:
    return CommandExecutor(user="postgres", password="secret", admin_database="postgres", connect_timeout=3)


def test_failing_statement_aborts_the_rest():
    """Statement 2 of 3 fails: statement 3 never runs and the connection is closed"""
    print("🧪 Testing CommandExecutor failure handling...")

    conn, cursor = _connection()
    cursor.execute.side_effect = [None, psycopg2.ProgrammingError("syntax error"), None]

    with patch("postgres_controller.database.psycopg2.connect", return_value=conn):
        with pytest.raises(CommandExecutionError) as excinfo:
            _executor().apply(ENDPOINT, [
                'CREATE DATABASE "a";',
                "CREATE NONSENSE;",
                'CREATE DATABASE "c";',
            ])

    assert excinfo.value.index == 1, "Second statement should be reported"
    assert excinfo.value.statement == "CREATE NONSENSE;"
    assert cursor.execute.call_count == 2, "Third statement must not run"
    conn.close.assert_called_once()

    print("✅ CommandExecutor failure tests passed!")


def test_statements_run_in_order_with_autocommit():
    conn, cursor = _connection()
    commands = ['CREATE DATABASE "a";', 'CREATE USER "u" WITH PASSWORD \'p\';']

    with patch("postgres_controller.database.psycopg2.connect", return_value=conn) as connect:
        applied = _executor().apply(ENDPOINT, commands)

    assert applied == commands
    assert cursor.execute.call_args_list == [call(c) for c in commands]
    assert conn.autocommit is True, "CREATE DATABASE cannot run inside a transaction"
    connect.assert_called_once_with(
        host="10.0.0.5",
        port=31432,
        dbname="postgres",
        user="postgres",
        password="secret",
        connect_timeout=3,
    )
    conn.close.assert_called_once()


def test_target_database():
    conn, _ = _connection()
    with patch("postgres_controller.database.psycopg2.connect", return_value=conn) as connect:
        _executor().apply(ENDPOINT, ["create table t (a int);"], database="sales")

    assert connect.call_args.kwargs["dbname"] == "sales"


def test_connect_directive_switches_database():
    first, _ = _connection()
    second, second_cursor = _connection()

    with patch("postgres_controller.database.psycopg2.connect", side_effect=[first, second]) as connect:
        applied = _executor().apply(ENDPOINT, [
            "select 1;",
            "\\c sales",
            "create table t (a int);",
        ])

    assert applied == ["select 1;", "\\c sales", "create table t (a int);"]
    assert [c.kwargs["dbname"] for c in connect.call_args_list] == ["postgres", "sales"]
    first.close.assert_called_once()
    second.close.assert_called_once()
    second_cursor.execute.assert_called_once_with("create table t (a int);")


def test_connection_failure_is_a_command_error():
    with patch("postgres_controller.database.psycopg2.connect",
               side_effect=psycopg2.OperationalError("connection refused")):
        with pytest.raises(CommandExecutionError) as excinfo:
            _executor().apply(ENDPOINT, ['CREATE DATABASE "a";'])
    assert excinfo.value.index == 0


def test_empty_command_list_does_not_connect():
    with patch("postgres_controller.database.psycopg2.connect") as connect:
        assert _executor().apply(ENDPOINT, []) == []
    connect.assert_not_called()


def test_passwords_are_redacted_in_errors():
    conn, cursor = _connection()
    cursor.execute.side_effect = psycopg2.Error("role exists")

    with patch("postgres_controller.database.psycopg2.connect", return_value=conn):
        with pytest.raises(CommandExecutionError) as excinfo:
            _executor().apply(ENDPOINT, ['CREATE USER "u" WITH PASSWORD \'hunter2\';'])

    assert "hunter2" not in str(excinfo.value)


def test_ping():
    conn, cursor = _connection()
    with patch("postgres_controller.database.psycopg2.connect", return_value=conn):
        _executor().ping(ENDPOINT)
    cursor.execute.assert_called_once_with("SELECT 1;")
    conn.close.assert_called_once()

    with patch("postgres_controller.database.psycopg2.connect",
               side_effect=psycopg2.OperationalError("timeout")):
        with pytest.raises(ProvisioningError):
            _executor().ping(ENDPOINT)
