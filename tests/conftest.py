"""Shared test fixtures."""

from unittest import mock

import pytest

from pgmapper import DBConfig, Mapper


@pytest.fixture
def db_config():
    return DBConfig(
        user="app",
        password="secret",
        host="db.local",
        port="5432",
        database="finery",
        sslmode="disable",
    )


@pytest.fixture
def cursor():
    """A driver cursor that returns no result set unless a test says otherwise."""
    cur = mock.MagicMock()
    cur.description = None
    cur.fetchall.return_value = []
    return cur


@pytest.fixture
def fake_conn(cursor):
    conn = mock.MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    conn.notifies = []
    conn.closed = 0
    return conn


@pytest.fixture
def connect(monkeypatch, fake_conn):
    """Replace psycopg2.connect so no server is needed."""
    connect = mock.MagicMock(return_value=fake_conn)
    monkeypatch.setattr("psycopg2.connect", connect)
    return connect


@pytest.fixture
def mapper(db_config, connect):
    m = Mapper(db_config, source="items")
    yield m
    m.close()
