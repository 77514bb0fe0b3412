# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

import psycopg
import pytest

from repack_isolation.catalog import ArtifactNames, CatalogMonitor
from repack_isolation.config import ScenarioConfig
from repack_isolation.errors import SetupError
from repack_isolation.registry import CredentialRegistry

NAMES = ArtifactNames(16384)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def execute(self, query, params=()):
        self.conn.queries.append(params)
        if self.conn.errors:
            raise self.conn.errors.pop(0)

    def fetchall(self):
        return list(self.conn.rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None


class FakeAdminConnection:
    def __init__(self, rows=(), errors=(), broken=False):
        self.rows = list(rows)
        self.errors = list(errors)
        self.broken = broken
        self.closed = False
        self.queries = []

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


class FakeRegistry(CredentialRegistry):
    def __init__(self, *connections, connect_error=None):
        super().__init__(ScenarioConfig())
        self.pending = list(connections)
        self.connect_error = connect_error
        self.opened = []

    def connect_admin(self, dbname=None):
        if self.connect_error is not None:
            raise self.connect_error
        conn = self.pending.pop(0)
        self.opened.append(conn)
        return conn


def test_predicates_answer_from_catalog():
    registry = FakeRegistry(FakeAdminConnection(rows=[(True,)]))
    monitor = CatalogMonitor(registry).connect()
    assert monitor.log_table_exists(NAMES) is True
    assert registry.opened[0].queries == [("repack", "log_16384")]


def test_failed_query_is_unknown_and_keeps_healthy_connection():
    conn = FakeAdminConnection(rows=[(False,)], errors=[psycopg.errors.QueryCanceled("canceling statement")])
    monitor = CatalogMonitor(FakeRegistry(conn)).connect()

    assert monitor.copy_in_progress(NAMES) is None
    assert not conn.closed
    assert monitor.copy_in_progress(NAMES) is False


def test_broken_connection_is_replaced_on_next_poll():
    broken = FakeAdminConnection(errors=[psycopg.OperationalError("server closed the connection")], broken=True)
    healthy = FakeAdminConnection(rows=[(True,)])
    registry = FakeRegistry(broken, healthy)
    monitor = CatalogMonitor(registry).connect()

    assert monitor.relation_visible(NAMES.intermediate) is None
    assert broken.closed
    assert monitor.relation_visible(NAMES.intermediate) is True
    assert registry.opened == [broken, healthy]


def test_unreachable_database_is_setup_error():
    registry = FakeRegistry(connect_error=psycopg.OperationalError("connection refused"))
    with pytest.raises(SetupError, match="run provision first"):
        CatalogMonitor(registry).connect()


def test_missing_source_table_is_setup_error():
    monitor = CatalogMonitor(FakeRegistry(FakeAdminConnection(rows=[])))
    with pytest.raises(SetupError, match="does not exist; run provision first"):
        monitor.relation_oid(NAMES.change_log)
