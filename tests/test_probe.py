# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

import psycopg
import pytest
from psycopg import errors

from repack_isolation.catalog import ArtifactNames, ObjectRef
from repack_isolation.config import ScenarioConfig
from repack_isolation.probe import AccessProbe, ProbeErrorKind, ProbeResult, classify
from repack_isolation.registry import CredentialRegistry


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchall(self):
        return list(self._rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None


class FakeConnection:
    def __init__(self, rows=(), error=None):
        self.rows = list(rows)
        self.error = error
        self.closed = False
        self.queries = []

    def execute(self, query, params=None):
        self.queries.append((query, params))
        if self.error is not None:
            raise self.error
        return FakeCursor(self.rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True


class FakeRegistry(CredentialRegistry):
    def __init__(self, connection=None, connect_error=None):
        super().__init__(ScenarioConfig())
        self.connection = connection
        self.connect_error = connect_error
        self.connects = []

    def connect(self, actor, *, statement_timeout=None, dbname=None):
        self.connects.append((actor.name, statement_timeout))
        if self.connect_error is not None:
            raise self.connect_error
        return self.connection


LOG_TABLE = ArtifactNames(16384).change_log


def test_successful_read_is_allowed_even_without_rows():
    conn = FakeConnection(rows=[])
    registry = FakeRegistry(conn)
    outcome = AccessProbe(registry, timeout=5).probe(registry.owner, LOG_TABLE)
    assert outcome.result is ProbeResult.ALLOWED
    assert outcome.row_count == 0
    assert outcome.error is None
    assert conn.closed
    assert registry.connects == [("repack_user1", 5)]


def test_count_rows_reports_the_count():
    conn = FakeConnection(rows=[(1234,)])
    registry = FakeRegistry(conn)
    outcome = AccessProbe(registry).probe(registry.owner, LOG_TABLE, count_rows=True)
    assert outcome.allowed
    assert outcome.row_count == 1234
    assert "1234 rows" in outcome.describe()


def test_permission_denied_is_denied_and_connection_released():
    conn = FakeConnection(error=errors.InsufficientPrivilege("permission denied for table log_16384"))
    registry = FakeRegistry(conn)
    outcome = AccessProbe(registry).probe(registry.peer, LOG_TABLE)
    assert outcome.result is ProbeResult.DENIED
    assert outcome.error.kind is ProbeErrorKind.PERMISSION
    assert outcome.error.sqlstate == "42501"
    assert "permission denied" in outcome.describe()
    assert conn.closed


def test_connection_failure_is_denied():
    registry = FakeRegistry(connect_error=psycopg.OperationalError("password authentication failed"))
    outcome = AccessProbe(registry).probe(registry.outsider, LOG_TABLE)
    assert outcome.result is ProbeResult.DENIED
    assert outcome.error.kind is ProbeErrorKind.CONNECTION


def test_missing_object_is_a_non_diagnostic_denial():
    conn = FakeConnection(error=errors.UndefinedTable('relation "repack.table_16384" does not exist'))
    registry = FakeRegistry(conn)
    outcome = AccessProbe(registry).probe(registry.peer, ArtifactNames(16384).intermediate)
    assert outcome.result is ProbeResult.DENIED
    assert outcome.error.kind is ProbeErrorKind.UNDEFINED_OBJECT


@pytest.mark.parametrize(
    "exc,kind",
    [
        (errors.InsufficientPrivilege("x"), ProbeErrorKind.PERMISSION),
        (errors.InvalidSchemaName("x"), ProbeErrorKind.UNDEFINED_OBJECT),
        (errors.QueryCanceled("canceling statement due to statement timeout"), ProbeErrorKind.TIMEOUT),
        (psycopg.OperationalError("server closed the connection"), ProbeErrorKind.CONNECTION),
        (errors.DivisionByZero("x"), ProbeErrorKind.OTHER),
    ],
)
def test_classify(exc, kind):
    assert classify(exc) is kind


def test_metadata_visibility_resolves_name():
    conn = FakeConnection(rows=[("table_16384",)])
    registry = FakeRegistry(conn)
    seen = AccessProbe(registry).probe_metadata_visibility(registry.outsider, "repack", "table_%16384")
    assert seen.visible
    assert seen.resolved_name == "table_16384"
    assert conn.queries[0][1] == ("repack", "table_%16384")
    assert conn.closed


def test_metadata_visibility_hidden_or_failed():
    registry = FakeRegistry(FakeConnection(rows=[]))
    seen = AccessProbe(registry).probe_metadata_visibility(registry.peer, "repack", "%")
    assert not seen.visible
    assert seen.resolved_name is None

    registry = FakeRegistry(FakeConnection(error=errors.InsufficientPrivilege("denied")))
    seen = AccessProbe(registry).probe_metadata_visibility(registry.peer, "repack", "%")
    assert not seen.visible
    assert seen.error.kind is ProbeErrorKind.PERMISSION


def test_artifact_names_follow_target_oid():
    names = ArtifactNames(16384)
    assert str(names.intermediate) == "repack.table_16384"
    assert str(names.change_log) == "repack.log_16384"
    assert names.copy_statement == "INSERT INTO repack.table_16384"
    assert ObjectRef.parse("user1_schema.source_data") == ObjectRef("user1_schema", "source_data")
    assert ObjectRef.parse("source_data") == ObjectRef("public", "source_data")
