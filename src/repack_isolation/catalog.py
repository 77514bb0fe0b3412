# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Catalog state observed through a persistent administrative connection.

Predicates answer ``True``/``False`` or ``None`` when the catalog could not
be queried. "Copy in progress" and "intermediate table visible" are
external approximations of pg_repack's internal phases, not a mirror of
them: a table can be dropped between two polls and an INSERT can be caught
during log replay rather than the initial copy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import psycopg
from psycopg import sql

from .errors import SetupError
from .registry import Actor, CredentialRegistry

logger = logging.getLogger(__name__)

REPACK_SCHEMA = "repack"


@dataclass(frozen=True)
class ObjectRef:
    schema: str
    name: str

    @classmethod
    def parse(cls, qualified: str) -> "ObjectRef":
        schema, _, name = qualified.partition(".")
        if not name:
            return cls("public", schema)
        return cls(schema, name)

    def identifier(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.name)

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class ArtifactNames:
    """Names pg_repack derives from the target table's OID."""

    oid: int
    schema: str = REPACK_SCHEMA

    @property
    def intermediate(self) -> ObjectRef:
        return ObjectRef(self.schema, f"table_{self.oid}")

    @property
    def change_log(self) -> ObjectRef:
        return ObjectRef(self.schema, f"log_{self.oid}")

    @property
    def intermediate_pattern(self) -> str:
        return f"table_%{self.oid}"

    @property
    def copy_statement(self) -> str:
        return f"INSERT INTO {self.intermediate}"


class CatalogMonitor:
    def __init__(self, registry: CredentialRegistry) -> None:
        self.registry = registry
        self.config = registry.config
        self._conn: Optional[psycopg.Connection] = None

    def connect(self) -> "CatalogMonitor":
        try:
            self._connection()
        except psycopg.Error as exc:
            raise SetupError(
                f"cannot connect to database {self.config.dbname}; run provision first ({exc})"
            ) from exc
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "CatalogMonitor":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _connection(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            self._conn = self.registry.connect_admin()
        return self._conn

    def _fetch(self, query, params: Sequence = ()) -> List[Tuple]:
        with self._connection().cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def _exists(self, query, params: Sequence) -> Optional[bool]:
        try:
            rows = self._fetch(query, params)
        except psycopg.Error as exc:
            logger.warning("catalog query failed: %s", exc)
            if self._conn is not None and self._conn.broken:
                self.close()
            return None
        return bool(rows and rows[0][0])

    def relation_oid(self, ref: ObjectRef) -> int:
        try:
            rows = self._fetch(
                """
                SELECT c.oid
                  FROM pg_class c
                  JOIN pg_namespace n ON n.oid = c.relnamespace
                 WHERE n.nspname = %s AND c.relname = %s
                """,
                (ref.schema, ref.name),
            )
        except psycopg.Error as exc:
            raise SetupError(f"cannot look up {ref}: {exc}") from exc
        if not rows:
            raise SetupError(f"table {ref} does not exist; run provision first")
        return int(rows[0][0])

    def extension_version(self, name: str) -> Optional[str]:
        try:
            rows = self._fetch("SELECT extversion FROM pg_extension WHERE extname = %s", (name,))
        except psycopg.Error as exc:
            raise SetupError(f"cannot read extension {name}: {exc}") from exc
        return rows[0][0] if rows else None

    def log_table_exists(self, names: ArtifactNames) -> Optional[bool]:
        return self._exists(
            """
            SELECT EXISTS (
                SELECT 1 FROM pg_tables WHERE schemaname = %s AND tablename = %s
            )
            """,
            (names.change_log.schema, names.change_log.name),
        )

    def copy_in_progress(self, names: ArtifactNames) -> Optional[bool]:
        return self._exists(
            """
            SELECT EXISTS (
                SELECT 1 FROM pg_stat_activity
                 WHERE datname = %s AND state = 'active' AND pid <> pg_backend_pid()
                   AND strpos(query, %s) > 0
            )
            """,
            (self.config.dbname, names.copy_statement),
        )

    def relation_visible(self, ref: ObjectRef) -> Optional[bool]:
        return self._exists(
            """
            SELECT EXISTS (
                SELECT 1
                  FROM pg_class c
                  JOIN pg_namespace n ON n.oid = c.relnamespace
                 WHERE n.nspname = %s AND c.relname = %s
            )
            """,
            (ref.schema, ref.name),
        )

    def artifact_listing(self, names: ArtifactNames) -> List[Tuple]:
        try:
            return self._fetch(
                """
                SELECT c.relname, c.relowner::regrole::text,
                       pg_size_pretty(pg_relation_size(c.oid))
                  FROM pg_class c
                  JOIN pg_namespace n ON n.oid = c.relnamespace
                 WHERE n.nspname = %s AND c.relname LIKE %s
                 ORDER BY c.relname
                """,
                (names.schema, f"%{names.oid}"),
            )
        except psycopg.Error as exc:
            logger.warning("cannot list artifacts: %s", exc)
            return []

    def active_queries(self, role: str) -> List[Tuple]:
        try:
            return self._fetch(
                """
                SELECT pid, usename, state, left(query, 100)
                  FROM pg_stat_activity
                 WHERE datname = %s AND usename = %s AND state = 'active'
                """,
                (self.config.dbname, role),
            )
        except psycopg.Error as exc:
            logger.warning("cannot list active queries: %s", exc)
            return []

    def change_log_stats(self, names: ArtifactNames, owner: Actor) -> Optional[Tuple[int, int]]:
        """Total and distinct-row counts in the change log, read as its owner."""
        query = sql.SQL("SELECT count(*), count(DISTINCT pk) FROM {}").format(
            names.change_log.identifier()
        )
        try:
            with self.registry.connect(owner, statement_timeout=self.config.probe_timeout) as conn:
                row = conn.execute(query).fetchone()
        except psycopg.Error as exc:
            logger.info("  change log unavailable: %s", str(exc).strip())
            return None
        return int(row[0]), int(row[1])
