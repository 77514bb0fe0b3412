# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Create and destroy the database, roles and tables the scenario runs against.

Both commands need a superuser connection and are safe to repeat.
"""

from __future__ import annotations

import logging
import subprocess
import time

import psycopg
from psycopg import sql

from .catalog import REPACK_SCHEMA
from .config import ScenarioConfig
from .errors import SetupError
from .operation import EXTENSION
from .registry import Actor, CredentialRegistry

logger = logging.getLogger(__name__)


def _admin(registry: CredentialRegistry, dbname: str) -> psycopg.Connection:
    try:
        return registry.connect_admin(dbname)
    except psycopg.Error as exc:
        raise SetupError(
            f"cannot connect to PostgreSQL database {dbname} as administrator: {exc}"
        ) from exc


def _grant_repack(conn: psycopg.Connection, actor: Actor) -> None:
    schema = sql.Identifier(REPACK_SCHEMA)
    role = sql.Identifier(actor.name)
    statements = [
        "GRANT USAGE, CREATE ON SCHEMA {schema} TO {role}",
        "GRANT EXECUTE ON ALL FUNCTIONS IN SCHEMA {schema} TO {role}",
        "GRANT SELECT ON ALL TABLES IN SCHEMA {schema} TO {role}",
        "ALTER DEFAULT PRIVILEGES IN SCHEMA {schema} GRANT EXECUTE ON FUNCTIONS TO {role}",
        "ALTER DEFAULT PRIVILEGES IN SCHEMA {schema} GRANT SELECT ON TABLES TO {role}",
    ]
    for statement in statements:
        conn.execute(sql.SQL(statement).format(schema=schema, role=role))


def _create_side_table(registry: CredentialRegistry, actor: Actor, rows: int) -> None:
    table = sql.Identifier(actor.schema, "source_data")
    with registry.connect(actor) as conn:
        conn.execute(
            sql.SQL("CREATE TABLE {} (id SERIAL PRIMARY KEY, data TEXT)").format(table)
        )
        conn.execute(
            sql.SQL(
                "INSERT INTO {} (data) SELECT {} || i FROM generate_series(1, %s::integer) i"
            ).format(table, sql.Literal(f"{actor.name} Row ")),
            (rows,),
        )
    logger.info("  ✓ Created %s.source_data with %s rows", actor.schema, rows)


def provision(config: ScenarioConfig, registry: CredentialRegistry) -> None:
    try:
        _provision(config, registry)
    except psycopg.Error as exc:
        raise SetupError(f"provisioning failed: {str(exc).strip()}") from exc


def _provision(config: ScenarioConfig, registry: CredentialRegistry) -> None:
    logger.info("=== Setting up multi-user isolation test environment ===")
    with _admin(registry, config.admin_dbname) as conn:
        logger.info("✓ Connected to PostgreSQL")
        logger.info("Cleaning up any existing test artifacts...")
        _drop_database(conn, config.dbname)
        for actor in registry.actors():
            conn.execute(sql.SQL("DROP ROLE IF EXISTS {}").format(sql.Identifier(actor.name)))

        logger.info("Creating test users...")
        for actor in registry.actors():
            conn.execute(
                sql.SQL("CREATE ROLE {} WITH LOGIN PASSWORD {}").format(
                    sql.Identifier(actor.name), sql.Literal(actor.password)
                )
            )
            logger.info("  ✓ Created %s", actor)

        logger.info("Creating test database: %s", config.dbname)
        conn.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(config.dbname)))

    with _admin(registry, config.dbname) as conn:
        try:
            conn.execute(
                sql.SQL("CREATE EXTENSION IF NOT EXISTS {}").format(sql.Identifier(EXTENSION))
            )
        except psycopg.Error as exc:
            raise SetupError(f"cannot install extension {EXTENSION}: {exc}") from exc
        logger.info("  ✓ %s extension installed", EXTENSION)
        for actor in registry.actors():
            if actor.can_repack:
                _grant_repack(conn, actor)
                logger.info("  ✓ Granted repack privileges to %s", actor)
            else:
                logger.info("  ✓ %s has NO repack privileges", actor)

        logger.info("Creating user schemas...")
        for actor in registry.actors():
            conn.execute(
                sql.SQL("CREATE SCHEMA {} AUTHORIZATION {}").format(
                    sql.Identifier(actor.schema), sql.Identifier(actor.name)
                )
            )
            logger.info("  ✓ Created %s (owned by %s)", actor.schema, actor)

    owner = registry.owner
    table = sql.Identifier(config.owner_schema, config.table)
    logger.info("Creating test table for %s...", owner)
    with registry.connect(owner) as conn:
        conn.execute(
            sql.SQL(
                """
                CREATE TABLE {} (
                    id SERIAL PRIMARY KEY,
                    data TEXT,
                    created_at TIMESTAMP DEFAULT NOW()
                ) WITH (fillfactor={})
                """
            ).format(table, sql.SQL(str(int(config.fillfactor))))
        )
        # 'Initial-00000001' is as wide as the workload's 'Updated-12345678'
        conn.execute(
            sql.SQL(
                """
                INSERT INTO {} (data)
                SELECT 'Initial-' || lpad(i::text, 8, '0')
                  FROM generate_series(1, %s::integer) i
                """
            ).format(table),
            (config.row_count,),
        )
    logger.info(
        "  ✓ Created %s with %s rows (fillfactor=%s)",
        config.qualified_table,
        config.row_count,
        config.fillfactor,
    )

    for actor in (registry.peer, registry.outsider):
        _create_side_table(registry, actor, config.side_row_count)

    logger.info("Verifying privilege isolation...")
    with _admin(registry, config.dbname) as conn:
        rows = conn.execute(
            """
            SELECT schemaname, tablename, tableowner
              FROM pg_tables
             WHERE schemaname = ANY(%s)
             ORDER BY schemaname
            """,
            ([actor.schema for actor in registry.actors()],),
        ).fetchall()
    for schema, table_name, table_owner in rows:
        logger.info("  %s.%s owner=%s", schema, table_name, table_owner)
    logger.info("=== Test environment setup complete ===")


def _terminate_backends(conn: psycopg.Connection, dbname: str) -> None:
    conn.execute(
        """
        SELECT pg_terminate_backend(pid)
          FROM pg_stat_activity
         WHERE datname = %s AND pid <> pg_backend_pid()
        """,
        (dbname,),
    )


def _drop_database(conn: psycopg.Connection, dbname: str) -> None:
    _terminate_backends(conn, dbname)
    conn.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(dbname)))


def _kill_operation_processes(config: ScenarioConfig, grace: float = 2.0) -> None:
    pattern = f"{config.pg_repack_bin}.*{config.dbname}"
    found = subprocess.run(["pgrep", "-f", pattern], capture_output=True, check=False)
    if found.returncode != 0:
        return
    logger.info("Warning: found running pg_repack processes for %s, terminating", config.dbname)
    subprocess.run(["pkill", "-f", pattern], check=False)
    time.sleep(grace)
    if subprocess.run(["pgrep", "-f", pattern], capture_output=True, check=False).returncode == 0:
        logger.info("Force killing processes...")
        subprocess.run(["pkill", "-9", "-f", pattern], check=False)
    logger.info("✓ Terminated pg_repack processes")


def teardown(config: ScenarioConfig, registry: CredentialRegistry) -> None:
    try:
        _teardown(config, registry)
    except psycopg.Error as exc:
        raise SetupError(f"teardown failed: {str(exc).strip()}") from exc


def _teardown(config: ScenarioConfig, registry: CredentialRegistry) -> None:
    logger.info("=== Cleaning up multi-user isolation test environment ===")
    with _admin(registry, config.admin_dbname) as conn:
        logger.info("✓ Connected to PostgreSQL")
        try:
            _kill_operation_processes(config)
        except OSError as exc:
            logger.warning("cannot look for pg_repack processes: %s", exc)

        logger.info("Terminating active connections to %s...", config.dbname)
        _drop_database(conn, config.dbname)
        logger.info("  ✓ Dropped database %s", config.dbname)

        for actor in registry.actors():
            conn.execute(sql.SQL("DROP ROLE IF EXISTS {}").format(sql.Identifier(actor.name)))
            logger.info("  ✓ Dropped user %s", actor)

    logger.info("Removing log files...")
    for path in (
        config.log_path,
        config.operation_log_path,
        config.workload_log_path,
        config.workload_script_path,
    ):
        path.unlink(missing_ok=True)
    logger.info("=== Cleanup complete ===")
