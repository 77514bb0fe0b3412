# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Credentialed read attempts classified as ALLOWED or DENIED."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

import psycopg
from psycopg import errors, sql

from .catalog import ObjectRef
from .registry import Actor, CredentialRegistry

logger = logging.getLogger(__name__)


class ProbeResult(enum.Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


class ProbeErrorKind(enum.Enum):
    CONNECTION = "connection"
    PERMISSION = "permission"
    UNDEFINED_OBJECT = "undefined_object"
    TIMEOUT = "timeout"
    OTHER = "other"


@dataclass(frozen=True)
class ProbeError:
    kind: ProbeErrorKind
    message: str
    sqlstate: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: psycopg.Error) -> "ProbeError":
        return cls(classify(exc), str(exc).strip(), exc.sqlstate)


@dataclass(frozen=True)
class ProbeOutcome:
    result: ProbeResult
    row_count: Optional[int] = None
    error: Optional[ProbeError] = None

    @property
    def allowed(self) -> bool:
        return self.result is ProbeResult.ALLOWED

    def describe(self) -> str:
        if self.error is not None:
            return f"{self.result.value} ({self.error.kind.value}: {self.error.message})"
        if self.row_count is not None:
            return f"{self.result.value} ({self.row_count} rows)"
        return self.result.value


@dataclass(frozen=True)
class MetadataVisibility:
    visible: bool
    resolved_name: Optional[str] = None
    error: Optional[ProbeError] = None


def classify(exc: psycopg.Error) -> ProbeErrorKind:
    if isinstance(exc, (errors.InsufficientPrivilege, errors.InvalidAuthorizationSpecification)):
        return ProbeErrorKind.PERMISSION
    if isinstance(exc, (errors.UndefinedTable, errors.InvalidSchemaName, errors.UndefinedObject)):
        return ProbeErrorKind.UNDEFINED_OBJECT
    if isinstance(exc, (errors.QueryCanceled, errors.LockNotAvailable)):
        return ProbeErrorKind.TIMEOUT
    if isinstance(exc, psycopg.OperationalError):
        return ProbeErrorKind.CONNECTION
    return ProbeErrorKind.OTHER


class AccessProbe:
    """Open a fresh connection per probe as the given actor.

    Every read is a pure SELECT; the connection is closed whichever way
    the attempt ends.
    """

    def __init__(self, registry: CredentialRegistry, timeout: Optional[float] = None) -> None:
        self.registry = registry
        self.timeout = timeout if timeout is not None else registry.config.probe_timeout

    def probe(self, actor: Actor, ref: ObjectRef, *, count_rows: bool = False) -> ProbeOutcome:
        if count_rows:
            query = sql.SQL("SELECT count(*) FROM {}").format(ref.identifier())
        else:
            query = sql.SQL("SELECT * FROM {} LIMIT 1").format(ref.identifier())
        try:
            with self.registry.connect(actor, statement_timeout=self.timeout) as conn:
                rows = conn.execute(query).fetchall()
        except psycopg.Error as exc:
            outcome = ProbeOutcome(ProbeResult.DENIED, error=ProbeError.from_exception(exc))
            logger.debug("probe %s -> %s: %s", actor, ref, outcome.describe())
            return outcome
        row_count = int(rows[0][0]) if count_rows else len(rows)
        return ProbeOutcome(ProbeResult.ALLOWED, row_count=row_count)

    def probe_metadata_visibility(
        self, actor: Actor, schema: str, name_pattern: str
    ) -> MetadataVisibility:
        """Whether ``actor`` can see a relation name in the catalog; never a verdict."""
        query = """
            SELECT c.relname
              FROM pg_class c
              JOIN pg_namespace n ON n.oid = c.relnamespace
             WHERE n.nspname = %s AND c.relname LIKE %s
             ORDER BY c.relname
             LIMIT 1
        """
        try:
            with self.registry.connect(actor, statement_timeout=self.timeout) as conn:
                row = conn.execute(query, (schema, name_pattern)).fetchone()
        except psycopg.Error as exc:
            return MetadataVisibility(False, error=ProbeError.from_exception(exc))
        if row is None:
            return MetadataVisibility(False)
        return MetadataVisibility(True, resolved_name=row[0])
