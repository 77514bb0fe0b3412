# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Immutable run configuration layered from defaults, an env file and the environment."""

from __future__ import annotations

import dataclasses
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple

from .errors import ConfigError

DEFAULT_ENV_PATH = Path(".env")


def load_env(path: Path) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if not path.exists():
        return env
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        env[key.strip()] = value
    return env


@dataclass(frozen=True)
class ScenarioConfig:
    # database under test
    dbname: str = "repack_isolation_test"
    host: Optional[str] = "localhost"
    port: int = 5432
    connect_timeout: int = 10

    # superuser side (provisioning, catalog polling); None means libpq defaults
    admin_user: Optional[str] = None
    admin_password: Optional[str] = None
    admin_host: Optional[str] = None
    admin_dbname: str = "postgres"

    owner_role: str = "repack_user1"
    owner_password: str = "repack_pass1_123"
    owner_schema: str = "user1_schema"
    peer_role: str = "repack_user2"
    peer_password: str = "repack_pass2_123"
    peer_schema: str = "user2_schema"
    outsider_role: str = "no_repack_user"
    outsider_password: str = "no_repack_pass_123"
    outsider_schema: str = "user3_schema"

    table: str = "source_data"
    row_count: int = 10_000_000
    side_row_count: int = 100
    fillfactor: int = 70

    workload_clients: int = 2
    workload_duration: int = 600
    workload_settle: float = 2.0
    workload_grace: float = 1.0

    copy_poll_interval: float = 0.5
    copy_poll_attempts: int = 60
    commit_poll_interval: float = 1.0
    commit_poll_attempts: int = 600
    drain_timeout: float = 600.0
    operation_grace: float = 2.0
    probe_timeout: float = 30.0

    pg_repack_bin: str = "pg_repack"
    pgbench_bin: str = "pgbench"
    repack_extra_args: Tuple[str, ...] = field(default_factory=tuple)

    work_dir: Path = Path(".")
    log_file: str = "test_multiuser_isolation.log"
    operation_log: str = "repack_output.log"
    workload_log: str = "workload_output.log"
    workload_script: str = "workload_script.sql"

    @property
    def qualified_table(self) -> str:
        return f"{self.owner_schema}.{self.table}"

    @property
    def log_path(self) -> Path:
        return self.work_dir / self.log_file

    @property
    def operation_log_path(self) -> Path:
        return self.work_dir / self.operation_log

    @property
    def workload_log_path(self) -> Path:
        return self.work_dir / self.workload_log

    @property
    def workload_script_path(self) -> Path:
        return self.work_dir / self.workload_script

    def replace(self, **changes) -> "ScenarioConfig":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_sources(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, object]] = None,
    ) -> "ScenarioConfig":
        values: Dict[str, str] = {}
        values.update(load_env(env_file or DEFAULT_ENV_PATH))
        if environ:
            values.update({k: v for k, v in environ.items() if k in ENV_KEYS.values()})

        changes: Dict[str, object] = {}
        for field_name, env_key in ENV_KEYS.items():
            if env_key in values:
                changes[field_name] = _convert(field_name, env_key, values[env_key])
        for field_name, value in (overrides or {}).items():
            if value is not None:
                changes[field_name] = value

        config = cls(**changes)
        config.validate()
        return config

    def validate(self) -> None:
        positive_ints = (
            "port", "row_count", "workload_clients", "workload_duration",
            "copy_poll_attempts", "commit_poll_attempts", "connect_timeout",
        )
        for name in positive_ints:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        positive_floats = (
            "copy_poll_interval", "commit_poll_interval", "drain_timeout", "probe_timeout",
        )
        for name in positive_floats:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if not 10 <= self.fillfactor <= 100:
            raise ConfigError(f"fillfactor must be within 10..100, got {self.fillfactor}")
        roles = {self.owner_role, self.peer_role, self.outsider_role}
        if len(roles) != 3:
            raise ConfigError("owner, peer and outsider roles must be distinct")


ENV_KEYS: Dict[str, str] = {
    "dbname": "REPACK_DB_NAME",
    "host": "REPACK_DB_HOST",
    "port": "REPACK_DB_PORT",
    "connect_timeout": "REPACK_CONNECT_TIMEOUT",
    "admin_user": "REPACK_ADMIN_USER",
    "admin_password": "REPACK_ADMIN_PASSWORD",
    "admin_host": "REPACK_ADMIN_HOST",
    "admin_dbname": "REPACK_ADMIN_DB",
    "owner_role": "REPACK_OWNER_ROLE",
    "owner_password": "REPACK_OWNER_PASSWORD",
    "owner_schema": "REPACK_OWNER_SCHEMA",
    "peer_role": "REPACK_PEER_ROLE",
    "peer_password": "REPACK_PEER_PASSWORD",
    "peer_schema": "REPACK_PEER_SCHEMA",
    "outsider_role": "REPACK_OUTSIDER_ROLE",
    "outsider_password": "REPACK_OUTSIDER_PASSWORD",
    "outsider_schema": "REPACK_OUTSIDER_SCHEMA",
    "table": "REPACK_TABLE",
    "row_count": "REPACK_ROW_COUNT",
    "side_row_count": "REPACK_SIDE_ROW_COUNT",
    "fillfactor": "REPACK_FILLFACTOR",
    "workload_clients": "REPACK_WORKLOAD_CLIENTS",
    "workload_duration": "REPACK_WORKLOAD_DURATION",
    "workload_settle": "REPACK_WORKLOAD_SETTLE",
    "workload_grace": "REPACK_WORKLOAD_GRACE",
    "copy_poll_interval": "REPACK_COPY_POLL_INTERVAL",
    "copy_poll_attempts": "REPACK_COPY_POLL_ATTEMPTS",
    "commit_poll_interval": "REPACK_COMMIT_POLL_INTERVAL",
    "commit_poll_attempts": "REPACK_COMMIT_POLL_ATTEMPTS",
    "drain_timeout": "REPACK_DRAIN_TIMEOUT",
    "operation_grace": "REPACK_OPERATION_GRACE",
    "probe_timeout": "REPACK_PROBE_TIMEOUT",
    "pg_repack_bin": "REPACK_PG_REPACK_BIN",
    "pgbench_bin": "REPACK_PGBENCH_BIN",
    "repack_extra_args": "REPACK_EXTRA_ARGS",
    "work_dir": "REPACK_WORK_DIR",
    "log_file": "REPACK_LOG_FILE",
    "operation_log": "REPACK_OPERATION_LOG",
    "workload_log": "REPACK_WORKLOAD_LOG",
    "workload_script": "REPACK_WORKLOAD_SCRIPT",
}

_INT_FIELDS = {
    "port", "connect_timeout", "row_count", "side_row_count", "fillfactor",
    "workload_clients", "workload_duration", "copy_poll_attempts", "commit_poll_attempts",
}
_FLOAT_FIELDS = {
    "workload_settle", "workload_grace", "copy_poll_interval", "commit_poll_interval",
    "drain_timeout", "operation_grace", "probe_timeout",
}
_OPTIONAL_FIELDS = {"host", "admin_user", "admin_password", "admin_host"}


def _convert(field_name: str, env_key: str, raw: str) -> object:
    converter: Callable[[str], object]
    if field_name in _INT_FIELDS:
        converter = int
    elif field_name in _FLOAT_FIELDS:
        converter = float
    elif field_name == "repack_extra_args":
        converter = lambda value: tuple(shlex.split(value))  # noqa: E731
    elif field_name == "work_dir":
        converter = Path
    elif field_name in _OPTIONAL_FIELDS:
        converter = lambda value: value or None  # noqa: E731
    else:
        converter = str
    try:
        return converter(raw)
    except ValueError as exc:
        raise ConfigError(f"{env_key}: invalid value {raw!r}") from exc
