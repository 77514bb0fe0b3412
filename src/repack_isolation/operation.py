# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Launch and supervise the pg_repack run under test."""

from __future__ import annotations

import logging
import re
import subprocess
from typing import List, Optional

from packaging.version import InvalidVersion, Version

from .catalog import CatalogMonitor
from .config import ScenarioConfig
from .errors import SetupError
from .process import SupervisedProcess
from .registry import Actor, CredentialRegistry

logger = logging.getLogger(__name__)

EXTENSION = "pg_repack"
CLIENT_VERSION_RE = re.compile(r"pg_repack\s+v?([0-9][0-9A-Za-z_.]*)")


def normalize_version(raw: Optional[str]) -> Optional[Version]:
    if not raw:
        return None
    try:
        return Version(raw.strip().lstrip("vV").replace("_", "."))
    except InvalidVersion:
        return None


def parse_client_version(output: str) -> Optional[str]:
    match = CLIENT_VERSION_RE.search(output)
    return match.group(1) if match else None


def versions_compatible(client: Optional[str], server: Optional[str]) -> Optional[bool]:
    """``None`` when either side cannot be compared."""
    client_version = normalize_version(client)
    server_version = normalize_version(server)
    if client_version is None or server_version is None:
        return None
    return client_version.release == server_version.release


class OperationSupervisor:
    def __init__(
        self,
        config: ScenarioConfig,
        registry: CredentialRegistry,
        actor: Optional[Actor] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.actor = actor or registry.owner
        self.process: Optional[SupervisedProcess] = None

    def command(self) -> List[str]:
        return [
            self.config.pg_repack_bin,
            "--no-superuser-check",
            *self.registry.tool_args(self.actor),
            "-t", self.config.qualified_table,
            "-e",
            *self.config.repack_extra_args,
        ]

    def client_version(self) -> Optional[str]:
        try:
            result = subprocess.run(
                [self.config.pg_repack_bin, "--version"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise SetupError(f"cannot run {self.config.pg_repack_bin}: {exc}") from exc
        return parse_client_version(result.stdout + result.stderr)

    def check_versions(self, monitor: CatalogMonitor) -> None:
        server = monitor.extension_version(EXTENSION)
        if server is None:
            raise SetupError(f"extension {EXTENSION} is not installed in {self.config.dbname}")
        client = self.client_version()
        compatible = versions_compatible(client, server)
        if compatible is None:
            logger.warning(
                "Cannot compare %s versions (client %r, extension %r)", EXTENSION, client, server
            )
        elif not compatible:
            raise SetupError(
                f"{EXTENSION} client {client} does not match database extension {server}"
            )
        else:
            logger.info("✓ %s client and extension versions match (%s)", EXTENSION, server)

    def start(self) -> SupervisedProcess:
        if not self.actor.can_repack:
            raise SetupError(f"{self.actor} lacks the repack capability")
        logger.info("Command: %s", " ".join(self.command()))
        process = SupervisedProcess(
            "pg_repack",
            self.command(),
            self.config.operation_log_path,
            env=self.registry.tool_env(self.actor),
            timestamp_lines=True,
        )
        try:
            process.start()
        except OSError as exc:
            raise SetupError(f"cannot launch {self.config.pg_repack_bin}: {exc}") from exc
        self.process = process
        logger.info("pg_repack started with PID: %s", process.pid)
        return process

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def is_alive(self) -> bool:
        return self.process is not None and self.process.is_alive()

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.wait(timeout=timeout)

    def terminate(self, graceful: bool = True) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.terminate(graceful=graceful, grace_period=self.config.operation_grace)

    def output_tail(self, lines: int = 20) -> str:
        return self.process.tail(lines) if self.process else ""
