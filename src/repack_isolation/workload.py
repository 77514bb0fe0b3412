# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Background single-row UPDATE load driven through pgbench."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import psycopg

from .config import ScenarioConfig
from .errors import SetupError
from .process import SupervisedProcess
from .registry import CredentialRegistry

logger = logging.getLogger(__name__)

PROCESSED_RE = re.compile(r"number of transactions actually processed:\s*(\d+)")
FAILED_RE = re.compile(r"number of failed transactions:\s*(\d+)")
LATENCY_RE = re.compile(r"latency average\s*=\s*([\d.]+)\s*ms")
TPS_RE = re.compile(r"^tps\s*=\s*([\d.]+)", re.MULTILINE)
PROGRESS_RE = re.compile(r"^progress:\s*([\d.]+)\s*s,\s*([\d.]+)\s*tps", re.MULTILINE)


@dataclass(frozen=True)
class WorkloadSummary:
    transactions: Optional[int] = None
    failed: Optional[int] = None
    latency_ms: Optional[float] = None
    tps: Optional[float] = None

    def describe(self) -> List[str]:
        lines = []
        if self.transactions is not None:
            lines.append(f"number of transactions actually processed: {self.transactions}")
        if self.failed is not None:
            lines.append(f"number of failed transactions: {self.failed}")
        if self.latency_ms is not None:
            lines.append(f"latency average = {self.latency_ms:.3f} ms")
        if self.tps is not None:
            lines.append(f"tps = {self.tps:.2f}")
        return lines


def render_script(config: ScenarioConfig) -> str:
    # payload is as wide as the seeded 'Initial-00000001' so rows keep their size
    return (
        f"\\set id random(1, {config.row_count})\n"
        f"UPDATE {config.qualified_table} "
        f"SET data = 'Updated-' || lpad(:id::text, 8, '0') WHERE id = :id;\n"
    )


def parse_summary(output: str) -> WorkloadSummary:
    def first(pattern: re.Pattern, cast):
        match = pattern.search(output)
        return cast(match.group(1)) if match else None

    return WorkloadSummary(
        transactions=first(PROCESSED_RE, int),
        failed=first(FAILED_RE, int),
        latency_ms=first(LATENCY_RE, float),
        tps=first(TPS_RE, float),
    )


def estimate_progress(output: str) -> Optional[int]:
    """Approximate transactions so far from pgbench ``-P`` progress lines."""
    summary = parse_summary(output)
    if summary.transactions is not None:
        return summary.transactions
    matches = PROGRESS_RE.findall(output)
    if not matches:
        return None
    total = 0.0
    previous = 0.0
    for elapsed, tps in matches:
        elapsed_s = float(elapsed)
        total += float(tps) * (elapsed_s - previous)
        previous = elapsed_s
    return int(total)


class WorkloadDriver:
    def __init__(
        self,
        config: ScenarioConfig,
        registry: CredentialRegistry,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.registry = registry
        self.actor = registry.owner
        self._sleep = sleep
        self.process: Optional[SupervisedProcess] = None

    def command(self) -> List[str]:
        clients = str(self.config.workload_clients)
        return [
            self.config.pgbench_bin,
            *self.registry.tool_args(self.actor),
            "-f", str(self.config.workload_script_path),
            "-c", clients,
            "-j", clients,
            "-T", str(self.config.workload_duration),
            "-n",
            "-P", "5",
        ]

    def preflight(self) -> None:
        try:
            with self.registry.connect(self.actor) as conn:
                conn.execute("SELECT 1")
        except psycopg.Error as exc:
            raise SetupError(f"workload actor {self.actor} cannot connect: {exc}") from exc

    def start(self) -> SupervisedProcess:
        self.preflight()
        script = self.config.workload_script_path
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(render_script(self.config))

        logger.info("Launching continuous UPDATE workload on %s...", self.config.qualified_table)
        process = SupervisedProcess(
            "workload",
            self.command(),
            self.config.workload_log_path,
            env=self.registry.tool_env(self.actor),
        )
        try:
            process.start()
        except OSError as exc:
            raise SetupError(f"cannot launch {self.config.pgbench_bin}: {exc}") from exc
        self.process = process
        self._sleep(self.config.workload_settle)
        if not process.is_alive():
            raise SetupError(
                f"workload exited early with code {process.wait(timeout=1)}:\n{process.tail()}"
            )
        logger.info("✓ Background workload started with PID: %s", process.pid)
        logger.info(
            "  %s concurrent clients updating random rows for up to %ss",
            self.config.workload_clients,
            self.config.workload_duration,
        )
        return process

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def is_alive(self) -> bool:
        return self.process is not None and self.process.is_alive()

    def transactions_so_far(self) -> Optional[int]:
        if self.process is None:
            return None
        return estimate_progress(self.process.tail(200))

    def stop(self, graceful: bool = True) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.terminate(graceful=graceful, grace_period=self.config.workload_grace)

    def summary(self) -> WorkloadSummary:
        if self.process is None:
            return WorkloadSummary()
        return parse_summary(self.process.tail(50))
