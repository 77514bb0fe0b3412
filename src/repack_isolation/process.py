# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Detached external commands with a completion future and signal-based shutdown."""

from __future__ import annotations

import concurrent.futures
import logging
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class SupervisedProcess:
    """Run ``argv`` in its own session, copying merged output into ``sink``.

    ``completion`` resolves with the exit code once the output stream has
    been drained and the process reaped.
    """

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        sink: Path,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        timestamp_lines: bool = False,
    ) -> None:
        self.name = name
        self.argv = list(argv)
        self.sink = Path(sink)
        self.env = dict(env) if env is not None else None
        self.cwd = cwd
        self.timestamp_lines = timestamp_lines
        self.completion: concurrent.futures.Future[int] = concurrent.futures.Future()
        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def started(self) -> bool:
        return self._proc is not None

    def start(self) -> "SupervisedProcess":
        if self._proc is not None:
            raise RuntimeError(f"{self.name} already started")
        self.sink.parent.mkdir(parents=True, exist_ok=True)
        sink = self.sink.open("w", encoding="utf-8")
        try:
            self._proc = subprocess.Popen(
                self.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=self.env,
                cwd=self.cwd,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError:
            sink.close()
            raise
        self._reader = threading.Thread(
            target=self._pump, args=(self._proc, sink), name=f"{self.name}-output", daemon=True
        )
        self._reader.start()
        logger.debug("%s started with PID %s: %s", self.name, self.pid, " ".join(self.argv))
        return self

    def _pump(self, proc: subprocess.Popen, sink) -> None:
        try:
            with sink:
                for line in proc.stdout:
                    if self.timestamp_lines:
                        line = f"{time.strftime(TIMESTAMP_FORMAT)} {line}"
                    sink.write(line)
                    sink.flush()
            returncode = proc.wait()
        except BaseException as exc:  # noqa: BLE001 - forwarded to waiters
            self.completion.set_exception(exc)
            raise
        self.completion.set_result(returncode)

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        if self._proc is None:
            return None
        return self._proc.poll()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Return the exit code, or ``None`` if still running after ``timeout``."""
        if self._proc is None:
            return None
        try:
            return self.completion.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            return None

    def terminate(self, graceful: bool = True, grace_period: float = 2.0) -> Optional[int]:
        if self._proc is None:
            return None
        if not self.is_alive():
            return self.wait(timeout=grace_period)
        if graceful:
            logger.info("Sending SIGTERM to %s (PID %s)", self.name, self.pid)
            self._proc.terminate()
            try:
                self._proc.wait(timeout=grace_period)
            except subprocess.TimeoutExpired:
                logger.info("Sending SIGKILL to %s (PID %s)", self.name, self.pid)
                self._proc.kill()
        else:
            logger.info("Sending SIGKILL to %s (PID %s)", self.name, self.pid)
            self._proc.kill()
        return self.wait(timeout=max(grace_period, 1.0))

    def tail(self, lines: int = 20) -> str:
        if not self.sink.exists():
            return ""
        with self.sink.open(encoding="utf-8", errors="replace") as fh:
            return "".join(deque(fh, maxlen=lines))
