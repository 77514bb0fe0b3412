# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Fixed-interval polling of catalog predicates.

The wait is bounded by ``max_attempts * interval``; there is no backoff.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Predicate = Callable[[], Optional[bool]]


class PollOutcome(enum.Enum):
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    OPERATION_EXITED = "operation_exited"


@dataclass(frozen=True)
class PollReport:
    outcome: PollOutcome
    attempts: int
    elapsed: float

    @property
    def satisfied(self) -> bool:
        return self.outcome is PollOutcome.SATISFIED


class StatePoller:
    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sleep = sleep
        self._clock = clock

    def await_predicate(
        self,
        predicate: Predicate,
        *,
        interval: float,
        max_attempts: int,
        alive: Optional[Callable[[], bool]] = None,
        describe: str = "condition",
        log_every: int = 1,
    ) -> PollReport:
        started = self._clock()
        for attempt in range(1, max_attempts + 1):
            state = predicate()
            if state is True:
                return PollReport(PollOutcome.SATISFIED, attempt, self._clock() - started)
            if alive is not None and not alive():
                return PollReport(PollOutcome.OPERATION_EXITED, attempt, self._clock() - started)
            if state is None:
                logger.debug("%s: state unknown on attempt %s", describe, attempt)
            if attempt % log_every == 0:
                logger.info(
                    "  Waiting for %s... (attempt %s/%s)", describe, attempt, max_attempts
                )
            self._sleep(interval)
        return PollReport(PollOutcome.TIMED_OUT, max_attempts, self._clock() - started)
