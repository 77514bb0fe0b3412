# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Fatal error taxonomy for harness runs.

Assertion failures are not exceptions: a probe that diverges from its
expectation is recorded as a FAIL verdict and the run continues.
"""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for errors that stop a harness command."""

    exit_code = 1


class ConfigError(HarnessError):
    """Configuration could not be parsed or is out of range."""

    exit_code = 2


class SetupError(HarnessError):
    """Provisioning, connectivity or tool preflight failed before any case ran."""


class SupervisionError(HarnessError):
    """The operation under test died unexpectedly or a poll timed out."""

    def __init__(self, message: str, output_tail: str = "") -> None:
        super().__init__(message)
        self.output_tail = output_tail
