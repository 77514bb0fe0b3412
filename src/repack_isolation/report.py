# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Render the end-of-run summary."""

from __future__ import annotations

from typing import List

from .registry import CredentialRegistry
from .scenario import RULE, Phase, ScenarioResult, Verdict

SECTION_TITLES = [
    (Phase.PRE_COMMIT_PROBES, "During Initial Data Copy (Transaction Uncommitted):"),
    (Phase.POST_COMMIT_PROBES, "After Copy Completion (Table Visible in pg_class):"),
]


def render_summary(result: ScenarioResult, registry: CredentialRegistry) -> List[str]:
    lines = [RULE, "                        TEST SUMMARY", RULE, ""]

    lines.append("User Privilege Configuration:")
    for actor in registry.actors():
        ability = "CAN" if actor.can_repack else "CANNOT"
        lines.append(f"  {actor}: {ability} run pg_repack")
    lines.append("")

    if result.target_oid is not None:
        lines.append(f"Source table OID: {result.target_oid}")
        lines.append("")

    lines.append("Test Results:")
    lines.append("")
    for phase, title in SECTION_TITLES:
        lines.append(title)
        for case in result.cases.values():
            if case.phase is not phase:
                continue
            verdict = case.verdict.value if case.verdict else "NOT RUN"
            lines.append(f"  TEST {case.id} ({case.description}): {verdict}")
            if case.verdict is Verdict.SKIPPED and case.notes:
                lines.append(f"      {case.notes[-1]}")
        lines.append("")

    if result.change_log_stats is not None:
        total, distinct = result.change_log_stats
        lines.append(f"Log table captured {total} changes across {distinct} rows")
        lines.append("")

    if result.operation_exit_code is not None or result.operation_terminated:
        status = f"pg_repack exit code: {result.operation_exit_code}"
        if result.operation_terminated:
            status += " (terminated after drain timeout)"
        elif result.operation_exit_code != 0:
            status += " (repack did not complete successfully)"
        lines.append(status)
        lines.append("")

    counts = ", ".join(
        f"{verdict.value}={result.count(verdict)}" for verdict in Verdict
    )
    lines.append(f"Verdicts: {counts}")
    if result.fatal is not None:
        kind = type(result.fatal).__name__
        lines.append(f"Fatal {kind}: {result.fatal}")
    lines.append("")

    lines.append(RULE)
    if result.fatal is not None:
        lines.append("                    ✗ RUN ABORTED")
    elif result.passed:
        lines.append("                    ✓ ALL TESTS PASSED")
    else:
        lines.append("                    ✗ SOME TESTS FAILED")
    lines.append(RULE)
    return lines
