# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Phase-gated isolation scenario over three actors.

Pre-commit cases run while pg_repack copies into its intermediate table
inside an uncommitted transaction; post-commit cases run once that table
has become catalog-visible and is protected by ownership alone. Probes are
read-only and independent of each other; their order is narrative only.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .catalog import ArtifactNames, CatalogMonitor, ObjectRef
from .config import ScenarioConfig
from .errors import HarnessError, SupervisionError
from .operation import OperationSupervisor
from .poller import PollOutcome, StatePoller
from .probe import AccessProbe, ProbeErrorKind, ProbeOutcome, ProbeResult
from .registry import Actor, CredentialRegistry
from .workload import WorkloadDriver, WorkloadSummary

logger = logging.getLogger(__name__)

RULE = "=" * 64


class Phase(enum.Enum):
    PROVISIONED = "provisioned"
    WORKLOAD_RUNNING = "workload_running"
    OPERATION_STARTED = "operation_started"
    COPY_IN_PROGRESS = "copy_in_progress"
    PRE_COMMIT_PROBES = "pre_commit_probes"
    AWAITING_COMMIT_VISIBILITY = "awaiting_commit_visibility"
    POST_COMMIT_PROBES = "post_commit_probes"
    OPERATION_DRAINING = "operation_draining"
    SUMMARY = "summary"


class Verdict(enum.Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    SKIPPED = "SKIPPED"


@dataclass
class TestCase:
    __test__ = False

    id: int
    description: str
    phase: Phase
    expected: Optional[ProbeResult] = None
    actual: Optional[ProbeOutcome] = None
    verdict: Optional[Verdict] = None
    notes: List[str] = field(default_factory=list)


@dataclass
class ScenarioResult:
    cases: Dict[int, TestCase]
    phases: List[Phase] = field(default_factory=list)
    fatal: Optional[HarnessError] = None
    target_oid: Optional[int] = None
    change_log_stats: Optional[Tuple[int, int]] = None
    workload: WorkloadSummary = field(default_factory=WorkloadSummary)
    operation_exit_code: Optional[int] = None
    operation_terminated: bool = False

    def record(
        self,
        case_id: int,
        verdict: Verdict,
        actual: Optional[ProbeOutcome] = None,
        note: Optional[str] = None,
    ) -> TestCase:
        case = self.cases[case_id]
        case.verdict = verdict
        case.actual = actual
        if note:
            case.notes.append(note)
        return case

    def skip_pending(self, reason: str) -> None:
        for case in self.cases.values():
            if case.verdict is None:
                case.verdict = Verdict.SKIPPED
                case.notes.append(reason)

    def count(self, verdict: Verdict) -> int:
        return sum(1 for case in self.cases.values() if case.verdict is verdict)

    @property
    def passed(self) -> bool:
        return self.count(Verdict.FAIL) == 0

    @property
    def exit_code(self) -> int:
        return 0 if self.passed and self.fatal is None else 1


def build_cases(registry: CredentialRegistry) -> Dict[int, TestCase]:
    owner, peer, outsider = registry.owner, registry.peer, registry.outsider
    pre, post = Phase.PRE_COMMIT_PROBES, Phase.POST_COMMIT_PROBES
    denied, allowed = ProbeResult.DENIED, ProbeResult.ALLOWED
    cases = [
        TestCase(1, f"{peer} → {owner} log table", pre, denied),
        TestCase(2, f"{peer} → {owner} intermediate table metadata", pre, denied),
        TestCase(3, f"{peer} → {owner} source table", pre, denied),
        TestCase(4, f"{outsider} → repack schema access", pre, denied),
        TestCase(5, f"{outsider} → data access protection", pre, denied),
        TestCase(6, f"{outsider} → {owner} source table", pre, denied),
        TestCase(7, f"{owner} → own log table, CAN access", pre, allowed),
        TestCase(8, f"{owner} → own intermediate table, serializable txn", pre),
        TestCase(9, f"{owner} → own source table, CAN access", pre, allowed),
        TestCase(10, f"{peer} → intermediate table, BLOCKED", post, denied),
        TestCase(11, f"{peer} → log table, BLOCKED", post, denied),
        TestCase(12, f"{outsider} → intermediate table, BLOCKED", post, denied),
        TestCase(13, f"{outsider} → log table, BLOCKED", post, denied),
        TestCase(14, f"{owner} → own intermediate table, CAN access", post, allowed),
        TestCase(15, f"{owner} → own log table, CAN access", post, allowed),
    ]
    return {case.id: case for case in cases}


class ScenarioRunner:
    def __init__(
        self,
        config: ScenarioConfig,
        registry: CredentialRegistry,
        *,
        monitor: Optional[CatalogMonitor] = None,
        probe: Optional[AccessProbe] = None,
        workload: Optional[WorkloadDriver] = None,
        operation: Optional[OperationSupervisor] = None,
        poller: Optional[StatePoller] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.monitor = monitor or CatalogMonitor(registry)
        self.probe = probe or AccessProbe(registry)
        self.workload = workload or WorkloadDriver(config, registry)
        self.operation = operation or OperationSupervisor(config, registry)
        self.poller = poller or StatePoller()
        self.result = ScenarioResult(build_cases(registry))
        self.names: Optional[ArtifactNames] = None

    @property
    def owner(self) -> Actor:
        return self.registry.owner

    @property
    def peer(self) -> Actor:
        return self.registry.peer

    @property
    def outsider(self) -> Actor:
        return self.registry.outsider

    @property
    def source(self) -> ObjectRef:
        return ObjectRef(self.config.owner_schema, self.config.table)

    def _artifacts(self) -> ArtifactNames:
        if self.names is None:
            raise RuntimeError("artifact names are resolved in the provisioned phase")
        return self.names

    def _enter(self, phase: Phase) -> None:
        self.result.phases.append(phase)
        logger.debug("phase -> %s", phase.value)

    def run(self) -> ScenarioResult:
        logger.info("=== Testing pg_repack privilege isolation between users ===")
        try:
            self._provisioned()
            self._start_background()
            self._await_copy()
            self._pre_commit_probes()
            committed = self._await_commit()
            self._post_commit_probes(committed)
            self._drain()
        except HarnessError as exc:
            self.result.fatal = exc
            logger.error("ERROR: %s", exc)
            tail = getattr(exc, "output_tail", "")
            if tail:
                logger.error("Recent pg_repack output:\n%s", tail.rstrip())
            self.result.skip_pending(f"not evaluated: run aborted ({exc})")
        finally:
            self._stop_background()
            self.monitor.close()
        self._enter(Phase.SUMMARY)
        return self.result

    def _provisioned(self) -> None:
        self._enter(Phase.PROVISIONED)
        self.monitor.connect()
        logger.info("✓ Database %s exists", self.config.dbname)
        oid = self.monitor.relation_oid(self.source)
        self.result.target_oid = oid
        self.names = ArtifactNames(oid)
        logger.info("Source table OID: %s", oid)
        logger.info("Expected intermediate table: %s", self.names.intermediate)
        logger.info("Expected log table: %s", self.names.change_log)
        self.operation.check_versions(self.monitor)

    def _start_background(self) -> None:
        self._enter(Phase.WORKLOAD_RUNNING)
        logger.info("=== Starting background workload ===")
        self.workload.start()
        self._enter(Phase.OPERATION_STARTED)
        logger.info("=== Starting pg_repack for %s in background ===", self.owner)
        self.operation.start()

    def _await_copy(self) -> None:
        names = self._artifacts()
        seen_log = []

        def copying() -> Optional[bool]:
            log_exists = self.monitor.log_table_exists(names)
            if not log_exists:
                return log_exists
            if not seen_log:
                seen_log.append(True)
                logger.info("✓ Log table detected: %s", names.change_log)
            return self.monitor.copy_in_progress(names)

        logger.info("Waiting for repack to start data copy operation...")
        report = self.poller.await_predicate(
            copying,
            interval=self.config.copy_poll_interval,
            max_attempts=self.config.copy_poll_attempts,
            alive=self.operation.is_alive,
            describe="data copy to start",
        )
        if report.outcome is PollOutcome.OPERATION_EXITED:
            raise SupervisionError(
                "pg_repack process terminated unexpectedly "
                f"(exit code {self.operation.returncode})",
                self.operation.output_tail(),
            )
        if report.outcome is PollOutcome.TIMED_OUT:
            logger.error("Killing pg_repack process...")
            self.operation.terminate(graceful=True)
            raise SupervisionError(
                "timeout waiting for repack data copy to start "
                f"after {report.attempts} attempts",
                self.operation.output_tail(),
            )
        self._enter(Phase.COPY_IN_PROGRESS)
        logger.info("✓ Data copy in progress: %s", names.copy_statement)

        logger.info("=== Verifying intermediate objects ===")
        for relname, owner, size in self.monitor.artifact_listing(names):
            logger.info("  %s.%s owner=%s size=%s", names.schema, relname, owner, size)
        logger.info("Active repack queries:")
        for pid, user, state, query in self.monitor.active_queries(self.owner.name):
            logger.info("  %s %s %s %s", pid, user, state, query)

        if not self.operation.is_alive():
            raise SupervisionError(
                "pg_repack process is no longer running", self.operation.output_tail()
            )
        logger.info("✓ pg_repack process %s is still running", self.operation.pid)
        if self.workload.is_alive():
            progress = self.workload.transactions_so_far()
            logger.info("✓ Background workload %s is still running", self.workload.pid)
            logger.info("  Updates so far: %s", progress if progress is not None else "N/A")

    def _header(self, case_id: int, target: Optional[object] = None) -> None:
        case = self.result.cases[case_id]
        logger.info("=== TEST %s: %s ===", case_id, case.description)
        if target is not None:
            logger.info("Testing: %s", target)

    def _judge(self, case_id: int, actor: Actor, ref: ObjectRef, outcome: ProbeOutcome) -> Verdict:
        case = self.result.cases[case_id]
        expected = case.expected
        ok = outcome.result is expected
        if ok and case_id == 14:
            ok = outcome.row_count is not None and outcome.row_count >= 0
        verdict = Verdict.PASS if ok else Verdict.FAIL
        self.result.record(case_id, verdict, outcome)
        can = "CAN" if outcome.allowed else "CANNOT"
        if ok and expected is ProbeResult.DENIED:
            logger.info("✓ PASS: %s CANNOT query %s (%s)", actor, ref, outcome.describe())
        elif ok:
            logger.info("✓ PASS: %s CAN query %s (%s)", actor, ref, outcome.describe())
        else:
            logger.info(
                "✗ FAIL: %s %s query %s, expected %s (%s)",
                actor, can, ref, expected.value, outcome.describe(),
            )
        return verdict

    def _expect(self, case_id: int, actor: Actor, ref: ObjectRef, *, count_rows: bool = False) -> Verdict:
        self._header(case_id, ref)
        outcome = self.probe.probe(actor, ref, count_rows=count_rows)
        return self._judge(case_id, actor, ref, outcome)

    def _pre_commit_probes(self) -> None:
        self._enter(Phase.PRE_COMMIT_PROBES)
        names = self._artifacts()

        self._expect(1, self.peer, names.change_log)
        self._metadata_then_data(2, self.peer, names.schema, names.intermediate_pattern)
        self._expect(3, self.peer, self.source)
        self._expect(4, self.outsider, names.change_log)
        self._metadata_then_data(5, self.outsider, names.schema, "%")
        self._expect(6, self.outsider, self.source)
        self._expect(7, self.owner, names.change_log, count_rows=True)
        self._own_uncommitted_table(8)
        self._expect(9, self.owner, self.source, count_rows=True)

    def _metadata_then_data(self, case_id: int, actor: Actor, schema: str, pattern: str) -> None:
        self._header(case_id, f"{schema}.{pattern}")
        seen = self.probe.probe_metadata_visibility(actor, schema, pattern)
        if seen.error is not None:
            self.result.record(
                case_id, Verdict.PASS, note=f"catalog query denied: {seen.error.message}"
            )
            logger.info("✓ PASS: %s CANNOT query pg_class for %s", actor, schema)
            return
        if not seen.visible:
            self.result.record(case_id, Verdict.PASS, note="name not visible in catalog")
            logger.info("✓ PASS: %s cannot even see a matching table name", actor)
            return
        logger.info("  ℹ INFO: %s can see %s.%s in the catalog", actor, schema, seen.resolved_name)
        ref = ObjectRef(schema, seen.resolved_name)
        outcome = self.probe.probe(actor, ref)
        self._judge(case_id, actor, ref, outcome)
        self.result.cases[case_id].notes.append(f"metadata visible: {ref}")

    def _own_uncommitted_table(self, case_id: int) -> None:
        names = self._artifacts()
        self._header(case_id, names.intermediate)
        seen = self.probe.probe_metadata_visibility(
            self.owner, names.schema, names.intermediate.name
        )
        if seen.visible:
            note = "table visible to owner (transaction committed early)"
        else:
            note = "table not visible to owner's other sessions (transaction uncommitted)"
        self.result.record(case_id, Verdict.PASS, note=note)
        logger.info("✓ PASS: %s", note)

    def _await_commit(self) -> bool:
        self._enter(Phase.AWAITING_COMMIT_VISIBILITY)
        names = self._artifacts()
        logger.info("=== Waiting for initial data copy to complete and commit ===")
        report = self.poller.await_predicate(
            lambda: self.monitor.relation_visible(names.intermediate),
            interval=self.config.commit_poll_interval,
            max_attempts=self.config.commit_poll_attempts,
            alive=self.operation.is_alive,
            describe="intermediate table commit",
            log_every=10,
        )
        if report.satisfied:
            logger.info(
                "✓ Intermediate table now visible in pg_class (initial copy transaction committed)"
            )
            return True
        if report.outcome is PollOutcome.OPERATION_EXITED:
            code = self.operation.wait(timeout=self.config.operation_grace)
            if code == 0:
                self.result.operation_exit_code = code
                logger.info("✓ pg_repack completed before the intermediate table was observed")
                return False
            raise SupervisionError(
                f"pg_repack exited with code {code} before its copy committed",
                self.operation.output_tail(),
            )
        self.operation.terminate(graceful=True)
        raise SupervisionError(
            f"timeout waiting for intermediate table commit after {report.attempts} attempts",
            self.operation.output_tail(),
        )

    def _post_commit_probes(self, committed: bool) -> None:
        self._enter(Phase.POST_COMMIT_PROBES)
        logger.info(RULE)
        logger.info("   POST-COMMIT ACCESS CONTROL TESTS (Table Now Visible)")
        logger.info(RULE)
        if not committed:
            self.result.skip_pending("operation finished before the intermediate table was observed")
            return
        names = self._artifacts()
        for relname, owner, size in self.monitor.artifact_listing(names):
            logger.info("  %s.%s owner=%s size=%s", names.schema, relname, owner, size)
        if self.operation.is_alive():
            logger.info("✓ pg_repack still running (applying logged changes)")
        else:
            logger.info("  Note: pg_repack already completed")

        self._visible_then_expect(10, self.peer, names.intermediate, show_metadata=True)
        self._visible_then_expect(11, self.peer, names.change_log, show_metadata=True)
        self._visible_then_expect(12, self.outsider, names.intermediate, show_metadata=True)
        self._visible_then_expect(13, self.outsider, names.change_log, show_metadata=True)
        self._visible_then_expect(14, self.owner, names.intermediate, count_rows=True)
        self._visible_then_expect(15, self.owner, names.change_log, count_rows=True)

    def _skip_vanished(self, case_id: int, ref: ObjectRef) -> None:
        self.result.record(case_id, Verdict.SKIPPED, note=f"{ref} not visible (already swapped/dropped)")
        logger.info("  Skipped: %s not visible (already swapped/dropped)", ref)

    def _visible_then_expect(
        self,
        case_id: int,
        actor: Actor,
        ref: ObjectRef,
        *,
        count_rows: bool = False,
        show_metadata: bool = False,
    ) -> None:
        self._header(case_id, ref)
        if self.monitor.relation_visible(ref) is not True:
            self._skip_vanished(case_id, ref)
            return
        seen = None
        if show_metadata:
            seen = self.probe.probe_metadata_visibility(actor, ref.schema, ref.name)
            if seen.visible:
                logger.info("  ℹ INFO: %s can see %s in pg_class (expected)", actor, ref)
            else:
                logger.info("  Note: %s cannot see %s in pg_class (extra restrictive)", actor, ref)
        outcome = self.probe.probe(actor, ref, count_rows=count_rows)
        # the artifact can be swapped or dropped between the visibility check and the read
        if (
            outcome.error is not None
            and outcome.error.kind is ProbeErrorKind.UNDEFINED_OBJECT
            and self.monitor.relation_visible(ref) is not True
        ):
            self._skip_vanished(case_id, ref)
            return
        self._judge(case_id, actor, ref, outcome)
        if seen is not None:
            self.result.cases[case_id].notes.append(
                "metadata visible" if seen.visible else "metadata hidden"
            )

    def _drain(self) -> None:
        self._enter(Phase.OPERATION_DRAINING)
        names = self._artifacts()
        logger.info("=== Stopping background workload ===")
        if self.workload.is_alive():
            self.workload.stop(graceful=True)
            logger.info("✓ Background workload stopped after completing all tests")
        self.result.workload = self.workload.summary()

        logger.info("=== Verifying log table captured concurrent updates ===")
        stats = self.monitor.change_log_stats(names, self.owner)
        self.result.change_log_stats = stats
        if stats and stats[0] > 0:
            logger.info("Log entries captured: %s (%s distinct rows)", stats[0], stats[1])
        else:
            logger.info("  Note: No log entries (workload may not have started or repack too fast)")
        if self.result.workload.describe():
            logger.info("Workload statistics:")
            for line in self.result.workload.describe():
                logger.info("  %s", line)

        logger.info("=== Waiting for pg_repack to complete ===")
        code = self.operation.wait(timeout=self.config.drain_timeout)
        if code is None:
            logger.info(
                "pg_repack still running after %ss, terminating...", self.config.drain_timeout
            )
            self.result.operation_terminated = True
            self.result.operation_exit_code = self.operation.terminate(graceful=True)
        elif code == 0:
            self.result.operation_exit_code = code
            logger.info("✓ pg_repack process completed (exit code %s)", code)
        else:
            self.result.operation_exit_code = code
            logger.warning("✗ pg_repack process exited with code %s", code)

    def _stop_background(self) -> None:
        if self.workload.is_alive():
            self.workload.stop(graceful=True)
        if self.operation.is_alive():
            self.operation.terminate(graceful=True)
