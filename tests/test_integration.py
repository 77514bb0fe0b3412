# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""End-to-end run against a live PostgreSQL server with pg_repack installed.

Opt in with ``REPACK_ISOLATION_INTEGRATION=1``; admin credentials and
connection settings come from the usual ``REPACK_*`` variables.
"""

import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from repack_isolation.catalog import ObjectRef
from repack_isolation.config import ScenarioConfig
from repack_isolation.probe import AccessProbe, ProbeErrorKind, ProbeResult
from repack_isolation.registry import CredentialRegistry

ROOT = Path(__file__).resolve().parents[1]

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.environ.get("REPACK_ISOLATION_INTEGRATION") != "1",
        reason="set REPACK_ISOLATION_INTEGRATION=1 to run against a live server",
    ),
    pytest.mark.skipif(
        not (shutil.which("pg_repack") and shutil.which("pgbench")),
        reason="pg_repack and pgbench must be on PATH",
    ),
]

# small enough to finish quickly, large enough for the copy to be observable
ROW_COUNT = "200000"


def _cli(work_dir, *args):
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT / "src"), env.get("PYTHONPATH")]))
    return subprocess.run(
        [sys.executable, "-m", "repack_isolation", "--work-dir", str(work_dir), *args],
        cwd=work_dir,
        env=env,
        capture_output=True,
        text=True,
        timeout=1800,
    )


@pytest.fixture(scope="module")
def provisioned(tmp_path_factory):
    work_dir = tmp_path_factory.mktemp("isolation")
    result = _cli(work_dir, "provision", "--row-count", ROW_COUNT)
    assert result.returncode == 0, result.stdout + result.stderr
    yield work_dir
    cleanup = _cli(work_dir, "teardown")
    assert cleanup.returncode == 0, cleanup.stdout + cleanup.stderr


def test_outsider_is_refused_and_owner_reads_source(provisioned):
    config = ScenarioConfig.from_sources(environ=os.environ)
    registry = CredentialRegistry(config)
    probe = AccessProbe(registry)
    source = ObjectRef(config.owner_schema, config.table)

    refused = probe.probe(registry.outsider, source)
    assert refused.result is ProbeResult.DENIED
    assert refused.error.kind is ProbeErrorKind.PERMISSION

    owned = probe.probe(registry.owner, source, count_rows=True)
    assert owned.result is ProbeResult.ALLOWED
    assert owned.row_count == int(ROW_COUNT)


def test_full_scenario_passes(provisioned):
    result = _cli(provisioned, "run", "--row-count", ROW_COUNT, "--duration", "120")
    log = (provisioned / "test_multiuser_isolation.log").read_text(encoding="utf-8")
    assert result.returncode == 0, log
    assert "ALL TESTS PASSED" in log
    assert "FAIL" not in log.split("TEST SUMMARY", 1)[1].replace("FAIL=0", "")
