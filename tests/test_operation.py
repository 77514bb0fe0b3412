# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

import stat
import sys

import pytest

from repack_isolation.config import ScenarioConfig
from repack_isolation.errors import SetupError
from repack_isolation.operation import (
    OperationSupervisor,
    parse_client_version,
    versions_compatible,
)
from repack_isolation.registry import CredentialRegistry


class FakeMonitor:
    def __init__(self, version):
        self.version = version

    def extension_version(self, name):
        assert name == "pg_repack"
        return self.version


def _fake_repack(tmp_path, output):
    path = tmp_path / "pg_repack"
    path.write_text(f"#!/usr/bin/env bash\necho '{output}'\n")
    path.chmod(stat.S_IRWXU)
    return str(path)


def _supervisor(tmp_path, **changes):
    config = ScenarioConfig(work_dir=tmp_path, **changes)
    return OperationSupervisor(config, CredentialRegistry(config))


def test_command_targets_owner_table_with_error_level_logging(tmp_path):
    supervisor = _supervisor(tmp_path, repack_extra_args=("--jobs", "2"))
    command = supervisor.command()
    assert command[:2] == ["pg_repack", "--no-superuser-check"]
    assert command[command.index("-U") + 1] == "repack_user1"
    assert command[command.index("-d") + 1] == "repack_isolation_test"
    assert command[command.index("-t") + 1] == "user1_schema.source_data"
    assert command[-3:] == ["-e", "--jobs", "2"]


@pytest.mark.parametrize(
    "output, expected",
    [
        ("pg_repack 1.5.0", "1.5.0"),
        ("pg_repack 1.4.8-dev", "1.4.8"),
        ("pg_repack v1.5.2\n", "1.5.2"),
        ("command not found", None),
    ],
)
def test_parse_client_version(output, expected):
    assert parse_client_version(output) == expected


def test_versions_compatible():
    assert versions_compatible("1.5.0", "1.5.0") is True
    assert versions_compatible("1.5.0", "1.4.8") is False
    assert versions_compatible("1.5.0", None) is None
    assert versions_compatible("not-a-version", "1.5.0") is None


def test_check_versions_accepts_matching_extension(tmp_path):
    supervisor = _supervisor(tmp_path, pg_repack_bin=_fake_repack(tmp_path, "pg_repack 1.5.0"))
    assert supervisor.client_version() == "1.5.0"
    supervisor.check_versions(FakeMonitor("1.5.0"))


def test_check_versions_rejects_mismatch(tmp_path):
    supervisor = _supervisor(tmp_path, pg_repack_bin=_fake_repack(tmp_path, "pg_repack 1.5.0"))
    with pytest.raises(SetupError, match="does not match database extension 1.4.8"):
        supervisor.check_versions(FakeMonitor("1.4.8"))


def test_check_versions_requires_extension(tmp_path):
    supervisor = _supervisor(tmp_path, pg_repack_bin=_fake_repack(tmp_path, "pg_repack 1.5.0"))
    with pytest.raises(SetupError, match="not installed"):
        supervisor.check_versions(FakeMonitor(None))


def test_check_versions_tolerates_unknown_client_output(tmp_path):
    supervisor = _supervisor(tmp_path, pg_repack_bin=_fake_repack(tmp_path, "something else"))
    assert supervisor.client_version() is None
    supervisor.check_versions(FakeMonitor("1.5.0"))


def test_missing_client_is_setup_error(tmp_path):
    supervisor = _supervisor(tmp_path, pg_repack_bin=str(tmp_path / "missing"))
    with pytest.raises(SetupError, match="cannot run"):
        supervisor.client_version()


def test_actor_without_capability_cannot_start(tmp_path):
    config = ScenarioConfig(work_dir=tmp_path)
    registry = CredentialRegistry(config)
    supervisor = OperationSupervisor(config, registry, actor=registry.outsider)
    with pytest.raises(SetupError, match="lacks the repack capability"):
        supervisor.start()
    assert supervisor.process is None
    assert not supervisor.is_alive()
    assert supervisor.output_tail() == ""


def test_start_supervises_and_timestamps_output(tmp_path):
    supervisor = _supervisor(tmp_path)
    supervisor.command = lambda: [sys.executable, "-c", "print('INFO: repacking table')"]
    supervisor.start()
    assert supervisor.wait(timeout=10) == 0
    assert supervisor.returncode == 0
    assert supervisor.output_tail().rstrip().endswith("INFO: repacking table")
    assert supervisor.terminate() == 0
