# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Provision, run and tear down the pg_repack multi-user isolation scenario."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .config import DEFAULT_ENV_PATH, ScenarioConfig
from .errors import ConfigError, HarnessError
from .provision import provision, teardown
from .registry import CredentialRegistry
from .report import render_summary
from .runlog import setup_logging
from .scenario import ScenarioRunner

logger = logging.getLogger(__name__)


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="repack-isolation", description=__doc__)
    parser.add_argument(
        "--env",
        type=Path,
        default=DEFAULT_ENV_PATH,
        help="KEY=value file with REPACK_* settings (default: .env)",
    )
    parser.add_argument("--dbname", help="Database under test")
    parser.add_argument("--host", help="Host the actors connect to")
    parser.add_argument("--port", type=int, help="PostgreSQL port")
    parser.add_argument("--work-dir", type=Path, help="Directory for logs and the workload script")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug detail")
    sub = parser.add_subparsers(dest="command", required=True)

    prov = sub.add_parser("provision", help="Create database, roles, schemas and seed data")
    prov.add_argument("--row-count", type=int, help="Rows seeded into the owner's table")

    run = sub.add_parser("run", help="Run the isolation scenario against provisioned fixtures")
    run.add_argument("--row-count", type=int, help="Row identifier domain of the workload")
    run.add_argument("--clients", dest="workload_clients", type=int, help="Concurrent writer sessions")
    run.add_argument("--duration", dest="workload_duration", type=int, help="Workload duration in seconds")
    run.add_argument("--copy-attempts", dest="copy_poll_attempts", type=int)
    run.add_argument("--copy-interval", dest="copy_poll_interval", type=float)
    run.add_argument("--commit-attempts", dest="commit_poll_attempts", type=int)
    run.add_argument("--commit-interval", dest="commit_poll_interval", type=float)

    sub.add_parser("teardown", help="Drop the database and roles and remove logs")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, environ: Optional[Dict[str, str]] = None) -> ScenarioConfig:
    override_names = (
        "dbname", "host", "port", "work_dir", "row_count", "workload_clients",
        "workload_duration", "copy_poll_attempts", "copy_poll_interval",
        "commit_poll_attempts", "commit_poll_interval",
    )
    overrides = {name: getattr(args, name, None) for name in override_names}
    return ScenarioConfig.from_sources(
        env_file=args.env,
        environ=os.environ if environ is None else environ,
        overrides=overrides,
    )


def cmd_provision(config: ScenarioConfig, registry: CredentialRegistry) -> int:
    provision(config, registry)
    return 0


def cmd_run(config: ScenarioConfig, registry: CredentialRegistry) -> int:
    result = ScenarioRunner(config, registry).run()
    for line in render_summary(result, registry):
        logger.info(line)
    return result.exit_code


def cmd_teardown(config: ScenarioConfig, registry: CredentialRegistry) -> int:
    teardown(config, registry)
    return 0


COMMANDS = {
    "provision": cmd_provision,
    "run": cmd_run,
    "teardown": cmd_teardown,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = build_config(args)
    except ConfigError as exc:
        print(f"[repack-isolation] {exc}", file=sys.stderr)
        return exc.exit_code

    log_file = config.log_path if args.command == "run" else None
    setup_logging(log_file, verbose=args.verbose)
    registry = CredentialRegistry(config)
    try:
        return COMMANDS[args.command](config, registry)
    except HarnessError as exc:
        logger.error("ERROR: %s", exc)
        return exc.exit_code


if __name__ == "__main__":  # pragma: no cover - exercised via callers
    sys.exit(main())
