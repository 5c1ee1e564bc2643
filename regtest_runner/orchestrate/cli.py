"""CLI entrypoint for the integration-test orchestrator."""

from __future__ import annotations

import argparse
from datetime import datetime, timezone
import logging
import os
from pathlib import Path
import re
import sys

from dotenv import dotenv_values
from rich.console import Console

from regtest_runner.orchestrate.cache import BuildCache, CacheKey
from regtest_runner.orchestrate.config import PlanConfig, load_plan, parse_port_range
from regtest_runner.orchestrate.dashboard import RunDashboard
from regtest_runner.orchestrate.discovery import (
    WorkItem,
    discover_work_items,
    load_matrix,
    render_matrix,
    select_items,
    write_matrix,
)
from regtest_runner.orchestrate.docker_node import DockerBitcoindBackend, NodeStartError, cleanup_orphan_containers
from regtest_runner.orchestrate.errors import FATAL_ERRORS, BuildError, InfrastructureError, TestFailure
from regtest_runner.orchestrate.lifecycle import LifecycleOptions, NodeLifecycleManager
from regtest_runner.orchestrate.report import build_report_table
from regtest_runner.orchestrate.resources import PortPool
from regtest_runner.orchestrate.run import OrchestratorOptions, OrchestratorRunner
from regtest_runner.orchestrate.runner import JobRunner, RunnerOptions
from regtest_runner.orchestrate.state import filter_items_for_resume, load_summary
from regtest_runner.orchestrate.toolchain import CargoToolchain
from regtest_runner.utils.logs import ensure_root_logging


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_FATAL = 2

_RUN_ID_ALLOWED = re.compile(r"[^a-zA-Z0-9_.-]+")


def _slug_run_id(value: str, *, fallback: str = "run") -> str:
    cleaned = _RUN_ID_ALLOWED.sub("-", value).strip("-.")
    return cleaned or fallback


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="regtest-runner",
        description="Run ignored integration tests, one fresh bitcoind regtest node per test.",
    )
    parser.add_argument("--plan", required=True, type=Path, help="Path to orchestrator plan YAML.")
    parser.add_argument(
        "--discover-only",
        action="store_true",
        help="Pin, build, and print the work-item matrix as JSON, then exit.",
    )
    parser.add_argument("--emit-matrix", type=Path, help="Also write the work-item matrix to this file.")
    parser.add_argument(
        "--matrix",
        type=Path,
        help="Run items from a previously emitted matrix instead of discovering (no pin/build).",
    )
    parser.add_argument(
        "--item",
        action="append",
        default=[],
        help="Restrict the run to this item id (repeatable); used by matrix shards.",
    )
    parser.add_argument("--skip-build", action="store_true", help="Discover from existing test binaries.")
    parser.add_argument("--dry-run", action="store_true", help="Print resolved items and exit without running.")
    parser.add_argument("--port-range", help="Host ports for node RPC (e.g. 18443-18543).")
    parser.add_argument("--run-id", help="Run identifier (default: cache run identity or timestamp).")
    parser.add_argument("--output-dir", type=Path, help="Override output directory root.")
    parser.add_argument("--max-parallel", type=int, default=None, help="Maximum concurrent work items.")
    parser.add_argument("--readiness-timeout-s", type=float, default=None, help="Node readiness timeout.")
    parser.add_argument("--test-timeout-s", type=float, default=None, help="Per-item test execution timeout.")
    parser.add_argument("--resume", action="store_true", help="Skip items already marked passed.")
    parser.add_argument("--rerun-failed", action="store_true", help="Rerun failed items when resuming.")
    parser.add_argument("--status", action="store_true", help="Print current status from summary and exit.")
    parser.add_argument(
        "--kill-orphans",
        action="store_true",
        help="Remove node containers labeled as orchestrator-managed and exit.",
    )
    parser.add_argument("--no-dashboard", action="store_true", help="Disable the live dashboard.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")
    return parser


def resolve_run_id(plan: PlanConfig, explicit: str | None) -> str:
    if explicit or plan.run_id:
        return _slug_run_id(explicit or plan.run_id or "")
    if plan.cache is not None:
        return _slug_run_id(plan.cache.run_identity)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    if plan.name:
        return f"{_slug_run_id(plan.name)}-{timestamp}"
    return timestamp


def prepare_items(plan: PlanConfig, *, skip_build: bool = False) -> list[WorkItem]:
    """Pin, restore or build test binaries, then discover work items."""
    if not skip_build:
        toolchain = CargoToolchain(plan.workspace)
        if plan.pin is not None:
            toolchain.pin(plan.pin.package, plan.pin.version)
        if plan.cache is not None:
            key = CacheKey(
                dependency=plan.pin.package if plan.pin else "-",
                pin_version=plan.pin.version if plan.pin else "-",
                toolchain=toolchain.identity(),
                run_id=plan.cache.run_identity,
            )
            cache = BuildCache(plan.cache.dir)
            try:
                hit = cache.restore(key, plan.artifact_dir)
            except OSError as exc:
                raise BuildError(f"Could not restore {key.label()} into {plan.artifact_dir}: {exc}") from exc
            if hit:
                logger.info("Build cache hit for %s", key.label())
            else:
                toolchain.build_tests()
                try:
                    cache.put(key, plan.artifact_dir)
                except OSError as exc:
                    raise BuildError(f"Could not cache test binaries as {key.label()}: {exc}") from exc
        else:
            toolchain.build_tests()
    return discover_work_items(plan.artifact_dir, plan.test_prefixes, shard_by=plan.shard_by)


def load_env_file(path: Path | None) -> dict[str, str]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"env_file not found: {path}")
    values = dotenv_values(path)
    return {key: value for key, value in values.items() if value is not None}


def _validate_schedule(*, ports: PortPool, max_parallel: int) -> None:
    if ports.capacity < max_parallel:
        start, end = ports.port_range
        raise ValueError(f"Port range {start}-{end} has {ports.capacity} ports, but max_parallel={max_parallel}.")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    ensure_root_logging("DEBUG" if args.verbose else "INFO")
    try:
        plan = load_plan(args.plan)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("%s", exc)
        return EXIT_FATAL
    run_id = resolve_run_id(plan, args.run_id)
    output_root = args.output_dir or plan.output_dir or Path("outputs") / "regtest" / run_id
    summary_path = output_root / "summary.json"

    if args.status:
        try:
            summary = load_summary(summary_path)
        except (FileNotFoundError, ValueError) as exc:
            logger.error("%s", exc)
            return EXIT_FATAL
        for entry in summary.get("items", []):
            print(f"{entry.get('item_id')}\t{entry.get('state')}\t{entry.get('failure_reason') or '-'}")
        return EXIT_OK
    if args.kill_orphans or plan.kill_orphans:
        removed = cleanup_orphan_containers(run_id=args.run_id or plan.run_id)
        if removed:
            print("\n".join(removed))
        return EXIT_OK

    try:
        if args.matrix is not None:
            items = load_matrix(args.matrix)
        else:
            items = prepare_items(plan, skip_build=args.skip_build)
        if args.item:
            items = select_items(items, args.item)
    except FATAL_ERRORS as exc:
        logger.error("Fatal: %s", exc)
        return EXIT_FATAL
    if args.emit_matrix is not None:
        write_matrix(args.emit_matrix, items)
    if args.discover_only:
        print(render_matrix(items))
        return EXIT_OK

    if (args.resume or plan.resume) and summary_path.exists():
        try:
            previous = load_summary(summary_path)
        except ValueError as exc:
            logger.error("%s", exc)
            return EXIT_FATAL
        items = filter_items_for_resume(items, previous, rerun_failed=args.rerun_failed or plan.rerun_failed)
    if args.dry_run:
        for item in items:
            print(f"{item.item_id}\t{' '.join(item.argv())}")
        return EXIT_OK
    if not items:
        logger.info("No work items to run.")
        return EXIT_OK

    max_parallel = args.max_parallel or plan.max_parallel or 1
    try:
        ports = PortPool(parse_port_range(args.port_range or plan.port_range))
        _validate_schedule(ports=ports, max_parallel=max_parallel)
        base_env = {**os.environ, **load_env_file(plan.env_file)}
        node_env = load_env_file(plan.node.env_file)
        backend = DockerBitcoindBackend(
            image=plan.node.image,
            container_port=plan.node.container_port,
            rpc_user=plan.node.rpc_user,
            rpc_password=plan.node.rpc_password,
            bitcoind=plan.node.bitcoind,
            env=node_env,
            volumes=plan.node.volumes,
            labels={"orchestrator.run_id": run_id},
            probe_timeout_s=plan.node.probe_timeout_s,
        )
    except (FileNotFoundError, ValueError, NodeStartError) as exc:
        logger.error("%s", exc)
        return EXIT_FATAL

    dashboard = RunDashboard(enabled=not args.no_dashboard and sys.stdout.isatty())
    lifecycle = NodeLifecycleManager(
        backend,
        ports,
        options=LifecycleOptions(
            rpc_user=plan.node.rpc_user,
            rpc_password=plan.node.rpc_password,
            readiness_timeout_s=args.readiness_timeout_s or plan.readiness_timeout_s,
            probe_interval_s=plan.probe_interval_s,
            start_attempts=plan.start_attempts,
            start_backoff_s=plan.start_backoff_s,
        ),
        on_event=dashboard.log,
    )
    job_runner = JobRunner(
        lifecycle,
        options=RunnerOptions(
            run_id=run_id,
            output_root=output_root,
            workspace=plan.workspace,
            test_timeout_s=args.test_timeout_s or plan.test_timeout_s,
            base_env=base_env,
        ),
        node_logs=backend.logs,
        on_event=dashboard.log,
    )
    orchestrator = OrchestratorRunner(
        items,
        lifecycle,
        job_runner,
        options=OrchestratorOptions(run_id=run_id, output_root=output_root, max_parallel=max_parallel),
        dashboard=dashboard,
    )
    summary = orchestrator.run()
    Console().print(build_report_table(summary))
    try:
        summary.raise_for_status()
    except InfrastructureError as exc:
        logger.error("Infrastructure failure: %s", exc)
        return EXIT_RUN_FAILED
    except TestFailure as exc:
        logger.error("Test failure: %s", exc)
        return EXIT_RUN_FAILED
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["build_parser", "main", "prepare_items", "resolve_run_id"]
