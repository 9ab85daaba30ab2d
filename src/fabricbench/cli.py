from __future__ import annotations

import argparse
import json
import logging
import sys

from .app_logging import log_with_fields, setup_logger
from .backend import HttpBackend
from .config import AppConfig, ensure_local_paths, load_config
from .consistency import FrequencyClass, classify_records, summarize_precheck
from .errors import BenchError, ValidationFailure
from .models import PIPELINE_STAGES, PrecheckSummary, WorkflowStage, WorkflowState
from .report import P2PReportSummary, ReportSummary
from .store import RunStore
from .workflow import RunContext, WorkflowEngine

JOIN_POLL_SECONDS = 0.5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fabricbench", description="RDMA bandwidth benchmark orchestrator")
    parser.add_argument("--config", required=True, help="Path to fabricbench YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("configs", help="List benchmark configs known to the backend")
    show = subparsers.add_parser("show", help="Show one benchmark config")
    show.add_argument("name", help="Benchmark config name")
    validate = subparsers.add_parser("validate", help="Validate one benchmark config")
    validate.add_argument("name", help="Benchmark config name")
    precheck = subparsers.add_parser("precheck", help="Run only the hardware precheck")
    precheck.add_argument("name", help="Benchmark config name")

    run_parser = subparsers.add_parser("run", help="Run the full benchmark workflow")
    run_parser.add_argument("name", help="Benchmark config name")

    history = subparsers.add_parser("history", help="Show recent workflow runs")
    history.add_argument("--limit", type=int, default=20, help="Number of runs to show")
    return parser


def _mark(cls: FrequencyClass) -> str:
    return "!" if cls is FrequencyClass.OUTLIER else " "


def print_precheck(summary: PrecheckSummary) -> None:
    print(
        f"devices={summary.total_devices} healthy={summary.healthy_count} "
        f"unhealthy={summary.unhealthy_count} errors={summary.error_count} "
        f"speeds_equal={summary.all_speeds_equal} passed={summary.check_passed}"
    )
    for verdict in classify_records(summary):
        record = verdict.record
        state = "error" if record.error else ("healthy" if record.is_healthy else "unhealthy")
        print(
            f"  {record.hostname:20} {record.device_id:14} {state:9} "
            f"{record.speed:>14}{_mark(verdict.speed)} "
            f"{record.firmware_version:>14}{_mark(verdict.firmware)} "
            f"{record.board_id:>16}{_mark(verdict.board_id)}"
            + (f" {record.error}" if record.error else "")
        )


def print_report(report: ReportSummary | P2PReportSummary) -> None:
    if isinstance(report, P2PReportSummary):
        print(f"P2P pairs={report.total_pairs} average={report.average_speed_across_pairs:.2f}")
        for pair in report.pairs:
            print(f"  {pair.hostname:20} {pair.device:14} {pair.average_speed:10.2f} x{pair.connection_count}")
        return

    print(
        f"server_total={report.total_server_bandwidth:.2f} clients={report.client_count} "
        f"theoretical_per_client={report.theoretical_bandwidth_per_client:.2f}"
    )
    for label, records in (("TX", report.client_records), ("RX", report.server_records)):
        for record in records:
            print(
                f"  {label} {record.hostname:20} {record.device:14} "
                f"actual={record.actual_bandwidth:10.2f} theoretical={record.theoretical_bandwidth:10.2f} "
                f"delta={record.delta:+10.2f} ({record.delta_percent:+7.2f}%) {record.status.value}"
            )


def print_state(state: WorkflowState) -> None:
    print(f"stage: {state.stage.value}")
    for stage in PIPELINE_STAGES:
        stage_state = state.per_stage_status.get(stage)
        if stage_state is None:
            continue
        print(f"  {stage.value:9} {stage_state.status.value:8} {stage_state.message}")
    if state.last_error:
        print(f"error: {state.last_error}")


class ProgressPrinter:
    def __init__(self) -> None:
        self.last_line = ""

    def __call__(self, state: WorkflowState) -> None:
        if state.stage not in PIPELINE_STAGES:
            return
        stage_state = state.per_stage_status[state.stage]
        line = f"[{state.stage.value}] {stage_state.status.value}: {stage_state.message}"
        if line != self.last_line:
            print(line, flush=True)
            self.last_line = line


def cmd_configs(config: AppConfig) -> int:
    with HttpBackend(config.backend) as backend:
        entries = backend.list_configs()
    if not entries:
        print("(no configs)")
    for entry in entries:
        flags = []
        if entry.is_default:
            flags.append("default")
        if not entry.is_deletable:
            flags.append("protected")
        print(f"  {entry.name}" + (f" ({', '.join(flags)})" if flags else ""))
    return 0


def cmd_show(config: AppConfig, name: str) -> int:
    with HttpBackend(config.backend) as backend:
        payload = backend.get_config(name)
    print(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


def cmd_validate(config: AppConfig, name: str) -> int:
    with HttpBackend(config.backend) as backend:
        try:
            backend.validate(name)
        except ValidationFailure as exc:
            print(f"{name}: {exc.message}", file=sys.stderr)
            for error in exc.errors:
                print(f"  - {error}", file=sys.stderr)
            return 1
    print(f"{name}: valid")
    return 0


def cmd_precheck(config: AppConfig, name: str) -> int:
    with HttpBackend(config.backend) as backend:
        summary = summarize_precheck(backend.precheck(name))
    print_precheck(summary)
    return 0 if summary.check_passed else 1


def cmd_run(config: AppConfig, name: str) -> int:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    store = RunStore(config.paths.db)
    store.init_schema()
    backend = HttpBackend(config.backend)
    try:
        engine = WorkflowEngine(
            backend,
            logger,
            probe=config.probe,
            store=store,
            on_state=ProgressPrinter(),
        )
        context = RunContext(config_id=name)
        thread, _ = engine.start(name, context)
        try:
            while thread.is_alive():
                thread.join(JOIN_POLL_SECONDS)
        except KeyboardInterrupt:
            log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
            engine.abort()
            thread.join()

        state = context.final_state or engine.current_state()
        print()
        print_state(state)
        if context.precheck is not None and not context.precheck.check_passed:
            print()
            print_precheck(context.precheck)
        if context.report is not None:
            print()
            print_report(context.report)
        return 0 if state.stage is WorkflowStage.COMPLETED else 1
    finally:
        backend.close()
        store.close()


def cmd_history(config: AppConfig, limit: int) -> int:
    ensure_local_paths(config)
    store = RunStore(config.paths.db)
    try:
        store.init_schema()
        runs = store.list_runs(limit)
        if not runs:
            print("(no runs yet)")
        for run in runs:
            error = f" error={run.last_error}" if run.last_error else ""
            print(
                f"  {run.run_id[:12]} {run.config_id:24} stage={run.stage.value:9} "
                f"started={run.started_at} finished={run.finished_at}{error}"
            )
        return 0
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    try:
        if args.command == "configs":
            return cmd_configs(config)
        if args.command == "show":
            return cmd_show(config, args.name)
        if args.command == "validate":
            return cmd_validate(config, args.name)
        if args.command == "precheck":
            return cmd_precheck(config, args.name)
        if args.command == "run":
            return cmd_run(config, args.name)
        if args.command == "history":
            return cmd_history(config, args.limit)
    except BenchError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
