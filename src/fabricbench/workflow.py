from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from .app_logging import log_with_fields
from .backend import TestBackend
from .config import ProbeConfig
from .consistency import describe_anomalies, summarize_precheck
from .errors import BenchError, WorkflowAborted, WorkflowBusy
from .models import (
    PIPELINE_STAGES,
    CollectResult,
    PrecheckSummary,
    ProbeSnapshot,
    RunResult,
    StageState,
    StageStatus,
    StreamType,
    WorkflowStage,
    WorkflowState,
)
from .probe import CancelToken, ProbeCoordinator
from .report import P2PReportSummary, ReportSummary, aggregate_report, report_topology
from .store import RunStore
from .utils import new_run_id

StateListener = Callable[[WorkflowState], None]
SnapshotListener = Callable[[ProbeSnapshot, int], None]

ABORTED_MESSAGE = "aborted"


@dataclass(slots=True)
class RunContext:
    config_id: str
    run_id: str = field(default_factory=new_run_id)
    cancel: CancelToken = field(default_factory=CancelToken)
    precheck: PrecheckSummary | None = None
    run_result: RunResult | None = None
    last_snapshot: ProbeSnapshot | None = None
    probe_completed: bool = False
    collect: CollectResult | None = None
    stream_type: StreamType | None = None
    report: ReportSummary | P2PReportSummary | None = None
    remote_started: bool = False
    final_state: WorkflowState | None = None


@dataclass(slots=True, frozen=True)
class StageOutcome:
    status: StageStatus
    message: str


class WorkflowEngine:
    def __init__(
        self,
        backend: TestBackend,
        logger: logging.Logger,
        *,
        probe: ProbeConfig | None = None,
        store: RunStore | None = None,
        on_state: StateListener | None = None,
        on_snapshot: SnapshotListener | None = None,
    ) -> None:
        self.backend = backend
        self.logger = logger
        self.probe_config = probe or ProbeConfig()
        self.store = store
        self.on_state = on_state
        self.on_snapshot = on_snapshot
        self.coordinator = ProbeCoordinator(backend, logger)
        self.state = WorkflowState()
        self._lock = threading.Lock()
        self._context: RunContext | None = None
        self._stages: tuple[tuple[WorkflowStage, Callable[[RunContext], StageOutcome]], ...] = (
            (WorkflowStage.PRECHECK, self._precheck),
            (WorkflowStage.RUN, self._run),
            (WorkflowStage.PROBE, self._probe),
            (WorkflowStage.COLLECT, self._collect),
            (WorkflowStage.REPORT, self._report),
        )

    @property
    def active(self) -> bool:
        with self._lock:
            return self._context is not None

    def current_state(self) -> WorkflowState:
        return self.state.copy()

    def run(self, config_id: str, context: RunContext | None = None) -> WorkflowState:
        ctx = self._acquire(config_id, context)
        try:
            return self._execute(ctx)
        finally:
            self._release()

    def start(self, config_id: str, context: RunContext | None = None) -> tuple[threading.Thread, RunContext]:
        ctx = self._acquire(config_id, context)

        def target() -> None:
            try:
                self._execute(ctx)
            finally:
                self._release()

        thread = threading.Thread(target=target, name=f"fabricbench-{ctx.run_id[:8]}", daemon=True)
        try:
            thread.start()
        except RuntimeError:
            self._release()
            raise
        return thread, ctx

    def abort(self) -> bool:
        with self._lock:
            if self._context is None:
                return False
            self._context.cancel.cancel()
        log_with_fields(self.logger, logging.WARNING, "workflow_abort_requested")
        return True

    def _acquire(self, config_id: str, context: RunContext | None) -> RunContext:
        ctx = context or RunContext(config_id=config_id)
        if ctx.config_id != config_id:
            raise ValueError(f"context is for {ctx.config_id!r}, not {config_id!r}")
        with self._lock:
            if self._context is not None:
                raise WorkflowBusy(f"workflow already running for {self._context.config_id}")
            self._context = ctx
        return ctx

    def _release(self) -> None:
        with self._lock:
            self._context = None

    def _execute(self, ctx: RunContext) -> WorkflowState:
        self.state = WorkflowState(
            per_stage_status={stage: StageState() for stage in PIPELINE_STAGES},
        )
        if self.store is not None:
            self.store.start_run(ctx.run_id, ctx.config_id)
        log_with_fields(self.logger, logging.INFO, "workflow_started", run_id=ctx.run_id, config_id=ctx.config_id)
        self._emit()

        for stage, handler in self._stages:
            if ctx.cancel.cancelled:
                return self._abort(ctx, stage, entered=False)
            self._enter(ctx, stage)
            try:
                outcome = handler(ctx)
            except WorkflowAborted:
                return self._abort(ctx, stage, entered=True)
            except BenchError as exc:
                return self._fail(ctx, stage, str(exc))
            except Exception as exc:
                self.logger.exception("stage_crashed")
                return self._fail(ctx, stage, f"unexpected error: {exc}")
            if outcome.status is StageStatus.ERROR:
                return self._fail(ctx, stage, outcome.message)
            # An abort that lands while a backend call is in flight wins over its result.
            if ctx.cancel.cancelled:
                return self._abort(ctx, stage, entered=True)
            self._settle(ctx, stage, outcome)

        return self._finish(ctx, WorkflowStage.COMPLETED)

    def _enter(self, ctx: RunContext, stage: WorkflowStage) -> None:
        self.state.stage = stage
        self.state.history.append(stage)
        self._set_stage(ctx, stage, StageStatus.RUNNING, f"{stage.value} in progress")
        log_with_fields(self.logger, logging.INFO, "stage_started", run_id=ctx.run_id, stage=stage.value)

    def _settle(self, ctx: RunContext, stage: WorkflowStage, outcome: StageOutcome) -> None:
        self._set_stage(ctx, stage, outcome.status, outcome.message)
        level = logging.INFO if outcome.status is StageStatus.SUCCESS else logging.WARNING
        log_with_fields(
            self.logger,
            level,
            "stage_finished",
            run_id=ctx.run_id,
            stage=stage.value,
            status=outcome.status.value,
            message=outcome.message,
        )

    def _fail(self, ctx: RunContext, stage: WorkflowStage, message: str) -> WorkflowState:
        self._set_stage(ctx, stage, StageStatus.ERROR, message)
        self.state.last_error = message
        log_with_fields(
            self.logger,
            logging.ERROR,
            "stage_failed",
            run_id=ctx.run_id,
            stage=stage.value,
            error=message,
        )
        return self._finish(ctx, WorkflowStage.ERROR)

    def _abort(self, ctx: RunContext, stage: WorkflowStage, *, entered: bool) -> WorkflowState:
        message = ABORTED_MESSAGE
        if ctx.remote_started and ctx.collect is None:
            try:
                self.backend.stop(ctx.config_id)
            except BenchError as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "remote_stop_failed",
                    run_id=ctx.run_id,
                    error=str(exc),
                )
                message = f"{ABORTED_MESSAGE}; remote stop failed: {exc}"
        if entered:
            self._set_stage(ctx, stage, StageStatus.ERROR, message)
        self.state.last_error = message
        return self._finish(ctx, WorkflowStage.ABORTED)

    def _finish(self, ctx: RunContext, terminal: WorkflowStage) -> WorkflowState:
        self.state.stage = terminal
        self.state.history.append(terminal)
        if self.store is not None:
            self.store.finish_run(ctx.run_id, terminal, self.state.last_error)
        log_with_fields(
            self.logger,
            logging.INFO if terminal is WorkflowStage.COMPLETED else logging.WARNING,
            "workflow_finished",
            run_id=ctx.run_id,
            config_id=ctx.config_id,
            stage=terminal.value,
            last_error=self.state.last_error,
        )
        self._emit()
        ctx.final_state = self.state.copy()
        return ctx.final_state

    def _set_stage(self, ctx: RunContext, stage: WorkflowStage, status: StageStatus, message: str) -> None:
        self.state.per_stage_status[stage] = StageState(status=status, message=message)
        if self.store is not None:
            self.store.add_stage_event(ctx.run_id, stage, status, message)
        self._emit()

    def _emit(self) -> None:
        if self.on_state is None:
            return
        try:
            self.on_state(self.state.copy())
        except Exception:
            self.logger.exception("state_listener_failed")

    def _precheck(self, ctx: RunContext) -> StageOutcome:
        summary = summarize_precheck(self.backend.precheck(ctx.config_id))
        ctx.precheck = summary
        if summary.check_passed:
            return StageOutcome(
                StageStatus.SUCCESS,
                f"precheck passed: {summary.healthy_count}/{summary.total_devices} devices healthy",
            )
        # Hardware anomalies are advisory; the operator decides whether they matter.
        return StageOutcome(StageStatus.WARNING, "precheck anomalies: " + "; ".join(describe_anomalies(summary)))

    def _run(self, ctx: RunContext) -> StageOutcome:
        result = self.backend.run(ctx.config_id)
        ctx.run_result = result
        if not result.success:
            return StageOutcome(StageStatus.ERROR, result.error or result.message or "test run failed")
        ctx.remote_started = True
        return StageOutcome(StageStatus.SUCCESS, result.message or "test started")

    def _probe(self, ctx: RunContext) -> StageOutcome:
        def progress(snapshot: ProbeSnapshot, attempt: int) -> None:
            ctx.last_snapshot = snapshot
            self._set_stage(
                ctx,
                WorkflowStage.PROBE,
                StageStatus.RUNNING,
                f"probing (attempt {attempt}, running: {snapshot.running_hosts}, "
                f"completed: {snapshot.completed_hosts}, error: {snapshot.error_hosts})",
            )
            if self.on_snapshot is None:
                return
            try:
                self.on_snapshot(snapshot, attempt)
            except Exception:
                self.logger.exception("snapshot_listener_failed")

        snapshot, completed = self.coordinator.poll(
            ctx.config_id,
            self.probe_config.interval_seconds,
            self.probe_config.max_attempts,
            on_snapshot=progress,
            cancel=ctx.cancel,
        )
        ctx.last_snapshot = snapshot
        ctx.probe_completed = completed
        if not completed:
            return StageOutcome(
                StageStatus.WARNING,
                f"probe gave up after {self.probe_config.max_wait_seconds:g}s "
                f"with {snapshot.running_hosts} host(s) still running; continuing",
            )
        if snapshot.error_hosts > 0:
            return StageOutcome(StageStatus.WARNING, f"{snapshot.error_hosts} host(s) reported errors; continuing")
        return StageOutcome(StageStatus.SUCCESS, "all test processes completed")

    def _collect(self, ctx: RunContext) -> StageOutcome:
        result = self.backend.collect(ctx.config_id)
        if not result.success:
            return StageOutcome(StageStatus.ERROR, result.error or result.message or "report collection failed")
        ctx.collect = result
        total = sum(result.collected_file_counts.values())
        hosts = len(result.collected_file_counts)
        return StageOutcome(StageStatus.SUCCESS, f"collected {total} report file(s) from {hosts} host(s)")

    def _report(self, ctx: RunContext) -> StageOutcome:
        payload = self.backend.report(ctx.config_id)
        ctx.stream_type = report_topology(payload)
        report = aggregate_report(payload)
        ctx.report = report
        if isinstance(report, P2PReportSummary):
            return StageOutcome(
                StageStatus.SUCCESS,
                f"{report.total_pairs} pair(s), average speed {report.average_speed_across_pairs:.2f}",
            )
        return StageOutcome(
            StageStatus.SUCCESS,
            f"{len(report.client_records)} client record(s), {len(report.failed_records)} FAIL, "
            f"theoretical per client {report.theoretical_bandwidth_per_client:.2f}",
        )
