from __future__ import annotations

import logging
import threading
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

from fabricbench.config import ProbeConfig
from fabricbench.errors import TransportError, WorkflowBusy
from fabricbench.models import (
    CollectResult,
    ConfigEntry,
    HCARecord,
    ProbeSnapshot,
    RunResult,
    StageStatus,
    StreamType,
    WorkflowStage,
    WorkflowState,
)
from fabricbench.report import P2PReportSummary, ReportSummary
from fabricbench.store import RunStore
from fabricbench.workflow import RunContext, WorkflowEngine

PIPELINE = [
    WorkflowStage.PRECHECK,
    WorkflowStage.RUN,
    WorkflowStage.PROBE,
    WorkflowStage.COLLECT,
    WorkflowStage.REPORT,
]


def hca(hostname: str, *, healthy: bool = True, speed: str = "200") -> HCARecord:
    return HCARecord(
        hostname=hostname,
        device_id="mlx5_0",
        physical_state="5: LinkUp",
        logical_state="4: ACTIVE",
        speed=speed,
        firmware_version="28.39.1002",
        board_id="MT_0000000838",
        is_healthy=healthy,
    )


def probe_snapshot(*, done: bool, errors: int = 0) -> ProbeSnapshot:
    return ProbeSnapshot(
        timestamp="2025-01-01 00:00:00",
        running_hosts=0 if done else 2,
        completed_hosts=4 - errors if done else 2,
        error_hosts=errors,
        total_processes=0 if done else 16,
        all_completed=done,
    )


class FakeBackend:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.records = [hca(f"node{i}") for i in range(4)]
        self.run_result = RunResult(success=True, message="Test scripts distributed and started successfully")
        self.snapshots = [probe_snapshot(done=True)]
        self.collect_result = CollectResult(success=True, collected_file_counts={"node0": 2, "node1": 2})
        self.report_payload: dict[str, Any] = {
            "stream_type": "fullmesh",
            "total_server_bw": 400,
            "client_count": 4,
            "client_data": {f"node{i}": {"mlx5_0": {"actual_bw": 95.0}} for i in range(4)},
            "server_data": {"server0": {"mlx5_0": {"rx_bw": 390.0}}},
        }

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def list_configs(self) -> list[ConfigEntry]:
        self._call("list_configs")
        return [ConfigEntry(name="config.yaml", is_default=True, is_deletable=False)]

    def get_config(self, config_id: str) -> dict[str, Any]:
        self._call("get_config")
        return {"stream_type": "fullmesh"}

    def validate(self, config_id: str) -> dict[str, Any]:
        self._call("validate")
        return {"valid": True}

    def precheck(self, config_id: str) -> list[HCARecord]:
        self._call("precheck")
        return list(self.records)

    def run(self, config_id: str) -> RunResult:
        self._call("run")
        return self.run_result

    def probe(self, config_id: str) -> ProbeSnapshot:
        index = min(self.calls.count("probe"), len(self.snapshots) - 1)
        self._call("probe")
        return self.snapshots[index]

    def collect(self, config_id: str) -> CollectResult:
        self._call("collect")
        return self.collect_result

    def report(self, config_id: str) -> dict[str, Any]:
        self._call("report")
        return self.report_payload

    def stop(self, config_id: str) -> None:
        self._call("stop")


class GatedBackend(FakeBackend):
    def __init__(self) -> None:
        super().__init__()
        self.snapshots = [probe_snapshot(done=False)]
        self.entered = threading.Event()
        self.gate = threading.Event()

    def probe(self, config_id: str) -> ProbeSnapshot:
        self.entered.set()
        self.gate.wait(5)
        return super().probe(config_id)


class GatedReportBackend(FakeBackend):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def report(self, config_id: str) -> dict[str, Any]:
        self.entered.set()
        self.gate.wait(5)
        return super().report(config_id)


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_fabricbench.workflow")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def make_engine(backend: FakeBackend, **kwargs: Any) -> WorkflowEngine:
    kwargs.setdefault("probe", ProbeConfig(interval_seconds=0, max_attempts=3))
    return WorkflowEngine(backend, quiet_logger(), **kwargs)


class WorkflowHappyPathTest(unittest.TestCase):
    def test_end_to_end_completes(self) -> None:
        backend = FakeBackend()
        context = RunContext(config_id="config.yaml")
        state = make_engine(backend).run("config.yaml", context)

        self.assertEqual(state.stage, WorkflowStage.COMPLETED)
        self.assertEqual(state.history, PIPELINE + [WorkflowStage.COMPLETED])
        for stage in PIPELINE:
            self.assertEqual(state.status_of(stage), StageStatus.SUCCESS, stage)
        self.assertIsNone(state.last_error)
        self.assertEqual(backend.calls, ["precheck", "run", "probe", "collect", "report"])

        assert isinstance(context.report, ReportSummary)
        self.assertEqual(context.report.theoretical_bandwidth_per_client, 100)
        self.assertEqual(context.stream_type, StreamType.FULLMESH)
        self.assertTrue(context.precheck is not None and context.precheck.check_passed)
        self.assertEqual(context.final_state, state)

    def test_p2p_report_selected_by_stream_type(self) -> None:
        backend = FakeBackend()
        backend.report_payload = {
            "stream_type": "p2p",
            "p2p_data": {"node0": {"mlx5_0": {"avg_speed": 190.0, "count": 1}}},
        }
        context = RunContext(config_id="p2p.yaml")
        state = make_engine(backend).run("p2p.yaml", context)
        self.assertEqual(state.stage, WorkflowStage.COMPLETED)
        self.assertIsInstance(context.report, P2PReportSummary)
        self.assertEqual(context.stream_type, StreamType.P2P)

    def test_each_run_starts_from_fresh_state(self) -> None:
        backend = FakeBackend()
        engine = make_engine(backend)
        backend.failures["collect"] = TransportError("connection reset")
        first = engine.run("config.yaml")
        self.assertEqual(first.stage, WorkflowStage.ERROR)

        del backend.failures["collect"]
        second = engine.run("config.yaml")
        self.assertEqual(second.stage, WorkflowStage.COMPLETED)
        self.assertEqual(second.history, PIPELINE + [WorkflowStage.COMPLETED])
        self.assertIsNone(second.last_error)

    def test_state_is_published_after_every_transition(self) -> None:
        backend = FakeBackend()
        observed: list[WorkflowState] = []
        make_engine(backend, on_state=observed.append).run("config.yaml")

        self.assertEqual(observed[0].stage, WorkflowStage.IDLE)
        self.assertEqual(observed[-1].stage, WorkflowStage.COMPLETED)
        entered = []
        for state in observed:
            if not entered or entered[-1] != state.stage:
                entered.append(state.stage)
        self.assertEqual(entered, [WorkflowStage.IDLE] + PIPELINE + [WorkflowStage.COMPLETED])
        running = [state for state in observed if state.status_of(WorkflowStage.RUN) is StageStatus.RUNNING]
        self.assertTrue(running)

    def test_failing_snapshot_listener_does_not_break_probe(self) -> None:
        backend = FakeBackend()
        backend.snapshots = [probe_snapshot(done=False), probe_snapshot(done=True)]
        seen: list[int] = []

        def listener(snapshot: ProbeSnapshot, attempt: int) -> None:
            seen.append(attempt)
            raise RuntimeError("display widget gone")

        state = make_engine(backend, on_snapshot=listener).run("config.yaml")

        self.assertEqual(seen, [1, 2])
        self.assertEqual(state.status_of(WorkflowStage.PROBE), StageStatus.SUCCESS)
        self.assertEqual(state.stage, WorkflowStage.COMPLETED)
        self.assertIn("collect", backend.calls)
        self.assertIn("report", backend.calls)


class WorkflowContinuationPolicyTest(unittest.TestCase):
    def test_precheck_anomaly_is_advisory(self) -> None:
        backend = FakeBackend()
        backend.records[2] = hca("node2", healthy=False)
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(state.status_of(WorkflowStage.PRECHECK), StageStatus.WARNING)
        self.assertIn("1 device(s) unhealthy", state.per_stage_status[WorkflowStage.PRECHECK].message)
        self.assertEqual(state.stage, WorkflowStage.COMPLETED)
        self.assertIn("run", backend.calls)

    def test_precheck_transport_error_aborts(self) -> None:
        backend = FakeBackend()
        backend.failures["precheck"] = TransportError("HTTP error: status 502")
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(state.stage, WorkflowStage.ERROR)
        self.assertEqual(state.history, [WorkflowStage.PRECHECK, WorkflowStage.ERROR])
        self.assertEqual(state.status_of(WorkflowStage.PRECHECK), StageStatus.ERROR)
        self.assertEqual(state.status_of(WorkflowStage.RUN), StageStatus.PENDING)
        self.assertEqual(state.last_error, "HTTP error: status 502")
        self.assertEqual(backend.calls, ["precheck"])

    def test_unsuccessful_run_aborts(self) -> None:
        backend = FakeBackend()
        backend.run_result = RunResult(success=False, error="Failed to generate scripts")
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(state.stage, WorkflowStage.ERROR)
        self.assertEqual(state.history, [WorkflowStage.PRECHECK, WorkflowStage.RUN, WorkflowStage.ERROR])
        self.assertEqual(state.per_stage_status[WorkflowStage.RUN].message, "Failed to generate scripts")
        self.assertNotIn("probe", backend.calls)

    def test_probe_timeout_is_advisory(self) -> None:
        backend = FakeBackend()
        backend.snapshots = [probe_snapshot(done=False)]
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(backend.calls.count("probe"), 3)
        self.assertEqual(state.status_of(WorkflowStage.PROBE), StageStatus.WARNING)
        self.assertEqual(state.stage, WorkflowStage.COMPLETED)

    def test_probe_error_hosts_are_advisory(self) -> None:
        backend = FakeBackend()
        backend.snapshots = [probe_snapshot(done=False), probe_snapshot(done=True, errors=1)]
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(state.status_of(WorkflowStage.PROBE), StageStatus.WARNING)
        self.assertIn("1 host(s) reported errors", state.per_stage_status[WorkflowStage.PROBE].message)
        self.assertEqual(state.stage, WorkflowStage.COMPLETED)

    def test_probe_transport_error_aborts(self) -> None:
        backend = FakeBackend()
        backend.failures["probe"] = TransportError("empty response from server")
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(state.stage, WorkflowStage.ERROR)
        self.assertEqual(state.status_of(WorkflowStage.PROBE), StageStatus.ERROR)
        self.assertNotIn("collect", backend.calls)

    def test_collect_failure_aborts(self) -> None:
        backend = FakeBackend()
        backend.collect_result = CollectResult(success=False, error="Report is not enabled in config")
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(state.stage, WorkflowStage.ERROR)
        self.assertEqual(state.last_error, "Report is not enabled in config")
        self.assertNotIn("report", backend.calls)

    def test_invalid_report_input_aborts(self) -> None:
        backend = FakeBackend()
        backend.report_payload["client_count"] = 0
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(state.stage, WorkflowStage.ERROR)
        self.assertEqual(state.status_of(WorkflowStage.REPORT), StageStatus.ERROR)
        self.assertIn("client_count", state.last_error or "")

    def test_unexpected_exception_is_captured(self) -> None:
        backend = FakeBackend()
        backend.failures["collect"] = KeyError("collected_files")
        state = make_engine(backend).run("config.yaml")

        self.assertEqual(state.stage, WorkflowStage.ERROR)
        self.assertTrue((state.last_error or "").startswith("unexpected error"))


class WorkflowConcurrencyTest(unittest.TestCase):
    def test_refuses_second_run_and_aborts_cleanly(self) -> None:
        backend = GatedBackend()
        engine = make_engine(backend, probe=ProbeConfig(interval_seconds=3600, max_attempts=100))
        thread, context = engine.start("config.yaml")
        try:
            self.assertTrue(backend.entered.wait(5))
            self.assertTrue(engine.active)
            with self.assertRaises(WorkflowBusy):
                engine.run("config.yaml")
            self.assertTrue(engine.abort())
        finally:
            backend.gate.set()
            thread.join(5)

        self.assertFalse(thread.is_alive())
        self.assertFalse(engine.active)
        state = context.final_state
        assert state is not None
        self.assertEqual(state.stage, WorkflowStage.ABORTED)
        self.assertEqual(state.status_of(WorkflowStage.PROBE), StageStatus.ERROR)
        self.assertEqual(state.status_of(WorkflowStage.COLLECT), StageStatus.PENDING)
        self.assertEqual(state.last_error, "aborted")
        self.assertEqual(backend.calls[-1], "stop")
        self.assertNotIn("collect", backend.calls)

    def test_abort_during_report_ends_aborted(self) -> None:
        backend = GatedReportBackend()
        engine = make_engine(backend)
        thread, context = engine.start("config.yaml")
        try:
            self.assertTrue(backend.entered.wait(5))
            self.assertTrue(engine.abort())
        finally:
            backend.gate.set()
            thread.join(5)

        self.assertFalse(thread.is_alive())
        state = context.final_state
        assert state is not None
        self.assertEqual(state.stage, WorkflowStage.ABORTED)
        self.assertEqual(state.history, PIPELINE + [WorkflowStage.ABORTED])
        self.assertEqual(state.status_of(WorkflowStage.COLLECT), StageStatus.SUCCESS)
        self.assertEqual(state.status_of(WorkflowStage.REPORT), StageStatus.ERROR)
        self.assertEqual(state.last_error, "aborted")
        # Results were already collected, so there is nothing to stop remotely.
        self.assertNotIn("stop", backend.calls)

    def test_cancelled_before_start(self) -> None:
        backend = FakeBackend()
        context = RunContext(config_id="config.yaml")
        context.cancel.cancel()
        state = make_engine(backend).run("config.yaml", context)

        self.assertEqual(state.stage, WorkflowStage.ABORTED)
        self.assertEqual(state.history, [WorkflowStage.ABORTED])
        self.assertEqual(backend.calls, [])

    def test_abort_without_active_run(self) -> None:
        self.assertFalse(make_engine(FakeBackend()).abort())

    def test_failed_remote_stop_is_reported(self) -> None:
        backend = GatedBackend()
        backend.failures["stop"] = TransportError("connection refused")
        engine = make_engine(backend, probe=ProbeConfig(interval_seconds=3600, max_attempts=100))
        thread, context = engine.start("config.yaml")
        try:
            self.assertTrue(backend.entered.wait(5))
            engine.abort()
        finally:
            backend.gate.set()
            thread.join(5)

        state = context.final_state
        assert state is not None
        self.assertEqual(state.stage, WorkflowStage.ABORTED)
        self.assertIn("remote stop failed", state.last_error or "")


class WorkflowJournalTest(unittest.TestCase):
    def test_run_and_stage_events_are_recorded(self) -> None:
        with TemporaryDirectory() as temp_dir:
            store = RunStore(Path(temp_dir) / "fabricbench.db")
            store.init_schema()
            backend = FakeBackend()
            backend.records[0] = hca("node0", speed="100")
            context = RunContext(config_id="config.yaml")
            make_engine(backend, store=store).run("config.yaml", context)

            run = store.get_run(context.run_id)
            assert run is not None
            self.assertEqual(run.stage, WorkflowStage.COMPLETED)
            self.assertIsNotNone(run.finished_at)

            events = store.list_stage_events(context.run_id)
            settled = [(event.stage, event.status) for event in events if event.status is not StageStatus.RUNNING]
            self.assertEqual(
                settled,
                [
                    (WorkflowStage.PRECHECK, StageStatus.WARNING),
                    (WorkflowStage.RUN, StageStatus.SUCCESS),
                    (WorkflowStage.PROBE, StageStatus.SUCCESS),
                    (WorkflowStage.COLLECT, StageStatus.SUCCESS),
                    (WorkflowStage.REPORT, StageStatus.SUCCESS),
                ],
            )
            store.close()


if __name__ == "__main__":
    unittest.main()
