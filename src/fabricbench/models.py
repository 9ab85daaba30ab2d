from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import TransportError


class WorkflowStage(str, Enum):
    IDLE = "idle"
    PRECHECK = "precheck"
    RUN = "run"
    PROBE = "probe"
    COLLECT = "collect"
    REPORT = "report"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"


PIPELINE_STAGES: tuple[WorkflowStage, ...] = (
    WorkflowStage.PRECHECK,
    WorkflowStage.RUN,
    WorkflowStage.PROBE,
    WorkflowStage.COLLECT,
    WorkflowStage.REPORT,
)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class HostStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class StreamType(str, Enum):
    FULLMESH = "fullmesh"
    INCAST = "incast"
    P2P = "p2p"


class BandwidthStatus(str, Enum):
    OK = "OK"
    FAIL = "FAIL"


def _require_mapping(payload: Any, what: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise TransportError(f"malformed {what} payload: expected an object")
    return payload


def _text(item: dict[str, Any], key: str) -> str:
    value = item.get(key)
    return "" if value is None else str(value)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


@dataclass(slots=True, frozen=True)
class HCARecord:
    hostname: str
    device_id: str
    physical_state: str
    logical_state: str
    speed: str
    firmware_version: str
    board_id: str
    is_healthy: bool
    error: str | None = None
    serial_number: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> HCARecord:
        item = _require_mapping(payload, "precheck record")
        return cls(
            hostname=_text(item, "hostname"),
            device_id=_text(item, "hca"),
            physical_state=_text(item, "phys_state"),
            logical_state=_text(item, "state"),
            speed=_text(item, "speed"),
            firmware_version=_text(item, "fw_ver"),
            board_id=_text(item, "board_id"),
            is_healthy=bool(item.get("is_healthy", False)),
            error=_optional_text(item.get("error")),
            serial_number=_optional_text(item.get("serial_number")),
        )


@dataclass(slots=True, frozen=True)
class PrecheckSummary:
    total_devices: int
    healthy_count: int
    unhealthy_count: int
    error_count: int
    all_speeds_equal: bool
    speed_frequency: dict[str, int]
    firmware_frequency: dict[str, int]
    board_id_frequency: dict[str, int]
    records: tuple[HCARecord, ...]

    @property
    def check_passed(self) -> bool:
        return self.error_count == 0 and self.unhealthy_count == 0 and self.all_speeds_equal


@dataclass(slots=True, frozen=True)
class HostProbe:
    hostname: str
    process_count: int
    status: HostStatus
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> HostProbe:
        item = _require_mapping(payload, "probe result")
        try:
            status = HostStatus(_text(item, "status").upper())
        except ValueError as exc:
            raise TransportError(f"unknown host status: {item.get('status')!r}") from exc
        return cls(
            hostname=_text(item, "hostname"),
            process_count=int(item.get("process_count", 0)),
            status=status,
            error=_optional_text(item.get("error")),
        )


@dataclass(slots=True, frozen=True)
class ProbeSnapshot:
    timestamp: str
    running_hosts: int
    completed_hosts: int
    error_hosts: int
    total_processes: int
    all_completed: bool
    per_host: tuple[HostProbe, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> ProbeSnapshot:
        item = _require_mapping(payload, "probe")
        results = item.get("results") or []
        if not isinstance(results, list):
            raise TransportError("malformed probe payload: `results` must be a list")
        return cls(
            timestamp=_text(item, "timestamp"),
            running_hosts=int(item.get("running_hosts", 0)),
            completed_hosts=int(item.get("completed_hosts", 0)),
            error_hosts=int(item.get("error_hosts", 0)),
            total_processes=int(item.get("total_processes", 0)),
            all_completed=bool(item.get("all_completed", False)),
            per_host=tuple(HostProbe.from_payload(entry) for entry in results),
        )


@dataclass(slots=True, frozen=True)
class RunResult:
    success: bool
    message: str = ""
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> RunResult:
        item = _require_mapping(payload, "run")
        return cls(
            success=bool(item.get("success", False)),
            message=_text(item, "message"),
            error=_optional_text(item.get("error")),
        )


@dataclass(slots=True, frozen=True)
class CollectResult:
    success: bool
    collected_file_counts: dict[str, int] = field(default_factory=dict)
    message: str = ""
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> CollectResult:
        item = _require_mapping(payload, "collect")
        counts = item.get("collected_files") or {}
        if not isinstance(counts, dict):
            raise TransportError("malformed collect payload: `collected_files` must be an object")
        return cls(
            success=bool(item.get("success", False)),
            collected_file_counts={str(key): int(value) for key, value in counts.items()},
            message=_text(item, "message"),
            error=_optional_text(item.get("error")),
        )


@dataclass(slots=True, frozen=True)
class ConfigEntry:
    name: str
    is_default: bool
    is_deletable: bool

    @classmethod
    def from_payload(cls, payload: Any) -> ConfigEntry:
        item = _require_mapping(payload, "config entry")
        return cls(
            name=_text(item, "name"),
            is_default=bool(item.get("is_default", False)),
            is_deletable=bool(item.get("is_deletable", False)),
        )


@dataclass(slots=True)
class StageState:
    status: StageStatus = StageStatus.PENDING
    message: str = ""


@dataclass(slots=True)
class WorkflowState:
    stage: WorkflowStage = WorkflowStage.IDLE
    per_stage_status: dict[WorkflowStage, StageState] = field(default_factory=dict)
    last_error: str | None = None
    history: list[WorkflowStage] = field(default_factory=list)

    def copy(self) -> WorkflowState:
        return WorkflowState(
            stage=self.stage,
            per_stage_status={
                stage: StageState(status=state.status, message=state.message)
                for stage, state in self.per_stage_status.items()
            },
            last_error=self.last_error,
            history=list(self.history),
        )

    def status_of(self, stage: WorkflowStage) -> StageStatus:
        state = self.per_stage_status.get(stage)
        return state.status if state else StageStatus.PENDING
