from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError
from .models import BandwidthStatus, StreamType

FAIL_THRESHOLD_PERCENT = 20.0


def bandwidth_status(delta_percent: float) -> BandwidthStatus:
    if abs(delta_percent) > FAIL_THRESHOLD_PERCENT:
        return BandwidthStatus.FAIL
    return BandwidthStatus.OK


@dataclass(slots=True, frozen=True)
class BandwidthRecord:
    hostname: str
    device: str
    actual_bandwidth: float
    theoretical_bandwidth: float

    @property
    def delta(self) -> float:
        return self.actual_bandwidth - self.theoretical_bandwidth

    @property
    def delta_percent(self) -> float:
        return self.delta / self.theoretical_bandwidth * 100

    @property
    def status(self) -> BandwidthStatus:
        return bandwidth_status(self.delta_percent)


@dataclass(slots=True, frozen=True)
class ReportSummary:
    client_records: tuple[BandwidthRecord, ...]
    server_records: tuple[BandwidthRecord, ...]
    total_server_bandwidth: float
    client_count: int

    @property
    def theoretical_bandwidth_per_client(self) -> float:
        return self.total_server_bandwidth / self.client_count

    @property
    def failed_records(self) -> list[BandwidthRecord]:
        return [
            record
            for record in (*self.client_records, *self.server_records)
            if record.status is BandwidthStatus.FAIL
        ]


@dataclass(slots=True, frozen=True)
class P2PPair:
    hostname: str
    device: str
    average_speed: float
    connection_count: int


@dataclass(slots=True, frozen=True)
class P2PReportSummary:
    pairs: tuple[P2PPair, ...]

    @property
    def total_pairs(self) -> int:
        return len(self.pairs)

    @property
    def average_speed_across_pairs(self) -> float:
        if not self.pairs:
            return 0.0
        return sum(pair.average_speed for pair in self.pairs) / len(self.pairs)


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{what} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{what} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{what} must be finite, got {value!r}")
    return number


def _whole_number(value: Any, what: str) -> int:
    number = _number(value, what)
    if not number.is_integer():
        raise ValidationError(f"{what} must be a whole number, got {value!r}")
    return int(number)


def _device_entries(payload: dict[str, Any], key: str) -> list[tuple[str, str, dict[str, Any]]]:
    raw = payload.get(key) or {}
    if not isinstance(raw, dict):
        raise ValidationError(f"`{key}` must map hostname to devices")
    entries: list[tuple[str, str, dict[str, Any]]] = []
    for hostname, devices in raw.items():
        if not isinstance(devices, dict):
            raise ValidationError(f"`{key}.{hostname}` must map device to measurements")
        for device, measurement in devices.items():
            if not isinstance(measurement, dict):
                raise ValidationError(f"`{key}.{hostname}.{device}` must be an object")
            entries.append((str(hostname), str(device), measurement))
    entries.sort(key=lambda entry: (entry[0], entry[1]))
    return entries


def report_topology(payload: dict[str, Any]) -> StreamType:
    raw = str(payload.get("stream_type", "")).strip().lower()
    try:
        return StreamType(raw)
    except ValueError as exc:
        raise ValidationError(f"unknown stream type: {payload.get('stream_type')!r}") from exc


def build_traditional_report(payload: dict[str, Any]) -> ReportSummary:
    clients = _device_entries(payload, "client_data")
    servers = _device_entries(payload, "server_data")

    total_server = _number(payload.get("total_server_bw"), "total_server_bw")
    if total_server <= 0:
        raise ValidationError(f"total_server_bw must be > 0, got {total_server}")
    raw_count = payload.get("client_count")
    client_count = len(clients) if raw_count is None else _whole_number(raw_count, "client_count")
    if client_count <= 0:
        raise ValidationError("client_count must be > 0 to compute theoretical bandwidth per client")

    per_client = total_server / client_count
    client_records = tuple(
        BandwidthRecord(
            hostname=hostname,
            device=device,
            actual_bandwidth=_number(data.get("actual_bw"), f"client {hostname}/{device} actual_bw"),
            theoretical_bandwidth=per_client,
        )
        for hostname, device, data in clients
    )

    per_server_device = total_server / len(servers) if servers else 0.0
    server_records = tuple(
        BandwidthRecord(
            hostname=hostname,
            device=device,
            actual_bandwidth=_number(data.get("rx_bw"), f"server {hostname}/{device} rx_bw"),
            theoretical_bandwidth=per_server_device,
        )
        for hostname, device, data in servers
    )
    return ReportSummary(
        client_records=client_records,
        server_records=server_records,
        total_server_bandwidth=total_server,
        client_count=client_count,
    )


def build_p2p_report(payload: dict[str, Any]) -> P2PReportSummary:
    pairs: list[P2PPair] = []
    for hostname, device, data in _device_entries(payload, "p2p_data"):
        count = _whole_number(data.get("count", 1), f"p2p {hostname}/{device} count")
        if count < 1:
            raise ValidationError(f"p2p {hostname}/{device} count must be >= 1")
        pairs.append(
            P2PPair(
                hostname=hostname,
                device=device,
                average_speed=_number(data.get("avg_speed"), f"p2p {hostname}/{device} avg_speed"),
                connection_count=count,
            )
        )
    return P2PReportSummary(pairs=tuple(pairs))


def aggregate_report(payload: dict[str, Any]) -> ReportSummary | P2PReportSummary:
    if report_topology(payload) is StreamType.P2P:
        return build_p2p_report(payload)
    return build_traditional_report(payload)
