"""Fleet-wide consistency checks over precheck records.

Every function here is pure: the same records always produce the same
summary and the same per-record verdicts.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from .models import HCARecord, PrecheckSummary


class FrequencyClass(str, Enum):
    DOMINANT = "dominant"
    OUTLIER = "outlier"
    NEUTRAL = "neutral"


def frequency_map(values: Iterable[str]) -> dict[str, int]:
    # Empty values are unreadable attributes and surface through the error count.
    return dict(Counter(value for value in values if value))


def classify_by_frequency(frequencies: Mapping[str, int]) -> dict[str, FrequencyClass]:
    if not frequencies:
        return {}
    highest = max(frequencies.values())
    lowest = min(frequencies.values())
    output: dict[str, FrequencyClass] = {}
    for value, count in frequencies.items():
        if count == highest:
            output[value] = FrequencyClass.DOMINANT
        elif count == lowest and lowest < highest:
            output[value] = FrequencyClass.OUTLIER
        else:
            output[value] = FrequencyClass.NEUTRAL
    return output


def outliers(frequencies: Mapping[str, int]) -> list[str]:
    classes = classify_by_frequency(frequencies)
    return sorted(value for value, cls in classes.items() if cls is FrequencyClass.OUTLIER)


def summarize_precheck(records: Iterable[HCARecord]) -> PrecheckSummary:
    ordered = tuple(records)
    healthy = unhealthy = errors = 0
    for record in ordered:
        if record.error:
            errors += 1
        elif record.is_healthy:
            healthy += 1
        else:
            unhealthy += 1

    speeds = frequency_map(record.speed for record in ordered)
    return PrecheckSummary(
        total_devices=len(ordered),
        healthy_count=healthy,
        unhealthy_count=unhealthy,
        error_count=errors,
        all_speeds_equal=len(speeds) == 1,
        speed_frequency=speeds,
        firmware_frequency=frequency_map(record.firmware_version for record in ordered),
        board_id_frequency=frequency_map(record.board_id for record in ordered),
        records=ordered,
    )


@dataclass(slots=True, frozen=True)
class RecordVerdict:
    record: HCARecord
    speed: FrequencyClass
    firmware: FrequencyClass
    board_id: FrequencyClass

    @property
    def has_outlier(self) -> bool:
        return FrequencyClass.OUTLIER in (self.speed, self.firmware, self.board_id)


def classify_records(summary: PrecheckSummary) -> list[RecordVerdict]:
    speed_classes = classify_by_frequency(summary.speed_frequency)
    firmware_classes = classify_by_frequency(summary.firmware_frequency)
    board_classes = classify_by_frequency(summary.board_id_frequency)
    return [
        RecordVerdict(
            record=record,
            speed=speed_classes.get(record.speed, FrequencyClass.NEUTRAL),
            firmware=firmware_classes.get(record.firmware_version, FrequencyClass.NEUTRAL),
            board_id=board_classes.get(record.board_id, FrequencyClass.NEUTRAL),
        )
        for record in summary.records
    ]


def describe_anomalies(summary: PrecheckSummary) -> list[str]:
    notes: list[str] = []
    if summary.error_count:
        notes.append(f"{summary.error_count} device(s) could not be read")
    if summary.unhealthy_count:
        notes.append(f"{summary.unhealthy_count} device(s) unhealthy")
    if not summary.speed_frequency:
        notes.append("no link speed reported")
    elif not summary.all_speeds_equal:
        minority = outliers(summary.speed_frequency) or sorted(summary.speed_frequency)
        notes.append(f"mixed link speeds: {', '.join(minority)}")
    return notes
