"""
Daily per-device outcome buckets.

Each (device, local calendar day) has one document holding three ordered
record lists: success, failure and other. Failure records carry a
`recovered` flag. A failure is recovered once the same unit has a success
on the same day at or after the failure's timestamp; recovered failures
stay in the bucket for auditing but do not count as active failures.

A unit has at most one active failure per day. When it fails repeatedly,
only its latest unrecovered failure stays active and the earlier ones are
marked `superseded`. The flag is derived: it is recomputed every time a
document is loaded or changed.

Canonical stored shape:

    {
        "date": "YYYY-MM-DD",
        "records": {"success": [...], "failure": [...], "other": [...]}
    }
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Dict, List, Optional

from ota_attempts import parse_stored_timestamp
from ota_status import Badge

logger = logging.getLogger("ota-daily")

BUCKETS = (Badge.SUCCESS.value, Badge.FAILURE.value, Badge.OTHER.value)


def local_day(timestamp: datetime, tz: tzinfo) -> date:
    """Calendar day of a timestamp in the stats timezone."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(tz).date()


def format_day(day: date) -> str:
    return day.isoformat()


@dataclass
class DailyRecord:
    pic_id: str
    device_id: str
    previous_version: str
    updated_version: str
    timestamp: datetime
    recorded_at: datetime
    recovered: bool = False
    superseded: bool = False

    @property
    def is_active_failure(self) -> bool:
        return not self.recovered and not self.superseded

    def same_report(self, other: "DailyRecord") -> bool:
        return (
            self.pic_id == other.pic_id
            and self.previous_version == other.previous_version
            and self.updated_version == other.updated_version
            and self.timestamp == other.timestamp
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pic_id": self.pic_id,
            "device_id": self.device_id,
            "previous_version": self.previous_version,
            "updated_version": self.updated_version,
            "timestamp": self.timestamp.isoformat(),
            "recorded_at": self.recorded_at.isoformat(),
            "recovered": self.recovered,
            "superseded": self.superseded,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], device_id: str) -> "DailyRecord":
        timestamp = parse_stored_timestamp(data.get("timestamp"))
        return cls(
            # picID is how records were keyed before the rename
            pic_id=str(data.get("pic_id") or data.get("picID") or data.get("picId") or ""),
            device_id=data.get("device_id") or data.get("deviceId") or device_id,
            previous_version=str(data.get("previous_version") or data.get("previousVersion") or ""),
            updated_version=str(data.get("updated_version") or data.get("updatedVersion") or ""),
            timestamp=timestamp,
            recorded_at=parse_stored_timestamp(data.get("recorded_at") or data.get("date") or timestamp),
            recovered=data.get("recovered") is True,
        )


@dataclass(frozen=True)
class RecordCounts:
    success: int = 0
    failure: int = 0
    other: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failure + self.other

    def __add__(self, other: "RecordCounts") -> "RecordCounts":
        return RecordCounts(
            success=self.success + other.success,
            failure=self.failure + other.failure,
            other=self.other + other.other,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "success": self.success,
            "failure": self.failure,
            "other": self.other,
            "total": self.total,
        }


@dataclass
class DailyStats:
    device_id: str
    day: date
    success: List[DailyRecord] = field(default_factory=list)
    failure: List[DailyRecord] = field(default_factory=list)
    other: List[DailyRecord] = field(default_factory=list)
    id: Optional[int] = None

    def counts(self) -> RecordCounts:
        """Success and other are bucket lengths; only active failures count."""
        return RecordCounts(
            success=len(self.success),
            failure=sum(1 for r in self.failure if r.is_active_failure),
            other=len(self.other),
        )

    def records_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "success": [r.to_dict() for r in self.success],
            "failure": [r.to_dict() for r in self.failure],
            "other": [r.to_dict() for r in self.other],
        }

    def to_document(self) -> Dict[str, Any]:
        return {"date": format_day(self.day), "records": self.records_dict()}


def empty_document(day: date) -> Dict[str, Any]:
    return {"date": format_day(day), "records": {bucket: [] for bucket in BUCKETS}}


def normalize_stats_document(raw: Any, device_id: str, day: date) -> DailyStats:
    """
    Turn a stored document of any historical shape into DailyStats.

    Handles None, the old list-of-days shape, missing or non-list buckets
    and non-dict records. The day key always comes from the caller, not the
    document, so a bad stored date cannot move records to another day.
    """
    if isinstance(raw, list):
        logger.warning("Converting list-shaped stats for %s on %s", device_id, day)
        raw = raw[0] if raw and isinstance(raw[0], dict) else None

    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("Replacing malformed stats for %s on %s: %r", device_id, day, type(raw))
        raw = empty_document(day)

    records = raw.get("records")
    if not isinstance(records, dict):
        records = {}

    stats = DailyStats(device_id=device_id, day=day)
    for bucket in BUCKETS:
        entries = records.get(bucket)
        if not isinstance(entries, list):
            entries = []
        parsed = [DailyRecord.from_dict(entry, device_id) for entry in entries if isinstance(entry, dict)]
        if bucket != Badge.FAILURE.value:
            for record in parsed:
                record.recovered = False
        setattr(stats, bucket, parsed)
    settle_failures(stats)
    return stats


def settle_failures(stats: DailyStats) -> None:
    """
    Keep at most one active failure per unit.

    Among a unit's unrecovered failures the one with the latest timestamp
    stays active (ties go to the one stored last); the rest are marked
    superseded. Recovered failures are never superseded.
    """
    latest: Dict[str, DailyRecord] = {}
    for failure in stats.failure:
        failure.superseded = False
        if failure.recovered:
            continue
        current = latest.get(failure.pic_id)
        if current is None or failure.timestamp >= current.timestamp:
            latest[failure.pic_id] = failure

    for failure in stats.failure:
        if not failure.recovered and latest.get(failure.pic_id) is not failure:
            failure.superseded = True


def apply_outcome(stats: DailyStats, record: DailyRecord, badge: Badge) -> bool:
    """
    Apply one classified attempt to a day's buckets.

    Returns:
        False when the report was an identical failure already on file and
        nothing changed, True otherwise
    """
    if badge == Badge.SUCCESS:
        for failure in stats.failure:
            if failure.pic_id == record.pic_id and not failure.recovered and failure.timestamp <= record.timestamp:
                failure.recovered = True
        record.recovered = False
        stats.success.append(record)
        settle_failures(stats)
        return True

    if badge == Badge.FAILURE:
        if any(existing.same_report(record) for existing in stats.failure):
            return False
        record.recovered = any(
            success.pic_id == record.pic_id and success.timestamp >= record.timestamp
            for success in stats.success
        )
        stats.failure.append(record)
        settle_failures(stats)
        return True

    record.recovered = False
    stats.other.append(record)
    return True
