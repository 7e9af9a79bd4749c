"""
Per-unit attempt history.

A unit (PIC) is one physical sub-component being flashed to one target
firmware version. Every report for the same (pic_id, updated_version) is
appended to the same unit as a new attempt.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ota_status import Badge, ResolvedStatus
from ota_versions import VersionComparison, is_no_valid_version, upgrade_direction

FINAL_PENDING = "pending"
FINAL_SUCCESS = "success"
FINAL_FAILED = "failed"


def derive_effective_badge(
    resolved: Badge,
    previous_version: Optional[str],
    updated_version: Optional[str],
    reprogramming: bool = False,
) -> Badge:
    """
    Decide the badge used for aggregation.

    A resolved success only counts as a fresh success when the firmware
    actually moved up. Re-flashing the current version is "already
    updated" (other), a version regression is never trusted, and failures
    are never softened to other.
    """
    if is_no_valid_version(updated_version):
        return Badge.FAILURE

    if resolved == Badge.FAILURE:
        return Badge.FAILURE

    if reprogramming:
        return Badge.OTHER

    direction = upgrade_direction(previous_version, updated_version)
    if direction == VersionComparison.LOWER:
        return Badge.FAILURE
    if direction == VersionComparison.EQUAL:
        return Badge.OTHER
    return resolved


@dataclass
class Attempt:
    status: str
    message: str
    badge: Badge
    effective_badge: Badge
    previous_version: str
    updated_version: str
    timestamp: datetime
    sequence: int
    color: Optional[str] = None
    reprogramming: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "badge": self.badge.value,
            "effective_badge": self.effective_badge.value,
            "color": self.color,
            "previous_version": self.previous_version,
            "updated_version": self.updated_version,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
            "reprogramming": self.reprogramming,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attempt":
        badge = Badge(data.get("badge") or Badge.OTHER.value)
        return cls(
            status=str(data.get("status", "")),
            message=data.get("message") or "",
            badge=badge,
            effective_badge=Badge(data.get("effective_badge") or badge.value),
            previous_version=data.get("previous_version") or "",
            updated_version=data.get("updated_version") or "",
            timestamp=parse_stored_timestamp(data.get("timestamp")),
            sequence=int(data.get("sequence") or 0),
            color=data.get("color"),
            reprogramming=bool(data.get("reprogramming", False)),
        )


@dataclass
class Unit:
    pic_id: str
    device_id: str
    previous_version: str
    updated_version: str
    attempts: List[Attempt] = field(default_factory=list)
    final_status: str = FINAL_PENDING
    total_attempts: int = 0
    success_attempts: int = 0
    failure_attempts: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    def add_attempt(
        self,
        raw_status: str,
        resolved: ResolvedStatus,
        effective_badge: Badge,
        previous_version: str,
        timestamp: datetime,
        reprogramming: bool = False,
    ) -> Attempt:
        """Append an attempt and recompute counters and final status."""
        attempt = Attempt(
            status=str(raw_status),
            message=resolved.message,
            badge=resolved.badge,
            effective_badge=effective_badge,
            color=resolved.color,
            previous_version=previous_version,
            updated_version=self.updated_version,
            timestamp=timestamp,
            sequence=len(self.attempts) + 1,
            reprogramming=reprogramming,
        )
        self.attempts.append(attempt)
        self.previous_version = previous_version
        self.recompute()
        self.last_updated = timestamp
        return attempt

    def recompute(self) -> None:
        self.total_attempts = len(self.attempts)
        self.success_attempts = sum(1 for a in self.attempts if a.effective_badge == Badge.SUCCESS)
        self.failure_attempts = sum(1 for a in self.attempts if a.effective_badge == Badge.FAILURE)

        final_status = FINAL_PENDING
        for attempt in self.attempts:
            if attempt.effective_badge == Badge.SUCCESS:
                final_status = FINAL_SUCCESS
            elif attempt.effective_badge == Badge.FAILURE:
                final_status = FINAL_FAILED
        self.final_status = final_status

    def latest_attempt(self) -> Optional[Attempt]:
        return self.attempts[-1] if self.attempts else None

    def summary(self) -> Dict[str, Any]:
        latest = self.latest_attempt()
        return {
            "pic_id": self.pic_id,
            "device_id": self.device_id,
            "updated_version": self.updated_version,
            "final_status": self.final_status,
            "total_attempts": self.total_attempts,
            "success_attempts": self.success_attempts,
            "failure_attempts": self.failure_attempts,
            "latest_status": latest.status if latest else None,
            "latest_message": latest.message if latest else None,
            "latest_date": latest.timestamp.isoformat() if latest else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data["previous_version"] = self.previous_version
        data["attempts"] = [a.to_dict() for a in self.attempts]
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return data


def parse_stored_timestamp(value: Any) -> datetime:
    """Read a timestamp written by this service; falls back to now."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)
