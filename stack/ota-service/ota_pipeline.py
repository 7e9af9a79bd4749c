"""
OTA report ingestion.

One report flows through: validation -> status resolution -> version /
reprogramming policy -> unit attempt append -> daily bucket update. The
unit and daily writes share one transaction that is retried as a whole on
storage conflicts. A retransmitted failure that is already on file changes
neither. Activity logging happens after commit and cannot fail the ingest.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Optional, TypeVar, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ota_attempts import derive_effective_badge
from ota_daily import DailyRecord, apply_outcome, format_day, local_day
from ota_errors import DeviceNotFound, DuplicateKeyRace, RecoverableError, StorageConflict, ValidationError
from ota_status import Badge, resolve_status
from ota_store import Actor, OTAStore
from ota_versions import upgrade_direction

logger = logging.getLogger("ota-pipeline")

T = TypeVar("T")


class OTAReport(BaseModel):
    """Status report sent by a device after a flash attempt."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    pic_id: str = Field(..., min_length=1, validation_alias=pydantic.AliasChoices("pic_id", "picId", "unitId"))
    device_id: str = Field(..., min_length=1, validation_alias=pydantic.AliasChoices("device_id", "deviceId"))
    status: str = Field(..., min_length=1, validation_alias=pydantic.AliasChoices("status", "rawStatusCode"))
    previous_version: str = Field(
        ..., min_length=1, validation_alias=pydantic.AliasChoices("previous_version", "previousVersion")
    )
    updated_version: str = Field(
        ..., min_length=1, validation_alias=pydantic.AliasChoices("updated_version", "updatedVersion")
    )
    reprogramming: bool = False
    timestamp: Optional[Union[str, float]] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value)) if float(value).is_integer() else str(value)
        return value


@dataclass(frozen=True)
class IngestOptions:
    tz: tzinfo = timezone.utc
    strict_status_codes: bool = True
    retry_attempts: int = 5
    retry_base_delay: float = 0.05


def parse_report(data: Dict[str, Any]) -> OTAReport:
    """Validate a raw payload, raising ValidationError with the missing/bad fields."""
    try:
        return OTAReport.model_validate(data)
    except pydantic.ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise ValidationError(f"Missing or invalid fields: {', '.join(fields)}") from exc


def parse_report_timestamp(value: Optional[Union[str, float]], now: Optional[datetime] = None) -> datetime:
    """
    Parse a device timestamp.

    Accepts ISO 8601 strings (naive ones are taken as UTC) and epoch
    seconds or milliseconds. Anything missing or malformed becomes "now".
    """
    now = now or datetime.now(timezone.utc)
    if value is None or value == "":
        return now

    try:
        if isinstance(value, (int, float)):
            seconds = value / 1000 if value > 1e12 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        logger.warning("Malformed report timestamp %r, using ingest time", value)
        return now

    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def run_with_retry(operation: Callable[[], T], attempts: int = 5, base_delay: float = 0.05) -> T:
    """
    Run a storage operation, retrying recoverable conflicts with backoff.

    DuplicateKeyRace means another writer created the row we wanted, so
    the retry simply finds and appends to it.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except RecoverableError as exc:
            if attempt >= attempts:
                logger.error("Giving up after %d attempts: %s", attempt, exc)
                if isinstance(exc, StorageConflict):
                    raise
                raise StorageConflict(str(exc)) from exc
            delay = base_delay * (2 ** (attempt - 1))
            level = logging.DEBUG if isinstance(exc, DuplicateKeyRace) else logging.WARNING
            logger.log(level, "Retrying after %s (attempt %d/%d, sleeping %.3fs)",
                       type(exc).__name__, attempt, attempts, delay)
            time.sleep(delay)
    raise AssertionError("unreachable")


def ingest_report(
    store: OTAStore,
    report: OTAReport,
    options: IngestOptions,
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Classify a report and fold it into the unit history and daily stats.

    Raises:
        DeviceNotFound, ConfigNotFound, ConfigCodeNotFound: before any write
        StorageConflict: retries exhausted
    """
    actor = actor or Actor.system()
    timestamp = parse_report_timestamp(report.timestamp, now=now)

    if store.get_device(report.device_id) is None:
        raise DeviceNotFound(report.device_id)

    config = store.effective_status_config(report.device_id)
    resolved = resolve_status(report.device_id, report.status, config, strict=options.strict_status_codes)
    direction = upgrade_direction(report.previous_version, report.updated_version)
    effective = derive_effective_badge(
        resolved.badge,
        report.previous_version,
        report.updated_version,
        reprogramming=report.reprogramming,
    )
    day = local_day(timestamp, options.tz)

    def write() -> Dict[str, Any]:
        with store.transaction():
            unit = store.lock_unit(
                report.pic_id, report.updated_version, report.device_id, report.previous_version
            )
            if unit.device_id != report.device_id:
                logger.warning("Unit %s@%s first seen on %s, now reported by %s",
                               report.pic_id, report.updated_version, unit.device_id, report.device_id)

            stats = store.lock_daily_stats(report.device_id, day)
            record = DailyRecord(
                pic_id=report.pic_id,
                device_id=report.device_id,
                previous_version=report.previous_version,
                updated_version=report.updated_version,
                timestamp=timestamp,
                recorded_at=datetime.now(timezone.utc),
            )
            changed = apply_outcome(stats, record, effective)
            if changed:
                attempt = unit.add_attempt(
                    report.status,
                    resolved,
                    effective,
                    report.previous_version,
                    timestamp,
                    reprogramming=report.reprogramming,
                )
                store.append_attempt(unit, attempt)
                store.save_daily_stats(stats)
            else:
                # identical failure already on file; unit history is left unchanged
                logger.info("Duplicate failure report for %s on %s ignored", report.pic_id, report.device_id)

            return {"unit": unit.summary(), "daily": stats.counts().to_dict(), "duplicate": not changed}

    outcome = run_with_retry(write, attempts=options.retry_attempts, base_delay=options.retry_base_delay)

    logger.info(
        "Report %s/%s %s->%s status=%s badge=%s effective=%s",
        report.device_id, report.pic_id, report.previous_version, report.updated_version,
        report.status, resolved.badge.value, effective.value,
    )

    store.record_activity(
        "ota_update_success" if effective == Badge.SUCCESS else
        "ota_update_failed" if effective == Badge.FAILURE else "ota_update_other",
        actor,
        device_id=report.device_id,
        firmware_version=report.updated_version,
        details={
            "pic_id": report.pic_id,
            "status": report.status,
            "message": resolved.message,
            "previous_version": report.previous_version,
        },
    )

    return {
        "pic_id": report.pic_id,
        "device_id": report.device_id,
        "status": report.status,
        "message": resolved.message,
        "badge": resolved.badge.value,
        "color": resolved.color,
        "effective_badge": effective.value,
        "version_change": direction.value,
        "reprogramming": report.reprogramming,
        "timestamp": timestamp.isoformat(),
        "date": format_day(day),
        "unit": outcome["unit"],
        "daily_stats": outcome["daily"],
        "duplicate": outcome["duplicate"],
    }
