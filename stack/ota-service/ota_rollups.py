"""
Read-side dashboard views.

Everything here is a pure function of already-loaded daily stats and units.
Date ranges are inclusive local calendar days and always zero-filled, so
dashboards never see gaps.
"""

from collections import OrderedDict
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ota_attempts import FINAL_FAILED, FINAL_PENDING, FINAL_SUCCESS, Unit
from ota_daily import DailyStats, RecordCounts, format_day, local_day
from ota_errors import ValidationError
from ota_store import Device
from ota_versions import version_sort_key

PIE_COLORS = (
    ("Success", "success", "#10B981"),
    ("Failure", "failure", "#EF4444"),
    ("Other", "other", "#F59E0B"),
)

DEFAULT_RANGE_DAYS = 7
MAX_RANGE_DAYS = 366


# ---------------------------------------------------------------------
# Date handling
# ---------------------------------------------------------------------
def parse_day(value: str) -> date:
    """Parse YYYY-MM-DD (a full ISO timestamp is cut to its date)."""
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"Invalid date format: {value!r}. Use ISO 8601 format (YYYY-MM-DD)")


def resolve_range(
    today: date,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    days: Optional[int] = None,
) -> Tuple[date, date]:
    """
    Work out an inclusive day range.

    An explicit start/end pair wins, then "last N days including today",
    then the last 7 days.
    """
    if start_date and end_date:
        start, end = parse_day(start_date), parse_day(end_date)
    else:
        count = DEFAULT_RANGE_DAYS if days is None else int(days)
        if count < 1:
            raise ValidationError("days must be at least 1")
        start, end = today - timedelta(days=count - 1), today

    if start > end:
        raise ValidationError("startDate must not be after endDate")
    if (end - start).days + 1 > MAX_RANGE_DAYS:
        raise ValidationError(f"Date range is limited to {MAX_RANGE_DAYS} days")
    return start, end


def iter_days(start: date, end: date) -> Iterable[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0


# ---------------------------------------------------------------------
# Daily bucket views
# ---------------------------------------------------------------------
def device_day_stats(device_id: str, day: date, stats: Optional[DailyStats]) -> Dict[str, Any]:
    if stats is None:
        return {
            "device_id": device_id,
            "date": format_day(day),
            "stats": RecordCounts().to_dict(),
            "records": {"success": [], "failure": [], "other": []},
        }
    return {
        "device_id": stats.device_id,
        "date": format_day(stats.day),
        "stats": stats.counts().to_dict(),
        "records": stats.records_dict(),
    }


def all_devices_day_stats(day: date, stats_list: Sequence[DailyStats]) -> Dict[str, Any]:
    overall = RecordCounts()
    device_stats = []
    for stats in stats_list:
        counts = stats.counts()
        overall = overall + counts
        device_stats.append({"device_id": stats.device_id, "stats": counts.to_dict()})

    return {
        "date": format_day(day),
        "overall_stats": overall.to_dict(),
        "device_stats": device_stats,
    }


def daily_series(
    stats_list: Sequence[DailyStats],
    start: date,
    end: date,
) -> Tuple[List[Dict[str, Any]], RecordCounts]:
    """Per-day counts for every day in range, plus the range total."""
    per_day: "OrderedDict[date, RecordCounts]" = OrderedDict((day, RecordCounts()) for day in iter_days(start, end))
    total = RecordCounts()

    for stats in stats_list:
        if stats.day not in per_day:
            continue
        counts = stats.counts()
        per_day[stats.day] = per_day[stats.day] + counts
        total = total + counts

    series = [dict(date=format_day(day), **counts.to_dict()) for day, counts in per_day.items()]
    return series, total


def chart_data(stats_list: Sequence[DailyStats], start: date, end: date) -> Dict[str, Any]:
    series, total = daily_series(stats_list, start, end)
    totals = total.to_dict()
    return {
        "date_range": {
            "start": format_day(start),
            "end": format_day(end),
            "days": (end - start).days + 1,
        },
        "total_counts": totals,
        "bar_chart_data": series,
        "pie_chart_data": [
            {"label": label, "value": totals[key], "color": color}
            for label, key, color in PIE_COLORS
        ],
    }


def time_range_stats(stats_list: Sequence[DailyStats], start: date, end: date) -> Dict[str, Any]:
    series, total = daily_series(stats_list, start, end)
    return {
        "date_range": {
            "start": format_day(start),
            "end": format_day(end),
            "total_days": (end - start).days + 1,
        },
        "total_counts": total.to_dict(),
        "rates": {
            "success_rate": _rate(total.success, total.total),
            "failure_rate": _rate(total.failure, total.total),
        },
        "daily_data": series,
    }


def export_rows(stats_list: Sequence[DailyStats]) -> List[Dict[str, Any]]:
    """One row per stored record, sorted by date, device and timestamp."""
    rows = []
    for stats in stats_list:
        for outcome in ("success", "failure", "other"):
            for record in getattr(stats, outcome):
                rows.append({
                    "date": format_day(stats.day),
                    "device_id": stats.device_id,
                    "outcome": outcome,
                    "pic_id": record.pic_id,
                    "previous_version": record.previous_version,
                    "updated_version": record.updated_version,
                    "recovered": record.recovered,
                    "superseded": record.superseded,
                    "timestamp": record.timestamp,
                })

    rows.sort(key=lambda row: (row["date"], row["device_id"], row["timestamp"]))
    for row in rows:
        row["timestamp"] = row["timestamp"].isoformat()
    return rows


def device_summary(
    device_id: str,
    stats_list: Sequence[DailyStats],
    recent_units: Sequence[Unit],
    start: date,
    end: date,
) -> Dict[str, Any]:
    series, _ = daily_series(stats_list, start, end)
    return {
        "device_id": device_id,
        "date_range": {"start": format_day(start), "end": format_day(end)},
        "daily_stats": series,
        "recent_updates": [unit.summary() for unit in recent_units],
    }


# ---------------------------------------------------------------------
# Unit history views
# ---------------------------------------------------------------------
def esp_stats(device_id: str, units: Sequence[Unit]) -> Dict[str, Any]:
    """
    Per-firmware-version breakdown of units for one device.

    A unit is in a version's success set if it ever succeeded at that
    version and in its failure set if it ever failed there; it can be in
    both. Totals add up the per-version set sizes.
    """
    by_version: "OrderedDict[str, Tuple[set, set]]" = OrderedDict()
    all_success, all_failure = set(), set()

    for unit in sorted(units, key=lambda u: (version_sort_key(u.updated_version), u.pic_id)):
        success_ids, failure_ids = by_version.setdefault(unit.updated_version, (set(), set()))
        if unit.success_attempts > 0:
            success_ids.add(unit.pic_id)
            all_success.add(unit.pic_id)
        if unit.failure_attempts > 0:
            failure_ids.add(unit.pic_id)
            all_failure.add(unit.pic_id)

    versions = []
    for version, (success_ids, failure_ids) in by_version.items():
        versions.append({
            "version": version,
            "pics_with_success": len(success_ids),
            "pics_with_failure": len(failure_ids),
            "total_pics": len(success_ids | failure_ids),
            "pic_ids_with_success": sorted(success_ids),
            "pic_ids_with_failure": sorted(failure_ids),
        })

    return {
        "device_id": device_id,
        "total_pics_with_success": sum(v["pics_with_success"] for v in versions),
        "total_pics_with_failure": sum(v["pics_with_failure"] for v in versions),
        "pics_with_success": sorted(all_success),
        "pics_with_failure": sorted(all_failure),
        "by_firmware_version": versions,
    }


def _unit_totals(units: Iterable[Unit]) -> Dict[str, Any]:
    totals = {
        "total_pics": 0,
        "successful_pics": 0,
        "failed_pics": 0,
        "pending_pics": 0,
        "total_attempts": 0,
        "successful_attempts": 0,
        "failed_attempts": 0,
    }
    for unit in units:
        totals["total_pics"] += 1
        if unit.final_status == FINAL_SUCCESS:
            totals["successful_pics"] += 1
        elif unit.final_status == FINAL_FAILED:
            totals["failed_pics"] += 1
        elif unit.final_status == FINAL_PENDING:
            totals["pending_pics"] += 1
        totals["total_attempts"] += unit.total_attempts
        totals["successful_attempts"] += unit.success_attempts
        totals["failed_attempts"] += unit.failure_attempts

    pics, attempts = totals["total_pics"], totals["total_attempts"]
    totals["average_attempts_per_pic"] = round(attempts / pics, 2) if pics else 0
    totals["success_rate_by_pics"] = _rate(totals["successful_pics"], pics)
    totals["success_rate_by_attempts"] = _rate(totals["successful_attempts"], attempts)
    return totals


def device_ota_summary(device_id: str, units: Sequence[Unit]) -> Dict[str, Any]:
    """Unit- and attempt-level outcome totals for a device, overall and per version."""
    by_version: Dict[str, List[Unit]] = {}
    for unit in units:
        by_version.setdefault(unit.updated_version, []).append(unit)

    return {
        "device_id": device_id,
        "summary": _unit_totals(units),
        "by_firmware_version": {
            version: _unit_totals(by_version[version])
            for version in sorted(by_version, key=version_sort_key)
        },
    }


def fleet_esp_stats(devices: Sequence[Device], units: Sequence[Unit]) -> Dict[str, Any]:
    """
    Count units with success / failure experiences per device.

    `units` should already be limited to the period of interest. Units of
    devices outside `devices` are ignored.
    """
    details: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for device in devices:
        details[device.device_id] = {
            "device_id": device.device_id,
            "device_name": device.name,
            "project_id": device.project_id,
            "success_ids": set(),
            "failure_ids": set(),
        }

    for unit in units:
        detail = details.get(unit.device_id)
        if detail is None:
            continue
        if unit.success_attempts > 0:
            detail["success_ids"].add(unit.pic_id)
        if unit.failure_attempts > 0:
            detail["failure_ids"].add(unit.pic_id)

    device_details = []
    for detail in details.values():
        success_ids = detail.pop("success_ids")
        failure_ids = detail.pop("failure_ids")
        detail.update({
            "total_pics_with_success": len(success_ids),
            "total_pics_with_failure": len(failure_ids),
            "total_pics": len(success_ids | failure_ids),
            "pics_with_success": sorted(success_ids),
            "pics_with_failure": sorted(failure_ids),
        })
        device_details.append(detail)

    with_success = sum(1 for d in device_details if d["total_pics_with_success"])
    with_failure = sum(1 for d in device_details if d["total_pics_with_failure"])
    total_devices = len(device_details)

    return {
        "total_devices": total_devices,
        "total_pics_with_success": sum(d["total_pics_with_success"] for d in device_details),
        "total_pics_with_failure": sum(d["total_pics_with_failure"] for d in device_details),
        "devices_with_pics_success": with_success,
        "devices_with_pics_failure": with_failure,
        "devices_with_no_pics_experience": sum(1 for d in device_details if not d["total_pics"]),
        "device_details": device_details,
        "summary": {
            "success_rate": _rate(with_success, total_devices),
            "failure_rate": _rate(with_failure, total_devices),
        },
    }


def esp_series(
    devices: Sequence[Device],
    units: Sequence[Unit],
    start: date,
    end: date,
    tz: tzinfo,
    interval_days: int = 1,
) -> List[Dict[str, Any]]:
    """Fleet ESP stats bucketed into consecutive windows (1 = daily, 7 = weekly)."""
    unit_days = [
        (local_day(unit.last_updated, tz) if isinstance(unit.last_updated, datetime) else None, unit)
        for unit in units
    ]

    series = []
    window_start = start
    index = 1
    while window_start <= end:
        window_end = min(window_start + timedelta(days=interval_days - 1), end)
        window_units = [unit for day, unit in unit_days if day is not None and window_start <= day <= window_end]
        stats = fleet_esp_stats(devices, window_units)

        entry = {
            "start": format_day(window_start),
            "end": format_day(window_end),
            "devices_with_success": stats["total_pics_with_success"],
            "devices_with_failure": stats["total_pics_with_failure"],
            "total_devices": stats["total_devices"],
        }
        if interval_days == 1:
            entry["date"] = format_day(window_start)
            entry["day_name"] = window_start.strftime("%a")
        else:
            entry["date_range"] = f"Week {index}"
        series.append(entry)

        window_start = window_end + timedelta(days=1)
        index += 1
    return series
