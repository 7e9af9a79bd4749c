"""
Fleet OTA Service

REST API for tracking Over-The-Air (OTA) firmware update outcomes.
Provides endpoints for:
- Device OTA status reports (per unit attempt history + daily stats)
- Dashboard statistics, charts, exports and ESP breakdowns
- Status code configuration per device
- Firmware artifact hosting and update checks
- Monitoring and metrics

Environment variables: see ota_config.
"""

import hashlib
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, time, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import aiofiles
import psycopg
import uvicorn
from fastapi import Body, Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from ota_config import Settings, configure_logging
from ota_errors import ConfigNotFound, ConflictError, DeviceNotFound, OTAError, ValidationError
from ota_pipeline import IngestOptions, ingest_report, parse_report
from ota_rollups import (
    all_devices_day_stats,
    chart_data,
    device_day_stats,
    device_ota_summary,
    device_summary,
    esp_series,
    esp_stats,
    export_rows,
    fleet_esp_stats,
    parse_day,
    resolve_range,
    time_range_stats,
)
from ota_status import StatusConfiguration, build_status_codes
from ota_store import Actor, Device, FirmwareVersion, OTAStore
from ota_versions import VersionComparison, compare_versions, highest_version


# ---------------------------------------------------------------------
# Configuration & Logging
# ---------------------------------------------------------------------
settings = Settings()

configure_logging(settings.log_level)
logger = logging.getLogger("ota-service")

SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")
RECENT_UPDATES_LIMIT = 10

# ---------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the schema before serving requests."""
    init_database()
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Fleet OTA Service",
    description="OTA update outcome tracking for ESP device fleets",
    version="2.0.0",
)

# ---------------------------------------------------------------------
# Exception Handlers
# ---------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with detailed logging."""
    logger.error(f"Validation error for {request.method} {request.url}")
    logger.error(f"Query params: {dict(request.query_params)}")
    logger.error(f"Validation errors: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "detail": exc.errors(),
            "body": str(exc.body) if hasattr(exc, 'body') else None
        }
    )


@app.exception_handler(OTAError)
async def ota_error_handler(request: Request, exc: OTAError):
    if exc.status_code >= 500:
        logger.warning(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    else:
        logger.info(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests."""
    logger.info(f"Request: {request.method} {request.url}")
    logger.debug(f"Query params: {dict(request.query_params)}")
    response = await call_next(request)
    logger.info(f"Response status: {response.status_code}")
    return response

# ---------------------------------------------------------------------
# Database Connection
# ---------------------------------------------------------------------
def get_db_connection() -> psycopg.Connection:
    """Get database connection."""
    return psycopg.connect(
        host=settings.pghost,
        port=settings.pgport,
        user=settings.pguser,
        password=settings.pgpassword,
        dbname=settings.pgdatabase,
        autocommit=True,
    )


def get_store() -> Iterator[OTAStore]:
    conn = get_db_connection()
    try:
        yield OTAStore(conn)
    finally:
        conn.close()


def get_ingest_options() -> IngestOptions:
    return IngestOptions(
        tz=settings.tz,
        strict_status_codes=settings.strict_status_codes,
        retry_attempts=settings.storage_retry_attempts,
        retry_base_delay=settings.storage_retry_base_delay,
    )


def init_database() -> None:
    conn = get_db_connection()
    try:
        OTAStore(conn).init_schema()
    finally:
        conn.close()


# ---------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------
def verify_api_key(x_api_key: Optional[str] = Header(None)) -> bool:
    """Verify API key for admin endpoints (optional)."""
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True


def get_actor(x_actor_id: Optional[str] = Header(None)) -> Actor:
    """Admin caller identity; anonymous calls act as the system."""
    if x_actor_id and x_actor_id.strip():
        return Actor(id=x_actor_id.strip())
    return Actor.system()


# ---------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------
class StatusCodeEntry(BaseModel):
    code: int
    message: str = Field(..., min_length=1)
    badge: str = Field("other", pattern="^(success|failure|other)$")
    color: Optional[str] = None


class StatusConfigCreate(BaseModel):
    device_id: str = Field(..., min_length=1)
    status_codes: List[StatusCodeEntry] = Field(default_factory=list)
    base_device_id: Optional[str] = None


class StatusConfigUpdate(BaseModel):
    status_codes: List[StatusCodeEntry]


class DeviceUpsert(BaseModel):
    name: str = Field(..., min_length=1)
    status: str = Field("active", pattern="^(active|inactive)$")
    project_id: Optional[str] = None


class ProjectUpsert(BaseModel):
    name: str = Field(..., min_length=1)


class FirmwareCheckResponse(BaseModel):
    update_available: bool
    current_version: Optional[str] = None
    latest_version: Optional[str] = None
    download_url: Optional[str] = None
    file_size: Optional[int] = None
    checksum_sha256: Optional[str] = None
    release_notes: Optional[str] = None


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _today():
    return datetime.now(settings.tz).date()


def _scope_device_ids(store: OTAStore, project_id: Optional[str]) -> Optional[List[str]]:
    """Device ids of a project, or None for no project filter."""
    if not project_id:
        return None
    return store.project_device_ids(project_id)


def _require_device(store: OTAStore, device_id: str) -> Device:
    device = store.get_device(device_id)
    if device is None:
        raise DeviceNotFound(device_id)
    return device


def _day_bounds(start, end):
    """UTC-comparable datetimes for an inclusive local day range."""
    return (
        datetime.combine(start, time.min, tzinfo=settings.tz),
        datetime.combine(end + timedelta(days=1), time.min, tzinfo=settings.tz),
    )


# ---------------------------------------------------------------------
# API Endpoints - Device Facing
# ---------------------------------------------------------------------
@app.post("/api/ota-updates")
def report_ota_update(
    payload: Dict[str, Any] = Body(...),
    store: OTAStore = Depends(get_store),
    options: IngestOptions = Depends(get_ingest_options),
):
    """
    Ingest one OTA status report from a device.

    The status code is resolved against the device's status configuration,
    the result is appended to the unit's attempt history and folded into
    the device's daily stats.
    """
    report = parse_report(payload)
    logger.info(f"OTA report: device={report.device_id}, pic={report.pic_id}, status={report.status}")
    result = ingest_report(store, report, options, actor=Actor.system())
    return {"status": "ok", **result}


@app.get("/api/firmware/check", response_model=FirmwareCheckResponse)
def check_firmware_update(
    device_id: str = Query(..., description="Unique device identifier"),
    current_version: str = Query(..., description="Current firmware version"),
    store: OTAStore = Depends(get_store),
):
    """
    Check if a newer firmware is available for a device.

    The highest uploaded version (numeric comparison) is offered when it
    is above the device's current version.
    """
    logger.info(f"Firmware check: device={device_id}, version={current_version}")
    releases = {fw.version: fw for fw in store.list_firmware_versions(device_id=device_id, limit=1000)}
    latest_version = highest_version(list(releases))

    if latest_version is None:
        return FirmwareCheckResponse(update_available=False, current_version=current_version)

    if compare_versions(latest_version, current_version) != VersionComparison.HIGHER:
        return FirmwareCheckResponse(
            update_available=False,
            current_version=current_version,
            latest_version=latest_version,
        )

    latest = releases[latest_version]
    return FirmwareCheckResponse(
        update_available=True,
        current_version=current_version,
        latest_version=latest_version,
        download_url=f"/api/firmware/download/{device_id}/{latest_version}",
        file_size=latest.file_size,
        checksum_sha256=latest.checksum_sha256,
        release_notes=latest.release_notes,
    )


@app.get("/api/firmware/download/{device_id}/{version}")
def download_firmware(device_id: str, version: str, store: OTAStore = Depends(get_store)):
    """Serve a firmware binary for OTA update."""
    logger.info(f"Firmware download request: device={device_id}, version={version}")

    firmware = store.get_firmware_version(device_id, version)
    if firmware is None:
        raise HTTPException(status_code=404, detail="Firmware version not found")

    full_path = Path(settings.firmware_storage_path) / firmware.file_path
    if not full_path.exists():
        logger.error(f"Firmware file not found: {full_path}")
        raise HTTPException(status_code=404, detail="Firmware file not found")

    return FileResponse(
        path=str(full_path),
        media_type="application/octet-stream",
        filename=firmware.file_path,
        headers={
            "X-Firmware-Version": version,
            "X-Checksum-SHA256": firmware.checksum_sha256,
        }
    )


# ---------------------------------------------------------------------
# API Endpoints - Dashboard
# ---------------------------------------------------------------------
@app.get("/api/dashboard/stats/{device_id}")
def get_device_stats(
    device_id: str,
    date: Optional[str] = Query(None, description="YYYY-MM-DD, default today"),
    store: OTAStore = Depends(get_store),
):
    day = parse_day(date) if date else _today()
    return device_day_stats(device_id, day, store.get_daily_stats(device_id, day))


@app.get("/api/dashboard/stats")
def get_all_devices_stats(
    date: Optional[str] = Query(None, description="YYYY-MM-DD, default today"),
    project_id: Optional[str] = Query(None),
    store: OTAStore = Depends(get_store),
):
    day = parse_day(date) if date else _today()
    stats_list = store.find_daily_stats(day, day, device_ids=_scope_device_ids(store, project_id))
    return all_devices_day_stats(day, stats_list)


@app.get("/api/dashboard/chart-data")
def get_chart_data(
    days: int = Query(7, ge=1),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    device_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    store: OTAStore = Depends(get_store),
):
    """Bar (per day) and pie (success / failure / other) chart data."""
    start, end = resolve_range(_today(), start_date, end_date, days)
    stats_list = store.find_daily_stats(
        start, end, device_id=device_id, device_ids=_scope_device_ids(store, project_id)
    )
    return chart_data(stats_list, start, end)


@app.get("/api/dashboard/time-stats")
def get_time_stats(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    days: Optional[int] = Query(None, ge=1),
    device_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    store: OTAStore = Depends(get_store),
):
    start, end = resolve_range(_today(), start_date, end_date, days)
    stats_list = store.find_daily_stats(
        start, end, device_id=device_id, device_ids=_scope_device_ids(store, project_id)
    )
    return time_range_stats(stats_list, start, end)


@app.get("/api/dashboard/export")
def export_stats(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    days: Optional[int] = Query(None, ge=1),
    device_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    store: OTAStore = Depends(get_store),
):
    """Flattened rows, one per recorded outcome, for spreadsheet export."""
    start, end = resolve_range(_today(), start_date, end_date, days)
    stats_list = store.find_daily_stats(
        start, end, device_id=device_id, device_ids=_scope_device_ids(store, project_id)
    )
    rows = export_rows(stats_list)
    return {
        "date_range": {"start": start.isoformat(), "end": end.isoformat()},
        "count": len(rows),
        "rows": rows,
    }


@app.get("/api/dashboard/summary/{device_id}")
def get_device_summary(
    device_id: str,
    days: int = Query(7, ge=1),
    store: OTAStore = Depends(get_store),
):
    start, end = resolve_range(_today(), days=days)
    stats_list = store.find_daily_stats(start, end, device_id=device_id)
    recent = store.find_units(device_id=device_id, limit=RECENT_UPDATES_LIMIT)
    return device_summary(device_id, stats_list, recent, start, end)


@app.get("/api/dashboard/esp-stats/{device_id}")
def get_esp_stats(device_id: str, store: OTAStore = Depends(get_store)):
    """Units that succeeded / failed per firmware version for one device."""
    _require_device(store, device_id)
    return esp_stats(device_id, store.find_units(device_id=device_id))


@app.get("/api/dashboard/device-stats/{device_id}")
def get_device_ota_stats(device_id: str, store: OTAStore = Depends(get_store)):
    _require_device(store, device_id)
    return device_ota_summary(device_id, store.find_units(device_id=device_id))


@app.get("/api/dashboard/esp-overview")
def get_esp_overview(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    days: Optional[int] = Query(None, ge=1),
    project_id: Optional[str] = Query(None),
    interval: str = Query("daily", pattern="^(daily|weekly)$"),
    store: OTAStore = Depends(get_store),
):
    """Fleet-wide ESP experience counts for a period, plus a daily or weekly series."""
    start, end = resolve_range(_today(), start_date, end_date, days)
    devices = store.list_devices(project_id=project_id, limit=10000)
    updated_from, updated_to = _day_bounds(start, end)
    units = store.find_units(
        device_ids=[device.device_id for device in devices],
        updated_from=updated_from,
        updated_to=updated_to,
    )
    return {
        "date_range": {"start": start.isoformat(), "end": end.isoformat()},
        "interval": interval,
        "overview": fleet_esp_stats(devices, units),
        "series": esp_series(
            devices, units, start, end, settings.tz,
            interval_days=7 if interval == "weekly" else 1,
        ),
    }


@app.get("/api/ota-updates")
def list_ota_updates(
    device_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    final_status: Optional[str] = Query(None, pattern="^(pending|success|failed)$"),
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    store: OTAStore = Depends(get_store),
):
    """Unit histories, most recently updated first."""
    device_ids = _scope_device_ids(store, project_id)
    units = store.find_units(
        device_id=device_id,
        device_ids=device_ids,
        final_status=final_status,
        limit=limit,
        offset=(page - 1) * limit,
    )
    counts = store.count_units_by_status(device_id=device_id, device_ids=device_ids)
    total = counts.get(final_status, 0) if final_status else sum(counts.values())
    return {
        "updates": [unit.to_dict() for unit in units],
        "status_counts": counts,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


# ---------------------------------------------------------------------
# API Endpoints - Admin/Management
# ---------------------------------------------------------------------
@app.delete("/api/admin/dashboard-stats")
def purge_dashboard_stats(
    confirm: bool = Query(False),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    device_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    store: OTAStore = Depends(get_store),
    actor: Actor = Depends(get_actor),
    _: bool = Depends(verify_api_key),
):
    """
    Delete daily stats documents in a date range.

    Unit attempt history is kept. Without a range everything is removed,
    so the call must carry confirm=true.
    """
    if not confirm:
        raise ValidationError("Deleting dashboard stats requires confirm=true")

    start = parse_day(start_date) if start_date else datetime.min.date()
    end = parse_day(end_date) if end_date else datetime.max.date()
    if start > end:
        raise ValidationError("startDate must not be after endDate")

    deleted = store.delete_daily_stats(
        start, end, device_id=device_id, device_ids=_scope_device_ids(store, project_id)
    )
    logger.warning(f"{actor} deleted {deleted} daily stats documents ({start} .. {end})")
    store.record_activity(
        "dashboard_stats_deleted", actor, device_id=device_id,
        details={"deleted": deleted, "start_date": start_date, "end_date": end_date, "project_id": project_id},
    )
    return {"status": "ok", "deleted_count": deleted}


@app.get("/api/admin/status-configs")
def list_status_configs(store: OTAStore = Depends(get_store)):
    return {"configurations": [config.to_dict() for config in store.list_status_configs()]}


@app.get("/api/admin/status-configs/available-devices")
def list_config_devices(
    project_id: Optional[str] = Query(None),
    store: OTAStore = Depends(get_store),
):
    """Devices with a flag telling whether they already have a configuration."""
    configured = {config.device_id for config in store.list_status_configs()}
    return {
        "devices": [
            dict(device.to_dict(), has_configuration=device.device_id in configured)
            for device in store.list_devices(project_id=project_id)
        ]
    }


@app.get("/api/admin/status-configs/{device_id}")
def get_status_config(device_id: str, store: OTAStore = Depends(get_store)):
    """A device's own configuration and the codes that actually apply to it."""
    config = store.get_status_config(device_id)
    if config is None:
        raise ConfigNotFound(device_id)
    effective = store.effective_status_config(device_id)
    data = config.to_dict()
    data["effective_status_codes"] = (
        [entry.to_dict() for entry in effective.status_codes] if effective else None
    )
    return data


@app.post("/api/admin/status-configs", status_code=201)
def create_status_config(
    body: StatusConfigCreate,
    store: OTAStore = Depends(get_store),
    actor: Actor = Depends(get_actor),
    _: bool = Depends(verify_api_key),
):
    device = _require_device(store, body.device_id)
    if store.get_status_config(body.device_id) is not None:
        raise ConflictError(f"Status configuration already exists for device {body.device_id}")

    if body.base_device_id:
        _check_base_device(store, body.device_id, body.base_device_id)
        codes = []
    else:
        codes = build_status_codes(entry.model_dump() for entry in body.status_codes)

    config = StatusConfiguration(
        device_id=device.device_id,
        device_name=device.name,
        status_codes=codes,
        base_device_id=body.base_device_id,
        created_by=str(actor),
    )
    store.save_status_config(config)
    store.record_activity(
        "status_config_created", actor, device_id=device.device_id,
        details={"codes": len(codes), "base_device_id": body.base_device_id},
    )
    return config.to_dict()


@app.put("/api/admin/status-configs/{device_id}")
def update_status_config(
    device_id: str,
    body: StatusConfigUpdate,
    store: OTAStore = Depends(get_store),
    actor: Actor = Depends(get_actor),
    _: bool = Depends(verify_api_key),
):
    """Replace a device's codes. The device stops following any base device."""
    config = store.get_status_config(device_id)
    if config is None:
        raise ConfigNotFound(device_id)

    config.status_codes = build_status_codes(entry.model_dump() for entry in body.status_codes)
    config.base_device_id = None
    store.save_status_config(config)
    store.record_activity(
        "status_config_updated", actor, device_id=device_id,
        details={"codes": len(config.status_codes)},
    )
    return config.to_dict()


@app.post("/api/admin/status-configs/{device_id}/inherit")
def inherit_status_config(
    device_id: str,
    base_device_id: str = Query(..., min_length=1),
    store: OTAStore = Depends(get_store),
    actor: Actor = Depends(get_actor),
    _: bool = Depends(verify_api_key),
):
    """Make a device follow another device's status codes."""
    device = _require_device(store, device_id)
    _check_base_device(store, device_id, base_device_id)

    config = store.get_status_config(device_id) or StatusConfiguration(
        device_id=device.device_id,
        device_name=device.name,
        created_by=str(actor),
    )
    config.status_codes = []
    config.base_device_id = base_device_id
    store.save_status_config(config)
    store.record_activity(
        "status_config_inherited", actor, device_id=device_id,
        details={"base_device_id": base_device_id},
    )

    data = config.to_dict()
    effective = store.effective_status_config(device_id)
    data["effective_status_codes"] = (
        [entry.to_dict() for entry in effective.status_codes] if effective else None
    )
    return data


@app.delete("/api/admin/status-configs/{device_id}")
def delete_status_config(
    device_id: str,
    store: OTAStore = Depends(get_store),
    actor: Actor = Depends(get_actor),
    _: bool = Depends(verify_api_key),
):
    if not store.delete_status_config(device_id):
        raise ConfigNotFound(device_id)
    store.record_activity("status_config_deleted", actor, device_id=device_id)
    return {"status": "ok", "message": f"Status configuration deleted for device {device_id}"}


def _check_base_device(store: OTAStore, device_id: str, base_device_id: str) -> None:
    if base_device_id == device_id:
        raise ValidationError("A device cannot be based on itself")
    if store.effective_status_config(base_device_id) is None:
        raise ConfigNotFound(base_device_id)


@app.put("/api/admin/devices/{device_id}")
def upsert_device(
    device_id: str,
    body: DeviceUpsert,
    store: OTAStore = Depends(get_store),
    _: bool = Depends(verify_api_key),
):
    device = Device(device_id=device_id, name=body.name, status=body.status, project_id=body.project_id)
    store.upsert_device(device)
    logger.info(f"Device upserted: {device_id} (project={body.project_id})")
    return device.to_dict()


@app.put("/api/admin/projects/{project_id}")
def upsert_project(
    project_id: str,
    body: ProjectUpsert,
    store: OTAStore = Depends(get_store),
    _: bool = Depends(verify_api_key),
):
    store.upsert_project(project_id, body.name)
    return {"project_id": project_id, "name": body.name}


@app.get("/api/admin/devices")
def list_devices(
    project_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    store: OTAStore = Depends(get_store),
):
    """List registered devices."""
    return {"devices": [device.to_dict() for device in store.list_devices(project_id=project_id, limit=limit)]}


@app.post("/api/admin/firmware/upload")
async def upload_firmware(
    file: UploadFile = File(...),
    device_id: str = Query(...),
    version: str = Query(...),
    release_notes: Optional[str] = Query(None),
    store: OTAStore = Depends(get_store),
    actor: Actor = Depends(get_actor),
    _: bool = Depends(verify_api_key),
):
    """
    Upload a firmware binary for a device.

    The file is streamed to FIRMWARE_STORAGE_PATH while its SHA-256 is
    computed. A device/version pair can only be uploaded once.
    """
    logger.info(f"Firmware upload: device={device_id}, version={version}")

    if not SAFE_NAME.match(device_id) or not SAFE_NAME.match(version):
        raise ValidationError("device_id and version may only contain letters, digits, '.', '_' and '-'")
    _require_device(store, device_id)
    if store.get_firmware_version(device_id, version) is not None:
        raise ConflictError(f"Firmware version {version} already exists for device {device_id}")

    storage_path = Path(settings.firmware_storage_path)
    storage_path.mkdir(parents=True, exist_ok=True)

    file_name = f"{device_id}_{version}.bin"
    file_path = storage_path / file_name

    # Calculate checksum while saving
    sha256_hash = hashlib.sha256()
    file_size = 0

    try:
        async with aiofiles.open(file_path, 'wb') as f:
            while chunk := await file.read(8192):
                await f.write(chunk)
                sha256_hash.update(chunk)
                file_size += len(chunk)

        firmware = FirmwareVersion(
            device_id=device_id,
            version=version,
            file_path=file_name,
            file_size=file_size,
            checksum_sha256=sha256_hash.hexdigest(),
            release_notes=release_notes,
        )
        store.add_firmware_version(firmware, actor)
    except Exception:
        # Clean up file on error
        if file_path.exists():
            file_path.unlink()
        raise

    store.record_activity(
        "firmware_uploaded", actor, device_id=device_id, firmware_version=version,
        details={"file_size": file_size, "checksum": firmware.checksum_sha256},
    )

    return {
        "status": "ok",
        "message": "Firmware uploaded successfully",
        "device_id": device_id,
        "version": version,
        "file_size": file_size,
        "checksum_sha256": firmware.checksum_sha256,
    }


@app.get("/api/admin/firmware/releases")
def list_firmware_releases(
    device_id: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    store: OTAStore = Depends(get_store),
):
    """List firmware releases, newest upload first."""
    return {"releases": [fw.to_dict() for fw in store.list_firmware_versions(device_id=device_id, limit=limit)]}


# ---------------------------------------------------------------------
# Health & Metrics
# ---------------------------------------------------------------------
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    try:
        conn = get_db_connection()
        conn.close()
        return {"status": "healthy"}
    except psycopg.Error as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unavailable")


@app.get("/metrics")
def get_metrics(store: OTAStore = Depends(get_store)):
    """Device count, units by final status and today's outcome counts."""
    today = _today()
    return {
        "total_devices": store.count_devices(),
        "units_by_status": store.count_units_by_status(),
        "today": all_devices_day_stats(today, store.find_daily_stats(today, today))["overall_stats"],
    }


# ---------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------
if __name__ == "__main__":
    logger.info(f"Starting OTA service on {settings.host}:{settings.port}")
    uvicorn.run(
        "ota_service:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
