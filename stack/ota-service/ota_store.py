"""
Postgres persistence for the OTA service.

Connections are autocommit; the ingest path opens an explicit transaction
and takes row locks (SELECT ... FOR UPDATE) on the unit row and then the
daily stats row, always in that order. Lock and serialization failures are
mapped to StorageConflict, a lost unique-insert race to DuplicateKeyRace;
both are retried by the caller.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors

from ota_attempts import Attempt, Unit
from ota_daily import DailyStats, normalize_stats_document
from ota_errors import ConflictError, DuplicateKeyRace, StorageConflict, ValidationError
from ota_status import StatusCode, StatusConfiguration, resolve_effective_config

logger = logging.getLogger("ota-store")

RETRYABLE_ERRORS = (
    errors.SerializationFailure,
    errors.DeadlockDetected,
    errors.LockNotAvailable,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    project_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS devices (
    device_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    project_id TEXT REFERENCES projects(project_id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    assigned_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_devices_project ON devices(project_id);

CREATE TABLE IF NOT EXISTS status_configurations (
    device_id TEXT PRIMARY KEY REFERENCES devices(device_id) ON DELETE CASCADE,
    device_name TEXT NOT NULL,
    status_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
    base_device_id TEXT,
    created_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS ota_units (
    id BIGSERIAL PRIMARY KEY,
    pic_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    previous_version TEXT NOT NULL,
    updated_version TEXT NOT NULL,
    attempts JSONB NOT NULL DEFAULT '[]'::jsonb,
    final_status TEXT NOT NULL DEFAULT 'pending',
    total_attempts INTEGER NOT NULL DEFAULT 0,
    success_attempts INTEGER NOT NULL DEFAULT 0,
    failure_attempts INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_updated TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (pic_id, updated_version)
);

CREATE INDEX IF NOT EXISTS idx_ota_units_device ON ota_units(device_id, last_updated DESC);

CREATE TABLE IF NOT EXISTS daily_device_stats (
    id BIGSERIAL PRIMARY KEY,
    device_id TEXT NOT NULL,
    stats_date DATE NOT NULL,
    stats JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (device_id, stats_date)
);

CREATE INDEX IF NOT EXISTS idx_daily_device_stats_date ON daily_device_stats(stats_date);

CREATE TABLE IF NOT EXISTS firmware_versions (
    id BIGSERIAL PRIMARY KEY,
    device_id TEXT NOT NULL,
    version TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_size BIGINT NOT NULL,
    checksum_sha256 TEXT NOT NULL,
    release_notes TEXT,
    uploaded_by TEXT,
    uploaded_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (device_id, version)
);

CREATE TABLE IF NOT EXISTS ota_events (
    id BIGSERIAL PRIMARY KEY,
    event_type TEXT NOT NULL,
    actor TEXT NOT NULL,
    device_id TEXT,
    firmware_version TEXT,
    event_data JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_ota_events_created_at ON ota_events(created_at DESC);
"""

UNIT_COLUMNS = """
    id, pic_id, device_id, previous_version, updated_version, attempts,
    final_status, total_attempts, success_attempts, failure_attempts,
    created_at, last_updated
"""


@dataclass(frozen=True)
class Actor:
    """Who triggered a change; device reports and background work use the system actor."""

    id: str
    kind: str = "user"

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", kind="system")

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass
class Device:
    device_id: str
    name: str
    status: str = "active"
    project_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "status": self.status,
            "project_id": self.project_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class FirmwareVersion:
    device_id: str
    version: str
    file_path: str
    file_size: int
    checksum_sha256: str
    release_notes: Optional[str] = None
    uploaded_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "version": self.version,
            "file_size": self.file_size,
            "checksum_sha256": self.checksum_sha256,
            "release_notes": self.release_notes,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }


def _unit_from_row(row) -> Unit:
    (unit_id, pic_id, device_id, previous_version, updated_version, attempts,
     final_status, total_attempts, success_attempts, failure_attempts,
     created_at, last_updated) = row
    return Unit(
        id=unit_id,
        pic_id=pic_id,
        device_id=device_id,
        previous_version=previous_version,
        updated_version=updated_version,
        attempts=[Attempt.from_dict(a) for a in (attempts or []) if isinstance(a, dict)],
        final_status=final_status,
        total_attempts=total_attempts,
        success_attempts=success_attempts,
        failure_attempts=failure_attempts,
        created_at=created_at,
        last_updated=last_updated,
    )


def _config_from_row(row) -> StatusConfiguration:
    device_id, device_name, status_codes, base_device_id, created_by = row
    codes = []
    for entry in status_codes or []:
        try:
            codes.append(StatusCode.from_dict(entry))
        except ValidationError:
            logger.warning("Skipping unreadable status code for %s: %r", device_id, entry)
    return StatusConfiguration(
        device_id=device_id,
        device_name=device_name,
        status_codes=codes,
        base_device_id=base_device_id,
        created_by=created_by,
    )


class OTAStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def init_schema(self) -> None:
        with self.conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Database schema ready")

    @contextmanager
    def transaction(self) -> Iterator["OTAStore"]:
        """Run a block in one transaction, mapping races to retryable errors."""
        try:
            with self.conn.transaction():
                yield self
        except RETRYABLE_ERRORS as exc:
            raise StorageConflict(str(exc)) from exc
        except errors.UniqueViolation as exc:
            raise DuplicateKeyRace(str(exc)) from exc

    # Directory ---------------------------------------------------------
    def get_device(self, device_id: str) -> Optional[Device]:
        with self.conn.cursor() as cur:
            cur.execute("""
                SELECT device_id, name, status, project_id, created_at
                FROM devices
                WHERE device_id = %(device_id)s
            """, {"device_id": device_id})
            row = cur.fetchone()
        return Device(*row) if row else None

    def list_devices(self, project_id: Optional[str] = None, limit: int = 500) -> List[Device]:
        query = """
            SELECT device_id, name, status, project_id, created_at
            FROM devices
            WHERE 1=1
        """
        params: Dict[str, Any] = {"limit": limit}
        if project_id:
            query += " AND project_id = %(project_id)s"
            params["project_id"] = project_id
        query += " ORDER BY device_id LIMIT %(limit)s"

        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return [Device(*row) for row in cur.fetchall()]

    def count_devices(self) -> int:
        with self.conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM devices")
            return cur.fetchone()[0]

    def upsert_device(self, device: Device) -> None:
        with self.conn.cursor() as cur:
            cur.execute("""
                INSERT INTO devices (device_id, name, status, project_id, assigned_at)
                VALUES (
                    %(device_id)s, %(name)s, %(status)s, %(project_id)s,
                    CASE WHEN %(project_id)s::text IS NULL THEN NULL ELSE NOW() END
                )
                ON CONFLICT (device_id)
                DO UPDATE SET
                    name = EXCLUDED.name,
                    status = EXCLUDED.status,
                    assigned_at = CASE
                        WHEN devices.project_id IS DISTINCT FROM EXCLUDED.project_id THEN EXCLUDED.assigned_at
                        ELSE devices.assigned_at
                    END,
                    project_id = EXCLUDED.project_id
            """, {
                "device_id": device.device_id,
                "name": device.name,
                "status": device.status,
                "project_id": device.project_id,
            })

    def upsert_project(self, project_id: str, name: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute("""
                INSERT INTO projects (project_id, name)
                VALUES (%(project_id)s, %(name)s)
                ON CONFLICT (project_id) DO UPDATE SET name = EXCLUDED.name
            """, {"project_id": project_id, "name": name})

    def project_device_ids(self, project_id: str) -> List[str]:
        with self.conn.cursor() as cur:
            cur.execute("""
                SELECT device_id FROM devices
                WHERE project_id = %(project_id)s
                ORDER BY device_id
            """, {"project_id": project_id})
            return [row[0] for row in cur.fetchall()]

    # Status configurations ---------------------------------------------
    def get_status_config(self, device_id: str) -> Optional[StatusConfiguration]:
        with self.conn.cursor() as cur:
            cur.execute("""
                SELECT device_id, device_name, status_codes, base_device_id, created_by
                FROM status_configurations
                WHERE device_id = %(device_id)s
            """, {"device_id": device_id})
            row = cur.fetchone()
        return _config_from_row(row) if row else None

    def effective_status_config(self, device_id: str) -> Optional[StatusConfiguration]:
        return resolve_effective_config(device_id, self.get_status_config)

    def list_status_configs(self) -> List[StatusConfiguration]:
        with self.conn.cursor() as cur:
            cur.execute("""
                SELECT device_id, device_name, status_codes, base_device_id, created_by
                FROM status_configurations
                ORDER BY created_at DESC
            """)
            return [_config_from_row(row) for row in cur.fetchall()]

    def save_status_config(self, config: StatusConfiguration) -> None:
        with self.conn.cursor() as cur:
            cur.execute("""
                INSERT INTO status_configurations (
                    device_id, device_name, status_codes, base_device_id, created_by
                )
                VALUES (
                    %(device_id)s, %(device_name)s, %(status_codes)s::jsonb,
                    %(base_device_id)s, %(created_by)s
                )
                ON CONFLICT (device_id)
                DO UPDATE SET
                    device_name = EXCLUDED.device_name,
                    status_codes = EXCLUDED.status_codes,
                    base_device_id = EXCLUDED.base_device_id,
                    updated_at = NOW()
            """, {
                "device_id": config.device_id,
                "device_name": config.device_name,
                "status_codes": json.dumps([entry.to_dict() for entry in config.status_codes]),
                "base_device_id": config.base_device_id,
                "created_by": config.created_by,
            })

    def delete_status_config(self, device_id: str) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                "DELETE FROM status_configurations WHERE device_id = %(device_id)s",
                {"device_id": device_id},
            )
            return cur.rowcount > 0

    # Units -------------------------------------------------------------
    def lock_unit(self, pic_id: str, updated_version: str, device_id: str, previous_version: str) -> Unit:
        """
        Fetch and lock the unit for (pic_id, updated_version), creating it if needed.

        Must run inside transaction(). A concurrent creator that wins the
        insert makes this raise UniqueViolation, surfaced as DuplicateKeyRace.
        """
        params = {"pic_id": pic_id, "updated_version": updated_version}
        with self.conn.cursor() as cur:
            cur.execute(f"""
                SELECT {UNIT_COLUMNS}
                FROM ota_units
                WHERE pic_id = %(pic_id)s AND updated_version = %(updated_version)s
                FOR UPDATE
            """, params)
            row = cur.fetchone()
            if row:
                return _unit_from_row(row)

            cur.execute(f"""
                INSERT INTO ota_units (pic_id, device_id, previous_version, updated_version)
                VALUES (%(pic_id)s, %(device_id)s, %(previous_version)s, %(updated_version)s)
                RETURNING {UNIT_COLUMNS}
            """, {**params, "device_id": device_id, "previous_version": previous_version})
            return _unit_from_row(cur.fetchone())

    def append_attempt(self, unit: Unit, attempt: Attempt) -> None:
        """Append one attempt to the stored array and write the recomputed counters."""
        with self.conn.cursor() as cur:
            cur.execute("""
                UPDATE ota_units
                SET attempts = attempts || jsonb_build_array(%(attempt)s::jsonb),
                    previous_version = %(previous_version)s,
                    final_status = %(final_status)s,
                    total_attempts = %(total_attempts)s,
                    success_attempts = %(success_attempts)s,
                    failure_attempts = %(failure_attempts)s,
                    last_updated = %(last_updated)s
                WHERE id = %(id)s
            """, {
                "id": unit.id,
                "attempt": json.dumps(attempt.to_dict()),
                "previous_version": unit.previous_version,
                "final_status": unit.final_status,
                "total_attempts": unit.total_attempts,
                "success_attempts": unit.success_attempts,
                "failure_attempts": unit.failure_attempts,
                "last_updated": unit.last_updated or datetime.now(timezone.utc),
            })

    def find_units(
        self,
        device_id: Optional[str] = None,
        device_ids: Optional[List[str]] = None,
        final_status: Optional[str] = None,
        updated_from: Optional[datetime] = None,
        updated_to: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Unit]:
        if device_ids is not None and not device_ids:
            return []

        query = f"SELECT {UNIT_COLUMNS} FROM ota_units WHERE 1=1"
        params: Dict[str, Any] = {"offset": offset}
        if device_id:
            query += " AND device_id = %(device_id)s"
            params["device_id"] = device_id
        if device_ids is not None:
            query += " AND device_id = ANY(%(device_ids)s)"
            params["device_ids"] = device_ids
        if final_status:
            query += " AND final_status = %(final_status)s"
            params["final_status"] = final_status
        if updated_from:
            query += " AND last_updated >= %(updated_from)s"
            params["updated_from"] = updated_from
        if updated_to:
            query += " AND last_updated < %(updated_to)s"
            params["updated_to"] = updated_to
        query += " ORDER BY last_updated DESC, id DESC"
        if limit is not None:
            query += " LIMIT %(limit)s"
            params["limit"] = limit
        query += " OFFSET %(offset)s"

        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return [_unit_from_row(row) for row in cur.fetchall()]

    def count_units_by_status(
        self,
        device_id: Optional[str] = None,
        device_ids: Optional[List[str]] = None,
    ) -> Dict[str, int]:
        counts = {"success": 0, "failed": 0, "pending": 0}
        if device_ids is not None and not device_ids:
            return counts

        query = "SELECT final_status, COUNT(*) FROM ota_units WHERE 1=1"
        params: Dict[str, Any] = {}
        if device_id:
            query += " AND device_id = %(device_id)s"
            params["device_id"] = device_id
        if device_ids is not None:
            query += " AND device_id = ANY(%(device_ids)s)"
            params["device_ids"] = device_ids
        query += " GROUP BY final_status"

        with self.conn.cursor() as cur:
            cur.execute(query, params)
            for status, count in cur.fetchall():
                counts[status] = count
        return counts

    # Daily stats -------------------------------------------------------
    def lock_daily_stats(self, device_id: str, day: date) -> DailyStats:
        """Fetch and lock the (device, day) document, creating an empty one if needed."""
        params = {"device_id": device_id, "stats_date": day}
        with self.conn.cursor() as cur:
            cur.execute("""
                SELECT id, stats FROM daily_device_stats
                WHERE device_id = %(device_id)s AND stats_date = %(stats_date)s
                FOR UPDATE
            """, params)
            row = cur.fetchone()
            if row is None:
                stats = normalize_stats_document(None, device_id, day)
                cur.execute("""
                    INSERT INTO daily_device_stats (device_id, stats_date, stats)
                    VALUES (%(device_id)s, %(stats_date)s, %(stats)s::jsonb)
                    RETURNING id
                """, {**params, "stats": json.dumps(stats.to_document())})
                stats.id = cur.fetchone()[0]
                return stats

        stats_id, document = row
        stats = normalize_stats_document(document, device_id, day)
        stats.id = stats_id
        return stats

    def save_daily_stats(self, stats: DailyStats) -> None:
        with self.conn.cursor() as cur:
            cur.execute("""
                UPDATE daily_device_stats
                SET stats = %(stats)s::jsonb, updated_at = NOW()
                WHERE id = %(id)s
            """, {"id": stats.id, "stats": json.dumps(stats.to_document())})

    def get_daily_stats(self, device_id: str, day: date) -> Optional[DailyStats]:
        with self.conn.cursor() as cur:
            cur.execute("""
                SELECT id, stats FROM daily_device_stats
                WHERE device_id = %(device_id)s AND stats_date = %(stats_date)s
            """, {"device_id": device_id, "stats_date": day})
            row = cur.fetchone()
        if row is None:
            return None
        stats = normalize_stats_document(row[1], device_id, day)
        stats.id = row[0]
        return stats

    def find_daily_stats(
        self,
        start: date,
        end: date,
        device_id: Optional[str] = None,
        device_ids: Optional[List[str]] = None,
    ) -> List[DailyStats]:
        if device_ids is not None and not device_ids:
            return []

        query = """
            SELECT id, device_id, stats_date, stats
            FROM daily_device_stats
            WHERE stats_date >= %(start)s AND stats_date <= %(end)s
        """
        params: Dict[str, Any] = {"start": start, "end": end}
        if device_id:
            query += " AND device_id = %(device_id)s"
            params["device_id"] = device_id
        if device_ids is not None:
            query += " AND device_id = ANY(%(device_ids)s)"
            params["device_ids"] = device_ids
        query += " ORDER BY stats_date, device_id"

        result = []
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            for stats_id, row_device_id, stats_date, document in cur.fetchall():
                stats = normalize_stats_document(document, row_device_id, stats_date)
                stats.id = stats_id
                result.append(stats)
        return result

    def delete_daily_stats(
        self,
        start: date,
        end: date,
        device_id: Optional[str] = None,
        device_ids: Optional[List[str]] = None,
    ) -> int:
        """Purge daily documents in range. Unit history is left alone."""
        if device_ids is not None and not device_ids:
            return 0

        query = "DELETE FROM daily_device_stats WHERE stats_date >= %(start)s AND stats_date <= %(end)s"
        params: Dict[str, Any] = {"start": start, "end": end}
        if device_id:
            query += " AND device_id = %(device_id)s"
            params["device_id"] = device_id
        if device_ids is not None:
            query += " AND device_id = ANY(%(device_ids)s)"
            params["device_ids"] = device_ids

        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return cur.rowcount

    # Firmware ----------------------------------------------------------
    def add_firmware_version(self, firmware: FirmwareVersion, actor: Actor) -> None:
        try:
            with self.conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO firmware_versions (
                        device_id, version, file_path, file_size,
                        checksum_sha256, release_notes, uploaded_by
                    )
                    VALUES (
                        %(device_id)s, %(version)s, %(file_path)s, %(file_size)s,
                        %(checksum)s, %(release_notes)s, %(uploaded_by)s
                    )
                """, {
                    "device_id": firmware.device_id,
                    "version": firmware.version,
                    "file_path": firmware.file_path,
                    "file_size": firmware.file_size,
                    "checksum": firmware.checksum_sha256,
                    "release_notes": firmware.release_notes,
                    "uploaded_by": str(actor),
                })
        except errors.UniqueViolation:
            raise ConflictError(
                f"Firmware version {firmware.version} already exists for device {firmware.device_id}"
            )

    def list_firmware_versions(self, device_id: Optional[str] = None, limit: int = 100) -> List[FirmwareVersion]:
        query = """
            SELECT device_id, version, file_path, file_size, checksum_sha256,
                   release_notes, uploaded_at
            FROM firmware_versions
            WHERE 1=1
        """
        params: Dict[str, Any] = {"limit": limit}
        if device_id:
            query += " AND device_id = %(device_id)s"
            params["device_id"] = device_id
        query += " ORDER BY uploaded_at DESC LIMIT %(limit)s"

        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return [FirmwareVersion(*row) for row in cur.fetchall()]

    def get_firmware_version(self, device_id: str, version: str) -> Optional[FirmwareVersion]:
        with self.conn.cursor() as cur:
            cur.execute("""
                SELECT device_id, version, file_path, file_size, checksum_sha256,
                       release_notes, uploaded_at
                FROM firmware_versions
                WHERE device_id = %(device_id)s AND version = %(version)s
            """, {"device_id": device_id, "version": version})
            row = cur.fetchone()
        return FirmwareVersion(*row) if row else None

    # Activity ----------------------------------------------------------
    def record_activity(
        self,
        event_type: str,
        actor: Actor,
        device_id: Optional[str] = None,
        firmware_version: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write an activity event. Never raises: activity is best effort."""
        try:
            with self.conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO ota_events (event_type, actor, device_id, firmware_version, event_data)
                    VALUES (%(event_type)s, %(actor)s, %(device_id)s, %(version)s, %(data)s::jsonb)
                """, {
                    "event_type": event_type,
                    "actor": str(actor),
                    "device_id": device_id,
                    "version": firmware_version,
                    "data": json.dumps(details or {}),
                })
        except Exception as exc:
            logger.warning("Failed to record activity %s for %s: %s", event_type, device_id, exc)
