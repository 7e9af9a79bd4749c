"""
Shared fixtures for the OTA service tests.

FakeStore keeps everything in memory but mirrors OTAStore's contract:
rows are copied in and out, daily documents are stored in their JSON shape
and re-normalized on load, and a failing transaction rolls back.
"""

import copy
import os
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, List

import pytest

# Set required environment variables before importing ota_service
os.environ.setdefault('PGUSER', 'test')
os.environ.setdefault('PGPASSWORD', 'test')
os.environ.setdefault('PGDATABASE', 'test')

from ota_attempts import Attempt, Unit
from ota_daily import DailyStats, normalize_stats_document
from ota_errors import ConflictError, StorageConflict
from ota_pipeline import IngestOptions
from ota_status import StatusConfiguration, build_status_codes, resolve_effective_config
from ota_store import Actor, Device, FirmwareVersion


DEFAULT_CODES = [
    {"code": 2, "message": "Update complete", "badge": "success", "color": "#10B981"},
    {"code": 0, "message": "Flash failed", "badge": "failure", "color": "#EF4444"},
    {"code": 7, "message": "Update in progress", "badge": "other"},
]


class FakeStore:
    def __init__(self):
        self.devices: Dict[str, Device] = {}
        self.configs: Dict[str, StatusConfiguration] = {}
        self.units: Dict[tuple, Unit] = {}
        self.daily: Dict[tuple, Any] = {}
        self.firmware: Dict[tuple, FirmwareVersion] = {}
        self.events: List[Dict[str, Any]] = []
        self.conflicts_to_raise = 0
        self._unit_ids = 0

    # Test helpers ----------------------------------------------------
    def add_device(self, device_id, project_id=None, codes=None, base_device_id=None, name=None):
        self.devices[device_id] = Device(device_id=device_id, name=name or device_id, project_id=project_id)
        if codes is not None or base_device_id is not None:
            self.configs[device_id] = StatusConfiguration(
                device_id=device_id,
                device_name=name or device_id,
                status_codes=build_status_codes(codes or []),
                base_device_id=base_device_id,
            )
        return self.devices[device_id]

    def raw_daily(self, device_id: str, day: date):
        return self.daily.get((device_id, day))

    # Transactions ----------------------------------------------------
    @contextmanager
    def transaction(self):
        snapshot = (copy.deepcopy(self.units), copy.deepcopy(self.daily))
        try:
            yield self
        except Exception:
            self.units, self.daily = snapshot
            raise

    # Directory -------------------------------------------------------
    def get_device(self, device_id):
        return self.devices.get(device_id)

    def list_devices(self, project_id=None, limit=500):
        devices = sorted(self.devices.values(), key=lambda d: d.device_id)
        if project_id:
            devices = [d for d in devices if d.project_id == project_id]
        return devices[:limit]

    def count_devices(self):
        return len(self.devices)

    def upsert_device(self, device):
        self.devices[device.device_id] = device

    def upsert_project(self, project_id, name):
        pass

    def project_device_ids(self, project_id):
        return [d.device_id for d in self.list_devices(project_id=project_id)]

    # Status configurations -------------------------------------------
    def get_status_config(self, device_id):
        config = self.configs.get(device_id)
        return copy.deepcopy(config) if config else None

    def effective_status_config(self, device_id):
        return resolve_effective_config(device_id, self.get_status_config)

    def list_status_configs(self):
        return [copy.deepcopy(c) for c in self.configs.values()]

    def save_status_config(self, config):
        self.configs[config.device_id] = copy.deepcopy(config)

    def delete_status_config(self, device_id):
        return self.configs.pop(device_id, None) is not None

    # Units -----------------------------------------------------------
    def lock_unit(self, pic_id, updated_version, device_id, previous_version):
        if self.conflicts_to_raise > 0:
            self.conflicts_to_raise -= 1
            raise StorageConflict("could not obtain lock on row in relation \"ota_units\"")
        key = (pic_id, updated_version)
        if key not in self.units:
            self._unit_ids += 1
            self.units[key] = Unit(
                pic_id=pic_id,
                device_id=device_id,
                previous_version=previous_version,
                updated_version=updated_version,
                id=self._unit_ids,
            )
        return copy.deepcopy(self.units[key])

    def append_attempt(self, unit: Unit, attempt: Attempt):
        self.units[(unit.pic_id, unit.updated_version)] = copy.deepcopy(unit)

    def find_units(self, device_id=None, device_ids=None, final_status=None,
                   updated_from=None, updated_to=None, limit=None, offset=0):
        units = list(self.units.values())
        if device_id:
            units = [u for u in units if u.device_id == device_id]
        if device_ids is not None:
            units = [u for u in units if u.device_id in device_ids]
        if final_status:
            units = [u for u in units if u.final_status == final_status]
        if updated_from:
            units = [u for u in units if u.last_updated and u.last_updated >= updated_from]
        if updated_to:
            units = [u for u in units if u.last_updated and u.last_updated < updated_to]
        units.sort(key=lambda u: (u.last_updated.timestamp() if u.last_updated else 0, u.id or 0), reverse=True)
        units = units[offset:]
        if limit is not None:
            units = units[:limit]
        return copy.deepcopy(units)

    def count_units_by_status(self, device_id=None, device_ids=None):
        counts = {"success": 0, "failed": 0, "pending": 0}
        for unit in self.find_units(device_id=device_id, device_ids=device_ids):
            counts[unit.final_status] += 1
        return counts

    # Daily stats -----------------------------------------------------
    def lock_daily_stats(self, device_id, day):
        stats = normalize_stats_document(self.daily.get((device_id, day)), device_id, day)
        self.daily.setdefault((device_id, day), stats.to_document())
        return stats

    def save_daily_stats(self, stats: DailyStats):
        self.daily[(stats.device_id, stats.day)] = copy.deepcopy(stats.to_document())

    def get_daily_stats(self, device_id, day):
        if (device_id, day) not in self.daily:
            return None
        return normalize_stats_document(self.daily[(device_id, day)], device_id, day)

    def find_daily_stats(self, start, end, device_id=None, device_ids=None):
        result = []
        for (row_device, day), document in sorted(self.daily.items(), key=lambda item: (item[0][1], item[0][0])):
            if not start <= day <= end:
                continue
            if device_id and row_device != device_id:
                continue
            if device_ids is not None and row_device not in device_ids:
                continue
            result.append(normalize_stats_document(document, row_device, day))
        return result

    def delete_daily_stats(self, start, end, device_id=None, device_ids=None):
        doomed = [stats for stats in self.find_daily_stats(start, end, device_id, device_ids)]
        for stats in doomed:
            del self.daily[(stats.device_id, stats.day)]
        return len(doomed)

    # Firmware --------------------------------------------------------
    def add_firmware_version(self, firmware, actor):
        key = (firmware.device_id, firmware.version)
        if key in self.firmware:
            raise ConflictError(f"Firmware version {firmware.version} already exists")
        self.firmware[key] = firmware

    def list_firmware_versions(self, device_id=None, limit=100):
        return [fw for (dev, _), fw in self.firmware.items() if not device_id or dev == device_id][:limit]

    def get_firmware_version(self, device_id, version):
        return self.firmware.get((device_id, version))

    # Activity --------------------------------------------------------
    def record_activity(self, event_type, actor: Actor, device_id=None, firmware_version=None, details=None):
        self.events.append({
            "event_type": event_type,
            "actor": str(actor),
            "device_id": device_id,
            "firmware_version": firmware_version,
            "details": details or {},
        })


@pytest.fixture
def store():
    fake = FakeStore()
    fake.add_device("dev-1", project_id="proj-a", codes=DEFAULT_CODES, name="Controller 1")
    return fake


@pytest.fixture
def options():
    return IngestOptions(retry_attempts=3, retry_base_delay=0)
