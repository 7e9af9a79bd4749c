"""
Error taxonomy for the OTA service.

Classification and validation errors are terminal for a request and are
raised before anything is written. Recoverable errors come from the storage
layer and are retried by the ingest pipeline.
"""


class OTAError(Exception):
    """Base error for the OTA service."""

    status_code = 500


class ValidationError(OTAError):
    """Missing or malformed input."""

    status_code = 400


class DuplicateStatusCode(ValidationError):
    """A status configuration defines the same code twice."""

    def __init__(self, code: str):
        super().__init__(f"Status code {code} is already defined for this device")
        self.code = code


class DeviceNotFound(OTAError):
    status_code = 404

    def __init__(self, device_id: str):
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class ConfigNotFound(OTAError):
    """The device has no status configuration that can be resolved."""

    status_code = 404

    def __init__(self, device_id: str):
        super().__init__(f"Status management configuration not found for device {device_id}")
        self.device_id = device_id


class ConfigCodeNotFound(OTAError):
    """The reported status code is not part of the device's configuration."""

    status_code = 404

    def __init__(self, device_id: str, code: str):
        super().__init__(f"Status code {code} not found in configuration for device {device_id}")
        self.device_id = device_id
        self.code = code


class ConflictError(OTAError):
    """The resource already exists."""

    status_code = 409


class RecoverableError(OTAError):
    """Indicates the operation can be retried safely."""

    status_code = 503


class DuplicateKeyRace(RecoverableError):
    """Another writer created the same unique row first."""


class StorageConflict(RecoverableError):
    """Concurrent write conflict on a locked document."""
