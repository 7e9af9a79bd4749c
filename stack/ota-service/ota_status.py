"""
Status resolution.

Maps the raw status code reported by a device to a badge
(success / failure / other) and a human readable message, using the
device's status configuration. A configuration either lists its own codes
or points at a base device whose codes it follows.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ota_errors import ConfigCodeNotFound, ConfigNotFound, DuplicateStatusCode, ValidationError

DEFAULT_COLOR = "#6B7280"

# Integer codes historically meaning "flashed fine" on the embedded side.
KNOWN_SUCCESS_CODES = frozenset({2, 3})

# Order matters: "unsuccessful" must hit the failure list before "success".
FAILURE_PHRASES = ("unsuccessful", "failed", "failure", "error")
SUCCESS_PHRASES = ("already updated", "up to date", "update complete", "success")
PENDING_PHRASES = ("in progress", "pending", "downloading")


class Badge(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    OTHER = "other"


@dataclass(frozen=True)
class StatusCode:
    code: int
    message: str
    badge: Badge = Badge.OTHER
    color: str = DEFAULT_COLOR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "badge": self.badge.value,
            "color": self.color,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusCode":
        try:
            code = int(str(data["code"]).strip())
        except (KeyError, TypeError, ValueError):
            raise ValidationError(f"Status code must be an integer: {data.get('code')!r}")
        message = data.get("message")
        if not message:
            raise ValidationError(f"Status code {code} needs a message")
        try:
            badge = Badge(data.get("badge") or Badge.OTHER.value)
        except ValueError:
            raise ValidationError(f"Invalid badge for status code {code}: {data.get('badge')!r}")
        return cls(code=code, message=message, badge=badge, color=data.get("color") or DEFAULT_COLOR)


@dataclass
class StatusConfiguration:
    device_id: str
    device_name: str
    status_codes: List[StatusCode] = field(default_factory=list)
    base_device_id: Optional[str] = None
    created_by: Optional[str] = None

    @property
    def is_based_on_other_device(self) -> bool:
        return self.base_device_id is not None

    def find(self, code: int) -> Optional[StatusCode]:
        for entry in self.status_codes:
            if entry.code == code:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "status_codes": [entry.to_dict() for entry in self.status_codes],
            "is_based_on_other_device": self.is_based_on_other_device,
            "base_device_id": self.base_device_id,
            "created_by": self.created_by,
        }


@dataclass(frozen=True)
class ResolvedStatus:
    message: str
    badge: Badge
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "badge": self.badge.value, "color": self.color}


def find_duplicate_code(codes: Iterable[Union[StatusCode, Dict[str, Any]]]) -> Optional[str]:
    """Return the first code that appears twice, or None."""
    seen = set()
    for entry in codes:
        raw = entry.code if isinstance(entry, StatusCode) else (entry or {}).get("code")
        if raw is None:
            continue
        normalized = str(raw).strip()
        if normalized == "":
            continue
        if normalized in seen:
            return normalized
        seen.add(normalized)
    return None


def build_status_codes(raw_codes: Iterable[Dict[str, Any]]) -> List[StatusCode]:
    """Validate raw code entries, rejecting duplicates."""
    raw_codes = list(raw_codes or [])
    duplicate = find_duplicate_code(raw_codes)
    if duplicate is not None:
        raise DuplicateStatusCode(duplicate)
    return [StatusCode.from_dict(entry) for entry in raw_codes]


def resolve_effective_config(
    device_id: str,
    lookup: Callable[[str], Optional[StatusConfiguration]],
) -> Optional[StatusConfiguration]:
    """
    Resolve the configuration that applies to a device.

    A device with its own codes uses them. A device based on another device
    follows the base device's *current* codes, so later edits to the base
    show up without re-copying. Cycles and dangling references resolve to
    None.
    """
    own = lookup(device_id)
    if own is None:
        return None

    current = own
    visited = {device_id}
    while current.is_based_on_other_device:
        base_id = current.base_device_id
        if base_id in visited:
            return None
        visited.add(base_id)
        current = lookup(base_id)
        if current is None:
            return None

    return StatusConfiguration(
        device_id=own.device_id,
        device_name=own.device_name,
        status_codes=list(current.status_codes),
        base_device_id=own.base_device_id,
        created_by=own.created_by,
    )


def parse_status_code(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if text.startswith(("-", "+")):
        sign, digits = text[0], text[1:]
    else:
        sign, digits = "", text
    if digits.isdecimal():
        return int(sign + digits)
    return None


def classify_status_text(text: str) -> Optional[Badge]:
    lowered = text.lower()
    if any(phrase in lowered for phrase in FAILURE_PHRASES):
        return Badge.FAILURE
    if any(phrase in lowered for phrase in SUCCESS_PHRASES):
        return Badge.SUCCESS
    if any(phrase in lowered for phrase in PENDING_PHRASES):
        return Badge.OTHER
    return None


def resolve_status(
    device_id: str,
    raw_status: Any,
    config: Optional[StatusConfiguration],
    strict: bool = True,
) -> ResolvedStatus:
    """
    Resolve a raw status code against a device's configuration.

    Args:
        device_id: Reporting device
        raw_status: Code as sent by the device (string or number)
        config: Effective configuration, None if the device has none
        strict: Reject codes the configuration does not list instead of
            falling back to text heuristics

    Returns:
        ResolvedStatus with message, badge and color

    Raises:
        ConfigNotFound: No configuration for the device
        ConfigCodeNotFound: Strict mode and the code is not configured
    """
    if config is None:
        raise ConfigNotFound(device_id)

    text = str(raw_status).strip()
    code = parse_status_code(raw_status)

    if code is not None:
        entry = config.find(code)
        if entry is not None:
            return ResolvedStatus(message=entry.message, badge=entry.badge, color=entry.color)

    if strict:
        raise ConfigCodeNotFound(device_id, text)

    heuristic = classify_status_text(text)
    if heuristic is not None:
        return ResolvedStatus(message=text, badge=heuristic)

    if code is not None:
        badge = Badge.SUCCESS if code in KNOWN_SUCCESS_CODES else Badge.FAILURE
        return ResolvedStatus(message=f"Status {code}", badge=badge)

    return ResolvedStatus(message=text, badge=Badge.OTHER)
