"""
Dotted-numeric firmware version comparison.

Versions look like "1.2" or "2.10.3". Missing or non-numeric segments count
as 0 and an absent version counts as "0", so device-reported junk never
raises.
"""

from enum import Enum
from typing import List, Optional, Tuple

# Producers send this as the updated version when nothing valid got installed.
NO_VALID_VERSION = "0.0"


class VersionComparison(str, Enum):
    LOWER = "lower"
    EQUAL = "equal"
    HIGHER = "higher"


def parse_version(version: Optional[str]) -> List[int]:
    if version is None or str(version).strip() == "":
        return [0]

    segments = []
    for part in str(version).strip().split("."):
        part = part.strip()
        segments.append(int(part) if part.isdecimal() else 0)
    return segments


def compare_versions(version: Optional[str], other: Optional[str]) -> VersionComparison:
    """
    Compare two versions numerically, segment by segment.

    Returns how `version` relates to `other`:
    compare_versions("1.2", "1.10") is LOWER.
    """
    left = parse_version(version)
    right = parse_version(other)

    width = max(len(left), len(right))
    left += [0] * (width - len(left))
    right += [0] * (width - len(right))

    for a, b in zip(left, right):
        if a < b:
            return VersionComparison.LOWER
        if a > b:
            return VersionComparison.HIGHER
    return VersionComparison.EQUAL


def version_sort_key(version: Optional[str]) -> Tuple[Tuple[int, ...], str]:
    """Sort key ordering versions numerically; "1.2" and "1.2.0" sort together."""
    segments = parse_version(version)
    while len(segments) > 1 and segments[-1] == 0:
        segments.pop()
    return tuple(segments), str(version or "")


def upgrade_direction(previous_version: Optional[str], updated_version: Optional[str]) -> VersionComparison:
    """How the updated version relates to the previous one (HIGHER means an upgrade)."""
    return compare_versions(updated_version, previous_version)


def is_no_valid_version(updated_version: Optional[str]) -> bool:
    return updated_version is not None and str(updated_version).strip() == NO_VALID_VERSION


def highest_version(versions: List[str]) -> Optional[str]:
    """Pick the highest version from a list using the numeric comparison."""
    best = None
    for version in versions:
        if best is None or compare_versions(version, best) == VersionComparison.HIGHER:
            best = version
    return best
