"""
Unit tests for status resolution and configuration inheritance.
"""

import pytest

from ota_errors import ConfigCodeNotFound, ConfigNotFound, DuplicateStatusCode, ValidationError
from ota_status import (
    Badge,
    StatusCode,
    StatusConfiguration,
    build_status_codes,
    classify_status_text,
    find_duplicate_code,
    parse_status_code,
    resolve_effective_config,
    resolve_status,
)


def make_config(device_id="dev-1", codes=None, base_device_id=None):
    return StatusConfiguration(
        device_id=device_id,
        device_name=device_id,
        status_codes=build_status_codes(codes or []),
        base_device_id=base_device_id,
    )


CODES = [
    {"code": 2, "message": "Update complete", "badge": "success", "color": "#10B981"},
    {"code": 0, "message": "Flash failed", "badge": "failure"},
]


# ---------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------

def test_build_status_codes_rejects_duplicates():
    with pytest.raises(DuplicateStatusCode) as exc_info:
        build_status_codes([
            {"code": 2, "message": "ok", "badge": "success"},
            {"code": "2", "message": "also ok", "badge": "success"},
        ])
    assert exc_info.value.code == "2"


def test_find_duplicate_code_none_when_unique():
    assert find_duplicate_code([{"code": 1}, {"code": 2}, {"code": None}]) is None


def test_status_code_from_dict_validation():
    with pytest.raises(ValidationError):
        StatusCode.from_dict({"code": "abc", "message": "x"})
    with pytest.raises(ValidationError):
        StatusCode.from_dict({"code": 1})
    with pytest.raises(ValidationError):
        StatusCode.from_dict({"code": 1, "message": "x", "badge": "maybe"})


def test_status_code_defaults():
    entry = StatusCode.from_dict({"code": 5, "message": "Queued"})
    assert entry.badge == Badge.OTHER
    assert entry.color == "#6B7280"


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------

def test_resolve_configured_code():
    resolved = resolve_status("dev-1", "2", make_config(codes=CODES))
    assert resolved.badge == Badge.SUCCESS
    assert resolved.message == "Update complete"
    assert resolved.color == "#10B981"


def test_resolve_numeric_status_and_zero():
    resolved = resolve_status("dev-1", 0, make_config(codes=CODES))
    assert resolved.badge == Badge.FAILURE
    assert resolved.message == "Flash failed"


def test_resolve_without_config_raises():
    with pytest.raises(ConfigNotFound):
        resolve_status("dev-1", "2", None)


def test_strict_mode_rejects_unknown_code():
    with pytest.raises(ConfigCodeNotFound) as exc_info:
        resolve_status("dev-1", "9", make_config(codes=CODES), strict=True)
    assert exc_info.value.code == "9"


def test_permissive_mode_uses_text_then_fallback():
    config = make_config(codes=CODES)
    assert resolve_status("dev-1", "Update unsuccessful", config, strict=False).badge == Badge.FAILURE
    assert resolve_status("dev-1", "Already updated", config, strict=False).badge == Badge.SUCCESS
    assert resolve_status("dev-1", "3", config, strict=False).badge == Badge.SUCCESS
    assert resolve_status("dev-1", "9", config, strict=False).badge == Badge.FAILURE
    assert resolve_status("dev-1", "rebooting", config, strict=False).badge == Badge.OTHER


def test_configured_code_beats_text_heuristic():
    config = make_config(codes=[{"code": 4, "message": "Error recovered, all good", "badge": "success"}])
    assert resolve_status("dev-1", "4", config, strict=False).badge == Badge.SUCCESS


def test_parse_status_code():
    assert parse_status_code("  12 ") == 12
    assert parse_status_code("-1") == -1
    assert parse_status_code(7) == 7
    assert parse_status_code("1.5") is None
    assert parse_status_code(True) is None


def test_classify_status_text_failure_first():
    assert classify_status_text("UNSUCCESSFUL") == Badge.FAILURE
    assert classify_status_text("download pending") == Badge.OTHER
    assert classify_status_text("hello") is None


# ---------------------------------------------------------------------
# Inheritance
# ---------------------------------------------------------------------

def test_effective_config_follows_base_current_codes():
    configs = {
        "base": make_config("base", codes=CODES),
        "child": make_config("child", base_device_id="base"),
    }
    effective = resolve_effective_config("child", configs.get)
    assert effective.device_id == "child"
    assert effective.base_device_id == "base"
    assert [c.code for c in effective.status_codes] == [2, 0]

    # Later edits to the base show through without re-copying
    configs["base"] = make_config("base", codes=[{"code": 9, "message": "New", "badge": "success"}])
    effective = resolve_effective_config("child", configs.get)
    assert [c.code for c in effective.status_codes] == [9]


def test_effective_config_chain_and_cycle():
    configs = {
        "a": make_config("a", base_device_id="b"),
        "b": make_config("b", base_device_id="c"),
        "c": make_config("c", codes=CODES),
    }
    assert len(resolve_effective_config("a", configs.get).status_codes) == 2

    configs["c"] = make_config("c", base_device_id="a")
    assert resolve_effective_config("a", configs.get) is None


def test_effective_config_dangling_base():
    configs = {"child": make_config("child", base_device_id="gone")}
    assert resolve_effective_config("child", configs.get) is None
    assert resolve_effective_config("missing", configs.get) is None
