"""
Unit tests for daily outcome buckets: recovery, dedup and normalization.
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from ota_daily import (
    DailyRecord,
    DailyStats,
    apply_outcome,
    empty_document,
    local_day,
    normalize_stats_document,
)
from ota_status import Badge

DAY = date(2025, 3, 1)
T0 = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


def record(pic_id="pic-1", ts=T0, prev="1.0", updated="2.0"):
    return DailyRecord(
        pic_id=pic_id,
        device_id="dev-1",
        previous_version=prev,
        updated_version=updated,
        timestamp=ts,
        recorded_at=ts,
    )


def new_stats():
    return DailyStats(device_id="dev-1", day=DAY)


# ---------------------------------------------------------------------
# Calendar days
# ---------------------------------------------------------------------

def test_local_day_uses_configured_timezone():
    late_utc = datetime(2025, 3, 1, 23, 30, tzinfo=timezone.utc)
    assert local_day(late_utc, timezone.utc) == date(2025, 3, 1)
    assert local_day(late_utc, ZoneInfo("Europe/Helsinki")) == date(2025, 3, 2)
    assert local_day(datetime(2025, 3, 1, 23, 30), timezone.utc) == date(2025, 3, 1)


# ---------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------

def test_failure_then_success_recovers():
    stats = new_stats()
    apply_outcome(stats, record(ts=T0), Badge.FAILURE)
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=5)), Badge.SUCCESS)

    counts = stats.counts()
    assert counts.failure == 0
    assert counts.success == 1
    assert len(stats.failure) == 1
    assert stats.failure[0].recovered is True


def test_late_failure_behind_success_is_stored_recovered():
    stats = new_stats()
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=5)), Badge.SUCCESS)
    apply_outcome(stats, record(ts=T0), Badge.FAILURE)

    assert stats.counts().failure == 0
    assert stats.failure[0].recovered is True


def test_failure_after_success_stays_active():
    stats = new_stats()
    apply_outcome(stats, record(ts=T0), Badge.SUCCESS)
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=5)), Badge.FAILURE)

    assert stats.counts().failure == 1
    assert stats.failure[0].recovered is False


def test_success_failure_success_converges():
    stats = new_stats()
    apply_outcome(stats, record(ts=T0), Badge.SUCCESS)
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=1)), Badge.FAILURE)
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=2)), Badge.SUCCESS)

    counts = stats.counts()
    assert counts.failure == 0
    assert counts.success == 2


def test_arrival_order_does_not_change_counts():
    events = [
        (record(ts=T0), Badge.SUCCESS),
        (record(ts=T0 + timedelta(minutes=1)), Badge.FAILURE),
        (record(ts=T0 + timedelta(minutes=2)), Badge.SUCCESS),
    ]
    forward, backward = new_stats(), new_stats()
    for rec, badge in events:
        apply_outcome(forward, record(ts=rec.timestamp), badge)
    for rec, badge in reversed(events):
        apply_outcome(backward, record(ts=rec.timestamp), badge)

    assert forward.counts() == backward.counts()


def test_repeated_failures_leave_one_active():
    stats = new_stats()
    for minutes in (0, 5, 9):
        apply_outcome(stats, record(ts=T0 + timedelta(minutes=minutes)), Badge.FAILURE)

    assert stats.counts().failure == 1
    assert len(stats.failure) == 3
    assert [f.superseded for f in stats.failure] == [True, True, False]


def test_repeated_failures_then_success_clears_all():
    stats = new_stats()
    apply_outcome(stats, record(ts=T0), Badge.FAILURE)
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=5)), Badge.FAILURE)
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=9)), Badge.SUCCESS)

    counts = stats.counts()
    assert counts.failure == 0
    assert counts.success == 1
    assert all(f.recovered for f in stats.failure)


def test_out_of_order_failure_is_superseded_by_later_one():
    stats = new_stats()
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=9)), Badge.FAILURE)
    apply_outcome(stats, record(ts=T0), Badge.FAILURE)

    assert stats.counts().failure == 1
    assert stats.failure[0].is_active_failure
    assert stats.failure[1].superseded is True


def test_failures_of_different_units_stay_active():
    stats = new_stats()
    apply_outcome(stats, record(pic_id="pic-1"), Badge.FAILURE)
    apply_outcome(stats, record(pic_id="pic-2"), Badge.FAILURE)
    assert stats.counts().failure == 2


def test_success_only_recovers_same_unit():
    stats = new_stats()
    apply_outcome(stats, record(pic_id="pic-1"), Badge.FAILURE)
    apply_outcome(stats, record(pic_id="pic-2", ts=T0 + timedelta(minutes=1)), Badge.SUCCESS)
    assert stats.counts().failure == 1


# ---------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------

def test_identical_failure_is_ignored():
    stats = new_stats()
    assert apply_outcome(stats, record(), Badge.FAILURE) is True
    assert apply_outcome(stats, record(), Badge.FAILURE) is False
    assert len(stats.failure) == 1


def test_identical_failure_ignored_even_after_recovery():
    stats = new_stats()
    apply_outcome(stats, record(ts=T0), Badge.FAILURE)
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=1)), Badge.SUCCESS)
    assert apply_outcome(stats, record(ts=T0), Badge.FAILURE) is False
    assert len(stats.failure) == 1


def test_success_and_other_always_append():
    stats = new_stats()
    apply_outcome(stats, record(), Badge.SUCCESS)
    apply_outcome(stats, record(), Badge.SUCCESS)
    apply_outcome(stats, record(), Badge.OTHER)
    apply_outcome(stats, record(), Badge.OTHER)
    assert stats.counts().success == 2
    assert stats.counts().other == 2


# ---------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------

def test_normalize_missing_document():
    stats = normalize_stats_document(None, "dev-1", DAY)
    assert stats.counts().total == 0
    assert stats.to_document() == empty_document(DAY)


def test_normalize_legacy_list_shape_and_aliases():
    raw = [{
        "date": "2025-03-01",
        "records": {
            "success": [{"picID": "pic-9", "previousVersion": "1.0", "updatedVersion": "2.0",
                         "timestamp": "2025-03-01T09:00:00Z"}],
            "failure": [{"picID": "pic-8", "timestamp": "2025-03-01T08:00:00Z"}],
        },
    }]
    stats = normalize_stats_document(raw, "dev-1", DAY)
    assert stats.success[0].pic_id == "pic-9"
    assert stats.success[0].updated_version == "2.0"
    assert stats.failure[0].recovered is False
    assert stats.other == []


def test_normalize_repairs_bad_buckets_and_records():
    raw = {
        "date": "1999-01-01",
        "records": {
            "success": "not a list",
            "failure": [42, {"pic_id": "pic-1", "recovered": "yes"}],
            "other": [{"pic_id": "pic-2", "recovered": True}],
        },
    }
    stats = normalize_stats_document(raw, "dev-1", DAY)
    assert stats.day == DAY
    assert stats.success == []
    assert len(stats.failure) == 1
    assert stats.failure[0].recovered is False
    assert stats.other[0].recovered is False


def test_normalize_garbage_document():
    assert normalize_stats_document("oops", "dev-1", DAY).counts().total == 0
    assert normalize_stats_document({"records": []}, "dev-1", DAY).counts().total == 0


def test_normalize_settles_legacy_duplicate_failures():
    raw = {
        "records": {
            "failure": [
                {"pic_id": "pic-1", "timestamp": "2025-03-01T08:00:00Z"},
                {"pic_id": "pic-1", "timestamp": "2025-03-01T08:05:00Z"},
                {"pic_id": "pic-1", "timestamp": "2025-03-01T08:09:00Z", "recovered": True},
            ],
        },
    }
    stats = normalize_stats_document(raw, "dev-1", DAY)
    assert stats.counts().failure == 1
    assert [f.superseded for f in stats.failure] == [True, False, False]


def test_document_survives_reload():
    stats = new_stats()
    apply_outcome(stats, record(ts=T0), Badge.FAILURE)
    apply_outcome(stats, record(ts=T0 + timedelta(minutes=1)), Badge.SUCCESS)

    reloaded = normalize_stats_document(stats.to_document(), "dev-1", DAY)
    assert reloaded.counts() == stats.counts()
    assert reloaded.failure[0].recovered is True
