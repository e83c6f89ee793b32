from datetime import datetime, timedelta, timezone

import pytest

from fitbit_sync.domain.metrics import (
    DailyValue,
    MetricKind,
    SleepLog,
    SyncIntervalHours,
    SyncRunResult,
    WeightLog,
)


def test_metric_parse_accepts_value_and_name():
    assert MetricKind.parse("restingHeartRate") is MetricKind.RESTING_HEART_RATE
    assert MetricKind.parse("RESTING_HEART_RATE") is MetricKind.RESTING_HEART_RATE
    assert MetricKind.parse(" body-weight ") is MetricKind.BODY_WEIGHT
    assert MetricKind.parse(MetricKind.SLEEP) is MetricKind.SLEEP


def test_metric_parse_rejects_unknown():
    with pytest.raises(ValueError, match="Unknown metric"):
        MetricKind.parse("bloodOxygen")


def test_ordered_uses_declaration_order_and_deduplicates():
    ordered = MetricKind.ordered(["activeEnergy", "bodyWeight", "steps", "bodyWeight"])

    assert ordered == [MetricKind.BODY_WEIGHT, MetricKind.STEPS, MetricKind.ACTIVE_ENERGY]


def test_metric_units_and_interval_flags():
    assert MetricKind.BODY_FAT.unit == "fraction"
    assert MetricKind.RESTING_HEART_RATE.unit == "count/min"
    assert MetricKind.STEPS.is_interval
    assert not MetricKind.BODY_WEIGHT.is_interval


def test_sync_interval_titles():
    assert [int(item) for item in SyncIntervalHours] == [2, 4, 8, 12]
    assert SyncIntervalHours.EVERY_8.title == "Every 8 hours"
    assert SyncIntervalHours.EVERY_12.short_title == "12h"


def test_weight_log_from_payload_handles_missing_fat():
    log = WeightLog.from_payload({"logId": 42, "date": "2024-03-09", "time": "07:15:00", "weight": 80.2})

    assert log.log_id == 42
    assert log.weight == pytest.approx(80.2)
    assert log.fat is None


def test_daily_value_numeric_value():
    assert DailyValue("2024-03-09", "8123").numeric_value() == 8123.0
    assert DailyValue("2024-03-09", "n/a").numeric_value() is None


def test_sleep_log_tolerates_missing_log_id():
    log = SleepLog.from_payload({"startTime": "2024-03-09T23:00:00.000", "endTime": "2024-03-10T06:30:00.000"})

    assert log.log_id is None
    assert log.start_time.startswith("2024-03-09T23")


def test_run_result_summary_line():
    started = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
    result = SyncRunResult(
        started_at=started,
        finished_at=started + timedelta(seconds=2),
        written_count=3,
        details=("Body Weight: 2", "Steps: 1"),
    )

    assert result.summary_line() == "Sync complete (3 samples in 2.0s): Body Weight: 2; Steps: 1"
