import pandas as pd
import pytest

from consumption_stats import MS_PER_DAY, Trend, compute_stats, purge_older_than, trend_of
from models import HistoricalReading

T0 = 1_700_000_000_000
TEN_MIN = 10 * 60 * 1000


def store_fuel(db, percents, cylinder_id=1, start=T0, step=TEN_MIN):
    for i, p in enumerate(percents):
        ts = start + i * step
        db.insert_reading(HistoricalReading(
            cylinder_id=cylinder_id, kind="fuel", timestamp_ms=ts, bucket=ts // 1000,
            value=p / 10.0, percent=p, secondary=p / 10.0 + 6.0,
        ))


def test_decreasing_series(db):
    store_fuel(db, [50, 48, 46, 44, 42])

    stats = compute_stats(db, 1)

    assert stats.count == 5
    assert stats.latest_percent == pytest.approx(42.0)
    assert stats.latest_kg == pytest.approx(4.2)
    assert stats.average_percent == pytest.approx(46.0)
    assert stats.trend is Trend.DECREASING
    assert stats.mean_interval_min == pytest.approx(10.0)


def test_small_changes_are_stable(db):
    store_fuel(db, [50.0, 50.5, 51.0])
    assert compute_stats(db, 1).trend is Trend.STABLE


def test_trend_only_looks_at_recent_readings():
    # big drop early on, refill in the last five readings
    series = pd.Series([90, 10, 10, 20, 30, 40, 50])
    assert trend_of(series) is Trend.INCREASING


def test_no_readings(db):
    stats = compute_stats(db, 9)
    assert stats.count == 0
    assert "no fuel readings" in stats.summary()


def test_other_cylinders_and_kinds_are_ignored(db):
    store_fuel(db, [30, 29], cylinder_id=1)
    store_fuel(db, [80], cylinder_id=2)
    db.insert_reading(HistoricalReading(cylinder_id=1, kind="weight", timestamp_ms=T0 + 1,
                                        bucket=(T0 + 1) // 1000, value=12.0))

    assert compute_stats(db, 1).count == 2


def test_purge_older_than(db):
    now = T0 + 60 * MS_PER_DAY
    store_fuel(db, [40], start=now - 40 * MS_PER_DAY)
    store_fuel(db, [39], start=now - 1 * MS_PER_DAY)

    assert purge_older_than(db, 30, now=now) == 1
    assert compute_stats(db, 1).count == 1


def test_purge_rejects_non_positive_retention(db):
    with pytest.raises(ValueError):
        purge_older_than(db, 0)
