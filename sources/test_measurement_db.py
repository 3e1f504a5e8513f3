import sqlite3
from datetime import timedelta

import pytest

from errors import ConfigurationUnavailable
from measurement_db import MeasurementDB
from measurement_repository import DEFAULT_THRESHOLD_PERCENT
from models import GasCylinder, HistoricalReading

T0 = 1_700_000_000_000


def reading(ts, cylinder_id=1, kind="fuel", value=5.0):
    return HistoricalReading(cylinder_id=cylinder_id, kind=kind, timestamp_ms=ts,
                             bucket=ts // 1000, value=value, percent=50.0)


def test_schema_is_created_once(tmp_path):
    path = tmp_path / "campergas.db"
    first = MeasurementDB(path)
    first.insert_cylinder(GasCylinder(name="a", tare_kg=5.0, capacity_kg=11.0))
    first.close()

    second = MeasurementDB(path)
    assert [c.name for c in second.list_cylinders()] == ["a"]
    second.close()


def test_only_one_active_cylinder(repo):
    a = repo.add_cylinder("11 kg", 6.0, 11.0, make_active=True)
    b = repo.add_cylinder("5 kg", 4.0, 5.0)

    repo.set_active_cylinder(b.cylinder_id)

    active = [c for c in repo.db.list_cylinders() if c.is_active]
    assert [c.cylinder_id for c in active] == [b.cylinder_id]
    assert repo.get_active_cylinder().cylinder_id == b.cylinder_id
    assert not repo.get_cylinder(a.cylinder_id).is_active


def test_activating_unknown_cylinder_keeps_current(repo):
    a = repo.add_cylinder("11 kg", 6.0, 11.0, make_active=True)

    with pytest.raises(KeyError):
        repo.set_active_cylinder(999)

    assert repo.get_active_cylinder().cylinder_id == a.cylinder_id


def test_update_and_delete_cylinder(db):
    cid = db.insert_cylinder(GasCylinder(name="old", tare_kg=5.0, capacity_kg=11.0))
    db.update_cylinder(GasCylinder(name="new", tare_kg=5.5, capacity_kg=11.0, cylinder_id=cid))
    assert db.get_cylinder(cid).name == "new"

    db.delete_cylinder(cid)
    assert db.get_cylinder(cid) is None


def test_settings_round_trip(repo):
    settings = repo.settings
    assert settings.get_last_connected_device() is None
    assert settings.get_threshold() == DEFAULT_THRESHOLD_PERCENT
    assert settings.notifications_enabled()

    settings.set_last_connected_device("AA:BB:CC:DD:EE:FF")
    settings.set_threshold(22.5)
    settings.set_notifications_enabled(False)

    assert settings.get_last_connected_device() == "AA:BB:CC:DD:EE:FF"
    assert settings.get_threshold() == 22.5
    assert not settings.notifications_enabled()


def test_cleared_threshold_is_unavailable(repo):
    repo.settings.set_threshold(None)
    with pytest.raises(ConfigurationUnavailable):
        repo.settings.get_threshold()


def test_threshold_out_of_range(repo):
    with pytest.raises(ValueError):
        repo.settings.set_threshold(120)


def test_duplicate_bucket_violates_unique_index(db):
    db.insert_reading(reading(T0))
    with pytest.raises(sqlite3.IntegrityError):
        db.insert_reading(reading(T0 + 10))
    # connection still usable after the failed insert
    db.insert_reading(reading(T0 + 1000))
    assert db.count_readings(1) == 2


def test_last_readings_newest_first(db):
    for i in range(6):
        db.insert_reading(reading(T0 + i * 60_000, value=10.0 - i))

    last = db.get_last_readings(1, "fuel", 3)

    assert [r.timestamp_ms for r in last] == [T0 + 300_000, T0 + 240_000, T0 + 180_000]


def test_list_readings_window(db):
    for i in range(5):
        db.insert_reading(reading(T0 + i * 1000))

    window = db.list_readings(1, "fuel", start_ms=T0 + 1000, end_ms=T0 + 3000)

    assert [r.timestamp_ms for r in window] == [T0 + 1000, T0 + 2000, T0 + 3000]


def test_purge_and_delete_by_cylinder(db):
    db.insert_reading(reading(T0, cylinder_id=1))
    db.insert_reading(reading(T0 + 5000, cylinder_id=1))
    db.insert_reading(reading(T0 + 5000, cylinder_id=2))

    assert db.delete_readings_before(T0 + 1000) == 1
    assert db.delete_readings_by_cylinder(2) == 1
    assert db.count_readings() == 1


def test_created_at_round_trips_as_utc(db):
    cyl = GasCylinder(name="a", tare_kg=5.0, capacity_kg=11.0)
    cid = db.insert_cylinder(cyl)

    stored = db.get_cylinder(cid)
    assert stored.created_at.tzinfo is not None
    assert stored.created_at == cyl.created_at


def test_naive_created_at_is_read_as_utc(db):
    db.conn.execute(
        "INSERT INTO cylinder (name, tare_kg, capacity_kg, created_at) VALUES (?, ?, ?, ?);",
        ("legacy", 5.0, 11.0, "2024-03-01T12:00:00"),
    )
    db.conn.commit()

    (legacy,) = db.list_cylinders()
    assert legacy.created_at.utcoffset() == timedelta(0)
    assert legacy.created_at.hour == 12
