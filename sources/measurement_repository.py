# measurement_repository.py
"""
Higher‑level service the session and the persistence gate depend on.
It knows *what* to store (measurements, cylinders, settings), not *how*.
"""

from typing import Dict, List, Optional

from app_logger import logger
from errors import ConfigurationUnavailable
from measurement_db import MeasurementDB
from models import (
    FuelMeasurement,
    GasCylinder,
    HistoricalReading,
    InclinationMeasurement,
    Measurement,
    MeasurementKind,
)

NO_CYLINDER = 0                      # weight/inclination rows with no cylinder attached

DEFAULT_THRESHOLD_PERCENT = 15.0
DEFAULT_NOTIFICATIONS_ENABLED = True

KEY_LAST_DEVICE = "last_connected_device"
KEY_THRESHOLD = "gas_level_threshold"
KEY_NOTIFICATIONS = "notifications_enabled"


class SettingsStore:
    """
    The three settings the sensor core reads and writes, kept in the
    ``setting`` table.
    """

    def __init__(self, db: MeasurementDB):
        self.db = db

    def get_last_connected_device(self) -> Optional[str]:
        return self.db.get_setting(KEY_LAST_DEVICE) or None

    def set_last_connected_device(self, address: str) -> None:
        self.db.set_setting(KEY_LAST_DEVICE, address)
        logger.info("remembered %s as last connected device", address)

    def get_threshold(self) -> float:
        raw = self.db.get_setting(KEY_THRESHOLD)
        if raw is None:
            return DEFAULT_THRESHOLD_PERCENT
        if raw == "":
            raise ConfigurationUnavailable("gas level threshold was cleared")
        return float(raw)

    def set_threshold(self, percent: Optional[float]) -> None:
        if percent is not None and not 0.0 <= percent <= 100.0:
            raise ValueError(f"threshold must be within 0..100, got {percent}")
        self.db.set_setting(KEY_THRESHOLD, "" if percent is None else repr(float(percent)))

    def notifications_enabled(self) -> bool:
        raw = self.db.get_setting(KEY_NOTIFICATIONS)
        if raw is None:
            return DEFAULT_NOTIFICATIONS_ENABLED
        return raw == "1"

    def set_notifications_enabled(self, enabled: bool) -> None:
        self.db.set_setting(KEY_NOTIFICATIONS, "1" if enabled else "0")


class MeasurementRepository:
    """
    Public API used by the session (or any other component) to persist data.
    """

    def __init__(self, db: MeasurementDB):
        self.db = db
        self.settings = SettingsStore(db)
        self.cylinder_map: Dict[int, GasCylinder] = {
            cyl.cylinder_id: cyl for cyl in db.list_cylinders()
        }

    # ------------------------------------------------------------------
    # Cylinders
    # ------------------------------------------------------------------
    def add_cylinder(self, name: str, tare_kg: float, capacity_kg: float,
                     make_active: bool = False) -> GasCylinder:
        if capacity_kg <= 0 or tare_kg < 0:
            raise ValueError(f"invalid cylinder {name}: tare={tare_kg}, capacity={capacity_kg}")
        cylinder = GasCylinder(name=name, tare_kg=tare_kg, capacity_kg=capacity_kg)
        cylinder.cylinder_id = self.db.insert_cylinder(cylinder)
        self.cylinder_map[cylinder.cylinder_id] = cylinder
        logger.info("added cylinder %d (%s)", cylinder.cylinder_id, name)
        if make_active:
            self.set_active_cylinder(cylinder.cylinder_id)
        return cylinder

    def get_cylinder(self, cylinder_id: Optional[int]) -> Optional[GasCylinder]:
        if cylinder_id is None:
            return None
        cylinder = self.cylinder_map.get(cylinder_id)
        if cylinder is None:
            cylinder = self.db.get_cylinder(cylinder_id)
            if cylinder is not None:
                self.cylinder_map[cylinder_id] = cylinder
        return cylinder

    def get_active_cylinder(self) -> Optional[GasCylinder]:
        return self.db.get_active_cylinder()

    def set_active_cylinder(self, cylinder_id: int) -> None:
        if not self.db.set_active_cylinder(cylinder_id):
            raise KeyError(f"no cylinder with id {cylinder_id}")
        for cyl in self.cylinder_map.values():
            cyl.is_active = cyl.cylinder_id == cylinder_id
        logger.info("cylinder %d is now active", cylinder_id)

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------
    @staticmethod
    def to_reading(measurement: Measurement, bucket: int) -> HistoricalReading:
        cylinder_id = measurement.cylinder_id
        if cylinder_id is None:
            cylinder_id = NO_CYLINDER
        reading = HistoricalReading(
            cylinder_id=cylinder_id,
            kind=measurement.kind.value,
            timestamp_ms=measurement.timestamp_ms,
            bucket=bucket,
            value=measurement.value,
            is_historical=measurement.is_historical,
        )
        if isinstance(measurement, FuelMeasurement):
            reading.percent = measurement.level_percent
            reading.secondary = measurement.total_weight_kg
        elif isinstance(measurement, InclinationMeasurement):
            reading.secondary = measurement.roll_deg
        return reading

    def reading_exists(self, cylinder_id: int, kind: MeasurementKind, bucket: int) -> bool:
        return self.db.reading_exists(cylinder_id, kind.value, bucket)

    def insert_reading(self, reading: HistoricalReading) -> int:
        return self.db.insert_reading(reading)

    def list_readings(self, cylinder_id: Optional[int] = None,
                      kind: Optional[MeasurementKind] = None) -> List[HistoricalReading]:
        return self.db.list_readings(cylinder_id, kind.value if kind else None)

    def get_last_readings(self, cylinder_id: int, kind: MeasurementKind,
                          limit: int) -> List[HistoricalReading]:
        return self.db.get_last_readings(cylinder_id, kind.value, limit)
