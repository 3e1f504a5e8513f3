# models.py
"""
Dataclasses for the sensor core.

Measurements are frozen: one is built per decoded frame and then only read.
`GasCylinder` and `HistoricalReading` map 1‑to‑1 to the SQLite tables.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from errors import ConfigurationUnavailable

LEVEL_TOLERANCE_DEG = 2.0


class MeasurementKind(Enum):
    FUEL = "fuel"
    WEIGHT = "weight"
    INCLINATION = "inclination"


# ----------------------------------------------------------------------
# Raw input
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class RawFrame:
    """One characteristic notification, as received."""
    payload: bytes
    received_at_ms: int                     # wall clock, Unix milliseconds


# ----------------------------------------------------------------------
# Decoded measurements
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class FuelMeasurement:
    level_kg: float                         # gas left (total weight minus tare)
    level_percent: Optional[float]          # None when capacity is unknown
    cylinder_id: Optional[int]
    timestamp_ms: int
    total_weight_kg: float
    is_historical: bool = False

    kind = MeasurementKind.FUEL

    @property
    def value(self) -> float:
        return self.level_kg

    def formatted(self) -> str:
        if self.level_percent is None:
            return f"{self.level_kg:.2f} kg (n/a %)"
        return f"{self.level_kg:.2f} kg ({self.level_percent:.1f}%)"


@dataclass(frozen=True)
class WeightMeasurement:
    value_kg: float
    timestamp_ms: int
    is_historical: bool = False

    kind = MeasurementKind.WEIGHT
    cylinder_id = None

    @property
    def value(self) -> float:
        return self.value_kg


@dataclass(frozen=True)
class InclinationMeasurement:
    pitch_deg: float
    roll_deg: float
    timestamp_ms: int

    kind = MeasurementKind.INCLINATION
    cylinder_id = None
    is_historical = False

    @property
    def value(self) -> float:
        return self.pitch_deg

    @property
    def is_level_pitch(self) -> bool:
        return abs(self.pitch_deg) <= LEVEL_TOLERANCE_DEG

    @property
    def is_level_roll(self) -> bool:
        return abs(self.roll_deg) <= LEVEL_TOLERANCE_DEG

    @property
    def is_level(self) -> bool:
        return self.is_level_pitch and self.is_level_roll


Measurement = Union[FuelMeasurement, WeightMeasurement, InclinationMeasurement]


# ----------------------------------------------------------------------
# Stored entities
# ----------------------------------------------------------------------
@dataclass
class GasCylinder:
    """A configured cylinder. Only one row may have `is_active` set."""
    name: str
    tare_kg: float                          # empty cylinder weight
    capacity_kg: float                      # gas weight at 100 %
    cylinder_id: Optional[int] = None
    is_active: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def fuel_level_kg(self, total_weight_kg: float) -> float:
        return max(0.0, total_weight_kg - self.tare_kg)

    def fuel_percentage(self, level_kg: float) -> float:
        """Percentage of capacity, clamped to 0..100."""
        if not self.capacity_kg or self.capacity_kg <= 0:
            raise ConfigurationUnavailable(
                f"cylinder {self.cylinder_id} has no usable capacity ({self.capacity_kg})"
            )
        return min(100.0, max(0.0, level_kg / self.capacity_kg * 100.0))


@dataclass
class HistoricalReading:
    """One row of the `reading` table."""
    cylinder_id: int
    kind: str                               # MeasurementKind value
    timestamp_ms: int
    bucket: int
    value: float
    percent: Optional[float] = None
    secondary: Optional[float] = None       # roll for inclination rows
    is_historical: bool = False
    reading_id: Optional[int] = None
