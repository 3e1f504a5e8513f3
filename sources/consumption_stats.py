#!/usr/bin/env python3
"""
Consumption statistics over the stored fuel readings of one cylinder.

Features
--------
* Record count, latest level (kg and %), average percentage.
* Trend over the most recent readings: a move of more than two percentage
  points counts as increasing / decreasing, anything smaller is stable.
* Mean interval between stored readings, in minutes.
* Retention: drop readings older than a number of days.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import pandas as pd

from app_logger import logger
from frame_decoder import now_ms
from measurement_db import MeasurementDB
from models import MeasurementKind

TREND_WINDOW = 5
TREND_TOLERANCE_PERCENT = 2.0
DEFAULT_RETENTION_DAYS = 30
MS_PER_DAY = 24 * 3600 * 1000


class Trend(Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass(frozen=True)
class ConsumptionStats:
    cylinder_id: int
    count: int
    latest_kg: Optional[float] = None
    latest_percent: Optional[float] = None
    average_percent: Optional[float] = None
    trend: Trend = Trend.STABLE
    mean_interval_min: Optional[float] = None

    def summary(self) -> str:
        if not self.count:
            return f"cylinder {self.cylinder_id}: no fuel readings stored"
        percent = "n/a" if self.latest_percent is None else f"{self.latest_percent:.1f}%"
        average = "n/a" if self.average_percent is None else f"{self.average_percent:.1f}%"
        interval = "n/a" if self.mean_interval_min is None else f"{self.mean_interval_min:.1f} min"
        return (
            f"cylinder {self.cylinder_id}: {self.count} reading(s), "
            f"latest {self.latest_kg:.2f} kg ({percent}), average {average}, "
            f"trend {self.trend.value}, every {interval}"
        )


# ----------------------------------------------------------------------
# Helper – fetch the fuel series of one cylinder
# ----------------------------------------------------------------------
def fetch_fuel_readings(db: MeasurementDB, cylinder_id: int) -> pd.DataFrame:
    sql = """
    SELECT timestamp_ms, value AS level_kg, percent, secondary AS total_weight_kg
    FROM reading
    WHERE cylinder_id = ?
      AND kind = ?
    ORDER BY timestamp_ms ASC
    """
    with db.lock:
        df = pd.read_sql_query(sql, db.conn, params=(cylinder_id, MeasurementKind.FUEL.value))
    if df.empty:
        return df
    df["recorded_at"] = pd.to_datetime(df["timestamp_ms"], unit="ms")
    return df


def trend_of(percentages: pd.Series, window: int = TREND_WINDOW,
             tolerance: float = TREND_TOLERANCE_PERCENT) -> Trend:
    """Compare the first and last of the ``window`` most recent percentages."""
    recent = percentages.dropna().tail(window)
    if len(recent) < 2:
        return Trend.STABLE
    change = recent.iloc[-1] - recent.iloc[0]
    if change > tolerance:
        return Trend.INCREASING
    if change < -tolerance:
        return Trend.DECREASING
    return Trend.STABLE


def compute_stats(db: MeasurementDB, cylinder_id: int) -> ConsumptionStats:
    df = fetch_fuel_readings(db, cylinder_id)
    if df.empty:
        return ConsumptionStats(cylinder_id=cylinder_id, count=0)

    last = df.iloc[-1]
    average = df["percent"].mean()
    intervals = df["recorded_at"].diff().dropna()
    mean_interval = intervals.mean().total_seconds() / 60.0 if not intervals.empty else None

    stats = ConsumptionStats(
        cylinder_id=cylinder_id,
        count=len(df),
        latest_kg=float(last["level_kg"]),
        latest_percent=None if pd.isna(last["percent"]) else float(last["percent"]),
        average_percent=None if pd.isna(average) else float(average),
        trend=trend_of(df["percent"]),
        mean_interval_min=mean_interval,
    )
    logger.debug("stats for cylinder %d: %s", cylinder_id, stats)
    return stats


def purge_older_than(db: MeasurementDB, days: int = DEFAULT_RETENTION_DAYS,
                     now: Optional[int] = None) -> int:
    """Delete every reading older than ``days`` days. Returns the row count."""
    if days <= 0:
        raise ValueError("retention must be at least one day")
    cutoff = (now_ms() if now is None else now) - days * MS_PER_DAY
    deleted = db.delete_readings_before(cutoff)
    logger.info("retention: removed %d reading(s) older than %d day(s)", deleted, days)
    return deleted
