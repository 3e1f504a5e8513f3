# persistence_gate.py
"""
Dedup gate in front of the historical store.

When the sensor reconnects it replays its offline backlog, and the same
reading can also arrive once live and once from history. Two measurements
with the same cylinder, kind and timestamp bucket are one reading: the first
one is written, later ones are skipped without error.
"""

import asyncio
import sqlite3
from enum import Enum
from typing import Dict, Tuple

from app_logger import logger
from errors import PersistenceError
from measurement_repository import NO_CYLINDER, MeasurementRepository
from models import Measurement, MeasurementKind

DEDUP_BUCKET_MS = 1000               # sensor's native sampling interval


class GateResult(Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"


def bucket_of(timestamp_ms: int, bucket_ms: int = DEDUP_BUCKET_MS) -> int:
    return timestamp_ms // bucket_ms


class PersistenceGate:
    """
    Decides insert vs. skip for each measurement and performs the insert.

    Writes for one ``(cylinder, kind)`` key are serialized, so the existence
    check and the insert cannot interleave with another write for the same
    series. Different series proceed concurrently. The sqlite work itself
    runs in a worker thread so the event loop keeps receiving frames.
    """

    def __init__(self, repo: MeasurementRepository, bucket_ms: int = DEDUP_BUCKET_MS):
        if bucket_ms <= 0:
            raise ValueError("bucket_ms must be positive")
        self.repo = repo
        self.bucket_ms = bucket_ms
        self._locks: Dict[Tuple[int, MeasurementKind], asyncio.Lock] = {}
        self.inserted = 0
        self.skipped = 0

    def _lock_for(self, key: Tuple[int, MeasurementKind]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _write(self, measurement: Measurement) -> GateResult:
        reading = self.repo.to_reading(measurement, bucket_of(measurement.timestamp_ms, self.bucket_ms))
        try:
            if self.repo.reading_exists(reading.cylinder_id, measurement.kind, reading.bucket):
                return GateResult.SKIPPED
            self.repo.insert_reading(reading)
        except sqlite3.IntegrityError:
            # lost a race against another writer for the same bucket
            return GateResult.SKIPPED
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"could not store {measurement.kind.value} reading at {measurement.timestamp_ms}: {exc}"
            ) from exc
        return GateResult.INSERTED

    async def submit(self, measurement: Measurement) -> GateResult:
        """
        Store ``measurement`` unless its bucket is already taken.

        Raises
        ------
        PersistenceError
            The store rejected the write for a reason other than a duplicate.
        """
        if measurement.kind is MeasurementKind.FUEL and measurement.cylinder_id is None:
            logger.warning(
                "fuel reading at %d has no cylinder (none active?) – not stored",
                measurement.timestamp_ms,
            )
            self.skipped += 1
            return GateResult.SKIPPED

        cylinder_id = measurement.cylinder_id
        if cylinder_id is None:
            cylinder_id = NO_CYLINDER
        key = (cylinder_id, measurement.kind)
        async with self._lock_for(key):
            result = await asyncio.to_thread(self._write, measurement)

        if result is GateResult.INSERTED:
            self.inserted += 1
        else:
            self.skipped += 1
            logger.debug(
                "duplicate %s reading for cylinder %s at %d skipped",
                measurement.kind.value, key[0], measurement.timestamp_ms,
            )
        return result
