#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
File: measurement_db.py
Description:
    Low‑level DAO (Data‑Access‑Object) over an embedded SQLite database that
    holds the gas cylinders, the measurement time series and a handful of
    key/value settings.

    Key features:
        • Automatic, additive schema creation (cylinder, reading, setting)
        • Parameterised SQL statements
        • One reading per (cylinder, kind, timestamp bucket), enforced by a
          unique index
        • Exactly one active cylinder, switched in a single transaction
        • A connection lock so the persistence gate can run writes from
          worker threads
"""
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from models import GasCylinder, HistoricalReading
from timing_decorator import timed

SLOW_WRITE_S = 0.5                 # a write slower than this is logged as a warning


def _aware(moment: datetime) -> datetime:
    """Rows written before timestamps carried an offset are UTC."""
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


class MeasurementDB:
    """CRUD wrapper for the cylinder, reading and setting tables."""

    def __init__(self, db_path: str | Path = "campergas.db"):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()
        self._ensure_schema()

    # --------------------------------------------------------------
    # Schema creation – forward only, never rewrites existing rows
    # --------------------------------------------------------------
    def _ensure_schema(self) -> None:
        with self.lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS cylinder (
                    cylinder_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name        TEXT(256) NOT NULL,
                    tare_kg     REAL NOT NULL,
                    capacity_kg REAL NOT NULL,
                    is_active   INTEGER NOT NULL DEFAULT 0,
                    created_at  TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reading (
                    reading_id    INTEGER PRIMARY KEY AUTOINCREMENT,
                    cylinder_id   INTEGER NOT NULL,
                    kind          TEXT NOT NULL,
                    timestamp_ms  INTEGER NOT NULL,
                    bucket        INTEGER NOT NULL,
                    value         REAL NOT NULL,
                    percent       REAL,
                    secondary     REAL,
                    is_historical INTEGER NOT NULL DEFAULT 0
                );

                CREATE UNIQUE INDEX IF NOT EXISTS reading_bucket_uq
                    ON reading (cylinder_id, kind, bucket);

                CREATE INDEX IF NOT EXISTS reading_series_ix
                    ON reading (cylinder_id, kind, timestamp_ms);

                CREATE TABLE IF NOT EXISTS setting (
                    key   TEXT PRIMARY KEY,
                    value TEXT
                );
                """
            )
            self.conn.commit()

    # --------------------------------------------------------------
    # Helpers: Row → dataclass
    # --------------------------------------------------------------
    @staticmethod
    def _row_to_cylinder(row: sqlite3.Row) -> GasCylinder:
        return GasCylinder(
            cylinder_id=row["cylinder_id"],
            name=row["name"],
            tare_kg=row["tare_kg"],
            capacity_kg=row["capacity_kg"],
            is_active=bool(row["is_active"]),
            created_at=_aware(datetime.fromisoformat(row["created_at"])),
        )

    @staticmethod
    def _row_to_reading(row: sqlite3.Row) -> HistoricalReading:
        reading = HistoricalReading(**{k: row[k] for k in row.keys()})
        reading.is_historical = bool(reading.is_historical)
        return reading

    # ==============================================================
    #                     CYLINDER CRUD
    # ==============================================================

    def list_cylinders(self) -> List[GasCylinder]:
        with self.lock:
            cur = self.conn.execute("SELECT * FROM cylinder ORDER BY cylinder_id;")
            return [self._row_to_cylinder(r) for r in cur]

    def get_cylinder(self, cylinder_id: int) -> Optional[GasCylinder]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM cylinder WHERE cylinder_id = ?;", (cylinder_id,)
            ).fetchone()
        return self._row_to_cylinder(row) if row else None

    def insert_cylinder(self, cyl: GasCylinder) -> int:
        sql = """
            INSERT INTO cylinder (cylinder_id, name, tare_kg, capacity_kg, is_active, created_at)
            VALUES (?, ?, ?, ?, 0, ?);
        """
        with self.lock:
            cur = self.conn.execute(
                sql,
                (cyl.cylinder_id, cyl.name, cyl.tare_kg, cyl.capacity_kg, cyl.created_at.isoformat()),
            )
            self.conn.commit()
            cylinder_id = cur.lastrowid
        if cyl.is_active:
            self.set_active_cylinder(cylinder_id)
        return cylinder_id

    def update_cylinder(self, cyl: GasCylinder) -> None:
        sql = """
            UPDATE cylinder
            SET name = ?, tare_kg = ?, capacity_kg = ?
            WHERE cylinder_id = ?;
        """
        with self.lock:
            self.conn.execute(sql, (cyl.name, cyl.tare_kg, cyl.capacity_kg, cyl.cylinder_id))
            self.conn.commit()

    def delete_cylinder(self, cylinder_id: int) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM cylinder WHERE cylinder_id = ?;", (cylinder_id,))
            self.conn.commit()

    def set_active_cylinder(self, cylinder_id: int) -> int:
        """
        Make ``cylinder_id`` the only active cylinder.

        Returns the number of rows activated (0 if the id does not exist, in
        which case the previous active cylinder is left untouched).
        """
        with self.lock:
            try:
                self.conn.execute("BEGIN;")
                cur = self.conn.execute(
                    "UPDATE cylinder SET is_active = 1 WHERE cylinder_id = ?;", (cylinder_id,)
                )
                if cur.rowcount == 0:
                    self.conn.rollback()
                    return 0
                self.conn.execute(
                    "UPDATE cylinder SET is_active = 0 WHERE cylinder_id != ?;", (cylinder_id,)
                )
                self.conn.commit()
                return 1
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def get_active_cylinder(self) -> Optional[GasCylinder]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM cylinder WHERE is_active = 1 LIMIT 1;"
            ).fetchone()
        return self._row_to_cylinder(row) if row else None

    # ==============================================================
    #                     READING CRUD
    # ==============================================================

    @timed("MeasurementDB.insert_reading", warn_after_s=SLOW_WRITE_S)
    def insert_reading(self, reading: HistoricalReading) -> int:
        sql = """
            INSERT INTO reading
                (cylinder_id, kind, timestamp_ms, bucket, value, percent, secondary, is_historical)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
        """
        with self.lock:
            try:
                cur = self.conn.execute(
                    sql,
                    (
                        reading.cylinder_id,
                        reading.kind,
                        reading.timestamp_ms,
                        reading.bucket,
                        reading.value,
                        reading.percent,
                        reading.secondary,
                        int(reading.is_historical),
                    ),
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
            return cur.lastrowid

    @timed("MeasurementDB.reading_exists")
    def reading_exists(self, cylinder_id: int, kind: str, bucket: int) -> bool:
        with self.lock:
            row = self.conn.execute(
                "SELECT 1 FROM reading WHERE cylinder_id = ? AND kind = ? AND bucket = ? LIMIT 1;",
                (cylinder_id, kind, bucket),
            ).fetchone()
        return row is not None

    def list_readings(
        self,
        cylinder_id: Optional[int] = None,
        kind: Optional[str] = None,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> List[HistoricalReading]:
        """Readings ordered by timestamp, optionally filtered."""
        clauses, params = [], []
        if cylinder_id is not None:
            clauses.append("cylinder_id = ?")
            params.append(cylinder_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        if start_ms is not None:
            clauses.append("timestamp_ms >= ?")
            params.append(start_ms)
        if end_ms is not None:
            clauses.append("timestamp_ms <= ?")
            params.append(end_ms)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.lock:
            cur = self.conn.execute(
                f"SELECT * FROM reading {where} ORDER BY timestamp_ms ASC;", params
            )
            return [self._row_to_reading(r) for r in cur]

    def get_last_readings(self, cylinder_id: int, kind: str, limit: int) -> List[HistoricalReading]:
        """The ``limit`` most recent readings, newest first."""
        with self.lock:
            cur = self.conn.execute(
                """
                SELECT * FROM reading
                WHERE cylinder_id = ? AND kind = ?
                ORDER BY timestamp_ms DESC
                LIMIT ?;
                """,
                (cylinder_id, kind, limit),
            )
            return [self._row_to_reading(r) for r in cur]

    def count_readings(self, cylinder_id: Optional[int] = None) -> int:
        with self.lock:
            if cylinder_id is None:
                row = self.conn.execute("SELECT COUNT(*) FROM reading;").fetchone()
            else:
                row = self.conn.execute(
                    "SELECT COUNT(*) FROM reading WHERE cylinder_id = ?;", (cylinder_id,)
                ).fetchone()
        return row[0]

    def delete_readings_before(self, timestamp_ms: int) -> int:
        with self.lock:
            cur = self.conn.execute(
                "DELETE FROM reading WHERE timestamp_ms < ?;", (timestamp_ms,)
            )
            self.conn.commit()
            return cur.rowcount

    def delete_readings_by_cylinder(self, cylinder_id: int) -> int:
        with self.lock:
            cur = self.conn.execute(
                "DELETE FROM reading WHERE cylinder_id = ?;", (cylinder_id,)
            )
            self.conn.commit()
            return cur.rowcount

    # ==============================================================
    #                     SETTINGS
    # ==============================================================

    def get_setting(self, key: str) -> Optional[str]:
        with self.lock:
            row = self.conn.execute(
                "SELECT value FROM setting WHERE key = ?;", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: Optional[str]) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO setting (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value;
                """,
                (key, value),
            )
            self.conn.commit()

    # ------------------------------------------------------------------
    # Clean shutdown
    # ------------------------------------------------------------------
    def close(self) -> None:
        with self.lock:
            self.conn.close()
