#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""main.py
Command line front end for the CamperGas sensor core.

    python main.py --scan
    python main.py --address AA:BB:CC:DD:EE:FF --threshold 20
    python main.py --stats 1
    python main.py --purge-days 30

Without ``--address`` the last connected sensor is used.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from alert_state import AlertDecision
from app_logger import logger, memory_handler
from consumption_stats import compute_stats, purge_older_than
from controller import MeasurementSession
from errors import CamperGasError
from measurement_db import MeasurementDB
from measurement_repository import MeasurementRepository
from stream_controller import MeasurementStreamController, scan_for_sensors

# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------
DB_FILE = Path("campergas.db")    # SQLite file location
SCAN_TIMEOUT_S = 5.0


def print_alert(decision: AlertDecision) -> None:
    """Notifier used on the terminal: print the alert and keep it in the log."""
    print(f"\a⚠  {decision.message}")
    logger.info("notification shown: %s", decision.message)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Monitor a CamperGas cylinder sensor over BLE.")
    parser.add_argument("--scan", action="store_true", help="list nearby sensors and exit")
    parser.add_argument("--address", help="BLE address of the sensor (default: last connected)")
    parser.add_argument("--db", type=Path, default=DB_FILE, help="SQLite database file")
    parser.add_argument("--threshold", type=float, help="low‑fuel alert threshold in percent")
    parser.add_argument("--disable-notifications", action="store_true",
                        help="turn low‑fuel alerts off (persisted)")
    parser.add_argument("--add-cylinder", nargs=3, metavar=("NAME", "TARE_KG", "CAPACITY_KG"),
                        help="register a cylinder and make it the active one")
    parser.add_argument("--activate", type=int, metavar="CYLINDER_ID",
                        help="make an existing cylinder the active one")
    parser.add_argument("--stats", type=int, metavar="CYLINDER_ID",
                        help="print consumption statistics for a cylinder and exit")
    parser.add_argument("--purge-days", type=int, metavar="N",
                        help="delete readings older than N days and exit")
    return parser


async def scan() -> int:
    sensors = await scan_for_sensors(SCAN_TIMEOUT_S)
    if not sensors:
        print("No CamperGas sensor found.")
        return 1
    for sensor in sensors:
        print(f"{sensor.address}  {sensor.name or '?':<20} RSSI {sensor.rssi}")
    return 0


async def monitor(repo: MeasurementRepository, address: str) -> int:
    controller = MeasurementStreamController(repo)
    async with MeasurementSession(controller, repo, notifier=print_alert) as session:
        await session.start(address)
        print(f"Connected to {address} – press Ctrl‑C to quit")
        await session.wait_closed()
        if session.connection_error is not None:
            print(f"Connection lost: {session.connection_error}")
            return 1
    return 0


def run(args: argparse.Namespace) -> int:
    if args.scan:
        return asyncio.run(scan())

    db = MeasurementDB(db_path=args.db)
    try:
        repo = MeasurementRepository(db)

        if args.threshold is not None:
            repo.settings.set_threshold(args.threshold)
        if args.disable_notifications:
            repo.settings.set_notifications_enabled(False)
        if args.add_cylinder:
            name, tare, capacity = args.add_cylinder
            cylinder = repo.add_cylinder(name, float(tare), float(capacity), make_active=True)
            print(f"Cylinder {cylinder.cylinder_id} ({name}) is now active.")
        if args.activate is not None:
            repo.set_active_cylinder(args.activate)

        if args.purge_days is not None:
            deleted = purge_older_than(db, args.purge_days)
            print(f"Removed {deleted} reading(s).")
            return 0
        if args.stats is not None:
            print(compute_stats(db, args.stats).summary())
            return 0

        address = args.address or repo.settings.get_last_connected_device()
        if not address:
            print("No sensor address given and none remembered – run with --scan first.")
            return 2
        return asyncio.run(monitor(repo, address))
    finally:
        db.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return run(args)
    except (CamperGasError, KeyError, ValueError) as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nProgram terminated by user.")
        for line in memory_handler.tail(5):
            print(line)
        return 130


# ----------------------------------------------------------------------
# Main entry point
# ----------------------------------------------------------------------
if __name__ == "__main__":
    sys.exit(main())
