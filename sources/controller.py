# controller.py
"""
Glues the stream controller to the alert machine and the historical store.

A session owns one connection. While it runs, two consumers read the
measurement stream independently:

* fuel readings → low‑fuel alert machine → notifier
* every reading → persistence gate → SQLite

Each time the link reaches STREAMING (first connect and every automatic
reconnect) the session also drains the sensor's offline history, so readings
buffered during an outage end up in the store.

Neither consumer can slow the other down, and neither can slow the BLE
callback down.
"""

import asyncio
from typing import Callable, List, Optional

from alert_state import AlertDecision, LowFuelAlertMachine
from app_logger import logger
from errors import (
    ConfigurationUnavailable,
    ConnectionLost,
    MalformedFrame,
    PersistenceError,
    SensorConnectionError,
)
from measurement_repository import MeasurementRepository
from models import FuelMeasurement, MeasurementKind
from persistence_gate import GateResult, PersistenceGate
from request_gate import ManualRequestGate
from stream_controller import LinkState, MeasurementStreamController, Subscription

MAX_BACKLOG_BATCHES = 100
SESSION_QUEUE_SIZE = 256             # backlog replays arrive in bursts


class MeasurementSession:
    def __init__(
        self,
        controller: MeasurementStreamController,
        repo: MeasurementRepository,
        notifier: Optional[Callable[[AlertDecision], None]] = None,
        alert_machine: Optional[LowFuelAlertMachine] = None,
        gate: Optional[PersistenceGate] = None,
        request_gate: Optional[ManualRequestGate] = None,
        queue_size: int = SESSION_QUEUE_SIZE,
        sync_on_connect: bool = True,
    ):
        self.controller = controller
        self.repo = repo
        self.notifier = notifier
        self.alert_machine = alert_machine or LowFuelAlertMachine()
        self.gate = gate or PersistenceGate(repo)
        self.request_gate = request_gate or ManualRequestGate()
        self.queue_size = queue_size
        self.sync_on_connect = sync_on_connect

        self.connection_error: Optional[ConnectionLost] = None
        self.persistence_errors = 0
        self._subs: List[Subscription] = []
        self._tasks: List[asyncio.Task] = []
        self._backlog_task: Optional[asyncio.Task] = None
        self._resync_pending = False
        self._chained_state_hook: Optional[Callable[[LinkState], None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, address: str) -> None:
        """
        Connect and start both consumers.

        Consumers subscribe before the link comes up so the first frames are
        not missed. A failed connect leaves nothing running.
        """
        fuel = self.controller.subscribe({MeasurementKind.FUEL}, self.queue_size)
        everything = self.controller.subscribe(None, self.queue_size)
        self._subs = [fuel, everything]
        self._chained_state_hook = self.controller.on_state_change
        self.controller.on_state_change = self._on_link_state
        try:
            await self.controller.connect(address)
        except BaseException:
            self._restore_state_hook()
            for sub in self._subs:
                self.controller.unsubscribe(sub)
            self._subs = []
            raise

        self._tasks = [
            asyncio.create_task(self._alert_loop(fuel), name="campergas-alerts"),
            asyncio.create_task(self._persist_loop(everything), name="campergas-store"),
        ]
        logger.info("session started on %s", address)

    async def wait_closed(self) -> None:
        """Block until both consumers have finished (disconnect or link lost)."""
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def cancel(self) -> None:
        """Stop the consumers and release the BLE link. Safe to call twice."""
        tasks, self._tasks = self._tasks, []
        if self._backlog_task is not None:
            tasks.append(self._backlog_task)
            self._backlog_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for sub in self._subs:
            self.controller.unsubscribe(sub)
        self._subs = []
        await self.controller.disconnect()
        self._restore_state_hook()

    async def __aenter__(self) -> "MeasurementSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()

    def _restore_state_hook(self) -> None:
        if self.controller.on_state_change == self._on_link_state:
            self.controller.on_state_change = self._chained_state_hook
        self._chained_state_hook = None

    def _on_link_state(self, state: LinkState) -> None:
        if self._chained_state_hook is not None:
            self._chained_state_hook(state)
        if state is LinkState.STREAMING and self.sync_on_connect:
            self._schedule_backlog_sync()

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------
    def _current_threshold(self) -> Optional[float]:
        try:
            return self.repo.settings.get_threshold()
        except ConfigurationUnavailable as exc:
            logger.debug("alerts paused: %s", exc)
            return None

    def handle_fuel(self, measurement: FuelMeasurement) -> AlertDecision:
        logger.debug("fuel %s", measurement.formatted())
        decision = self.alert_machine.update(
            measurement.level_percent,
            self._current_threshold(),
            self.repo.settings.notifications_enabled(),
        )
        if decision.fire and self.notifier is not None:
            self.notifier(decision)
        return decision

    async def _alert_loop(self, sub: Subscription) -> None:
        try:
            async for measurement in sub:
                self.handle_fuel(measurement)
        except ConnectionLost as exc:
            self.connection_error = exc
            logger.error("alert consumer stopped: %s", exc)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    async def _persist_loop(self, sub: Subscription) -> None:
        try:
            async for measurement in sub:
                try:
                    await self.gate.submit(measurement)
                except PersistenceError as exc:
                    self.persistence_errors += 1
                    logger.error("%s", exc)
        except ConnectionLost as exc:
            self.connection_error = exc
            logger.error("storage consumer stopped: %s", exc)

    def _schedule_backlog_sync(self) -> None:
        if self._backlog_task is not None and not self._backlog_task.done():
            # a pass is still running on the old link; run another one after it
            self._resync_pending = True
            return
        self._backlog_task = asyncio.get_running_loop().create_task(
            self._sync_in_background(), name="campergas-backlog"
        )

    async def _sync_in_background(self) -> None:
        while True:
            self._resync_pending = False
            try:
                await self.sync_backlog()
            except PersistenceError as exc:
                self.persistence_errors += 1
                logger.error("offline history sync aborted: %s", exc)
            if not self._resync_pending:
                return

    async def wait_backlog_synced(self) -> None:
        """Wait for the offline history pass started by the last (re)connect."""
        while self._backlog_task is not None and not self._backlog_task.done():
            await asyncio.shield(self._backlog_task)

    async def sync_backlog(self, max_batches: int = MAX_BACKLOG_BATCHES) -> int:
        """
        Pull the sensor's offline history and store it.

        Stops on an empty batch, on a batch that was entirely stored before,
        or after ``max_batches``. Returns the number of readings inserted.

        A link that drops mid-pass ends the pass quietly; the next reconnect
        starts a new one.
        """
        stored = 0
        for batch_no in range(1, max_batches + 1):
            try:
                batch = await self.controller.read_backlog_batch()
            except SensorConnectionError as exc:
                logger.info("offline history sync interrupted at batch %d: %s", batch_no, exc)
                break
            except MalformedFrame as exc:
                logger.warning("offline history batch %d unreadable: %s", batch_no, exc.reason)
                break
            if not batch:
                logger.info("offline history drained after %d batch(es)", batch_no - 1)
                break

            inserted = 0
            for measurement in batch:
                if await self.gate.submit(measurement) is GateResult.INSERTED:
                    inserted += 1
            stored += inserted
            if inserted == 0:
                logger.info("offline history batch %d already stored; stopping", batch_no)
                break
        else:
            logger.warning("offline history sync stopped after %d batches", max_batches)

        logger.info("offline history sync stored %d reading(s)", stored)
        return stored

    # ------------------------------------------------------------------
    # On‑demand reads
    # ------------------------------------------------------------------
    async def request_fresh_data(self, kind: MeasurementKind = MeasurementKind.FUEL) -> bool:
        """Ask the sensor for a fresh value, subject to the request cooldown."""
        return await self.request_gate.request(
            lambda: self.controller.read_now(kind), kind.value
        )
