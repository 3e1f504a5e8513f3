#!/usr/bin/env python3
"""stream_controller.py
Connection lifecycle and measurement stream for one CamperGas sensor, using
bleak.

The controller owns the BLE link:

    DISCONNECTED → SCANNING → CONNECTING → SUBSCRIBING → STREAMING → DISCONNECTING
                                                ↘           ↙
                                               RECONNECTING

Notifications are decoded as they arrive and fanned out to any number of
subscribers. A subscriber that falls behind loses its oldest buffered values;
the notification callback never waits on a consumer.

Only the link lives here. What happens to a measurement afterwards (alerts,
storage, display) belongs to whoever subscribes.
"""
import asyncio
import contextlib
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Set,
)

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from app_logger import logger
from errors import ConnectionLost, SensorConnectionError
from frame_decoder import FrameDecoder, now_ms, split_batch, to_hex_string
from measurement_repository import MeasurementRepository
from models import Measurement, MeasurementKind, RawFrame

# ----------------------------------------------------------------------
# GATT layout of the sensor
# ----------------------------------------------------------------------
SENSOR_SERVICE_UUID = "91bad492-b950-4226-aa2b-4ede9fa42f59"
WEIGHT_CHAR_UUID = "cba1d466-344c-4be3-ab3f-189f80dd7518"
INCLINATION_CHAR_UUID = "fedcba09-8765-4321-fedc-ba0987654321"
OFFLINE_CHAR_UUID = "87654321-4321-4321-4321-cba987654321"

NOTIFY_CHARACTERISTICS = (WEIGHT_CHAR_UUID, INCLINATION_CHAR_UUID)

# ----------------------------------------------------------------------
# Timing / retry budget
# ----------------------------------------------------------------------
CONNECT_TIMEOUT_S = 10.0
CONNECT_ATTEMPTS = 3
CONNECT_BACKOFF_S = 1.0
RECONNECT_ATTEMPTS = 5
RECONNECT_BACKOFF_S = 2.0
DEFAULT_QUEUE_SIZE = 64


class LinkState(Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    DISCONNECTING = "disconnecting"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class SensorDevice:
    address: str
    name: Optional[str]
    rssi: Optional[int]


async def scan_for_sensors(timeout: float = 5.0) -> List[SensorDevice]:
    """Nearby devices advertising the CamperGas sensor service, strongest first."""
    found = await BleakScanner.discover(
        timeout=timeout, service_uuids=[SENSOR_SERVICE_UUID], return_adv=True
    )
    devices = [
        SensorDevice(device.address, device.name, adv.rssi)
        for device, adv in found.values()
    ]
    devices.sort(key=lambda d: d.rssi if d.rssi is not None else -999, reverse=True)
    logger.info("scan found %d sensor(s)", len(devices))
    return devices


# ----------------------------------------------------------------------
# Broadcast channel
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class _EndOfStream:
    error: Optional[BaseException] = None


class Subscription:
    """
    One consumer's view of the measurement stream.

    Iterate it with ``async for``. Iteration ends when the controller is
    disconnected on purpose and raises :class:`ConnectionLost` when the link
    could not be recovered.
    """

    def __init__(self, kinds: Optional[Set[MeasurementKind]] = None,
                 maxsize: int = DEFAULT_QUEUE_SIZE):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.kinds = kinds
        self.queue: asyncio.Queue = asyncio.Queue(maxsize)
        self.dropped = 0
        self.closed = False

    def accepts(self, measurement: Measurement) -> bool:
        return self.kinds is None or measurement.kind in self.kinds

    def offer(self, item: Any) -> None:
        if self.queue.full():
            self.queue.get_nowait()          # lagging consumer: drop the oldest
            self.dropped += 1
        self.queue.put_nowait(item)

    def close(self, error: Optional[BaseException] = None) -> None:
        if not self.closed:
            self.closed = True
            self.offer(_EndOfStream(error))

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Measurement:
        item = await self.queue.get()
        if isinstance(item, _EndOfStream):
            self.queue.put_nowait(item)      # stay terminated on re-iteration
            if item.error is not None:
                raise item.error
            raise StopAsyncIteration
        return item


# ----------------------------------------------------------------------
# Controller
# ----------------------------------------------------------------------
class MeasurementStreamController:
    """
    Parameters
    ----------
    repo : MeasurementRepository, optional
        Source of the active cylinder for fuel decoding and sink for the
        "last connected device" setting.
    client_factory : callable, optional
        ``client_factory(device, disconnected_callback=...)`` returning a
        bleak‑compatible client. Defaults to :class:`bleak.BleakClient`.
    device_finder : coroutine function, optional
        ``await device_finder(address, timeout=...)`` returning a device or
        ``None``. Defaults to ``BleakScanner.find_device_by_address``.
    """

    def __init__(
        self,
        repo: Optional[MeasurementRepository] = None,
        decoder: Optional[FrameDecoder] = None,
        client_factory: Callable[..., Any] = BleakClient,
        device_finder: Callable[..., Any] = BleakScanner.find_device_by_address,
        connect_timeout: float = CONNECT_TIMEOUT_S,
        connect_attempts: int = CONNECT_ATTEMPTS,
        connect_backoff_s: float = CONNECT_BACKOFF_S,
        reconnect_attempts: int = RECONNECT_ATTEMPTS,
        reconnect_backoff_s: float = RECONNECT_BACKOFF_S,
        notify_characteristics: Iterable[str] = NOTIFY_CHARACTERISTICS,
    ):
        self.repo = repo
        self.decoder = decoder or FrameDecoder()
        self.client_factory = client_factory
        self.device_finder = device_finder
        self.connect_timeout = connect_timeout
        self.connect_attempts = max(1, connect_attempts)
        self.connect_backoff_s = connect_backoff_s
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_backoff_s = reconnect_backoff_s
        self.notify_characteristics = tuple(notify_characteristics)

        self.state = LinkState.DISCONNECTED
        self.address: Optional[str] = None
        self.client: Any = None
        self.last_error: Optional[BaseException] = None
        self.latest: Dict[MeasurementKind, Measurement] = {}

        self.on_state_change: Optional[Callable[[LinkState], None]] = None
        self.on_connection_lost: Optional[Callable[[ConnectionLost], None]] = None

        self._subscribers: List[Subscription] = []
        self._reconnect_task: Optional[asyncio.Task] = None
        self._user_disconnect = False
        self._address_saved = False
        self._generation = 0             # bumped by every connect() and disconnect()

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------
    def _set_state(self, state: LinkState) -> None:
        if state is self.state:
            return
        logger.info("link %s: %s → %s", self.address, self.state.value, state.value)
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    # ------------------------------------------------------------------
    # 1. Connect
    # ------------------------------------------------------------------
    async def connect(self, address: str) -> None:
        """
        Connect to ``address`` and start streaming.

        Raises
        ------
        SensorConnectionError
            The device could not be reached within the retry budget. The
            controller is left DISCONNECTED and holds no client.
        """
        if self.state is not LinkState.DISCONNECTED:
            raise SensorConnectionError(address, f"controller is {self.state.value}")

        self.address = address
        self.last_error = None
        self._user_disconnect = False
        self._address_saved = False
        self._generation += 1
        generation = self._generation

        for attempt in range(1, self.connect_attempts + 1):
            try:
                await self._establish(address, generation)
                return
            except asyncio.CancelledError:
                self._set_state(LinkState.DISCONNECTED)
                raise
            except PermissionError as exc:
                self._set_state(LinkState.DISCONNECTED)
                raise SensorConnectionError(address, f"permission denied: {exc}", attempt) from exc
            except (SensorConnectionError, BleakError, asyncio.TimeoutError, OSError) as exc:
                if generation != self._generation:
                    raise
                self._set_state(LinkState.DISCONNECTED)
                self.last_error = exc
                logger.warning("connect attempt %d/%d to %s failed: %s",
                               attempt, self.connect_attempts, address, str(exc) or type(exc).__name__)
                if attempt < self.connect_attempts:
                    await asyncio.sleep(self.connect_backoff_s * attempt)

        reason = "device not found" if isinstance(self.last_error, SensorConnectionError) \
            else f"{type(self.last_error).__name__}: {self.last_error}"
        raise SensorConnectionError(address, reason, self.connect_attempts) from self.last_error

    async def _establish(self, address: str, generation: int, reconnecting: bool = False) -> None:
        self._check_wanted(address, generation)
        if not reconnecting:
            self._set_state(LinkState.SCANNING)
        device = await self.device_finder(address, timeout=self.connect_timeout)
        self._check_wanted(address, generation)
        if device is None:
            raise SensorConnectionError(address, "device not found")

        if not reconnecting:
            self._set_state(LinkState.CONNECTING)
        client = self.client_factory(device, disconnected_callback=self._on_link_lost)
        try:
            await asyncio.wait_for(client.connect(), self.connect_timeout)
            self._check_wanted(address, generation)
            if not reconnecting:
                self._set_state(LinkState.SUBSCRIBING)
            for char_uuid in self.notify_characteristics:
                await client.start_notify(char_uuid, self._on_notify)
                self._check_wanted(address, generation)
        except BaseException:
            await self._release(client)
            raise

        self.client = client
        self._set_state(LinkState.STREAMING)
        self._remember_device(address)

    def _check_wanted(self, address: str, generation: int) -> None:
        """Abort a connect or reconnect that a later disconnect() or connect() overtook."""
        if generation != self._generation:
            raise SensorConnectionError(address, "disconnect requested while connecting")

    def _remember_device(self, address: str) -> None:
        if self._address_saved or self.repo is None:
            return
        self._address_saved = True
        try:
            self.repo.settings.set_last_connected_device(address)
        except sqlite3.Error:
            logger.exception("could not store %s as last connected device", address)

    # ------------------------------------------------------------------
    # 2. Notifications
    # ------------------------------------------------------------------
    def _decode(self, payload: bytes, received_at_ms: int) -> Optional[Measurement]:
        if self.repo is None:
            return self.decoder.try_decode(RawFrame(payload, received_at_ms))
        active = self.repo.get_active_cylinder()
        return self.decoder.try_decode(
            RawFrame(payload, received_at_ms),
            cylinder=active,
            active_cylinder_id=active.cylinder_id if active else None,
            cylinder_lookup=self.repo.get_cylinder,
        )

    def _on_notify(self, sender: Any, data: bytearray) -> None:
        """Notification callback handed to ``start_notify``."""
        received_at_ms = now_ms()
        if self.state is not LinkState.STREAMING:
            logger.debug("dropping frame received while %s", self.state.value)
            return
        payload = bytes(data)
        logger.debug("frame from %s: %s", getattr(sender, "uuid", sender), to_hex_string(payload))
        measurement = self._decode(payload, received_at_ms)
        if measurement is not None:
            self._publish(measurement)

    def _publish(self, measurement: Measurement) -> None:
        self.latest[measurement.kind] = measurement
        for sub in list(self._subscribers):
            if sub.accepts(measurement):
                sub.offer(measurement)

    # ------------------------------------------------------------------
    # 3. Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, kinds: Optional[Iterable[MeasurementKind]] = None,
                  maxsize: int = DEFAULT_QUEUE_SIZE) -> Subscription:
        sub = Subscription(set(kinds) if kinds is not None else None, maxsize)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(sub)

    async def stream_of(self, kind: MeasurementKind,
                        maxsize: int = DEFAULT_QUEUE_SIZE) -> AsyncIterator[Measurement]:
        """
        Measurements of one kind, for as long as the connection lasts.

        Each call is an independent consumer. Breaking out of the loop only
        detaches this consumer; the link stays up.
        """
        sub = self.subscribe({kind}, maxsize)
        try:
            async for measurement in sub:
                yield measurement
        finally:
            self.unsubscribe(sub)

    def _close_subscribers(self, error: Optional[BaseException]) -> None:
        subs, self._subscribers = self._subscribers, []
        for sub in subs:
            sub.close(error)

    # ------------------------------------------------------------------
    # 4. Link loss and bounded reconnection
    # ------------------------------------------------------------------
    def _on_link_lost(self, client: Any) -> None:
        """``disconnected_callback`` for the bleak client."""
        if self._user_disconnect or client is not self.client:
            return
        if self.state not in (LinkState.STREAMING, LinkState.SUBSCRIBING):
            return
        logger.warning("link to %s lost", self.address)
        self.client = None
        self._set_state(LinkState.RECONNECTING)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect(self._generation))

    async def _reconnect(self, generation: int) -> None:
        for attempt in range(1, self.reconnect_attempts + 1):
            await asyncio.sleep(self.reconnect_backoff_s)
            if generation != self._generation:
                return
            try:
                await self._establish(self.address, generation, reconnecting=True)
                logger.info("reconnected to %s after %d attempt(s)", self.address, attempt)
                return
            except (SensorConnectionError, BleakError, asyncio.TimeoutError, OSError) as exc:
                if generation != self._generation:
                    return
                self.last_error = exc
                logger.warning("reconnect attempt %d/%d to %s failed: %s",
                               attempt, self.reconnect_attempts, self.address,
                               str(exc) or type(exc).__name__)

        error = ConnectionLost(self.address, self.reconnect_attempts)
        self.last_error = error
        logger.error("%s", error)
        self._set_state(LinkState.DISCONNECTED)
        self._close_subscribers(error)
        if self.on_connection_lost:
            self.on_connection_lost(error)

    # ------------------------------------------------------------------
    # 5. On‑demand reads
    # ------------------------------------------------------------------
    def _require_client(self) -> Any:
        if self.state is not LinkState.STREAMING or self.client is None:
            raise SensorConnectionError(self.address or "?", f"not streaming ({self.state.value})")
        return self.client

    async def _read_char(self, char_uuid: str) -> bytes:
        client = self._require_client()
        try:
            return bytes(await client.read_gatt_char(char_uuid))
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            raise SensorConnectionError(self.address, f"read of {char_uuid} failed: {exc}") from exc

    async def read_now(self, kind: MeasurementKind) -> Optional[Measurement]:
        """Read the weight or inclination characteristic and publish the value."""
        char_uuid = INCLINATION_CHAR_UUID if kind is MeasurementKind.INCLINATION else WEIGHT_CHAR_UUID
        data = await self._read_char(char_uuid)
        measurement = self._decode(data, now_ms())
        if measurement is not None:
            self._publish(measurement)
        return measurement

    async def read_backlog_batch(self) -> List[Measurement]:
        """
        Read one batch of buffered readings from the offline characteristic.

        An empty list means the sensor has nothing left. Individual bad frames
        are skipped; a batch whose length is not a whole number of frames
        raises :class:`MalformedFrame`. A lost link raises
        :class:`SensorConnectionError`.
        """
        data = await self._read_char(OFFLINE_CHAR_UUID)
        received_at_ms = now_ms()
        measurements = []
        for payload in split_batch(data):
            measurement = self._decode(payload, received_at_ms)
            if measurement is not None:
                measurements.append(measurement)
        return measurements

    # ------------------------------------------------------------------
    # 6. Disconnect
    # ------------------------------------------------------------------
    @staticmethod
    async def _release(client: Any) -> None:
        try:
            await client.disconnect()
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("error while releasing BLE client: %s", exc)

    async def disconnect(self) -> None:
        """Tear the link down. Safe to call in any state, any number of times."""
        self._user_disconnect = True
        self._generation += 1
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        client, self.client = self.client, None
        if client is not None:
            self._set_state(LinkState.DISCONNECTING)
            await self._release(client)
        self._set_state(LinkState.DISCONNECTED)
        self._close_subscribers(None)
