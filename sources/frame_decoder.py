"""frame_decoder.py

Decoder for the 12‑byte measurement frames sent by the CamperGas sensor.

Every characteristic (live weight, inclination, offline history) carries the
same versioned layout, little‑endian:

    offset  size  field
    0       1     type tag   (0x01 weight, 0x02 fuel, 0x03 inclination)
    1       1     layout version (0x01)
    2       4     weight / fuel : int32 total weight in grams
                  inclination   : int16 pitch + int16 roll, centidegrees
    6       4     uint32 seconds since the sensor took the reading
    10      2     uint16 cylinder id, 0 = not present

The sensor buffers readings while nobody is connected and replays them in
quick succession, so the measurement time is always rebuilt from the
``seconds ago`` field and never taken from the receipt time.

Typical usage
-------------
>>> frame = RawFrame(payload, received_at_ms=now_ms())
>>> measurement = FrameDecoder().decode(frame, cylinder=active)
"""

import struct
import time
from typing import Callable, List, Optional, Union

from app_logger import logger
from errors import ConfigurationUnavailable, MalformedFrame
from models import (
    FuelMeasurement,
    GasCylinder,
    InclinationMeasurement,
    Measurement,
    RawFrame,
    WeightMeasurement,
)

# ----------------------------------------------------------------------
# Wire contract
# ----------------------------------------------------------------------
FRAME_LEN = 12
LAYOUT_VERSION = 0x01

TAG_WEIGHT = 0x01
TAG_FUEL = 0x02
TAG_INCLINATION = 0x03
KNOWN_TAGS = (TAG_WEIGHT, TAG_FUEL, TAG_INCLINATION)

_SCALAR_FRAME = struct.Struct("<BBiIH")      # tag, version, grams, seconds ago, cylinder
_ANGLE_FRAME = struct.Struct("<BBhhIH")      # tag, version, pitch, roll, seconds ago, cylinder

MAX_WEIGHT_KG = 250.0
MAX_ANGLE_DEG = 180.0
MAX_BACKLOG_SECONDS = 90 * 24 * 3600         # sensor keeps at most ~90 days offline


def now_ms() -> int:
    """Current wall clock in Unix milliseconds."""
    return time.time_ns() // 1_000_000


def to_hex_string(byte_array: Union[bytes, bytearray]) -> str:
    """
    Convert a sequence of bytes to a colon‑separated hex string.

    >>> to_hex_string(b"\\x01\\xab")
    '01:ab'
    """
    return ":".join(f"{c:02x}" for c in byte_array)


def historical_timestamp(received_at_ms: int, seconds_ago: int) -> int:
    """Point in time the sensor took the reading, in Unix milliseconds."""
    return received_at_ms - seconds_ago * 1000


def split_batch(payload: bytes) -> List[bytes]:
    """
    Cut an offline‑history read into individual frames.

    An empty payload means the sensor has nothing left to send.
    """
    if len(payload) % FRAME_LEN:
        raise MalformedFrame(
            f"batch length {len(payload)} is not a multiple of {FRAME_LEN}", payload
        )
    return [bytes(payload[i:i + FRAME_LEN]) for i in range(0, len(payload), FRAME_LEN)]


class FrameDecoder:
    """
    Stateless frame decoder.

    Parameters
    ----------
    max_backlog_seconds : int, optional
        Largest accepted ``seconds ago`` value. Anything older is treated as
        a corrupted frame rather than a genuine reading.
    """

    def __init__(self, max_backlog_seconds: int = MAX_BACKLOG_SECONDS):
        self.max_backlog_seconds = max_backlog_seconds

    # ------------------------------------------------------------------
    # 1. Header checks
    # ------------------------------------------------------------------
    @staticmethod
    def _check_header(payload: bytes) -> int:
        if len(payload) != FRAME_LEN:
            raise MalformedFrame(
                f"frame length mismatch: expected {FRAME_LEN}, got {len(payload)}", payload
            )
        tag, version = payload[0], payload[1]
        if tag not in KNOWN_TAGS:
            raise MalformedFrame(f"unknown type tag 0x{tag:02x}", payload)
        if version != LAYOUT_VERSION:
            raise MalformedFrame(f"unsupported layout version {version}", payload)
        return tag

    def _timestamp(self, frame: RawFrame, seconds_ago: int) -> int:
        if seconds_ago > self.max_backlog_seconds:
            raise MalformedFrame(
                f"seconds ago {seconds_ago} exceeds backlog bound {self.max_backlog_seconds}",
                frame.payload,
            )
        timestamp_ms = historical_timestamp(frame.received_at_ms, seconds_ago)
        if timestamp_ms < 0:
            raise MalformedFrame("reading predates the epoch", frame.payload)
        return timestamp_ms

    # ------------------------------------------------------------------
    # 2. Decode one frame
    # ------------------------------------------------------------------
    def decode(
        self,
        frame: RawFrame,
        cylinder: Optional[GasCylinder] = None,
        active_cylinder_id: Optional[int] = None,
        cylinder_lookup: Optional[Callable[[int], Optional[GasCylinder]]] = None,
    ) -> Measurement:
        """
        Decode one frame into a measurement.

        Parameters
        ----------
        frame : RawFrame
            Payload plus the wall‑clock time it arrived.
        cylinder : GasCylinder, optional
            Configuration used to turn a fuel frame's weight into a level and
            a percentage. Without it the percentage is unavailable.
        active_cylinder_id : int, optional
            Cylinder to attribute the reading to when the frame carries none.
        cylinder_lookup : callable, optional
            Resolves a cylinder id carried in the frame itself. When the frame
            names a cylinder, its configuration replaces ``cylinder``.

        Raises
        ------
        MalformedFrame
            Wrong length, unknown tag, unknown version or an out‑of‑range field.
        """
        payload = bytes(frame.payload)
        tag = self._check_header(payload)

        if tag == TAG_INCLINATION:
            _, _, pitch_raw, roll_raw, seconds_ago, _ = _ANGLE_FRAME.unpack(payload)
            pitch, roll = pitch_raw / 100.0, roll_raw / 100.0
            if abs(pitch) > MAX_ANGLE_DEG or abs(roll) > MAX_ANGLE_DEG:
                raise MalformedFrame(f"angle out of range: pitch={pitch} roll={roll}", payload)
            return InclinationMeasurement(
                pitch_deg=pitch,
                roll_deg=roll,
                timestamp_ms=self._timestamp(frame, seconds_ago),
            )

        _, _, grams, seconds_ago, frame_cylinder = _SCALAR_FRAME.unpack(payload)
        weight_kg = grams / 1000.0
        if not 0.0 <= weight_kg <= MAX_WEIGHT_KG:
            raise MalformedFrame(f"weight out of range: {weight_kg} kg", payload)
        timestamp_ms = self._timestamp(frame, seconds_ago)
        is_historical = seconds_ago > 0

        if tag == TAG_WEIGHT:
            return WeightMeasurement(
                value_kg=weight_kg, timestamp_ms=timestamp_ms, is_historical=is_historical
            )

        if frame_cylinder and cylinder_lookup is not None:
            cylinder = cylinder_lookup(frame_cylinder)
        cylinder_id = frame_cylinder or active_cylinder_id
        if cylinder is not None and cylinder_id is None:
            cylinder_id = cylinder.cylinder_id
        return self._fuel(weight_kg, timestamp_ms, cylinder, cylinder_id, is_historical)

    @staticmethod
    def _fuel(
        weight_kg: float,
        timestamp_ms: int,
        cylinder: Optional[GasCylinder],
        cylinder_id: Optional[int],
        is_historical: bool,
    ) -> FuelMeasurement:
        percent = None
        if cylinder is None:
            # tare unknown: report the raw weight, never a guessed percentage
            level_kg = weight_kg
            logger.debug("no cylinder configuration; fuel percentage unavailable")
        else:
            level_kg = cylinder.fuel_level_kg(weight_kg)
            try:
                percent = cylinder.fuel_percentage(level_kg)
            except ConfigurationUnavailable as exc:
                logger.warning("fuel percentage unavailable: %s", exc)
        return FuelMeasurement(
            level_kg=level_kg,
            level_percent=percent,
            cylinder_id=cylinder_id,
            timestamp_ms=timestamp_ms,
            total_weight_kg=weight_kg,
            is_historical=is_historical,
        )

    # ------------------------------------------------------------------
    # 3. Lenient variant used on the streaming path
    # ------------------------------------------------------------------
    def try_decode(
        self,
        frame: RawFrame,
        cylinder: Optional[GasCylinder] = None,
        active_cylinder_id: Optional[int] = None,
        cylinder_lookup: Optional[Callable[[int], Optional[GasCylinder]]] = None,
    ) -> Optional[Measurement]:
        """Like :meth:`decode` but logs and returns ``None`` on a bad frame."""
        try:
            return self.decode(frame, cylinder, active_cylinder_id, cylinder_lookup)
        except MalformedFrame as exc:
            logger.warning(
                "skipping malformed frame [%s]: %s", to_hex_string(exc.payload), exc.reason
            )
            return None


def encode_frame(
    tag: int,
    seconds_ago: int = 0,
    weight_kg: float = 0.0,
    pitch_deg: float = 0.0,
    roll_deg: float = 0.0,
    cylinder_id: int = 0,
    version: int = LAYOUT_VERSION,
) -> bytes:
    """Build a v1 frame, the inverse of :meth:`FrameDecoder.decode`."""
    if tag == TAG_INCLINATION:
        return _ANGLE_FRAME.pack(
            tag, version, round(pitch_deg * 100), round(roll_deg * 100), seconds_ago, cylinder_id
        )
    return _SCALAR_FRAME.pack(tag, version, round(weight_kg * 1000), seconds_ago, cylinder_id)
