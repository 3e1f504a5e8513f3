# errors.py
"""
Failure taxonomy of the sensor core.

Decode errors are absorbed where frames are handled; connection and
persistence errors travel up to whoever owns the session.
"""


class CamperGasError(Exception):
    """Base class for every error raised by the sensor core."""


class MalformedFrame(CamperGasError):
    """A notification payload that does not match the v1 frame layout."""

    def __init__(self, reason: str, payload: bytes = b""):
        super().__init__(reason)
        self.reason = reason
        self.payload = bytes(payload)


class SensorConnectionError(CamperGasError):
    """Connecting failed (timeout, device not found, permission denied)."""

    def __init__(self, address: str, reason: str, attempts: int = 1):
        super().__init__(f"{address}: {reason} (after {attempts} attempt(s))")
        self.address = address
        self.reason = reason
        self.attempts = attempts


class ConnectionLost(CamperGasError):
    """The link dropped mid-stream and automatic reconnection gave up."""

    def __init__(self, address: str, attempts: int):
        super().__init__(
            f"lost connection to {address}; {attempts} reconnect attempt(s) failed"
        )
        self.address = address
        self.attempts = attempts


class PersistenceError(CamperGasError):
    """Writing a reading to the historical store failed."""


class ConfigurationUnavailable(CamperGasError):
    """Cylinder capacity or alert threshold is not configured."""
