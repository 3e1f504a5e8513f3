# app_logger.py
"""
A small wrapper around the standard library `logging` module.
Every module of the sensor core imports `logger` from here, so the BLE link,
the decoder, the alert machine and the persistence gate all write to the same
place.
"""

import logging
import os
from collections import deque
from typing import Deque, List

# ----------------------------------------------------------------------
# 1️⃣ Configure the dedicated logger once
# ----------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
LOG_FILE = os.environ.get("CAMPERGAS_LOG_FILE", "campergas.log")

logger = logging.getLogger("CamperGasLogger")
logger.setLevel(logging.DEBUG)         # handlers decide what they keep
logger.propagate = False

# ----------------------------------------------------------------------
# 2️⃣ In‑memory handler – the last N records, for whatever UI sits on top
# ----------------------------------------------------------------------
MAX_LOG_RECORDS = 200

class MemoryHandler(logging.Handler):
    """
    Keeps the newest N formatted log strings in a bounded deque.
    A front end can read `handler.buffer` at any time.
    """
    def __init__(self, capacity: int = MAX_LOG_RECORDS):
        super().__init__()
        self.capacity = capacity
        self.buffer: Deque[str] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        msg = self.format(record)
        self.buffer.append(msg)

    def tail(self, count: int = 20) -> List[str]:
        """Return the `count` most recent lines, oldest first."""
        if count <= 0:
            return []
        return list(self.buffer)[-count:]

formatter = logging.Formatter(LOG_FORMAT)

memory_handler = MemoryHandler()
memory_handler.setLevel(logging.INFO)     # DEBUG noise stays in the file
memory_handler.setFormatter(formatter)
logger.addHandler(memory_handler)

file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
file_handler.setLevel(logging.DEBUG)
file_handler.setFormatter(formatter)
logger.addHandler(file_handler)
