"""
Identifier and ordering-key generation.
"""

import re
import secrets
import threading
import time
from typing import Callable

CHANNEL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    """Encode a non-negative integer in base 36."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_channel_name(now: Callable[[], float] = time.time) -> str:
    """Voice channel names look like ``ventbox_<base36 ms>_<12 hex chars>``."""
    timestamp = to_base36(int(now() * 1000))
    return f"ventbox_{timestamp}_{secrets.token_hex(6)}"


def generate_room_id(now: Callable[[], float] = time.time) -> str:
    return f"room_{int(now() * 1000)}_{secrets.token_hex(5)[:9]}"


def is_valid_channel_name(channel_name) -> bool:
    """Check the channel name against the RTC provider's naming rules."""
    if not channel_name or not isinstance(channel_name, str):
        return False
    return bool(CHANNEL_NAME_PATTERN.match(channel_name))


class MonotonicMillis:
    """
    Millisecond ordering key that strictly increases per process.

    Wall-clock milliseconds are used when they move forward; otherwise the
    previous value plus one is issued, so two entries created within the same
    millisecond (or across a clock step backwards) still order deterministically.
    """

    def __init__(self, now: Callable[[], float] = time.time):
        self._now = now
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            candidate = int(self._now() * 1000)
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return candidate
