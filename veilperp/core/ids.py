from __future__ import annotations

import secrets
import threading
import time
import uuid
from typing import Callable


def new_event_id() -> str:
    return str(uuid.uuid4())


def new_trace_id() -> str:
    return str(uuid.uuid4())


def random_u64() -> int:
    return secrets.randbits(64)


class PositionIdSequence:
    """Per-owner monotonically increasing position ids.

    Seeded from wall-clock milliseconds so ids stay unique across sessions,
    but never hands out the same id twice within one session even when the
    clock does not move between calls. Callers still check the ledger before
    use: this class cannot see ids issued by other sessions.
    """

    def __init__(self, *, clock_ms: Callable[[], int] | None = None) -> None:
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._lock = threading.Lock()
        self._last: dict[bytes, int] = {}

    def next_id(self, owner: bytes) -> int:
        with self._lock:
            candidate = max(self._clock_ms(), self._last.get(owner, 0) + 1)
            self._last[owner] = candidate
            return candidate
