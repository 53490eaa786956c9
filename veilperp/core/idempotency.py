"""At-most-once hand-off of finalization records.

Stream delivery is at-least-once: a relay restart or an unacked read can
deliver the same record again. Each record is claimed under a key built from
its computation offset and event id before it reaches a waiter; only the
first claim wins.
"""

from __future__ import annotations

import time
from typing import Callable, Protocol

from .models import EventEnvelope


def finalization_record_key(env: EventEnvelope) -> str:
    return f"{env.payload.get('offset')}:{env.event_id}"


class IdempotencyStore(Protocol):
    def claim(self, record_key: str, *, ttl_seconds: int) -> bool:
        """True for the first delivery of `record_key` within the TTL, False afterwards."""
        ...


class InMemoryIdempotencyStore:
    """Per-process claims, enough when one consumer owns the stream."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._expiry: dict[str, float] = {}
        self._clock = clock

    def claim(self, record_key: str, *, ttl_seconds: int) -> bool:
        now = self._clock()
        for k in [k for k, exp in self._expiry.items() if exp <= now]:
            del self._expiry[k]
        if record_key in self._expiry:
            return False
        self._expiry[record_key] = now + ttl_seconds
        return True


class RedisIdempotencyStore:
    """Claims shared by every consumer of the group, via `SET NX EX`."""

    def __init__(self, redis_client, *, key_prefix: str = "veilperp:finalized"):
        self._client = redis_client
        self._prefix = key_prefix.rstrip(":")

    def claim(self, record_key: str, *, ttl_seconds: int) -> bool:
        return bool(self._client.set(f"{self._prefix}:{record_key}", "1", ex=ttl_seconds, nx=True))
