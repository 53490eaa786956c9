"""Finalization records delivered over the redis stream.

`StreamFinalizationSource` is the production `FinalizationSource`: the MPC
network's callback relay publishes one envelope per finalized computation to
the finalization stream, and waiters pick out the record for their offset.
Records for offsets nobody is waiting on yet are parked, since several
sessions' waiters share one consumer.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import OrderedDict
from typing import Callable, Optional

from veilperp.contracts.streams import FINALIZATION_STREAM_V1
from veilperp.core.idempotency import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
    finalization_record_key,
)
from veilperp.core.message_bus import RedisStreamBus
from veilperp.core.models import EventEnvelope


logger = logging.getLogger(__name__)


class StreamFinalizationSource:
    def __init__(
        self,
        bus: RedisStreamBus,
        *,
        stream: str = FINALIZATION_STREAM_V1,
        group: str = "veilperp",
        consumer: str | None = None,
        idempotency: IdempotencyStore | None = None,
        dedupe_ttl_seconds: int = 24 * 3600,
        poll_block_ms: int = 500,
        max_parked: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._stream = stream
        self._group = group
        self._consumer = consumer or f"veilperp-{uuid.uuid4().hex[:8]}"
        self._idem = idempotency if idempotency is not None else InMemoryIdempotencyStore()
        self._dedupe_ttl = dedupe_ttl_seconds
        self._poll_block_ms = poll_block_ms
        self._max_parked = max_parked
        self._clock = clock
        self._lock = threading.Lock()
        self._parked: "OrderedDict[int, EventEnvelope]" = OrderedDict()

    @classmethod
    def from_redis(
        cls,
        redis_url: str,
        *,
        stream: str = FINALIZATION_STREAM_V1,
        group: str = "veilperp",
        client=None,
        **kwargs,
    ) -> "StreamFinalizationSource":
        """Stream consumer whose duplicate claims are shared through the same redis."""
        bus = RedisStreamBus(redis_url, client=client)
        bus.ensure_group(stream, group)
        idempotency = RedisIdempotencyStore(bus.client, key_prefix=f"{stream}:{group}:claimed")
        return cls(bus, stream=stream, group=group, idempotency=idempotency, **kwargs)

    def _take(self, offset: int) -> Optional[EventEnvelope]:
        with self._lock:
            return self._parked.pop(offset, None)

    def _park(self, env: EventEnvelope) -> None:
        offset = int(env.payload["offset"])
        with self._lock:
            self._parked[offset] = env
            while len(self._parked) > self._max_parked:
                dropped, _ = self._parked.popitem(last=False)
                logger.warning("finalization_record_dropped", extra={"offset": dropped})

    def _pump(self, block_ms: int) -> None:
        batch = self._bus.poll(
            stream=self._stream, group=self._group, consumer=self._consumer, block_ms=block_ms
        )
        for msg in batch:
            env = msg.envelope
            if self._idem.claim(finalization_record_key(env), ttl_seconds=self._dedupe_ttl):
                self._park(env)
            else:
                logger.info(
                    "finalization_record_duplicate",
                    extra={"event_id": env.event_id, "offset": env.payload.get("offset")},
                )
            self._bus.ack(stream=self._stream, group=self._group, message_id=msg.message_id)

    def await_finalization(
        self,
        offset: int,
        *,
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[EventEnvelope]:
        deadline = self._clock() + timeout
        while True:
            env = self._take(offset)
            if env is not None:
                return env
            if cancel is not None and cancel.is_set():
                return None
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            self._pump(max(1, min(self._poll_block_ms, int(remaining * 1000))))
