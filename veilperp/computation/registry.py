"""Session-local registry of computations awaiting finalization.

This is the only shared mutable state of the client layer. Offsets move
through two stages: *reserved* (allocated by the request builder, not yet
submitted) and *pending* (submitted, awaiting finalization). Uniqueness is
checked against both, so two requests built concurrently can never share an
offset. Removal is idempotent and reports whether this call did the removal,
which lets timeout/cancel/finalize paths race without double counting.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable

from veilperp.core.ids import random_u64
from veilperp.core.models import ComputationKind, PendingComputation


class PendingComputationRegistry:
    def __init__(self, *, offset_source: Callable[[], int] = random_u64, max_draws: int = 64) -> None:
        self._lock = threading.Lock()
        self._reserved: set[int] = set()
        self._pending: dict[int, PendingComputation] = {}
        self._offset_source = offset_source
        self._max_draws = max_draws

    def allocate_offset(self) -> int:
        with self._lock:
            for _ in range(self._max_draws):
                candidate = self._offset_source()
                if candidate not in self._reserved and candidate not in self._pending:
                    self._reserved.add(candidate)
                    return candidate
        raise RuntimeError("could not allocate a unique computation offset")

    def release(self, offset: int) -> bool:
        """Drop a reservation that was never submitted."""
        with self._lock:
            if offset in self._reserved:
                self._reserved.discard(offset)
                return True
            return False

    def register(
        self,
        offset: int,
        *,
        kind: ComputationKind,
        position_id: int,
        signature: str = "",
        submitted_at: datetime | None = None,
    ) -> PendingComputation:
        with self._lock:
            if offset in self._pending:
                raise ValueError(f"offset {offset} is already pending")
            if offset not in self._reserved:
                raise ValueError(f"offset {offset} was not allocated by this session")
            self._reserved.discard(offset)
            entry = PendingComputation(
                offset=offset,
                kind=kind,
                position_id=position_id,
                submitted_at=submitted_at or datetime.now(timezone.utc),
                signature=signature,
            )
            self._pending[offset] = entry
            return entry

    def get(self, offset: int) -> PendingComputation | None:
        with self._lock:
            return self._pending.get(offset)

    def remove(self, offset: int) -> bool:
        with self._lock:
            return self._pending.pop(offset, None) is not None

    def pending(self) -> list[PendingComputation]:
        with self._lock:
            return list(self._pending.values())

    def is_in_use(self, offset: int) -> bool:
        with self._lock:
            return offset in self._pending or offset in self._reserved

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
