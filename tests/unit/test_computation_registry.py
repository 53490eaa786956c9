from __future__ import annotations

import threading

import pytest

from veilperp.computation.registry import PendingComputationRegistry
from veilperp.core.models import ComputationKind


def _source(values: list[int]):
    it = iter(values)
    return lambda: next(it)


def test_allocate_skips_offsets_in_use() -> None:
    reg = PendingComputationRegistry(offset_source=_source([5, 5, 6]))
    assert reg.allocate_offset() == 5
    assert reg.allocate_offset() == 6


def test_allocate_gives_up_after_max_draws() -> None:
    reg = PendingComputationRegistry(offset_source=lambda: 9, max_draws=4)
    reg.allocate_offset()
    with pytest.raises(RuntimeError):
        reg.allocate_offset()


def test_register_requires_reservation() -> None:
    reg = PendingComputationRegistry()
    with pytest.raises(ValueError):
        reg.register(99, kind=ComputationKind.OPEN, position_id=1)


def test_register_moves_reservation_to_pending() -> None:
    reg = PendingComputationRegistry(offset_source=_source([11]))
    offset = reg.allocate_offset()
    entry = reg.register(offset, kind=ComputationKind.CLOSE, position_id=3, signature="sig")

    assert entry.kind is ComputationKind.CLOSE
    assert reg.get(offset) == entry
    assert len(reg) == 1
    assert reg.release(offset) is False
    with pytest.raises(ValueError):
        reg.register(offset, kind=ComputationKind.CLOSE, position_id=3)


def test_remove_is_exactly_once() -> None:
    reg = PendingComputationRegistry(offset_source=_source([1]))
    offset = reg.allocate_offset()
    reg.register(offset, kind=ComputationKind.LIQUIDATE, position_id=1)

    assert reg.remove(offset) is True
    assert reg.remove(offset) is False
    assert reg.is_in_use(offset) is False


def test_release_frees_offset_for_reuse() -> None:
    reg = PendingComputationRegistry(offset_source=_source([4, 4]))
    offset = reg.allocate_offset()
    assert reg.release(offset) is True
    assert reg.allocate_offset() == 4


def test_concurrent_allocation_is_unique() -> None:
    reg = PendingComputationRegistry()
    got: list[int] = []
    lock = threading.Lock()

    def worker() -> None:
        mine = [reg.allocate_offset() for _ in range(200)]
        with lock:
            got.extend(mine)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(got) == len(set(got)) == 1600
