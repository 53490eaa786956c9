from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

import nacl.public
import pytest

from veilperp.computation.builder import ComputationRequestBuilder
from veilperp.computation.registry import PendingComputationRegistry
from veilperp.computation.tracker import ComputationTracker
from veilperp.contracts import streams
from veilperp.contracts.layouts import decode_transaction, nonce_to_int
from veilperp.core.errors import (
    ComputationCancelled,
    ComputationRejected,
    ComputationTimeout,
    DecryptionError,
    LedgerError,
    ResultCorrelationError,
)
from veilperp.core.fixed_point import Price, UsdAmount, u64_from_signed
from veilperp.core.models import Address, CloseResult, EventEnvelope, ValueResult
from veilperp.crypto.context import EncryptionContextManager


PROGRAM = Address(b"\x01" * 32)
MPC = Address(b"\x02" * 32)
OWNER = Address(b"\x04" * 32)


class _KeySource:
    def __init__(self) -> None:
        self.key = bytes(nacl.public.PrivateKey.generate().public_key)

    def get_network_public_key(self) -> Optional[bytes]:
        return self.key


class _FakeLedger:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.submitted: list[bytes] = []

    def submit(self, transaction: bytes) -> str:
        if self.fail:
            raise LedgerError("blockhash expired")
        self.submitted.append(transaction)
        return f"sig-{len(self.submitted)}"

    def fetch(self, address: Address) -> Optional[bytes]:
        return None


class _FakeFinalizations:
    """Answers each await with whatever `respond(offset)` returns."""

    def __init__(self, respond: Callable[[int], Optional[EventEnvelope]]) -> None:
        self.respond = respond
        self.awaited: list[tuple[int, float]] = []

    def await_finalization(
        self, offset: int, *, timeout: float, cancel: Optional[threading.Event] = None
    ) -> Optional[EventEnvelope]:
        self.awaited.append((offset, timeout))
        return self.respond(offset)


def _envelope(schema: str, payload: dict) -> EventEnvelope:
    return EventEnvelope(
        event_id="evt-1",
        trace_id="trace-1",
        produced_at=datetime.now(timezone.utc),
        schema=schema,
        schema_version=1,
        payload=payload,
    )


@pytest.fixture
def contexts() -> EncryptionContextManager:
    mgr = EncryptionContextManager(_KeySource(), sleep=lambda _: None)
    mgr.initialize()
    return mgr


def _setup(
    contexts: EncryptionContextManager,
    respond,
    *,
    ledger: _FakeLedger | None = None,
    registry: PendingComputationRegistry | None = None,
):
    registry = registry if registry is not None else PendingComputationRegistry()
    ledger = ledger or _FakeLedger()
    builder = ComputationRequestBuilder(
        owner=OWNER, program_id=PROGRAM, ledger=ledger, mpc_program_id=MPC, registry=registry, contexts=contexts
    )
    finalizations = _FakeFinalizations(respond)
    tracker = ComputationTracker(
        ledger=ledger,
        finalizations=finalizations,
        registry=registry,
        contexts=contexts,
        default_timeout_seconds=5.0,
    )
    return builder, tracker, finalizations, registry, ledger


class _CountingRegistry(PendingComputationRegistry):
    """Counts the remove() calls that actually removed an entry."""

    def __init__(self) -> None:
        super().__init__()
        self._count_lock = threading.Lock()
        self.removals = 0

    def remove(self, offset: int) -> bool:
        removed = super().remove(offset)
        if removed:
            with self._count_lock:
                self.removals += 1
        return removed


def _closed_record(contexts: EncryptionContextManager, offset: int, *, pnl: int, balance: int, flag: int = 1, position_id: int = 9):
    cts, nonce = contexts.cipher().encrypt_many([u64_from_signed(pnl), balance, flag])
    return _envelope(
        streams.MPC_POSITION_CLOSED_V1,
        {
            "offset": offset,
            "position_id": position_id,
            "nonce": nonce_to_int(nonce),
            "realized_pnl_encrypted": cts[0].hex(),
            "final_balance_encrypted": cts[1].hex(),
            "can_close_encrypted": cts[2].hex(),
        },
    )


def test_close_result_is_decrypted(contexts: EncryptionContextManager) -> None:
    builder, tracker, finalizations, registry, ledger = _setup(
        contexts, lambda off: _closed_record(contexts, off, pnl=1_000_000_000, balance=1_500_000_000)
    )
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(6_000_000_000_000))

    signature, result = tracker.execute(req, builder.instruction(req))

    assert signature == "sig-1"
    assert result == CloseResult(
        realized_pnl=UsdAmount(1_000_000_000), final_balance=UsdAmount(1_500_000_000), can_close=True
    )
    assert decode_transaction(ledger.submitted[0]).name == "close_position"
    assert finalizations.awaited == [(req.offset, 5.0)]
    assert len(registry) == 0
    assert not registry.is_in_use(req.offset)


def test_negative_pnl_is_sign_extended(contexts: EncryptionContextManager) -> None:
    builder, tracker, *_ = _setup(contexts, lambda off: _closed_record(contexts, off, pnl=-250_000_000, balance=250_000_000))
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))

    _, result = tracker.execute(req, builder.instruction(req))
    assert result.realized_pnl == UsdAmount(-250_000_000)


def test_value_result_is_decrypted(contexts: EncryptionContextManager) -> None:
    def respond(off: int) -> EventEnvelope:
        cts, nonce = contexts.cipher().encrypt_many([11_000_000_000, u64_from_signed(-100)])
        return _envelope(
            streams.MPC_POSITION_VALUE_CALCULATED_V1,
            {
                "offset": off,
                "position_id": 9,
                "nonce": nonce_to_int(nonce),
                "current_value_encrypted": cts[0].hex(),
                "pnl_encrypted": cts[1].hex(),
            },
        )

    builder, tracker, *_ = _setup(contexts, respond)
    req = builder.build_value_query(owner=OWNER, position_id=9, price=Price(1))
    _, result = tracker.execute(req, builder.instruction(req))
    assert result == ValueResult(current_value=UsdAmount(11_000_000_000), pnl=UsdAmount(-100))


def test_timeout_abandons_the_entry(contexts: EncryptionContextManager) -> None:
    builder, tracker, _, registry, _ = _setup(contexts, lambda off: None)
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    entry = tracker.submit(req, builder.instruction(req))

    with pytest.raises(ComputationTimeout) as exc:
        tracker.await_result(entry.offset, timeout=0.01)
    assert exc.value.retryable
    assert registry.get(entry.offset) is None


def test_timeout_can_keep_the_entry_for_a_later_await(contexts: EncryptionContextManager) -> None:
    answers: list[Optional[EventEnvelope]] = [None]
    builder, tracker, _, registry, _ = _setup(
        contexts, lambda off: answers.pop(0) if answers else _closed_record(contexts, off, pnl=0, balance=5)
    )
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    entry = tracker.submit(req, builder.instruction(req))

    with pytest.raises(ComputationTimeout):
        tracker.await_result(entry.offset, timeout=0.01, abandon_on_timeout=False)
    assert registry.get(entry.offset) is not None

    result = tracker.await_result(entry.offset)
    assert result.final_balance == UsdAmount(5)
    assert registry.get(entry.offset) is None


def test_cancel_removes_the_entry(contexts: EncryptionContextManager) -> None:
    builder, tracker, _, registry, _ = _setup(contexts, lambda off: None)
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    entry = tracker.submit(req, builder.instruction(req))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(ComputationCancelled):
        tracker.await_result(entry.offset, cancel=cancel)
    assert len(registry) == 0
    assert tracker.abandon(entry.offset) is False


def test_rejection_carries_the_payload_verbatim(contexts: EncryptionContextManager) -> None:
    details = {"cluster": "1116522165", "node_votes": 3}

    def respond(off: int) -> EventEnvelope:
        return _envelope(
            streams.MPC_COMPUTATION_FAILED_V1,
            {"offset": off, "position_id": 9, "reason": "AbortedComputation", "details": details},
        )

    builder, tracker, _, registry, _ = _setup(contexts, respond)
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))

    with pytest.raises(ComputationRejected) as exc:
        tracker.execute(req, builder.instruction(req))
    assert exc.value.payload["reason"] == "AbortedComputation"
    assert exc.value.payload["details"] == details
    assert "AbortedComputation" in exc.value.describe()
    assert len(registry) == 0


def test_record_for_another_position_is_a_correlation_error(contexts: EncryptionContextManager) -> None:
    builder, tracker, _, registry, _ = _setup(
        contexts, lambda off: _closed_record(contexts, off, pnl=0, balance=0, position_id=10)
    )
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))

    with pytest.raises(ResultCorrelationError):
        tracker.execute(req, builder.instruction(req))
    assert len(registry) == 0


def test_record_with_wrong_schema_is_a_correlation_error(contexts: EncryptionContextManager) -> None:
    def respond(off: int) -> EventEnvelope:
        env = _closed_record(contexts, off, pnl=0, balance=0)
        return _envelope(streams.MPC_POSITION_LIQUIDATED_V1, env.payload)

    builder, tracker, *_ = _setup(contexts, respond)
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    with pytest.raises(ResultCorrelationError):
        tracker.execute(req, builder.instruction(req))


def test_tampered_ciphertext_fails_closed(contexts: EncryptionContextManager) -> None:
    def respond(off: int) -> EventEnvelope:
        env = _closed_record(contexts, off, pnl=0, balance=0)
        raw = bytearray(bytes.fromhex(env.payload["final_balance_encrypted"]))
        raw[0] ^= 0x01
        return _envelope(env.schema, {**env.payload, "final_balance_encrypted": raw.hex()})

    builder, tracker, _, registry, _ = _setup(contexts, respond)
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    with pytest.raises(DecryptionError):
        tracker.execute(req, builder.instruction(req))
    assert len(registry) == 0


def test_non_boolean_flag_fails_closed(contexts: EncryptionContextManager) -> None:
    builder, tracker, *_ = _setup(contexts, lambda off: _closed_record(contexts, off, pnl=0, balance=0, flag=7))
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    with pytest.raises(DecryptionError):
        tracker.execute(req, builder.instruction(req))


def test_rejected_submit_releases_the_offset(contexts: EncryptionContextManager) -> None:
    builder, tracker, _, registry, _ = _setup(contexts, lambda off: None, ledger=_FakeLedger(fail=True))
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    assert registry.is_in_use(req.offset)

    with pytest.raises(LedgerError):
        tracker.submit(req, builder.instruction(req))
    assert not registry.is_in_use(req.offset)


def test_unknown_offset_is_a_correlation_error(contexts: EncryptionContextManager) -> None:
    _, tracker, *_ = _setup(contexts, lambda off: None)
    with pytest.raises(ResultCorrelationError):
        tracker.await_result(12345)


def _abandon_concurrently(tracker: ComputationTracker, offset: int, start: threading.Barrier) -> list[threading.Thread]:
    def abandon() -> None:
        start.wait()
        tracker.abandon(offset)

    threads = [threading.Thread(target=abandon) for _ in range(start.parties - 1)]
    for t in threads:
        t.start()
    return threads


def test_late_record_racing_cancel_removes_the_entry_once(contexts: EncryptionContextManager) -> None:
    registry = _CountingRegistry()
    cancel = threading.Event()
    start = threading.Barrier(5)

    def respond(off: int) -> EventEnvelope:
        threads = _abandon_concurrently(tracker, off, start)
        cancel.set()
        start.wait()
        for t in threads:
            t.join()
        return _closed_record(contexts, off, pnl=0, balance=5)

    builder, tracker, *_ = _setup(contexts, respond, registry=registry)
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    entry = tracker.submit(req, builder.instruction(req))

    result = tracker.await_result(entry.offset, cancel=cancel)

    assert result.final_balance == UsdAmount(5)
    assert registry.removals == 1
    assert len(registry) == 0


def test_timeout_racing_abandon_removes_the_entry_once(contexts: EncryptionContextManager) -> None:
    registry = _CountingRegistry()
    start = threading.Barrier(5)

    def respond(off: int) -> None:
        threads = _abandon_concurrently(tracker, off, start)
        start.wait()
        for t in threads:
            t.join()
        return None

    builder, tracker, *_ = _setup(contexts, respond, registry=registry)
    req = builder.build_close(owner=OWNER, position_id=9, price=Price(1))
    entry = tracker.submit(req, builder.instruction(req))

    with pytest.raises(ComputationTimeout):
        tracker.await_result(entry.offset, timeout=0.01)
    assert registry.removals == 1
    assert tracker.abandon(entry.offset) is False
