"""Submission and asynchronous finalization of confidential computations.

    Submitted --(await, bounded by timeout)--> Finalized | TimedOut | Cancelled

A finalized record is correlated against the pending entry by offset and
position id before anything is decrypted. A network-reported failure
(`mpc.computation_failed.v1`) is surfaced as `ComputationRejected` carrying
the record's payload unchanged. Every terminal path removes the pending entry
exactly once.

Callers must serialize mutating operations on the same position themselves:
two computations against one position may finalize in either order.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from veilperp.contracts import streams
from veilperp.contracts.layouts import Instruction, encode_transaction, int_to_nonce
from veilperp.core.errors import (
    ComputationCancelled,
    ComputationRejected,
    ComputationTimeout,
    DecryptionError,
    ResultCorrelationError,
)
from veilperp.core.fixed_point import UsdAmount, signed_from_u64
from veilperp.core.models import (
    AddCollateralResult,
    CloseResult,
    ComputationKind,
    ComputationResult,
    EventEnvelope,
    LiquidateResult,
    OpenResult,
    PendingComputation,
    RemoveCollateralResult,
    ValueResult,
)
from veilperp.core.venue import FinalizationSource, LedgerClient
from veilperp.crypto.cipher import Cipher
from veilperp.crypto.context import EncryptionContextManager

from .builder import ComputationRequest
from .registry import PendingComputationRegistry


logger = logging.getLogger(__name__)


def _flag(value: int, field: str) -> bool:
    if value not in (0, 1):
        raise DecryptionError(f"{field} decrypted to non-boolean {value}")
    return value == 1


def _usd(value: int) -> UsdAmount:
    return UsdAmount(value)


def _signed_usd(value: int) -> UsdAmount:
    return UsdAmount(signed_from_u64(value))


class ComputationTracker:
    def __init__(
        self,
        *,
        ledger: LedgerClient,
        finalizations: FinalizationSource,
        registry: PendingComputationRegistry,
        contexts: EncryptionContextManager,
        default_timeout_seconds: float = 60.0,
    ) -> None:
        self._ledger = ledger
        self._finalizations = finalizations
        self._registry = registry
        self._contexts = contexts
        self.default_timeout_seconds = default_timeout_seconds

    @property
    def registry(self) -> PendingComputationRegistry:
        return self._registry

    def submit(self, request: ComputationRequest, instruction: Instruction) -> PendingComputation:
        """Submit `instruction` and register `request` as pending.

        The offset reservation is released if the ledger rejects the
        transaction, so a failed submit leaves nothing behind.
        """
        if request.offset is None:
            raise ValueError("plaintext requests are not tracked")
        try:
            signature = self._ledger.submit(encode_transaction(instruction))
        except Exception:
            self._registry.release(request.offset)
            raise
        entry = self._registry.register(
            request.offset,
            kind=request.kind,
            position_id=request.position_id,
            signature=signature,
        )
        logger.info(
            "computation_submitted",
            extra={"offset": entry.offset, "kind": entry.kind.value, "position_id": entry.position_id},
        )
        return entry

    def abandon(self, offset: int) -> bool:
        removed = self._registry.remove(offset)
        if removed:
            logger.info("computation_abandoned", extra={"offset": offset})
        return removed

    def await_result(
        self,
        offset: int,
        *,
        timeout: float | None = None,
        cancel: Optional[threading.Event] = None,
        abandon_on_timeout: bool = True,
    ) -> ComputationResult:
        """Block until `offset` finalizes and return its decrypted result.

        On timeout the entry is abandoned unless `abandon_on_timeout` is
        False, in which case the caller may await it again later.
        """
        entry = self._registry.get(offset)
        if entry is None:
            raise ResultCorrelationError(f"no pending computation with offset {offset}")
        timeout = self.default_timeout_seconds if timeout is None else timeout

        env = self._finalizations.await_finalization(offset, timeout=timeout, cancel=cancel)
        if env is None:
            if cancel is not None and cancel.is_set():
                self.abandon(offset)
                raise ComputationCancelled(offset)
            if abandon_on_timeout:
                self.abandon(offset)
            logger.warning("computation_timed_out", extra={"offset": offset, "timeout_seconds": timeout})
            raise ComputationTimeout(offset, timeout)

        try:
            return self._decode(entry, env)
        finally:
            self._registry.remove(offset)

    def execute(
        self,
        request: ComputationRequest,
        instruction: Instruction,
        *,
        timeout: float | None = None,
        cancel: Optional[threading.Event] = None,
    ) -> tuple[str, ComputationResult]:
        entry = self.submit(request, instruction)
        return entry.signature, self.await_result(entry.offset, timeout=timeout, cancel=cancel)

    # -- decoding ------------------------------------------------------------

    def _decode(self, entry: PendingComputation, env: EventEnvelope) -> ComputationResult:
        p = env.payload
        if p.get("offset") != entry.offset or p.get("position_id") != entry.position_id:
            raise ResultCorrelationError(
                f"record for offset={p.get('offset')} position_id={p.get('position_id')} "
                f"does not match pending offset={entry.offset} position_id={entry.position_id}"
            )

        if env.schema == streams.MPC_COMPUTATION_FAILED_V1:
            logger.warning("computation_rejected", extra={"offset": entry.offset, "reason": p.get("reason")})
            raise ComputationRejected(entry.offset, p)

        expected = streams.SCHEMA_BY_CIRCUIT[entry.kind.circuit]
        if env.schema != expected:
            raise ResultCorrelationError(f"expected {expected} for offset {entry.offset}, got {env.schema}")

        cipher = self._contexts.cipher()
        if entry.kind is ComputationKind.OPEN:
            return OpenResult(
                size=_usd(cipher.decrypt(bytes.fromhex(p["size_encrypted"]), int_to_nonce(p["size_nonce"]))),
                collateral=_usd(
                    cipher.decrypt(bytes.fromhex(p["collateral_encrypted"]), int_to_nonce(p["collateral_nonce"]))
                ),
            )
        return self._decode_fields(entry.kind, env.schema, p, cipher)

    def _decode_fields(self, kind: ComputationKind, schema: str, p: dict, cipher: Cipher) -> ComputationResult:
        names = streams.ENCRYPTED_FIELDS[schema]
        values = cipher.decrypt_many([bytes.fromhex(p[n]) for n in names], int_to_nonce(p["nonce"]))
        v = dict(zip(names, values))

        if kind is ComputationKind.CLOSE:
            return CloseResult(
                realized_pnl=_signed_usd(v["realized_pnl_encrypted"]),
                final_balance=_usd(v["final_balance_encrypted"]),
                can_close=_flag(v["can_close_encrypted"], "can_close"),
            )
        if kind is ComputationKind.ADD_COLLATERAL:
            return AddCollateralResult(
                new_collateral=_usd(v["new_collateral_encrypted"]),
                new_leverage=v["new_leverage_encrypted"],
            )
        if kind is ComputationKind.REMOVE_COLLATERAL:
            return RemoveCollateralResult(
                new_collateral=_usd(v["new_collateral_encrypted"]),
                removed_amount=_usd(v["removed_amount_encrypted"]),
                can_remove=_flag(v["can_remove_encrypted"], "can_remove"),
                new_leverage=v["new_leverage_encrypted"],
            )
        if kind is ComputationKind.LIQUIDATE:
            return LiquidateResult(
                is_liquidatable=_flag(v["is_liquidatable_encrypted"], "is_liquidatable"),
                remaining_collateral=_usd(v["remaining_collateral_encrypted"]),
                penalty=_usd(v["penalty_encrypted"]),
            )
        if kind is ComputationKind.VALUE_QUERY:
            return ValueResult(
                current_value=_signed_usd(v["current_value_encrypted"]),
                pnl=_signed_usd(v["pnl_encrypted"]),
            )
        raise ResultCorrelationError(f"no decoder for {kind.value}")  # pragma: no cover
