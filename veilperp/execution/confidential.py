"""Confidential execution path.

Size and collateral leave this process only as ciphertexts under the
session's `EncryptionContext`; every mutating call is one MPC computation
that is submitted, awaited and decrypted before the result is returned.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from veilperp.computation.builder import ComputationRequest, ComputationRequestBuilder
from veilperp.computation.registry import PendingComputationRegistry
from veilperp.computation.tracker import ComputationTracker
from veilperp.contracts.layouts import Instruction, int_to_nonce
from veilperp.core.errors import ResultCorrelationError, VeilPerpError
from veilperp.core.fixed_point import Price
from veilperp.core.ids import PositionIdSequence
from veilperp.core.models import (
    Address,
    ClosePositionParams,
    CollateralParams,
    ExecutionMode,
    LiquidateParams,
    OpenPositionParams,
    PositionView,
    TransactionResult,
    ValueResult,
)
from veilperp.core.venue import FinalizationSource, LedgerClient
from veilperp.crypto.context import EncryptionContextManager

from .backend import TradingBackend, position_view


logger = logging.getLogger(__name__)


class ConfidentialBackend(TradingBackend):
    mode = ExecutionMode.CONFIDENTIAL

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        finalizations: FinalizationSource,
        contexts: EncryptionContextManager,
        program_id: Address,
        mpc_program_id: Address,
        owner: Address,
        cluster_offset: int = 0,
        registry: PendingComputationRegistry | None = None,
        id_sequence: PositionIdSequence | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        super().__init__(ledger=ledger, program_id=program_id, owner=owner)
        self.contexts = contexts
        self.registry = registry if registry is not None else PendingComputationRegistry()
        self.builder = ComputationRequestBuilder(
            owner=owner,
            program_id=program_id,
            ledger=ledger,
            mpc_program_id=mpc_program_id,
            cluster_offset=cluster_offset,
            registry=self.registry,
            contexts=contexts,
            id_sequence=id_sequence,
        )
        self.tracker = ComputationTracker(
            ledger=ledger,
            finalizations=finalizations,
            registry=self.registry,
            contexts=contexts,
            default_timeout_seconds=timeout_seconds,
        )

    def _instruction(self, req: ComputationRequest) -> Instruction:
        try:
            return self.builder.instruction(req)
        except Exception:
            if req.offset is not None:
                self.registry.release(req.offset)
            raise

    def _run(
        self,
        op: str,
        build: Callable[[], ComputationRequest],
        cancel: Optional[threading.Event],
    ) -> TransactionResult:
        def run() -> TransactionResult:
            req = build()
            entry = self.tracker.submit(req, self._instruction(req))
            try:
                outcome = self.tracker.await_result(entry.offset, cancel=cancel)
            except VeilPerpError as e:
                logger.warning(
                    "computation_failed",
                    extra={"operation": op, "offset": entry.offset, "error": e.describe()},
                )
                return TransactionResult.failed(e.describe(), signature=entry.signature)
            return TransactionResult(
                signature=entry.signature,
                success=True,
                position_key=req.position_key,
                outcome=outcome,
            )

        return self._guard(op, run)

    def open_position(self, params: OpenPositionParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        return self._run("open_position", lambda: self.builder.build_open(params), cancel)

    def close_position(self, params: ClosePositionParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        def build() -> ComputationRequest:
            acct = self._load(params.position_key)
            return self.builder.build_close(owner=Address(acct.owner), position_id=acct.position_id, price=params.price)

        return self._run("close_position", build, cancel)

    def add_collateral(self, params: CollateralParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        def build() -> ComputationRequest:
            acct = self._load(params.position_key)
            return self.builder.build_add_collateral(
                owner=Address(acct.owner), position_id=acct.position_id, amount=params.amount
            )

        return self._run("add_collateral", build, cancel)

    def remove_collateral(self, params: CollateralParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        def build() -> ComputationRequest:
            acct = self._load(params.position_key)
            return self.builder.build_remove_collateral(
                owner=Address(acct.owner), position_id=acct.position_id, amount=params.amount
            )

        return self._run("remove_collateral", build, cancel)

    def liquidate(self, params: LiquidateParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        def build() -> ComputationRequest:
            acct = self._load(params.position_key)
            return self.builder.build_liquidate(owner=Address(acct.owner), position_id=acct.position_id, price=params.price)

        return self._run("liquidate", build, cancel)

    def get_position(self, address: Address) -> PositionView:
        acct = self._load(address)
        cipher = self.contexts.cipher()
        size = cipher.decrypt(acct.size_usd_encrypted, int_to_nonce(acct.size_nonce))
        collateral = cipher.decrypt(acct.collateral_usd_encrypted, int_to_nonce(acct.collateral_nonce))
        return position_view(address, acct, size, collateral)

    def get_position_value(
        self, address: Address, price: Price, *, cancel: Optional[threading.Event] = None
    ) -> ValueResult:
        acct = self._load(address)
        req = self.builder.build_value_query(owner=Address(acct.owner), position_id=acct.position_id, price=price)
        _, result = self.tracker.execute(req, self._instruction(req), cancel=cancel)
        if not isinstance(result, ValueResult):
            raise ResultCorrelationError(f"value query returned {type(result).__name__}")
        return result

    def teardown(self) -> None:
        for entry in self.registry.pending():
            self.tracker.abandon(entry.offset)
