"""Transparent execution path.

The same operations as the confidential path with plaintext u64 fields,
settled directly by the ledger program. Collateral movements draw on the
configured funding account. Submission is synchronous, so `cancel` has
nothing to interrupt and `TransactionResult.outcome` stays None; callers
read the new state back with `get_position`.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from veilperp.computation.builder import ComputationRequest, ComputationRequestBuilder
from veilperp.contracts.layouts import decode_view_return, encode_transaction, read_plain_field
from veilperp.core.errors import LedgerError, ModeMisconfigured
from veilperp.core.fixed_point import Price, UsdAmount
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
from veilperp.core.venue import LedgerClient

from .backend import TradingBackend, position_view


logger = logging.getLogger(__name__)


class TransparentBackend(TradingBackend):
    mode = ExecutionMode.TRANSPARENT

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        program_id: Address,
        owner: Address,
        funding_account: Address | None,
        id_sequence: PositionIdSequence | None = None,
    ) -> None:
        if funding_account is None:
            raise ModeMisconfigured("transparent mode requires a funding account")
        super().__init__(ledger=ledger, program_id=program_id, owner=owner)
        self.funding_account = funding_account
        self.builder = ComputationRequestBuilder(
            owner=owner,
            program_id=program_id,
            ledger=ledger,
            funding_account=funding_account,
            id_sequence=id_sequence,
        )

    def _run(self, op: str, build: Callable[[], ComputationRequest]) -> TransactionResult:
        def run() -> TransactionResult:
            req = build()
            signature = self.ledger.submit(encode_transaction(self.builder.instruction(req)))
            logger.info("transaction_submitted", extra={"operation": op, "position_id": req.position_id})
            return TransactionResult(signature=signature, success=True, position_key=req.position_key)

        return self._guard(op, run)

    def open_position(self, params: OpenPositionParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        return self._run("open_position", lambda: self.builder.build_open(params))

    def close_position(self, params: ClosePositionParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        def build() -> ComputationRequest:
            acct = self._load(params.position_key)
            return self.builder.build_close(owner=Address(acct.owner), position_id=acct.position_id, price=params.price)

        return self._run("close_position", build)

    def add_collateral(self, params: CollateralParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        def build() -> ComputationRequest:
            acct = self._load(params.position_key)
            return self.builder.build_add_collateral(
                owner=Address(acct.owner), position_id=acct.position_id, amount=params.amount
            )

        return self._run("add_collateral", build)

    def remove_collateral(self, params: CollateralParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        def build() -> ComputationRequest:
            acct = self._load(params.position_key)
            return self.builder.build_remove_collateral(
                owner=Address(acct.owner), position_id=acct.position_id, amount=params.amount
            )

        return self._run("remove_collateral", build)

    def liquidate(self, params: LiquidateParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        def build() -> ComputationRequest:
            acct = self._load(params.position_key)
            return self.builder.build_liquidate(owner=Address(acct.owner), position_id=acct.position_id, price=params.price)

        return self._run("liquidate", build)

    def get_position(self, address: Address) -> PositionView:
        acct = self._load(address)
        return position_view(
            address,
            acct,
            read_plain_field(acct.size_usd_encrypted),
            read_plain_field(acct.collateral_usd_encrypted),
        )

    def get_position_value(
        self, address: Address, price: Price, *, cancel: Optional[threading.Event] = None
    ) -> ValueResult:
        acct = self._load(address)
        req = self.builder.build_value_query(owner=Address(acct.owner), position_id=acct.position_id, price=price)
        raw = self.ledger.simulate(encode_transaction(self.builder.instruction(req)))
        try:
            values = decode_view_return("calculate_position_value_public", raw)
        except ValueError as e:
            raise LedgerError(f"malformed value return data: {e}") from e
        return ValueResult(current_value=UsdAmount(values["current_value"]), pnl=UsdAmount(values["pnl"]))
