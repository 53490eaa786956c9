"""One trading surface, two execution paths.

`TradingBackend` is implemented by `ConfidentialBackend` and
`TransparentBackend`. Both return the same result shapes: mutating operations
return a `TransactionResult` and never raise for venue, network or crypto
failures; `get_position` returns one plaintext `PositionView`.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from veilperp.contracts.layouts import PositionAccount
from veilperp.core.errors import PositionNotFound, VeilPerpError
from veilperp.core.fixed_point import Price, UsdAmount
from veilperp.core.models import (
    Address,
    AddLiquidityParams,
    ClosePositionParams,
    CollateralParams,
    ExecutionMode,
    LiquidateParams,
    OpenPositionParams,
    PositionView,
    RemoveLiquidityParams,
    Side,
    SwapParams,
    TransactionResult,
    ValueResult,
)
from veilperp.core.venue import LedgerClient

from .liquidity import PoolOperations
from .views import ReadOnlyViews


logger = logging.getLogger(__name__)


class TradingBackend(ABC):
    mode: ExecutionMode

    def __init__(self, *, ledger: LedgerClient, program_id: Address, owner: Address) -> None:
        self.ledger = ledger
        self.program_id = program_id
        self.owner = owner
        self.views = ReadOnlyViews(ledger, program_id=program_id)
        self.pools = PoolOperations(ledger, program_id=program_id, owner=owner)

    @abstractmethod
    def open_position(self, params: OpenPositionParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        raise NotImplementedError

    @abstractmethod
    def close_position(self, params: ClosePositionParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        raise NotImplementedError

    @abstractmethod
    def add_collateral(self, params: CollateralParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        raise NotImplementedError

    @abstractmethod
    def remove_collateral(self, params: CollateralParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        raise NotImplementedError

    @abstractmethod
    def liquidate(self, params: LiquidateParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        raise NotImplementedError

    @abstractmethod
    def get_position(self, address: Address) -> PositionView:
        """Plaintext view of the position at `address`.

        Raises `PositionNotFound`; the confidential path also raises
        `DecryptionError` when the stored fields do not open under this
        session's key.
        """
        raise NotImplementedError

    @abstractmethod
    def get_position_value(
        self, address: Address, price: Price, *, cancel: Optional[threading.Event] = None
    ) -> ValueResult:
        raise NotImplementedError

    def get_positions_by_owner(self, owner: Optional[Address] = None) -> list[PositionView]:
        owner = owner or self.owner
        return [self.get_position(addr) for addr in self.ledger.find_positions(self.program_id, owner)]

    def swap(self, params: SwapParams) -> TransactionResult:
        return self._guard("swap", lambda: TransactionResult(signature=self.pools.swap(params), success=True))

    def add_liquidity(self, params: AddLiquidityParams) -> TransactionResult:
        return self._guard(
            "add_liquidity", lambda: TransactionResult(signature=self.pools.add_liquidity(params), success=True)
        )

    def remove_liquidity(self, params: RemoveLiquidityParams) -> TransactionResult:
        return self._guard(
            "remove_liquidity", lambda: TransactionResult(signature=self.pools.remove_liquidity(params), success=True)
        )

    def teardown(self) -> None:
        """Release resources held by this backend."""

    def _load(self, address: Address) -> PositionAccount:
        raw = self.ledger.fetch(address)
        if raw is None:
            raise PositionNotFound(f"no position account at {address.hex()}")
        try:
            return PositionAccount.decode(raw)
        except ValueError as e:
            raise PositionNotFound(f"account at {address.hex()} is not a position: {e}") from e

    def _guard(self, op: str, fn: Callable[[], TransactionResult]) -> TransactionResult:
        try:
            return fn()
        except (VeilPerpError, ValueError) as e:
            error = e.describe() if isinstance(e, VeilPerpError) else f"{type(e).__name__}: {e}"
            logger.warning("operation_failed", extra={"operation": op, "mode": self.mode.value, "error": error})
            return TransactionResult.failed(error)


def position_view(address: Address, account: PositionAccount, size: int, collateral: int) -> PositionView:
    return PositionView(
        address=address,
        owner=Address(account.owner),
        position_id=account.position_id,
        side=Side(account.side),
        entry_price=Price(account.entry_price),
        open_time=account.open_time,
        update_time=account.update_time,
        size=UsdAmount(size),
        collateral=UsdAmount(collateral),
        liquidator=Address(account.liquidator),
    )
