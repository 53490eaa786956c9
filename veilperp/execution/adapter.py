"""Mode adapter: the single entry point callers use.

Holds exactly one `TradingBackend` at a time. The path is chosen when the
adapter is initialized and may be switched later; a switch validates the new
path's preconditions first and leaves the current backend untouched if they
are not met.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from veilperp.computation.registry import PendingComputationRegistry
from veilperp.core.errors import ModeMisconfigured
from veilperp.core.fixed_point import Price, UsdAmount
from veilperp.core.ids import PositionIdSequence
from veilperp.core.models import (
    Address,
    AddLiquidityParams,
    AmountAndFee,
    ClosePositionParams,
    CollateralParams,
    EntryPriceAndFee,
    ExecutionMode,
    ExitPriceAndFee,
    LiquidateParams,
    OpenPositionParams,
    PositionView,
    ProfitAndLoss,
    RemoveLiquidityParams,
    Side,
    SwapAmountAndFees,
    SwapParams,
    TransactionResult,
    ValueResult,
)
from veilperp.core.settings import Settings
from veilperp.core.venue import FinalizationSource, LedgerClient
from veilperp.crypto.context import EncryptionContextManager, NetworkKeySource

from .backend import TradingBackend
from .confidential import ConfidentialBackend
from .transparent import TransparentBackend


logger = logging.getLogger(__name__)


class ModeAdapter:
    def __init__(
        self,
        *,
        ledger: LedgerClient,
        finalizations: FinalizationSource,
        key_source: NetworkKeySource,
        program_id: Address,
        mpc_program_id: Address,
        owner: Address,
        mode: ExecutionMode = ExecutionMode.CONFIDENTIAL,
        cluster_offset: int = 0,
        funding_account: Address | None = None,
        timeout_seconds: float = 60.0,
        key_fetch_max_attempts: int = 5,
        key_fetch_initial_backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.finalizations = finalizations
        self.program_id = program_id
        self.mpc_program_id = mpc_program_id
        self.owner = owner
        self.cluster_offset = cluster_offset
        self.funding_account = funding_account
        self.timeout_seconds = timeout_seconds
        self.contexts = EncryptionContextManager(
            key_source,
            max_attempts=key_fetch_max_attempts,
            initial_backoff_seconds=key_fetch_initial_backoff_seconds,
            sleep=sleep,
        )
        self.registry = PendingComputationRegistry()
        self._ids = PositionIdSequence()
        self._initial_mode = ExecutionMode(mode)
        self._lock = threading.Lock()
        self._backend: TradingBackend | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        ledger: LedgerClient,
        finalizations: FinalizationSource,
        key_source: NetworkKeySource,
        owner: Address,
    ) -> "ModeAdapter":
        return cls(
            ledger=ledger,
            finalizations=finalizations,
            key_source=key_source,
            program_id=Address.from_hex(settings.program_id),
            mpc_program_id=Address.from_hex(settings.mpc_program_id),
            owner=owner,
            mode=ExecutionMode(settings.mode),
            cluster_offset=settings.cluster_offset,
            funding_account=Address.from_hex(settings.funding_account) if settings.funding_account else None,
            timeout_seconds=settings.computation_timeout_seconds,
            key_fetch_max_attempts=settings.key_fetch_max_attempts,
            key_fetch_initial_backoff_seconds=settings.key_fetch_initial_backoff_seconds,
        )

    # -- lifecycle ---------------------------------------------------------

    def initialize(self) -> None:
        """Bring up the initial path. Confidential mode fetches the network key first."""
        if self._initial_mode is ExecutionMode.CONFIDENTIAL:
            self.contexts.initialize()
        backend = self._make(self._initial_mode)
        with self._lock:
            self._backend = backend
        logger.info("adapter_initialized", extra={"mode": backend.mode.value})

    def teardown(self) -> None:
        with self._lock:
            backend, self._backend = self._backend, None
        if backend is not None:
            backend.teardown()
        self.contexts.teardown()

    def _make(self, mode: ExecutionMode) -> TradingBackend:
        if mode is ExecutionMode.CONFIDENTIAL:
            if not self.contexts.is_initialized:
                raise ModeMisconfigured("confidential mode requires an initialized encryption context")
            return ConfidentialBackend(
                ledger=self.ledger,
                finalizations=self.finalizations,
                contexts=self.contexts,
                program_id=self.program_id,
                mpc_program_id=self.mpc_program_id,
                owner=self.owner,
                cluster_offset=self.cluster_offset,
                registry=self.registry,
                id_sequence=self._ids,
                timeout_seconds=self.timeout_seconds,
            )
        return TransparentBackend(
            ledger=self.ledger,
            program_id=self.program_id,
            owner=self.owner,
            funding_account=self.funding_account,
            id_sequence=self._ids,
        )

    def switch_mode(self, mode: ExecutionMode | str) -> None:
        mode = ExecutionMode(mode)
        new = self._make(mode)
        with self._lock:
            old, self._backend = self._backend, new
        if old is not None:
            old.teardown()
        logger.info("mode_switched", extra={"mode": mode.value})

    @property
    def backend(self) -> TradingBackend:
        backend = self._backend
        if backend is None:
            raise ModeMisconfigured("adapter is not initialized")
        return backend

    @property
    def mode(self) -> ExecutionMode:
        return self.backend.mode

    # -- mutating operations -----------------------------------------------

    def _submit(self, op: str, call: Callable[[TradingBackend], TransactionResult]) -> TransactionResult:
        try:
            backend = self.backend
        except ModeMisconfigured as e:
            logger.warning("operation_failed", extra={"operation": op, "error": e.describe()})
            return TransactionResult.failed(e.describe())
        return call(backend)

    def open_position(self, params: OpenPositionParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        return self._submit("open_position", lambda b: b.open_position(params, cancel=cancel))

    def close_position(self, params: ClosePositionParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        return self._submit("close_position", lambda b: b.close_position(params, cancel=cancel))

    def add_collateral(self, params: CollateralParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        return self._submit("add_collateral", lambda b: b.add_collateral(params, cancel=cancel))

    def remove_collateral(self, params: CollateralParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        return self._submit("remove_collateral", lambda b: b.remove_collateral(params, cancel=cancel))

    def liquidate(self, params: LiquidateParams, *, cancel: Optional[threading.Event] = None) -> TransactionResult:
        return self._submit("liquidate", lambda b: b.liquidate(params, cancel=cancel))

    def swap(self, params: SwapParams) -> TransactionResult:
        return self._submit("swap", lambda b: b.swap(params))

    def add_liquidity(self, params: AddLiquidityParams) -> TransactionResult:
        return self._submit("add_liquidity", lambda b: b.add_liquidity(params))

    def remove_liquidity(self, params: RemoveLiquidityParams) -> TransactionResult:
        return self._submit("remove_liquidity", lambda b: b.remove_liquidity(params))

    # -- position reads ----------------------------------------------------

    def get_position(self, address: Address) -> PositionView:
        return self.backend.get_position(address)

    def get_positions_by_owner(self, owner: Optional[Address] = None) -> list[PositionView]:
        return self.backend.get_positions_by_owner(owner)

    def get_position_value(
        self, address: Address, price: Price, *, cancel: Optional[threading.Event] = None
    ) -> ValueResult:
        return self.backend.get_position_value(address, price, cancel=cancel)

    # -- read-only views ---------------------------------------------------

    def get_entry_price_and_fee(
        self, custody: Address, *, collateral: UsdAmount, size: UsdAmount, side: Side
    ) -> Optional[EntryPriceAndFee]:
        return self.backend.views.get_entry_price_and_fee(custody, collateral=collateral, size=size, side=side)

    def get_exit_price_and_fee(self, position: Address, custody: Address) -> Optional[ExitPriceAndFee]:
        return self.backend.views.get_exit_price_and_fee(position, custody)

    def get_pnl(self, position: Address, custody: Address) -> Optional[ProfitAndLoss]:
        return self.backend.views.get_pnl(position, custody)

    def get_liquidation_price(self, position: Address, custody: Address) -> Optional[Price]:
        return self.backend.views.get_liquidation_price(position, custody)

    def get_liquidation_state(self, position: Address, custody: Address) -> Optional[bool]:
        return self.backend.views.get_liquidation_state(position, custody)

    def get_oracle_price(self, custody: Address, *, ema: bool = False) -> Optional[Price]:
        return self.backend.views.get_oracle_price(custody, ema=ema)

    def get_swap_amount_and_fees(
        self, receiving_custody: Address, dispensing_custody: Address, amount_in: int
    ) -> Optional[SwapAmountAndFees]:
        return self.backend.views.get_swap_amount_and_fees(receiving_custody, dispensing_custody, amount_in)

    def get_add_liquidity_amount_and_fee(self, pool: Address, custody: Address, amount_in: int) -> Optional[AmountAndFee]:
        return self.backend.views.get_add_liquidity_amount_and_fee(pool, custody, amount_in)

    def get_remove_liquidity_amount_and_fee(
        self, pool: Address, custody: Address, lp_amount_in: int
    ) -> Optional[AmountAndFee]:
        return self.backend.views.get_remove_liquidity_amount_and_fee(pool, custody, lp_amount_in)

    def get_assets_under_management(self, pool: Address) -> Optional[int]:
        return self.backend.views.get_assets_under_management(pool)

    def get_lp_token_price(self, pool: Address) -> Optional[UsdAmount]:
        return self.backend.views.get_lp_token_price(pool)
