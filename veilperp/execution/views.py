"""Read-only program views.

Views are identical in both execution paths: they operate on public state
only, so they pass straight through to `LedgerClient.simulate`. A failing
view is logged and answered with None; it never raises to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from veilperp.computation.addresses import perpetuals_address
from veilperp.contracts.layouts import Instruction, decode_view_return, encode_transaction
from veilperp.core.errors import VeilPerpError
from veilperp.core.fixed_point import Price, UsdAmount, require_usd
from veilperp.core.models import (
    Address,
    AmountAndFee,
    EntryPriceAndFee,
    ExitPriceAndFee,
    ProfitAndLoss,
    Side,
    SwapAmountAndFees,
)
from veilperp.core.venue import LedgerClient


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReadOnlyViews:
    def __init__(self, ledger: LedgerClient, *, program_id: Address) -> None:
        self._ledger = ledger
        self._program_id = program_id

    def _call(
        self,
        name: str,
        accounts: Dict[str, Address],
        args: Dict[str, Any],
        convert: Callable[[dict[str, Any]], T],
    ) -> Optional[T]:
        ix = Instruction(
            program_id=self._program_id,
            name=name,
            accounts={"perpetuals": perpetuals_address(self._program_id), **accounts},
            args=args,
        )
        try:
            values = decode_view_return(name, self._ledger.simulate(encode_transaction(ix)))
            return convert(values)
        except (VeilPerpError, ValueError) as e:
            logger.warning("view_failed", extra={"view": name, "error": str(e)})
            return None

    def get_entry_price_and_fee(
        self, custody: Address, *, collateral: UsdAmount, size: UsdAmount, side: Side
    ) -> Optional[EntryPriceAndFee]:
        args = {
            "collateral": require_usd(collateral, field="collateral").to_u64(),
            "size": require_usd(size, field="size").to_u64(),
            "side": int(side),
        }
        return self._call(
            "get_entry_price_and_fee",
            {"custody": custody},
            args,
            lambda v: EntryPriceAndFee(
                entry_price=Price(v["entry_price"]),
                liquidation_price=Price(v["liquidation_price"]),
                fee=UsdAmount(v["fee"]),
            ),
        )

    def get_exit_price_and_fee(self, position: Address, custody: Address) -> Optional[ExitPriceAndFee]:
        return self._call(
            "get_exit_price_and_fee",
            {"position": position, "custody": custody},
            {},
            lambda v: ExitPriceAndFee(price=Price(v["price"]), fee=UsdAmount(v["fee"])),
        )

    def get_pnl(self, position: Address, custody: Address) -> Optional[ProfitAndLoss]:
        return self._call(
            "get_pnl",
            {"position": position, "custody": custody},
            {},
            lambda v: ProfitAndLoss(profit=v["profit"], loss=v["loss"]),
        )

    def get_liquidation_price(self, position: Address, custody: Address) -> Optional[Price]:
        return self._call(
            "get_liquidation_price",
            {"position": position, "custody": custody},
            {},
            lambda v: Price(v["value"]),
        )

    def get_liquidation_state(self, position: Address, custody: Address) -> Optional[bool]:
        return self._call(
            "get_liquidation_state",
            {"position": position, "custody": custody},
            {},
            lambda v: v["value"] == 1,
        )

    def get_oracle_price(self, custody: Address, *, ema: bool = False) -> Optional[Price]:
        return self._call("get_oracle_price", {"custody": custody}, {"ema": int(ema)}, lambda v: Price(v["value"]))

    def get_swap_amount_and_fees(
        self, receiving_custody: Address, dispensing_custody: Address, amount_in: int
    ) -> Optional[SwapAmountAndFees]:
        return self._call(
            "get_swap_amount_and_fees",
            {"receiving_custody": receiving_custody, "dispensing_custody": dispensing_custody},
            {"amount_in": amount_in},
            lambda v: SwapAmountAndFees(amount_out=v["amount_out"], fee_in=v["fee_in"], fee_out=v["fee_out"]),
        )

    def get_add_liquidity_amount_and_fee(
        self, pool: Address, custody: Address, amount_in: int
    ) -> Optional[AmountAndFee]:
        return self._call(
            "get_add_liquidity_amount_and_fee",
            {"pool": pool, "custody": custody},
            {"amount_in": amount_in},
            lambda v: AmountAndFee(amount=v["amount"], fee=v["fee"]),
        )

    def get_remove_liquidity_amount_and_fee(
        self, pool: Address, custody: Address, lp_amount_in: int
    ) -> Optional[AmountAndFee]:
        return self._call(
            "get_remove_liquidity_amount_and_fee",
            {"pool": pool, "custody": custody},
            {"lp_amount_in": lp_amount_in},
            lambda v: AmountAndFee(amount=v["amount"], fee=v["fee"]),
        )

    def get_assets_under_management(self, pool: Address) -> Optional[int]:
        return self._call("get_assets_under_management", {"pool": pool}, {}, lambda v: v["value"])

    def get_lp_token_price(self, pool: Address) -> Optional[UsdAmount]:
        return self._call("get_lp_token_price", {"pool": pool}, {}, lambda v: UsdAmount(v["value"]))
