"""Swaps and pool liquidity.

These instructions only touch public pool and custody state, so both
execution paths submit the same plaintext instruction straight to the
ledger. Custody and token-account keys are derived from the pool and the
mints; the caller supplies its own token accounts.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from veilperp.computation.addresses import (
    custody_address,
    custody_token_account_address,
    lp_token_mint_address,
    perpetuals_address,
)
from veilperp.contracts.layouts import Instruction, encode_transaction
from veilperp.core.fixed_point import U64_MAX
from veilperp.core.models import Address, AddLiquidityParams, RemoveLiquidityParams, SwapParams
from veilperp.core.venue import LedgerClient


logger = logging.getLogger(__name__)


def _amount(value: Any, field: str, *, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{field} must be an int amount of base units, got {type(value).__name__}")
    low = 0 if allow_zero else 1
    if not (low <= value <= U64_MAX):
        raise ValueError(f"{field} must be in [{low}, 2**64)")
    return value


class PoolOperations:
    def __init__(self, ledger: LedgerClient, *, program_id: Address, owner: Address) -> None:
        self._ledger = ledger
        self._program_id = program_id
        self._owner = owner

    def _custody_accounts(self, prefix: str, pool: Address, mint: Address) -> Dict[str, Address]:
        return {
            f"{prefix}custody": custody_address(pool, mint, self._program_id),
            f"{prefix}custody_token_account": custody_token_account_address(pool, mint, self._program_id),
        }

    def _submit(self, name: str, accounts: Dict[str, Address], args: Dict[str, Any]) -> str:
        ix = Instruction(
            program_id=self._program_id,
            name=name,
            accounts={
                "owner": self._owner,
                "transfer_authority": self._owner,
                "perpetuals": perpetuals_address(self._program_id),
                **accounts,
            },
            args=args,
        )
        signature = self._ledger.submit(encode_transaction(ix))
        logger.info("pool_transaction_submitted", extra={"instruction": name, "signature": signature})
        return signature

    def swap(self, params: SwapParams) -> str:
        if params.receiving_custody_mint == params.dispensing_custody_mint:
            raise ValueError("swap needs two different custodies")
        args = {
            "amount_in": _amount(params.amount_in, "amount_in"),
            "min_amount_out": _amount(params.min_amount_out, "min_amount_out", allow_zero=True),
        }
        accounts = {
            "funding_account": params.funding_account,
            "receiving_account": params.receiving_account,
            "pool": params.pool,
            **self._custody_accounts("receiving_", params.pool, params.receiving_custody_mint),
            **self._custody_accounts("dispensing_", params.pool, params.dispensing_custody_mint),
        }
        return self._submit("swap", accounts, args)

    def add_liquidity(self, params: AddLiquidityParams) -> str:
        args = {
            "amount_in": _amount(params.amount_in, "amount_in"),
            "min_lp_amount_out": _amount(params.min_lp_amount_out, "min_lp_amount_out", allow_zero=True),
        }
        accounts = {
            "funding_account": params.funding_account,
            "lp_token_account": params.lp_token_account,
            "pool": params.pool,
            "lp_token_mint": lp_token_mint_address(params.pool, self._program_id),
            **self._custody_accounts("", params.pool, params.custody_mint),
        }
        return self._submit("add_liquidity", accounts, args)

    def remove_liquidity(self, params: RemoveLiquidityParams) -> str:
        args = {
            "lp_amount_in": _amount(params.lp_amount_in, "lp_amount_in"),
            "min_amount_out": _amount(params.min_amount_out, "min_amount_out", allow_zero=True),
        }
        accounts = {
            "receiving_account": params.receiving_account,
            "lp_token_account": params.lp_token_account,
            "pool": params.pool,
            "lp_token_mint": lp_token_mint_address(params.pool, self._program_id),
            **self._custody_accounts("", params.pool, params.custody_mint),
        }
        return self._submit("remove_liquidity", accounts, args)
