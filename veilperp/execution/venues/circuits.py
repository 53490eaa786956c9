"""Plaintext reference formulas evaluated by the simulated venue.

The confidential circuits run inside the MPC network and the view functions
run inside the ledger program; the simulated venue evaluates the same integer
arithmetic here. All amounts are raw fixed-point integers (prices 8 decimals,
USD 6 decimals). Division truncates toward zero, as the on-ledger i64 math
does.
"""

from __future__ import annotations

MAINTENANCE_MARGIN_DIVISOR = 20  # 5% of size
LIQUIDATION_PENALTY_DIVISOR = 10  # 10% of remaining value
BPS = 10_000
MAINTENANCE_MARGIN_BPS = 500
ESTIMATED_LEVERAGE_BPS = 1000
LP_TOKEN_PRICE = 1_000000
USD_ONE = 1_000000


def _tdiv(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def position_pnl(size: int, entry_price: int, price: int, side: int) -> int:
    diff = price - entry_price if side == 0 else entry_price - price
    return _tdiv(size * diff, entry_price)


# -- circuits ---------------------------------------------------------------


def open_position(size: int, collateral: int) -> tuple[int, int]:
    """Both zero when collateral is under 5% of size (more than 20x)."""
    if collateral >= size // MAINTENANCE_MARGIN_DIVISOR:
        return size, collateral
    return 0, 0


def close_position(size: int, collateral: int, entry_price: int, price: int, side: int) -> tuple[int, int, int]:
    pnl = position_pnl(size, entry_price, price, side)
    balance = collateral + pnl
    if balance > 0:
        return pnl, balance, 1
    return pnl, 0, 0


def add_collateral(current: int, additional: int, size: int) -> tuple[int, int]:
    total = current + additional
    leverage = size // total if total > 0 else 0
    return total, leverage


def remove_collateral(current: int, amount: int, size: int) -> tuple[int, int, int, int]:
    candidate = current - amount if current > amount else 0
    can_remove = 1 if candidate >= size // MAINTENANCE_MARGIN_DIVISOR else 0
    final = candidate if can_remove else current
    removed = amount if can_remove else 0
    leverage = size // final if final > 0 else 0
    return final, removed, can_remove, leverage


def liquidate(size: int, collateral: int, entry_price: int, price: int, side: int) -> tuple[int, int, int]:
    value = max(collateral + position_pnl(size, entry_price, price, side), 0)
    is_liquidatable = 1 if value < size // MAINTENANCE_MARGIN_DIVISOR else 0
    if not is_liquidatable:
        return 0, value, 0
    penalty = value // LIQUIDATION_PENALTY_DIVISOR
    return 1, max(value - penalty, 0), penalty


def calculate_position_value(size: int, collateral: int, entry_price: int, price: int, side: int) -> tuple[int, int, int]:
    pnl = position_pnl(size, entry_price, price, side)
    value = collateral + pnl
    return value, pnl, 1 if value < size // MAINTENANCE_MARGIN_DIVISOR else 0


# -- program views ----------------------------------------------------------


def _liquidation_price(entry_price: int, side: int, leverage_bps: int) -> int:
    if side == 0:
        drop = (BPS - MAINTENANCE_MARGIN_BPS) * BPS // leverage_bps
        return entry_price * drop // BPS
    rise = MAINTENANCE_MARGIN_BPS * BPS // leverage_bps + BPS
    return entry_price * rise // BPS


def entry_price_and_fee(
    *,
    oracle_price: int,
    collateral: int,
    size: int,
    side: int,
    spread_long_bps: int,
    spread_short_bps: int,
    fee_bps: int,
    min_leverage_bps: int,
    max_leverage_bps: int,
) -> tuple[int, int, int]:
    if collateral <= 0 or size <= 0:
        raise ValueError("collateral and size must be > 0")
    leverage = size * BPS // collateral
    if not (min_leverage_bps <= leverage <= max_leverage_bps):
        raise ValueError(f"leverage {leverage}bps outside [{min_leverage_bps}, {max_leverage_bps}]")
    liquidation_price = _liquidation_price(oracle_price, side, leverage)
    spread = oracle_price * (spread_long_bps if side == 0 else spread_short_bps) // BPS
    entry = oracle_price + spread if side == 0 else oracle_price - spread
    return entry, liquidation_price, size * fee_bps // BPS


def exit_price_and_fee(*, oracle_price: int, side: int, spread_long_bps: int, spread_short_bps: int, fee_bps: int) -> tuple[int, int]:
    # Closing a long sells into the short spread and vice versa.
    spread = oracle_price * (spread_short_bps if side == 0 else spread_long_bps) // BPS
    price = oracle_price - spread if side == 0 else oracle_price + spread
    estimated_size = 10_000
    return price, estimated_size * fee_bps // BPS


def pnl_percent(*, entry_price: int, price: int, side: int) -> tuple[int, int]:
    """(profit, loss) in whole percent of entry price; exactly one is non-zero."""
    gain = price - entry_price if side == 0 else entry_price - price
    pct = abs(gain) * 100 // entry_price
    return (pct, 0) if gain >= 0 else (0, pct)


def liquidation_price(*, entry_price: int, side: int) -> int:
    return _liquidation_price(entry_price, side, ESTIMATED_LEVERAGE_BPS)


def liquidation_state(*, entry_price: int, price: int, side: int) -> int:
    threshold = liquidation_price(entry_price=entry_price, side=side)
    hit = price <= threshold if side == 0 else price >= threshold
    return 1 if hit else 0


def swap_amount_and_fees(*, amount_in: int, swap_in_bps: int, swap_out_bps: int) -> tuple[int, int, int]:
    fee_in = amount_in * swap_in_bps // BPS
    gross_out = (amount_in - fee_in) * 98 // 100
    fee_out = gross_out * swap_out_bps // BPS
    return gross_out - fee_out, fee_in, fee_out


def amount_and_fee(*, amount_in: int, fee_bps: int) -> tuple[int, int]:
    fee = amount_in * fee_bps // BPS
    return amount_in - fee, fee


def lp_tokens_for(amount: int) -> int:
    return amount * USD_ONE // LP_TOKEN_PRICE
