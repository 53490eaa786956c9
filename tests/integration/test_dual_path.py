"""The confidential and transparent paths agree on every observable result."""

from __future__ import annotations

import pytest

from veilperp.computation.addresses import pool_address
from veilperp.core.fixed_point import Price, UsdAmount
from veilperp.core.models import (
    AddLiquidityParams,
    Address,
    ClosePositionParams,
    CollateralParams,
    ExecutionMode,
    LiquidateParams,
    OpenPositionParams,
    PositionView,
    Side,
    SwapParams,
)
from veilperp.execution.adapter import ModeAdapter
from veilperp.execution.venues.simulated import SimulatedVenue


PROGRAM = Address(b"\x01" * 32)
MPC = Address(b"\x02" * 32)
FUNDING = Address(b"\x03" * 32)
OWNER = Address(b"\x04" * 32)
SOL = Address(b"\x05" * 32)

OPEN = OpenPositionParams(
    price=Price(5_000_000_000_000),
    size=UsdAmount(10_000_000_000),
    collateral=UsdAmount(1_000_000_000),
    side=Side.LONG,
)


@pytest.fixture
def venue() -> SimulatedVenue:
    return SimulatedVenue(program_id=PROGRAM, mpc_program_id=MPC, clock=lambda: 1772443800.0)


@pytest.fixture(params=[ExecutionMode.CONFIDENTIAL, ExecutionMode.TRANSPARENT], ids=lambda m: m.value)
def adapter(request, venue: SimulatedVenue):
    adapter = ModeAdapter(
        ledger=venue,
        finalizations=venue,
        key_source=venue,
        program_id=PROGRAM,
        mpc_program_id=MPC,
        owner=OWNER,
        mode=request.param,
        funding_account=FUNDING,
        sleep=lambda _: None,
    )
    adapter.initialize()
    yield adapter
    adapter.teardown()


def _shape(view: PositionView) -> tuple:
    return (view.owner, view.side, view.entry_price, view.size, view.collateral, view.liquidator, view.is_closed)


def test_open_then_read(adapter: ModeAdapter) -> None:
    result = adapter.open_position(OPEN)
    assert result.success, result.error
    assert _shape(adapter.get_position(result.position_key)) == (
        OWNER,
        Side.LONG,
        Price(5_000_000_000_000),
        UsdAmount(10_000_000_000),
        UsdAmount(1_000_000_000),
        Address.default(),
        False,
    )


def test_lifecycle_reaches_the_same_state(adapter: ModeAdapter) -> None:
    key = adapter.open_position(OPEN).position_key

    assert adapter.add_collateral(CollateralParams(position_key=key, amount=UsdAmount(500_000_000))).success
    assert adapter.remove_collateral(CollateralParams(position_key=key, amount=UsdAmount(200_000_000))).success
    assert adapter.get_position(key).collateral == UsdAmount(1_300_000_000)

    assert adapter.close_position(ClosePositionParams(position_key=key, price=Price(6_000_000_000_000))).success
    view = adapter.get_position(key)
    assert view.is_closed
    assert view.size == UsdAmount(0)
    assert view.collateral == UsdAmount(0)


def test_liquidation_reaches_the_same_state(adapter: ModeAdapter) -> None:
    key = adapter.open_position(
        OpenPositionParams(
            price=Price(5_000_000_000_000),
            size=UsdAmount(10_000_000_000),
            collateral=UsdAmount(500_000_000),
            side=Side.LONG,
        )
    ).position_key

    assert adapter.liquidate(LiquidateParams(position_key=key, price=Price(4_700_000_000_000))).success
    view = adapter.get_position(key)
    assert view.size == UsdAmount(0)
    assert view.collateral == UsdAmount(0)
    assert view.liquidator == OWNER


def test_position_value_matches(adapter: ModeAdapter) -> None:
    key = adapter.open_position(OPEN).position_key
    value = adapter.get_position_value(key, Price(5_500_000_000_000))
    assert value.current_value == UsdAmount(2_000_000_000)
    assert value.pnl == UsdAmount(1_000_000_000)


def test_views_match(adapter: ModeAdapter, venue: SimulatedVenue) -> None:
    custody = venue.add_custody("main", SOL, price=Price(5_000_000_000_000))
    key = adapter.open_position(OPEN).position_key

    assert adapter.get_oracle_price(custody) == Price(5_000_000_000_000)
    assert adapter.get_liquidation_price(key, custody) == Price(47_500_000_000_000)
    quote = adapter.get_entry_price_and_fee(
        custody, collateral=UsdAmount(1_000_000_000), size=UsdAmount(10_000_000_000), side=Side.LONG
    )
    assert quote.entry_price == Price(5_005_000_000_000)
    assert adapter.get_pnl(key, custody).loss == 0


def test_pool_liquidity_matches(adapter: ModeAdapter, venue: SimulatedVenue) -> None:
    usdc = Address(b"\x06" * 32)
    lp_account = Address(b"\x0a" * 32)
    sol_custody = venue.add_custody("main", SOL, price=Price(5_000_000_000_000))
    usdc_custody = venue.add_custody("main", usdc, price=Price(100_000_000))
    pool = pool_address("main", PROGRAM)

    added = adapter.add_liquidity(
        AddLiquidityParams(
            pool=pool,
            custody_mint=usdc,
            amount_in=1_000_000,
            min_lp_amount_out=997_000,
            funding_account=FUNDING,
            lp_token_account=lp_account,
        )
    )
    swapped = adapter.swap(
        SwapParams(
            pool=pool,
            receiving_custody_mint=SOL,
            dispensing_custody_mint=usdc,
            amount_in=10_000,
            min_amount_out=9_761,
            funding_account=FUNDING,
            receiving_account=OWNER,
        )
    )

    assert added.success and added.outcome is None
    assert swapped.success and swapped.outcome is None
    assert venue.lp_balance(lp_account) == 997_000
    assert venue.custody_assets(sol_custody) == 10_000
    assert venue.custody_assets(usdc_custody) == 1_000_000 - 9_761
