from __future__ import annotations

import pytest

from veilperp.core.fixed_point import (
    U64_MAX,
    Price,
    UsdAmount,
    require_price,
    require_usd,
    signed_from_u64,
    u64_from_signed,
)


def test_from_decimal_uses_type_exponent() -> None:
    assert Price.from_decimal(50000).raw == 5_000_000_000_000
    assert UsdAmount.from_decimal("10000").raw == 10_000_000_000
    assert UsdAmount.from_decimal("0.5").raw == 500_000


def test_too_many_decimals_rejected() -> None:
    with pytest.raises(ValueError):
        UsdAmount.from_decimal("0.0000001")


def test_same_type_arithmetic_and_ordering() -> None:
    a = UsdAmount.from_decimal(500)
    b = UsdAmount.from_decimal(500)
    assert a + b == UsdAmount.from_decimal(1000)
    assert (a - UsdAmount.from_decimal(600)).raw == -100_000_000
    assert a < a + b
    assert str(UsdAmount(1_500_000)) == "1.5"


def test_mixing_exponents_is_a_type_error() -> None:
    price = Price.from_decimal(1)
    usd = UsdAmount.from_decimal(1)
    with pytest.raises(TypeError):
        price + usd
    with pytest.raises(TypeError):
        usd < price
    with pytest.raises(TypeError):
        require_price(usd)
    with pytest.raises(TypeError):
        require_usd(price)
    with pytest.raises(TypeError):
        UsdAmount(1.5)


def test_to_u64_range() -> None:
    assert UsdAmount(U64_MAX).to_u64() == U64_MAX
    with pytest.raises(ValueError):
        UsdAmount(-1).to_u64()


@pytest.mark.parametrize("value", [0, 1, -1, -600_000_000, (1 << 63) - 1, -(1 << 63)])
def test_signed_u64_reinterpretation(value: int) -> None:
    assert signed_from_u64(u64_from_signed(value)) == value


def test_u64_from_signed_out_of_range() -> None:
    with pytest.raises(ValueError):
        u64_from_signed(1 << 63)
