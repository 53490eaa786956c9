"""Fixed-point amounts that carry their decimal exponent.

Prices use 8 decimals, USD-denominated amounts use 6. The two are distinct
types: arithmetic or comparison between a `Price` and a `UsdAmount` raises
`TypeError`, so an exponent mix-up fails at the call site instead of
producing a number that is off by 100x.

Values are stored as bare integers (`raw`) exactly as they travel on the wire.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, TypeVar

U64_MAX = (1 << 64) - 1

T = TypeVar("T", bound="FixedPoint")


@dataclass(frozen=True, order=False)
class FixedPoint:
    raw: int

    DECIMALS = 0

    def __post_init__(self) -> None:
        if isinstance(self.raw, bool) or not isinstance(self.raw, int):
            raise TypeError(f"{type(self).__name__}.raw must be int, got {type(self.raw).__name__}")

    @classmethod
    def from_decimal(cls: type[T], value: Decimal | str | int) -> T:
        d = Decimal(str(value)) * (Decimal(10) ** cls.DECIMALS)
        if d != d.to_integral_value():
            raise ValueError(f"{value} has more than {cls.DECIMALS} decimals")
        return cls(int(d))

    def to_decimal(self) -> Decimal:
        return Decimal(self.raw) / (Decimal(10) ** self.DECIMALS)

    def to_u64(self) -> int:
        if not (0 <= self.raw <= U64_MAX):
            raise ValueError(f"{self!r} does not fit in u64")
        return self.raw

    def _same(self, other: Any) -> "FixedPoint":
        if type(other) is not type(self):
            raise TypeError(
                f"cannot combine {type(self).__name__} ({self.DECIMALS} decimals) "
                f"with {type(other).__name__}"
            )
        return other

    def __add__(self: T, other: Any) -> T:
        return type(self)(self.raw + self._same(other).raw)

    def __sub__(self: T, other: Any) -> T:
        return type(self)(self.raw - self._same(other).raw)

    def __neg__(self: T) -> T:
        return type(self)(-self.raw)

    def __lt__(self, other: Any) -> bool:
        return self.raw < self._same(other).raw

    def __le__(self, other: Any) -> bool:
        return self.raw <= self._same(other).raw

    def __gt__(self, other: Any) -> bool:
        return self.raw > self._same(other).raw

    def __ge__(self, other: Any) -> bool:
        return self.raw >= self._same(other).raw

    def __str__(self) -> str:
        return f"{self.to_decimal():f}"


@dataclass(frozen=True, order=False)
class Price(FixedPoint):
    DECIMALS = 8


@dataclass(frozen=True, order=False)
class UsdAmount(FixedPoint):
    DECIMALS = 6


def require_price(value: Any, *, field: str = "price") -> Price:
    if not isinstance(value, Price):
        raise TypeError(f"{field} must be Price (8 decimals), got {type(value).__name__}")
    return value


def require_usd(value: Any, *, field: str = "amount") -> UsdAmount:
    if not isinstance(value, UsdAmount):
        raise TypeError(f"{field} must be UsdAmount (6 decimals), got {type(value).__name__}")
    return value


def signed_from_u64(raw: int) -> int:
    """Reinterpret a u64 as the i64 it encodes (two's complement)."""
    raw &= U64_MAX
    return raw - (1 << 64) if raw >> 63 else raw


def u64_from_signed(value: int) -> int:
    if not (-(1 << 63) <= value < (1 << 63)):
        raise ValueError(f"{value} does not fit in i64")
    return value & U64_MAX
