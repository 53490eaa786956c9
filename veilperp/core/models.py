from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from .fixed_point import Price, UsdAmount


@dataclass(frozen=True)
class EventEnvelope:
    event_id: str
    trace_id: str
    produced_at: datetime
    schema: str
    schema_version: int
    payload: Dict[str, Any]
    source_service: Optional[str] = None


@dataclass(frozen=True)
class Address:
    """32-byte ledger address (account key, program id or derived sub-account)."""

    key: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.key, (bytes, bytearray)) or len(self.key) != 32:
            raise ValueError("address must be 32 bytes")
        object.__setattr__(self, "key", bytes(self.key))

    @classmethod
    def from_hex(cls, value: str) -> "Address":
        return cls(bytes.fromhex(value))

    @classmethod
    def default(cls) -> "Address":
        return cls(bytes(32))

    def hex(self) -> str:
        return self.key.hex()

    def __str__(self) -> str:
        return self.key.hex()


class Side(int, Enum):
    """Position side as encoded on the wire (u8)."""

    LONG = 0
    SHORT = 1


class ExecutionMode(str, Enum):
    CONFIDENTIAL = "confidential"
    TRANSPARENT = "transparent"


class ComputationKind(str, Enum):
    OPEN = "open_position"
    CLOSE = "close_position"
    ADD_COLLATERAL = "add_collateral"
    REMOVE_COLLATERAL = "remove_collateral"
    LIQUIDATE = "liquidate"
    VALUE_QUERY = "calculate_position_value"

    @property
    def circuit(self) -> str:
        return self.value


@dataclass(frozen=True)
class ConfidentialField:
    """A value that only exists as (ciphertext, nonce) outside the MPC network."""

    ciphertext: bytes
    nonce: bytes  # 16 bytes; u128 little-endian on the wire


@dataclass(frozen=True)
class PendingComputation:
    offset: int
    kind: ComputationKind
    position_id: int
    submitted_at: datetime
    signature: str = ""


# Decoded computation results (plaintext, after decryption).


@dataclass(frozen=True)
class OpenResult:
    size: UsdAmount
    collateral: UsdAmount


@dataclass(frozen=True)
class CloseResult:
    realized_pnl: UsdAmount  # signed
    final_balance: UsdAmount
    can_close: bool


@dataclass(frozen=True)
class AddCollateralResult:
    new_collateral: UsdAmount
    new_leverage: int


@dataclass(frozen=True)
class RemoveCollateralResult:
    new_collateral: UsdAmount
    removed_amount: UsdAmount
    can_remove: bool
    new_leverage: int


@dataclass(frozen=True)
class LiquidateResult:
    is_liquidatable: bool
    remaining_collateral: UsdAmount
    penalty: UsdAmount


@dataclass(frozen=True)
class ValueResult:
    current_value: UsdAmount
    pnl: UsdAmount  # signed


ComputationResult = Union[
    OpenResult,
    CloseResult,
    AddCollateralResult,
    RemoveCollateralResult,
    LiquidateResult,
    ValueResult,
]


@dataclass(frozen=True)
class TransactionResult:
    """Normalized outcome of every mutating operation, whatever the backend."""

    signature: str
    success: bool
    position_key: Optional[Address] = None
    error: Optional[str] = None
    outcome: Optional[ComputationResult] = None

    @classmethod
    def failed(cls, error: str, *, signature: str = "") -> "TransactionResult":
        return cls(signature=signature, success=False, error=error)


@dataclass(frozen=True)
class PositionView:
    """Reconciled plaintext view of a position, identical for both paths."""

    address: Address
    owner: Address
    position_id: int
    side: Side
    entry_price: Price
    open_time: int
    update_time: int
    size: UsdAmount
    collateral: UsdAmount
    liquidator: Address = field(default_factory=Address.default)

    @property
    def is_closed(self) -> bool:
        return self.size.raw == 0


# Operation parameters.


@dataclass(frozen=True)
class OpenPositionParams:
    price: Price
    size: UsdAmount
    collateral: UsdAmount
    side: Side


@dataclass(frozen=True)
class ClosePositionParams:
    position_key: Address
    price: Price


@dataclass(frozen=True)
class CollateralParams:
    position_key: Address
    amount: UsdAmount


@dataclass(frozen=True)
class LiquidateParams:
    position_key: Address
    price: Price


@dataclass(frozen=True)
class SwapParams:
    """Swap `amount_in` of the receiving custody's token for the dispensing custody's.

    Token amounts are raw base units of each mint.
    """

    pool: Address
    receiving_custody_mint: Address
    dispensing_custody_mint: Address
    amount_in: int
    min_amount_out: int
    funding_account: Address
    receiving_account: Address


@dataclass(frozen=True)
class AddLiquidityParams:
    pool: Address
    custody_mint: Address
    amount_in: int
    min_lp_amount_out: int
    funding_account: Address
    lp_token_account: Address


@dataclass(frozen=True)
class RemoveLiquidityParams:
    pool: Address
    custody_mint: Address
    lp_amount_in: int
    min_amount_out: int
    lp_token_account: Address
    receiving_account: Address


# Read-only view results.


@dataclass(frozen=True)
class EntryPriceAndFee:
    entry_price: Price
    liquidation_price: Price
    fee: UsdAmount


@dataclass(frozen=True)
class ExitPriceAndFee:
    price: Price
    fee: UsdAmount


@dataclass(frozen=True)
class ProfitAndLoss:
    profit: int
    loss: int


@dataclass(frozen=True)
class SwapAmountAndFees:
    amount_out: int
    fee_in: int
    fee_out: int


@dataclass(frozen=True)
class AmountAndFee:
    amount: int
    fee: int
