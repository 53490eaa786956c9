"""Byte layouts for everything handed to, or read from, the ledger.

All integers are little-endian. Instruction data and account data start with
an 8-byte discriminator (`sha256("global:<name>")[:8]` for instructions,
`sha256("account:<Name>")[:8]` for accounts), matching what the on-ledger
program expects.

Transaction encoding passed to `LedgerClient.submit`:

    version u8 | program_id [32] | n_accounts u8
    | n_accounts x (name_len u8 | name utf-8 | key [32])
    | data_len u32 | data (discriminator [8] | args)
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from veilperp.core.models import Address

TX_VERSION = 1
CIPHERTEXT_LEN = 32
NONCE_LEN = 16

# field type -> (size, packer, unpacker)
_SCALARS = {
    "u8": (1, lambda v: struct.pack("<B", v), lambda b: struct.unpack("<B", b)[0]),
    "u32": (4, lambda v: struct.pack("<I", v), lambda b: struct.unpack("<I", b)[0]),
    "u64": (8, lambda v: struct.pack("<Q", v), lambda b: struct.unpack("<Q", b)[0]),
    "i64": (8, lambda v: struct.pack("<q", v), lambda b: struct.unpack("<q", b)[0]),
    "u128": (16, lambda v: int(v).to_bytes(16, "little"), lambda b: int.from_bytes(b, "little")),
    "bytes32": (32, lambda v: _bytes32(v), lambda b: bytes(b)),
}


def _bytes32(v: Any) -> bytes:
    raw = v.key if isinstance(v, Address) else bytes(v)
    if len(raw) != 32:
        raise ValueError("expected 32 bytes")
    return raw


Layout = tuple[tuple[str, str], ...]

_COMPUTATION_HEAD: Layout = (("computation_offset", "u64"), ("position_id", "u64"))

INSTRUCTION_ARGS: Dict[str, Layout] = {
    # confidential path
    "open_position": _COMPUTATION_HEAD
    + (
        ("side", "u8"),
        ("entry_price", "u64"),
        ("size_encrypted", "bytes32"),
        ("collateral_encrypted", "bytes32"),
        ("client_pubkey", "bytes32"),
        ("size_nonce", "u128"),
        ("collateral_nonce", "u128"),
    ),
    "close_position": _COMPUTATION_HEAD + (("price", "u64"), ("client_pubkey", "bytes32")),
    "add_collateral": _COMPUTATION_HEAD
    + (("client_pubkey", "bytes32"), ("amount_encrypted", "bytes32"), ("amount_nonce", "u128")),
    "remove_collateral": _COMPUTATION_HEAD
    + (("client_pubkey", "bytes32"), ("amount_encrypted", "bytes32"), ("amount_nonce", "u128")),
    "liquidate": _COMPUTATION_HEAD + (("price", "u64"), ("client_pubkey", "bytes32")),
    "calculate_position_value": _COMPUTATION_HEAD + (("price", "u64"), ("client_pubkey", "bytes32")),
    # transparent path
    "open_position_public": (
        ("position_id", "u64"),
        ("side", "u8"),
        ("price", "u64"),
        ("size", "u64"),
        ("collateral", "u64"),
    ),
    "close_position_public": (("position_id", "u64"), ("price", "u64")),
    "add_collateral_public": (("position_id", "u64"), ("amount", "u64")),
    "remove_collateral_public": (("position_id", "u64"), ("amount", "u64")),
    "liquidate_public": (("position_id", "u64"), ("price", "u64")),
    "calculate_position_value_public": (("position_id", "u64"), ("price", "u64")),
    # pool liquidity (public state, identical in both modes)
    "swap": (("amount_in", "u64"), ("min_amount_out", "u64")),
    "add_liquidity": (("amount_in", "u64"), ("min_lp_amount_out", "u64")),
    "remove_liquidity": (("lp_amount_in", "u64"), ("min_amount_out", "u64")),
    # read-only views (simulated, never submitted)
    "get_entry_price_and_fee": (("collateral", "u64"), ("size", "u64"), ("side", "u8")),
    "get_exit_price_and_fee": (),
    "get_pnl": (),
    "get_liquidation_price": (),
    "get_liquidation_state": (),
    "get_oracle_price": (("ema", "u8"),),
    "get_swap_amount_and_fees": (("amount_in", "u64"),),
    "get_add_liquidity_amount_and_fee": (("amount_in", "u64"),),
    "get_remove_liquidity_amount_and_fee": (("lp_amount_in", "u64"),),
    "get_assets_under_management": (),
    "get_lp_token_price": (),
}

VIEW_RETURNS: Dict[str, Layout] = {
    "get_entry_price_and_fee": (("entry_price", "u64"), ("liquidation_price", "u64"), ("fee", "u64")),
    "get_exit_price_and_fee": (("price", "u64"), ("fee", "u64")),
    "get_pnl": (("profit", "u64"), ("loss", "u64")),
    "get_liquidation_price": (("value", "u64"),),
    "get_liquidation_state": (("value", "u8"),),
    "get_oracle_price": (("value", "u64"),),
    "get_swap_amount_and_fees": (("amount_out", "u64"), ("fee_in", "u64"), ("fee_out", "u64")),
    "get_add_liquidity_amount_and_fee": (("amount", "u64"), ("fee", "u64")),
    "get_remove_liquidity_amount_and_fee": (("amount", "u64"), ("fee", "u64")),
    "get_assets_under_management": (("value", "u128"),),
    "get_lp_token_price": (("value", "u64"),),
    "calculate_position_value_public": (("current_value", "i64"), ("pnl", "i64")),
}


def discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode("utf-8")).digest()[:8]


_BY_DISCRIMINATOR = {discriminator("global", name): name for name in INSTRUCTION_ARGS}


def pack(layout: Layout, values: Mapping[str, Any]) -> bytes:
    out = bytearray()
    for name, kind in layout:
        if name not in values:
            raise ValueError(f"missing field {name}")
        out += _SCALARS[kind][1](values[name])
    return bytes(out)


def unpack(layout: Layout, data: bytes, *, offset: int = 0) -> tuple[dict[str, Any], int]:
    values: dict[str, Any] = {}
    pos = offset
    for name, kind in layout:
        size, _, unpacker = _SCALARS[kind]
        chunk = data[pos : pos + size]
        if len(chunk) != size:
            raise ValueError(f"truncated data at field {name}")
        values[name] = unpacker(chunk)
        pos += size
    return values, pos


@dataclass(frozen=True)
class Instruction:
    program_id: Address
    name: str
    accounts: Dict[str, Address] = field(default_factory=dict)
    args: Dict[str, Any] = field(default_factory=dict)

    def data(self) -> bytes:
        layout = INSTRUCTION_ARGS[self.name]
        return discriminator("global", self.name) + pack(layout, self.args)


def encode_transaction(ix: Instruction) -> bytes:
    out = bytearray()
    out += struct.pack("<B", TX_VERSION)
    out += ix.program_id.key
    if len(ix.accounts) > 255:
        raise ValueError("too many accounts")
    out += struct.pack("<B", len(ix.accounts))
    for name, addr in ix.accounts.items():
        encoded = name.encode("utf-8")
        out += struct.pack("<B", len(encoded)) + encoded + addr.key
    data = ix.data()
    out += struct.pack("<I", len(data)) + data
    return bytes(out)


def decode_transaction(raw: bytes) -> Instruction:
    if len(raw) < 34 or raw[0] != TX_VERSION:
        raise ValueError("unsupported transaction encoding")
    program_id = Address(raw[1:33])
    count = raw[33]
    pos = 34
    accounts: Dict[str, Address] = {}
    for _ in range(count):
        name_len = raw[pos]
        name = raw[pos + 1 : pos + 1 + name_len].decode("utf-8")
        pos += 1 + name_len
        key = raw[pos : pos + 32]
        if len(key) != 32:
            raise ValueError("truncated account key")
        accounts[name] = Address(key)
        pos += 32
    (data_len,) = struct.unpack("<I", raw[pos : pos + 4])
    data = raw[pos + 4 : pos + 4 + data_len]
    if len(data) != data_len or data_len < 8:
        raise ValueError("truncated instruction data")
    name = _BY_DISCRIMINATOR.get(data[:8])
    if name is None:
        raise ValueError("unknown instruction discriminator")
    args, end = unpack(INSTRUCTION_ARGS[name], data, offset=8)
    if end != len(data):
        raise ValueError("trailing instruction data")
    return Instruction(program_id=program_id, name=name, accounts=accounts, args=args)


def encode_view_return(name: str, values: Mapping[str, Any]) -> bytes:
    return pack(VIEW_RETURNS[name], values)


def decode_view_return(name: str, data: bytes) -> dict[str, Any]:
    values, _ = unpack(VIEW_RETURNS[name], data)
    return values


POSITION_LAYOUT: Layout = (
    ("owner", "bytes32"),
    ("position_id", "u64"),
    ("side", "u8"),
    ("size_usd_encrypted", "bytes32"),
    ("collateral_usd_encrypted", "bytes32"),
    ("entry_price", "u64"),
    ("open_time", "i64"),
    ("update_time", "i64"),
    ("owner_enc_pubkey", "bytes32"),
    ("size_nonce", "u128"),
    ("collateral_nonce", "u128"),
    ("liquidator", "bytes32"),
    ("bump", "u8"),
)

POSITION_DISCRIMINATOR = discriminator("account", "Position")


@dataclass(frozen=True)
class PositionAccount:
    """On-ledger position account.

    In confidential positions the two 32-byte fields are ciphertexts under the
    owner's session key. Transparent positions keep the plaintext u64 in the
    first 8 bytes of the same fields and zero nonces.
    """

    owner: bytes
    position_id: int
    side: int
    size_usd_encrypted: bytes
    collateral_usd_encrypted: bytes
    entry_price: int
    open_time: int
    update_time: int
    owner_enc_pubkey: bytes
    size_nonce: int
    collateral_nonce: int
    liquidator: bytes
    bump: int

    def encode(self) -> bytes:
        return POSITION_DISCRIMINATOR + pack(POSITION_LAYOUT, self.__dict__)

    @classmethod
    def decode(cls, raw: bytes) -> "PositionAccount":
        if raw[:8] != POSITION_DISCRIMINATOR:
            raise ValueError("not a position account")
        values, _ = unpack(POSITION_LAYOUT, raw, offset=8)
        return cls(**values)


def plain_field(value: int) -> bytes:
    return struct.pack("<Q", value) + bytes(CIPHERTEXT_LEN - 8)


def read_plain_field(raw: bytes) -> int:
    return struct.unpack("<Q", raw[:8])[0]


def nonce_to_int(nonce: bytes) -> int:
    if len(nonce) != NONCE_LEN:
        raise ValueError("nonce must be 16 bytes")
    return int.from_bytes(nonce, "little")


def int_to_nonce(value: int) -> bytes:
    return int(value).to_bytes(NONCE_LEN, "little")
