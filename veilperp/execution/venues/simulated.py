"""In-memory ledger and MPC network.

Stub venue for tests and dry runs. It implements every consumed interface
(`LedgerClient`, `FinalizationSource`, `NetworkKeySource`) over plain dicts:

- the ledger keeps account bytes keyed by address and applies transparent
  instructions directly;
- the MPC network holds an x25519 key, decrypts confidential inputs,
  evaluates the circuit formulas in `circuits` and re-encrypts outputs for
  the requester's session key, then publishes a v1 finalization envelope.

Finalization is synchronous on submit unless `auto_finalize` is off; tests
then drive it with `finalize_pending()`, or leave computations stalled.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import nacl.bindings
import nacl.public

from veilperp.computation.addresses import (
    custody_address,
    custody_token_account_address,
    find_program_address,
    lp_token_mint_address,
    perpetuals_address,
    pool_address,
    position_address,
    routing_accounts,
    POSITION_SEED,
)
from veilperp.contracts import streams
from veilperp.contracts.layouts import (
    POSITION_DISCRIMINATOR,
    Instruction,
    PositionAccount,
    decode_transaction,
    encode_view_return,
    int_to_nonce,
    nonce_to_int,
    plain_field,
    read_plain_field,
)
from veilperp.core.errors import DecryptionError, DuplicatePositionId, LedgerError, PositionNotFound
from veilperp.core.fixed_point import Price, u64_from_signed
from veilperp.core.ids import new_event_id, new_trace_id
from veilperp.core.models import Address, EventEnvelope
from veilperp.crypto.cipher import Cipher

from . import circuits


logger = logging.getLogger(__name__)

_CONFIDENTIAL = {kind for kind in streams.SCHEMA_BY_CIRCUIT}


@dataclass
class CustodyState:
    pool: Address
    mint: Address
    oracle_price: int
    ema_price: int
    trade_spread_long_bps: int = 10
    trade_spread_short_bps: int = 10
    min_initial_leverage_bps: int = 10_000
    max_initial_leverage_bps: int = 1_000_000
    open_position_fee_bps: int = 10
    close_position_fee_bps: int = 10
    swap_in_bps: int = 20
    swap_out_bps: int = 20
    add_liquidity_bps: int = 30
    remove_liquidity_bps: int = 30
    assets: int = 0


@dataclass(frozen=True)
class _Queued:
    offset: int
    instruction: Instruction
    signature: str


class SimulatedVenue:
    name = "simulated"

    def __init__(
        self,
        *,
        program_id: Address,
        mpc_program_id: Address | None = None,
        cluster_offset: int = 0,
        auto_finalize: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.program_id = program_id
        self.mpc_program_id = mpc_program_id
        self.cluster_offset = cluster_offset
        self.auto_finalize = auto_finalize
        self.key_available = True
        self._clock = clock
        self._network_key = nacl.public.PrivateKey.generate()
        self._cond = threading.Condition()
        self._accounts: Dict[bytes, bytes] = {}
        self._custodies: Dict[bytes, CustodyState] = {}
        self._pool_aum: Dict[bytes, int] = {}
        self._lp_balances: Dict[bytes, int] = {}
        self._queue: list[_Queued] = []
        self._records: Dict[int, EventEnvelope] = {}
        self._fail_next: Optional[str] = None
        self._tx_count = 0
        self.published: list[EventEnvelope] = []

    # -- test controls -----------------------------------------------------

    def add_custody(self, pool_name: str, mint: Address, *, price: Price, ema: Price | None = None, **config: int) -> Address:
        pool = pool_address(pool_name, self.program_id)
        key = custody_address(pool, mint, self.program_id)
        with self._cond:
            self._pool_aum.setdefault(pool.key, 0)
            self._custodies[key.key] = CustodyState(
                pool=pool,
                mint=mint,
                oracle_price=price.to_u64(),
                ema_price=(ema or price).to_u64(),
                **config,
            )
        return key

    def set_oracle_price(self, custody: Address, price: Price, *, ema: Price | None = None) -> None:
        with self._cond:
            state = self._custody(custody)
            state.oracle_price = price.to_u64()
            state.ema_price = (ema or price).to_u64()

    def set_pool_aum(self, pool: Address, aum_usd: int) -> None:
        with self._cond:
            self._pool_aum[pool.key] = aum_usd

    def custody_assets(self, custody: Address) -> int:
        with self._cond:
            return self._custody(custody).assets

    def lp_balance(self, lp_token_account: Address) -> int:
        with self._cond:
            return self._lp_balances.get(lp_token_account.key, 0)

    def fail_next(self, reason: str) -> None:
        """The next finalized computation reports a network failure."""
        with self._cond:
            self._fail_next = reason

    def pending_offsets(self) -> list[int]:
        with self._cond:
            return [q.offset for q in self._queue]

    def finalize_pending(self) -> int:
        with self._cond:
            queued, self._queue = self._queue, []
        for q in queued:
            self._finalize(q)
        return len(queued)

    def network_cipher_for(self, client_public_key: bytes) -> Cipher:
        return Cipher(nacl.bindings.crypto_scalarmult(bytes(self._network_key), bytes(client_public_key)))

    # -- NetworkKeySource --------------------------------------------------

    def get_network_public_key(self) -> Optional[bytes]:
        if not self.key_available:
            return None
        return bytes(self._network_key.public_key)

    # -- LedgerClient ------------------------------------------------------

    def fetch(self, address: Address) -> Optional[bytes]:
        with self._cond:
            return self._accounts.get(address.key)

    def find_positions(self, program_id: Address, owner: Address) -> list[Address]:
        if program_id != self.program_id:
            return []
        out = []
        with self._cond:
            items = list(self._accounts.items())
        for key, raw in items:
            if raw[:8] == POSITION_DISCRIMINATOR and PositionAccount.decode(raw).owner == owner.key:
                out.append(Address(key))
        return out

    def submit(self, transaction: bytes) -> str:
        ix = self._decode(transaction)
        with self._cond:
            self._tx_count += 1
            signature = hashlib.sha256(transaction + self._tx_count.to_bytes(8, "little")).hexdigest()

        if ix.name in _CONFIDENTIAL:
            self._accept_computation(ix)
            queued = _Queued(offset=int(ix.args["computation_offset"]), instruction=ix, signature=signature)
            logger.info("computation_queued", extra={"offset": queued.offset, "circuit": ix.name})
            if self.auto_finalize:
                self._finalize(queued)
            else:
                with self._cond:
                    self._queue.append(queued)
            return signature

        handler = getattr(self, f"_public_{ix.name}", None)
        if handler is None:
            raise LedgerError(f"instruction {ix.name} cannot be submitted")
        with self._cond:
            handler(ix)
        return signature

    def simulate(self, transaction: bytes) -> bytes:
        ix = self._decode(transaction)
        handler = getattr(self, f"_view_{ix.name}", None)
        if handler is None:
            raise LedgerError(f"instruction {ix.name} is not a view")
        with self._cond:
            values = handler(ix)
        return encode_view_return(ix.name, values)

    # -- FinalizationSource ------------------------------------------------

    def await_finalization(
        self,
        offset: int,
        *,
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[EventEnvelope]:
        deadline = time.monotonic() + timeout
        with self._cond:
            while offset not in self._records:
                if cancel is not None and cancel.is_set():
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, 0.05))
            return self._records.pop(offset)

    # -- internals ---------------------------------------------------------

    def _decode(self, transaction: bytes) -> Instruction:
        try:
            ix = decode_transaction(transaction)
        except ValueError as e:
            raise LedgerError(f"malformed transaction: {e}") from e
        if ix.program_id != self.program_id:
            raise LedgerError("transaction targets another program")
        return ix

    def _custody(self, address: Address) -> CustodyState:
        state = self._custodies.get(address.key)
        if state is None:
            raise LedgerError(f"unknown custody {address.hex()[:16]}")
        return state

    def _load(self, address: Address) -> PositionAccount:
        raw = self._accounts.get(address.key)
        if raw is None:
            raise PositionNotFound(f"position {address.hex()[:16]} does not exist")
        return PositionAccount.decode(raw)

    def _store(self, address: Address, position: PositionAccount) -> None:
        self._accounts[address.key] = position.encode()

    def _now(self) -> int:
        return int(self._clock())

    def _check_position_key(self, ix: Instruction, owner: Address) -> Address:
        expected = position_address(owner, int(ix.args["position_id"]), self.program_id)
        if ix.accounts.get("position") != expected:
            raise LedgerError("position account does not match seeds")
        return expected

    def _new_position(self, ix: Instruction, owner: Address, **fields: Any) -> PositionAccount:
        key = self._check_position_key(ix, owner)
        if key.key in self._accounts:
            raise DuplicatePositionId(f"position {int(ix.args['position_id'])} already exists for owner")
        _, bump = find_program_address([POSITION_SEED, owner.key, int(ix.args["position_id"]).to_bytes(8, "little")], self.program_id)
        now = self._now()
        return PositionAccount(
            owner=owner.key,
            position_id=int(ix.args["position_id"]),
            open_time=now,
            update_time=now,
            liquidator=bytes(32),
            bump=bump,
            **fields,
        )

    def _accept_computation(self, ix: Instruction) -> None:
        offset = int(ix.args["computation_offset"])
        if self.mpc_program_id is not None:
            expected = routing_accounts(
                mpc_program_id=self.mpc_program_id,
                program_id=self.program_id,
                cluster_offset=self.cluster_offset,
                offset=offset,
                circuit=ix.name,
            )
            for name, addr in expected.as_accounts().items():
                if ix.accounts.get(name) != addr:
                    raise LedgerError(f"{name} does not match computation offset {offset}")
        with self._cond:
            if offset in self._records or any(q.offset == offset for q in self._queue):
                raise LedgerError(f"computation offset {offset} already in use")
            if ix.name == "open_position":
                owner = ix.accounts["owner"]
                position = self._new_position(
                    ix,
                    owner,
                    side=int(ix.args["side"]),
                    size_usd_encrypted=ix.args["size_encrypted"],
                    collateral_usd_encrypted=ix.args["collateral_encrypted"],
                    entry_price=int(ix.args["entry_price"]),
                    owner_enc_pubkey=ix.args["client_pubkey"],
                    size_nonce=int(ix.args["size_nonce"]),
                    collateral_nonce=int(ix.args["collateral_nonce"]),
                )
                self._store(ix.accounts["position"], position)
            else:
                self._load(ix.accounts["position"])

    def _emit(self, offset: int, schema: str, payload: Dict[str, Any]) -> None:
        env = EventEnvelope(
            event_id=new_event_id(),
            trace_id=new_trace_id(),
            produced_at=datetime.now(timezone.utc),
            schema=schema,
            schema_version=1,
            payload=payload,
            source_service="mpc-simulated",
        )
        with self._cond:
            self._records[offset] = env
            self.published.append(env)
            self._cond.notify_all()

    def _finalize(self, q: _Queued) -> None:
        ix = q.instruction
        offset = q.offset
        position_id = int(ix.args["position_id"])
        with self._cond:
            reason, self._fail_next = self._fail_next, None
        if reason is not None:
            self._emit(offset, streams.MPC_COMPUTATION_FAILED_V1, {"offset": offset, "position_id": position_id, "reason": reason})
            return
        try:
            with self._cond:
                schema, payload = getattr(self, f"_circuit_{ix.name}")(ix)
        except (DecryptionError, PositionNotFound) as e:
            self._emit(
                offset,
                streams.MPC_COMPUTATION_FAILED_V1,
                {
                    "offset": offset,
                    "position_id": position_id,
                    "reason": type(e).__name__,
                    "details": {"message": str(e)},
                },
            )
            return
        payload = {"offset": offset, "position_id": position_id, **payload}
        self._emit(offset, schema, payload)
        logger.info("computation_finalized", extra={"offset": offset, "schema": schema})

    def _owner_values(self, position: PositionAccount) -> tuple[int, int]:
        cipher = self.network_cipher_for(position.owner_enc_pubkey)
        size = cipher.decrypt(position.size_usd_encrypted, int_to_nonce(position.size_nonce))
        collateral = cipher.decrypt(position.collateral_usd_encrypted, int_to_nonce(position.collateral_nonce))
        return size, collateral

    def _reseal(self, position: PositionAccount, client_key: bytes, size: int, collateral: int) -> PositionAccount:
        cipher = self.network_cipher_for(client_key)
        enc_size = cipher.encrypt(size)
        enc_collateral = cipher.encrypt(collateral)
        return replace(
            position,
            owner_enc_pubkey=bytes(client_key),
            size_usd_encrypted=enc_size.ciphertext,
            size_nonce=nonce_to_int(enc_size.nonce),
            collateral_usd_encrypted=enc_collateral.ciphertext,
            collateral_nonce=nonce_to_int(enc_collateral.nonce),
            update_time=self._now(),
        )

    def _sealed_output(self, client_key: bytes, schema: str, values: list[int]) -> Dict[str, Any]:
        ciphertexts, nonce = self.network_cipher_for(client_key).encrypt_many(values)
        out: Dict[str, Any] = {"nonce": nonce_to_int(nonce)}
        for name, ct in zip(streams.ENCRYPTED_FIELDS[schema], ciphertexts):
            out[name] = ct.hex()
        return out

    # circuits (called under self._cond)

    def _circuit_open_position(self, ix: Instruction) -> tuple[str, Dict[str, Any]]:
        key = ix.accounts["position"]
        position = self._load(key)
        client = ix.args["client_pubkey"]
        size, collateral = self._owner_values(position)
        size, collateral = circuits.open_position(size, collateral)
        position = self._reseal(position, client, size, collateral)
        self._store(key, position)
        return streams.MPC_POSITION_OPENED_V1, {
            "owner": position.owner.hex(),
            "side": position.side,
            "entry_price": position.entry_price,
            "size_encrypted": position.size_usd_encrypted.hex(),
            "size_nonce": position.size_nonce,
            "collateral_encrypted": position.collateral_usd_encrypted.hex(),
            "collateral_nonce": position.collateral_nonce,
        }

    def _circuit_close_position(self, ix: Instruction) -> tuple[str, Dict[str, Any]]:
        key = ix.accounts["position"]
        position = self._load(key)
        size, collateral = self._owner_values(position)
        pnl, balance, can_close = circuits.close_position(
            size, collateral, position.entry_price, int(ix.args["price"]), position.side
        )
        self._store(key, self._reseal(position, ix.args["client_pubkey"], 0, 0))
        schema = streams.MPC_POSITION_CLOSED_V1
        out = self._sealed_output(ix.args["client_pubkey"], schema, [u64_from_signed(pnl), balance, can_close])
        out["owner"] = position.owner.hex()
        return schema, out

    def _change_collateral(self, ix: Instruction, schema: str, formula) -> tuple[str, Dict[str, Any]]:
        key = ix.accounts["position"]
        position = self._load(key)
        client = ix.args["client_pubkey"]
        size, collateral = self._owner_values(position)
        amount = self.network_cipher_for(client).decrypt(ix.args["amount_encrypted"], int_to_nonce(ix.args["amount_nonce"]))
        values = list(formula(collateral, amount, size))
        self._store(key, self._reseal(position, client, size, values[0]))
        out = self._sealed_output(client, schema, values)
        out["owner"] = position.owner.hex()
        return schema, out

    def _circuit_add_collateral(self, ix: Instruction) -> tuple[str, Dict[str, Any]]:
        return self._change_collateral(ix, streams.MPC_COLLATERAL_ADDED_V1, circuits.add_collateral)

    def _circuit_remove_collateral(self, ix: Instruction) -> tuple[str, Dict[str, Any]]:
        return self._change_collateral(ix, streams.MPC_COLLATERAL_REMOVED_V1, circuits.remove_collateral)

    def _circuit_liquidate(self, ix: Instruction) -> tuple[str, Dict[str, Any]]:
        key = ix.accounts["position"]
        position = self._load(key)
        size, collateral = self._owner_values(position)
        flag, remaining, penalty = circuits.liquidate(
            size, collateral, position.entry_price, int(ix.args["price"]), position.side
        )
        liquidator = ix.accounts["liquidator"]
        if flag:
            position = self._reseal(position, position.owner_enc_pubkey, 0, 0)
            self._store(key, replace(position, liquidator=liquidator.key))
        schema = streams.MPC_POSITION_LIQUIDATED_V1
        out = self._sealed_output(ix.args["client_pubkey"], schema, [flag, remaining, penalty])
        out["owner"] = position.owner.hex()
        out["liquidator"] = liquidator.hex()
        return schema, out

    def _circuit_calculate_position_value(self, ix: Instruction) -> tuple[str, Dict[str, Any]]:
        position = self._load(ix.accounts["position"])
        size, collateral = self._owner_values(position)
        value, pnl, _ = circuits.calculate_position_value(
            size, collateral, position.entry_price, int(ix.args["price"]), position.side
        )
        schema = streams.MPC_POSITION_VALUE_CALCULATED_V1
        return schema, self._sealed_output(
            ix.args["client_pubkey"], schema, [u64_from_signed(value), u64_from_signed(pnl)]
        )

    # transparent instructions (called under self._cond)

    def _plain_values(self, position: PositionAccount) -> tuple[int, int]:
        return read_plain_field(position.size_usd_encrypted), read_plain_field(position.collateral_usd_encrypted)

    def _store_plain(self, key: Address, position: PositionAccount, size: int, collateral: int, **changes: Any) -> None:
        self._store(
            key,
            replace(
                position,
                size_usd_encrypted=plain_field(size),
                collateral_usd_encrypted=plain_field(collateral),
                update_time=self._now(),
                **changes,
            ),
        )

    def _require_funding(self, ix: Instruction) -> None:
        if "funding_account" not in ix.accounts or ix.accounts.get("perpetuals") != perpetuals_address(self.program_id):
            raise LedgerError("collateral transfer needs funding and perpetuals accounts")

    def _public_open_position_public(self, ix: Instruction) -> None:
        self._require_funding(ix)
        size, collateral = circuits.open_position(int(ix.args["size"]), int(ix.args["collateral"]))
        position = self._new_position(
            ix,
            ix.accounts["owner"],
            side=int(ix.args["side"]),
            size_usd_encrypted=plain_field(size),
            collateral_usd_encrypted=plain_field(collateral),
            entry_price=int(ix.args["price"]),
            owner_enc_pubkey=bytes(32),
            size_nonce=0,
            collateral_nonce=0,
        )
        self._store(ix.accounts["position"], position)

    def _public_close_position_public(self, ix: Instruction) -> None:
        key = ix.accounts["position"]
        position = self._load(key)
        self._store_plain(key, position, 0, 0)

    def _public_add_collateral_public(self, ix: Instruction) -> None:
        self._require_funding(ix)
        key = ix.accounts["position"]
        position = self._load(key)
        size, collateral = self._plain_values(position)
        new_collateral, _ = circuits.add_collateral(collateral, int(ix.args["amount"]), size)
        self._store_plain(key, position, size, new_collateral)

    def _public_remove_collateral_public(self, ix: Instruction) -> None:
        self._require_funding(ix)
        key = ix.accounts["position"]
        position = self._load(key)
        size, collateral = self._plain_values(position)
        new_collateral, _, _, _ = circuits.remove_collateral(collateral, int(ix.args["amount"]), size)
        self._store_plain(key, position, size, new_collateral)

    def _public_liquidate_public(self, ix: Instruction) -> None:
        key = ix.accounts["position"]
        position = self._load(key)
        size, collateral = self._plain_values(position)
        flag, _, _ = circuits.liquidate(size, collateral, position.entry_price, int(ix.args["price"]), position.side)
        if not flag:
            return
        self._store_plain(key, position, 0, 0, liquidator=ix.accounts["liquidator"].key)

    # pool liquidity (called under self._cond)

    def _require_transfer_authority(self, ix: Instruction) -> None:
        if ix.accounts.get("perpetuals") != perpetuals_address(self.program_id):
            raise LedgerError("token transfer needs the perpetuals account")
        if ix.accounts.get("transfer_authority") != ix.accounts.get("owner"):
            raise LedgerError("transfer authority must be the signer")

    def _pool_custody(self, ix: Instruction, prefix: str = "") -> CustodyState:
        pool = ix.accounts["pool"]
        state = self._custody(ix.accounts[f"{prefix}custody"])
        if state.pool != pool:
            raise LedgerError(f"{prefix}custody does not belong to pool {pool.hex()[:16]}")
        expected = custody_token_account_address(pool, state.mint, self.program_id)
        if ix.accounts.get(f"{prefix}custody_token_account") != expected:
            raise LedgerError(f"{prefix}custody_token_account does not match custody")
        return state

    def _check_lp_mint(self, ix: Instruction) -> None:
        if ix.accounts.get("lp_token_mint") != lp_token_mint_address(ix.accounts["pool"], self.program_id):
            raise LedgerError("lp_token_mint does not match pool")

    def _public_swap(self, ix: Instruction) -> None:
        self._require_transfer_authority(ix)
        c_in = self._pool_custody(ix, "receiving_")
        c_out = self._pool_custody(ix, "dispensing_")
        amount_in = int(ix.args["amount_in"])
        amount_out, _, _ = circuits.swap_amount_and_fees(
            amount_in=amount_in, swap_in_bps=c_in.swap_in_bps, swap_out_bps=c_out.swap_out_bps
        )
        if amount_out < int(ix.args["min_amount_out"]):
            raise LedgerError(f"slippage: {amount_out} out is below the minimum {ix.args['min_amount_out']}")
        if amount_out > c_out.assets:
            raise LedgerError("dispensing custody has insufficient liquidity")
        c_in.assets += amount_in
        c_out.assets -= amount_out

    def _public_add_liquidity(self, ix: Instruction) -> None:
        self._require_transfer_authority(ix)
        self._check_lp_mint(ix)
        custody = self._pool_custody(ix)
        amount_in = int(ix.args["amount_in"])
        amount, _ = circuits.amount_and_fee(amount_in=amount_in, fee_bps=custody.add_liquidity_bps)
        lp_out = circuits.lp_tokens_for(amount)
        if lp_out < int(ix.args["min_lp_amount_out"]):
            raise LedgerError(f"slippage: {lp_out} LP out is below the minimum {ix.args['min_lp_amount_out']}")
        pool = ix.accounts["pool"].key
        lp_account = ix.accounts["lp_token_account"].key
        custody.assets += amount_in
        self._pool_aum[pool] = self._pool_aum.get(pool, 0) + amount
        self._lp_balances[lp_account] = self._lp_balances.get(lp_account, 0) + lp_out

    def _public_remove_liquidity(self, ix: Instruction) -> None:
        self._require_transfer_authority(ix)
        self._check_lp_mint(ix)
        custody = self._pool_custody(ix)
        lp_in = int(ix.args["lp_amount_in"])
        lp_account = ix.accounts["lp_token_account"].key
        if self._lp_balances.get(lp_account, 0) < lp_in:
            raise LedgerError("insufficient LP token balance")
        amount, _ = circuits.amount_and_fee(amount_in=lp_in, fee_bps=custody.remove_liquidity_bps)
        if amount < int(ix.args["min_amount_out"]):
            raise LedgerError(f"slippage: {amount} out is below the minimum {ix.args['min_amount_out']}")
        if amount > custody.assets:
            raise LedgerError("custody has insufficient liquidity")
        pool = ix.accounts["pool"].key
        custody.assets -= amount
        self._lp_balances[lp_account] -= lp_in
        self._pool_aum[pool] = max(self._pool_aum.get(pool, 0) - amount, 0)

    # views (called under self._cond)

    def _view_calculate_position_value_public(self, ix: Instruction) -> Dict[str, int]:
        position = self._load(ix.accounts["position"])
        size, collateral = self._plain_values(position)
        value, pnl, _ = circuits.calculate_position_value(
            size, collateral, position.entry_price, int(ix.args["price"]), position.side
        )
        return {"current_value": value, "pnl": pnl}

    def _view_get_entry_price_and_fee(self, ix: Instruction) -> Dict[str, int]:
        c = self._custody(ix.accounts["custody"])
        try:
            entry, liquidation, fee = circuits.entry_price_and_fee(
                oracle_price=c.oracle_price,
                collateral=int(ix.args["collateral"]),
                size=int(ix.args["size"]),
                side=int(ix.args["side"]),
                spread_long_bps=c.trade_spread_long_bps,
                spread_short_bps=c.trade_spread_short_bps,
                fee_bps=c.open_position_fee_bps,
                min_leverage_bps=c.min_initial_leverage_bps,
                max_leverage_bps=c.max_initial_leverage_bps,
            )
        except ValueError as e:
            raise LedgerError(f"invalid input: {e}") from e
        return {"entry_price": entry, "liquidation_price": liquidation, "fee": fee}

    def _view_get_exit_price_and_fee(self, ix: Instruction) -> Dict[str, int]:
        c = self._custody(ix.accounts["custody"])
        position = self._load(ix.accounts["position"])
        price, fee = circuits.exit_price_and_fee(
            oracle_price=c.oracle_price,
            side=position.side,
            spread_long_bps=c.trade_spread_long_bps,
            spread_short_bps=c.trade_spread_short_bps,
            fee_bps=c.close_position_fee_bps,
        )
        return {"price": price, "fee": fee}

    def _view_get_pnl(self, ix: Instruction) -> Dict[str, int]:
        c = self._custody(ix.accounts["custody"])
        position = self._load(ix.accounts["position"])
        profit, loss = circuits.pnl_percent(entry_price=position.entry_price, price=c.oracle_price, side=position.side)
        return {"profit": profit, "loss": loss}

    def _view_get_liquidation_price(self, ix: Instruction) -> Dict[str, int]:
        position = self._load(ix.accounts["position"])
        return {"value": circuits.liquidation_price(entry_price=position.entry_price, side=position.side)}

    def _view_get_liquidation_state(self, ix: Instruction) -> Dict[str, int]:
        c = self._custody(ix.accounts["custody"])
        position = self._load(ix.accounts["position"])
        return {
            "value": circuits.liquidation_state(
                entry_price=position.entry_price, price=c.oracle_price, side=position.side
            )
        }

    def _view_get_oracle_price(self, ix: Instruction) -> Dict[str, int]:
        c = self._custody(ix.accounts["custody"])
        return {"value": c.ema_price if ix.args["ema"] else c.oracle_price}

    def _view_get_swap_amount_and_fees(self, ix: Instruction) -> Dict[str, int]:
        c_in = self._custody(ix.accounts["receiving_custody"])
        c_out = self._custody(ix.accounts["dispensing_custody"])
        amount_out, fee_in, fee_out = circuits.swap_amount_and_fees(
            amount_in=int(ix.args["amount_in"]), swap_in_bps=c_in.swap_in_bps, swap_out_bps=c_out.swap_out_bps
        )
        return {"amount_out": amount_out, "fee_in": fee_in, "fee_out": fee_out}

    def _view_get_add_liquidity_amount_and_fee(self, ix: Instruction) -> Dict[str, int]:
        c = self._custody(ix.accounts["custody"])
        amount, fee = circuits.amount_and_fee(amount_in=int(ix.args["amount_in"]), fee_bps=c.add_liquidity_bps)
        return {"amount": amount, "fee": fee}

    def _view_get_remove_liquidity_amount_and_fee(self, ix: Instruction) -> Dict[str, int]:
        c = self._custody(ix.accounts["custody"])
        amount, fee = circuits.amount_and_fee(amount_in=int(ix.args["lp_amount_in"]), fee_bps=c.remove_liquidity_bps)
        return {"amount": amount, "fee": fee}

    def _view_get_assets_under_management(self, ix: Instruction) -> Dict[str, int]:
        pool = ix.accounts["pool"]
        if pool.key not in self._pool_aum:
            raise LedgerError(f"unknown pool {pool.hex()[:16]}")
        return {"value": self._pool_aum[pool.key]}

    def _view_get_lp_token_price(self, ix: Instruction) -> Dict[str, int]:
        if ix.accounts["pool"].key not in self._pool_aum:
            raise LedgerError("unknown pool")
        return {"value": circuits.LP_TOKEN_PRICE}
