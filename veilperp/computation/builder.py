"""Assembles operation requests for either execution path.

A builder is created for one session and one path. In confidential mode it
allocates computation offsets from the session registry and seals size and
collateral under the live encryption context; in plaintext mode it emits the
same logical request with bare fixed-point fields. Address derivation is
pure; the only I/O is the ledger existence check for new position ids.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from veilperp.contracts.layouts import Instruction, nonce_to_int
from veilperp.core.errors import DuplicatePositionId, ModeMisconfigured
from veilperp.core.fixed_point import Price, UsdAmount, require_price, require_usd
from veilperp.core.ids import PositionIdSequence
from veilperp.core.models import (
    Address,
    ComputationKind,
    ConfidentialField,
    OpenPositionParams,
    Side,
)
from veilperp.core.venue import LedgerClient
from veilperp.crypto.context import EncryptionContextManager

from .addresses import RoutingAccounts, perpetuals_address, position_address, routing_accounts
from .registry import PendingComputationRegistry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComputationRequest:
    """Opaque request bundle handed to the tracker (confidential) or ledger (plaintext)."""

    kind: ComputationKind
    owner: Address
    position_id: int
    position_key: Address
    offset: Optional[int] = None
    side: Optional[Side] = None
    price: Optional[Price] = None
    enc_size: Optional[ConfidentialField] = None
    enc_collateral: Optional[ConfidentialField] = None
    plain_size: Optional[UsdAmount] = None
    plain_collateral: Optional[UsdAmount] = None
    ephemeral_public_key: Optional[bytes] = None
    routing: Optional[RoutingAccounts] = None

    @property
    def confidential(self) -> bool:
        return self.offset is not None

    @property
    def size_nonce(self) -> Optional[bytes]:
        return self.enc_size.nonce if self.enc_size else None

    @property
    def collateral_nonce(self) -> Optional[bytes]:
        return self.enc_collateral.nonce if self.enc_collateral else None


def _require_fields(req: ComputationRequest, *names: str) -> None:
    missing = [n for n in names if getattr(req, n) is None]
    if missing:
        raise ValueError(f"{req.kind.value} request is missing {', '.join(missing)}")


class ComputationRequestBuilder:
    def __init__(
        self,
        *,
        owner: Address,
        program_id: Address,
        ledger: LedgerClient,
        mpc_program_id: Address | None = None,
        cluster_offset: int = 0,
        registry: PendingComputationRegistry | None = None,
        contexts: EncryptionContextManager | None = None,
        funding_account: Address | None = None,
        id_sequence: PositionIdSequence | None = None,
        max_id_attempts: int = 16,
    ) -> None:
        self.owner = owner
        self.program_id = program_id
        self.plaintext = contexts is None
        if not self.plaintext and (registry is None or mpc_program_id is None):
            raise ModeMisconfigured("confidential builder needs a registry and the MPC program id")
        self._ledger = ledger
        self._mpc_program_id = mpc_program_id
        self._cluster_offset = cluster_offset
        self._registry = registry
        self._contexts = contexts
        self._funding_account = funding_account
        self._ids = id_sequence or PositionIdSequence()
        self._max_id_attempts = max_id_attempts

    # -- identifiers -------------------------------------------------------

    def allocate_position_id(self) -> int:
        """Next per-owner id whose position account does not exist yet."""
        for _ in range(self._max_id_attempts):
            candidate = self._ids.next_id(self.owner.key)
            addr = position_address(self.owner, candidate, self.program_id)
            if self._ledger.fetch(addr) is None:
                return candidate
            logger.warning("position_id_in_use", extra={"position_id": candidate, "owner": self.owner.hex()[:16]})
        raise DuplicatePositionId(f"no free position id for owner after {self._max_id_attempts} attempts")

    # -- request assembly --------------------------------------------------

    def _request(
        self,
        kind: ComputationKind,
        *,
        owner: Address,
        position_id: int,
        size: UsdAmount | None = None,
        collateral: UsdAmount | None = None,
        **fields: Any,
    ) -> ComputationRequest:
        position_key = position_address(owner, position_id, self.program_id)
        if self.plaintext:
            return ComputationRequest(
                kind=kind,
                owner=owner,
                position_id=position_id,
                position_key=position_key,
                plain_size=size,
                plain_collateral=collateral,
                **fields,
            )

        if self._contexts is None or self._registry is None or self._mpc_program_id is None:
            raise ModeMisconfigured("confidential builder needs a registry and the MPC program id")
        cipher = self._contexts.cipher()
        public_key = self._contexts.context.public_key
        offset = self._registry.allocate_offset()
        try:
            enc_size = cipher.encrypt(size.to_u64()) if size is not None else None
            enc_collateral = cipher.encrypt(collateral.to_u64()) if collateral is not None else None
            routing = routing_accounts(
                mpc_program_id=self._mpc_program_id,
                program_id=self.program_id,
                cluster_offset=self._cluster_offset,
                offset=offset,
                circuit=kind.circuit,
            )
        except Exception:
            self._registry.release(offset)
            raise
        return ComputationRequest(
            kind=kind,
            owner=owner,
            position_id=position_id,
            position_key=position_key,
            offset=offset,
            enc_size=enc_size,
            enc_collateral=enc_collateral,
            ephemeral_public_key=public_key,
            routing=routing,
            **fields,
        )

    def build_open(self, params: OpenPositionParams) -> ComputationRequest:
        price = require_price(params.price, field="entry price")
        size = require_usd(params.size, field="size")
        collateral = require_usd(params.collateral, field="collateral")
        if price.raw <= 0 or size.raw <= 0 or collateral.raw <= 0:
            raise ValueError("price, size and collateral must be > 0")
        position_id = self.allocate_position_id()
        return self._request(
            ComputationKind.OPEN,
            owner=self.owner,
            position_id=position_id,
            size=size,
            collateral=collateral,
            side=Side(params.side),
            price=price,
        )

    def build_close(self, *, owner: Address, position_id: int, price: Price) -> ComputationRequest:
        return self._request(
            ComputationKind.CLOSE, owner=owner, position_id=position_id, price=require_price(price)
        )

    def build_add_collateral(self, *, owner: Address, position_id: int, amount: UsdAmount) -> ComputationRequest:
        amount = require_usd(amount, field="collateral")
        if amount.raw <= 0:
            raise ValueError("collateral amount must be > 0")
        return self._request(
            ComputationKind.ADD_COLLATERAL, owner=owner, position_id=position_id, collateral=amount
        )

    def build_remove_collateral(self, *, owner: Address, position_id: int, amount: UsdAmount) -> ComputationRequest:
        amount = require_usd(amount, field="collateral")
        if amount.raw <= 0:
            raise ValueError("collateral amount must be > 0")
        return self._request(
            ComputationKind.REMOVE_COLLATERAL, owner=owner, position_id=position_id, collateral=amount
        )

    def build_liquidate(self, *, owner: Address, position_id: int, price: Price) -> ComputationRequest:
        return self._request(
            ComputationKind.LIQUIDATE, owner=owner, position_id=position_id, price=require_price(price)
        )

    def build_value_query(self, *, owner: Address, position_id: int, price: Price) -> ComputationRequest:
        return self._request(
            ComputationKind.VALUE_QUERY, owner=owner, position_id=position_id, price=require_price(price)
        )

    # -- wire form ---------------------------------------------------------

    def instruction(self, req: ComputationRequest) -> Instruction:
        """Instruction the ledger program expects for `req`."""
        signer_role = "liquidator" if req.kind is ComputationKind.LIQUIDATE else "owner"
        accounts: Dict[str, Address] = {signer_role: self.owner, "position": req.position_key}
        args: Dict[str, Any] = {"position_id": req.position_id}

        if req.confidential:
            _require_fields(req, "routing", "ephemeral_public_key")
            accounts.update(req.routing.as_accounts())
            args["computation_offset"] = req.offset
            args["client_pubkey"] = req.ephemeral_public_key
            if req.kind is ComputationKind.OPEN:
                _require_fields(req, "enc_size", "enc_collateral", "price", "side")
                args.update(
                    side=int(req.side),
                    entry_price=req.price.to_u64(),
                    size_encrypted=req.enc_size.ciphertext,
                    collateral_encrypted=req.enc_collateral.ciphertext,
                    size_nonce=nonce_to_int(req.enc_size.nonce),
                    collateral_nonce=nonce_to_int(req.enc_collateral.nonce),
                )
            elif req.kind in (ComputationKind.ADD_COLLATERAL, ComputationKind.REMOVE_COLLATERAL):
                _require_fields(req, "enc_collateral")
                args["amount_encrypted"] = req.enc_collateral.ciphertext
                args["amount_nonce"] = nonce_to_int(req.enc_collateral.nonce)
            else:
                _require_fields(req, "price")
                args["price"] = req.price.to_u64()
            return Instruction(program_id=self.program_id, name=req.kind.circuit, accounts=accounts, args=args)

        if req.kind in (ComputationKind.OPEN, ComputationKind.ADD_COLLATERAL, ComputationKind.REMOVE_COLLATERAL):
            if self._funding_account is None:
                raise ModeMisconfigured("transparent collateral transfers need a funding account")
            accounts["funding_account"] = self._funding_account
            accounts["perpetuals"] = perpetuals_address(self.program_id)
        if req.kind is ComputationKind.OPEN:
            _require_fields(req, "plain_size", "plain_collateral", "price", "side")
            args.update(
                side=int(req.side),
                price=req.price.to_u64(),
                size=req.plain_size.to_u64(),
                collateral=req.plain_collateral.to_u64(),
            )
        elif req.kind in (ComputationKind.ADD_COLLATERAL, ComputationKind.REMOVE_COLLATERAL):
            _require_fields(req, "plain_collateral")
            args["amount"] = req.plain_collateral.to_u64()
        else:
            _require_fields(req, "price")
            args["price"] = req.price.to_u64()
        return Instruction(
            program_id=self.program_id, name=f"{req.kind.circuit}_public", accounts=accounts, args=args
        )
