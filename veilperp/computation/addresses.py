"""Deterministic sub-account and MPC routing address derivation.

Pure functions, no I/O. A derived address is
`sha256(seed_0 | ... | seed_n | bump | program_id | "ProgramDerivedAddress")`
with the bump searched from 255 downward until the digest is *not* a valid
ed25519 point, so no private key can exist for it.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Sequence

import nacl.bindings

from veilperp.core.models import Address

MAX_SEEDS = 16
MAX_SEED_LEN = 32
_PDA_MARKER = b"ProgramDerivedAddress"

POSITION_SEED = b"position"
PERPETUALS_SEED = b"perpetuals"
POOL_SEED = b"pool"
CUSTODY_SEED = b"custody"
CUSTODY_TOKEN_ACCOUNT_SEED = b"custody_token_account"
LP_TOKEN_MINT_SEED = b"lp_token_mint"

COMPUTATION_SEED = b"ComputationAccount"
CLUSTER_SEED = b"Cluster"
MXE_SEED = b"MXEAccount"
MEMPOOL_SEED = b"Mempool"
EXECPOOL_SEED = b"Execpool"
COMP_DEF_SEED = b"ComputationDefinitionAccount"


def _is_on_curve(digest: bytes) -> bool:
    return bool(nacl.bindings.crypto_core_ed25519_is_valid_point(digest))


@lru_cache(maxsize=4096)
def _find(seeds: tuple[bytes, ...], program_id: bytes) -> tuple[bytes, int]:
    for bump in range(255, -1, -1):
        h = hashlib.sha256()
        for s in seeds:
            h.update(s)
        h.update(bytes([bump]))
        h.update(program_id)
        h.update(_PDA_MARKER)
        digest = h.digest()
        if not _is_on_curve(digest):
            return digest, bump
    raise ValueError("unable to find a viable bump seed")


def find_program_address(seeds: Sequence[bytes], program_id: Address) -> tuple[Address, int]:
    if len(seeds) > MAX_SEEDS - 1:
        raise ValueError("too many seeds")
    for s in seeds:
        if len(s) > MAX_SEED_LEN:
            raise ValueError("seed longer than 32 bytes")
    key, bump = _find(tuple(bytes(s) for s in seeds), program_id.key)
    return Address(key), bump


def _u64(v: int) -> bytes:
    return struct.pack("<Q", v)


def _u32(v: int) -> bytes:
    return struct.pack("<I", v)


# Ledger sub-accounts


def position_address(owner: Address, position_id: int, program_id: Address) -> Address:
    return find_program_address([POSITION_SEED, owner.key, _u64(position_id)], program_id)[0]


def perpetuals_address(program_id: Address) -> Address:
    return find_program_address([PERPETUALS_SEED], program_id)[0]


def pool_address(pool_name: str, program_id: Address) -> Address:
    return find_program_address([POOL_SEED, pool_name.encode("utf-8")], program_id)[0]


def custody_address(pool: Address, mint: Address, program_id: Address) -> Address:
    return find_program_address([CUSTODY_SEED, pool.key, mint.key], program_id)[0]


def custody_token_account_address(pool: Address, mint: Address, program_id: Address) -> Address:
    return find_program_address([CUSTODY_TOKEN_ACCOUNT_SEED, pool.key, mint.key], program_id)[0]


def lp_token_mint_address(pool: Address, program_id: Address) -> Address:
    return find_program_address([LP_TOKEN_MINT_SEED, pool.key], program_id)[0]


# MPC routing


def comp_def_offset(circuit: str) -> int:
    return int.from_bytes(hashlib.sha256(circuit.encode("utf-8")).digest()[:4], "little")


@dataclass(frozen=True)
class RoutingAccounts:
    computation: Address
    cluster: Address
    mxe: Address
    mempool: Address
    executing_pool: Address
    comp_def: Address

    def as_accounts(self) -> Dict[str, Address]:
        return {
            "computation_account": self.computation,
            "cluster_account": self.cluster,
            "mxe_account": self.mxe,
            "mempool_account": self.mempool,
            "executing_pool": self.executing_pool,
            "comp_def_account": self.comp_def,
        }


def routing_accounts(
    *,
    mpc_program_id: Address,
    program_id: Address,
    cluster_offset: int,
    offset: int,
    circuit: str,
) -> RoutingAccounts:
    """Addresses the MPC network uses to route one computation."""

    def derive(*seeds: bytes) -> Address:
        return find_program_address(list(seeds), mpc_program_id)[0]

    return RoutingAccounts(
        computation=derive(COMPUTATION_SEED, _u32(cluster_offset), _u64(offset)),
        cluster=derive(CLUSTER_SEED, _u32(cluster_offset)),
        mxe=derive(MXE_SEED, program_id.key),
        mempool=derive(MEMPOOL_SEED, _u32(cluster_offset)),
        executing_pool=derive(EXECPOOL_SEED, _u32(cluster_offset)),
        comp_def=derive(COMP_DEF_SEED, program_id.key, _u32(comp_def_offset(circuit))),
    )
