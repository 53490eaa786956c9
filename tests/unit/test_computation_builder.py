from __future__ import annotations

from dataclasses import replace
from typing import Optional

import nacl.bindings
import nacl.public
import pytest

from veilperp.computation.addresses import position_address
from veilperp.computation.builder import ComputationRequestBuilder
from veilperp.computation.registry import PendingComputationRegistry
from veilperp.contracts.layouts import int_to_nonce
from veilperp.core.errors import DuplicatePositionId, ModeMisconfigured
from veilperp.core.fixed_point import Price, UsdAmount
from veilperp.core.ids import PositionIdSequence
from veilperp.core.models import Address, ComputationKind, OpenPositionParams, Side
from veilperp.crypto.cipher import Cipher
from veilperp.crypto.context import EncryptionContextManager


PROGRAM = Address(b"\x01" * 32)
MPC = Address(b"\x02" * 32)
FUNDING = Address(b"\x03" * 32)
OWNER = Address(b"\x04" * 32)


class _FakeLedger:
    def __init__(self, existing: set[Address] | None = None) -> None:
        self.existing = existing or set()
        self.fetched: list[Address] = []

    def fetch(self, address: Address) -> Optional[bytes]:
        self.fetched.append(address)
        return b"\x00" if address in self.existing else None


class _KeySource:
    def __init__(self, key: bytes) -> None:
        self.key = key

    def get_network_public_key(self) -> Optional[bytes]:
        return self.key


def _open_params(**overrides) -> OpenPositionParams:
    values = dict(
        price=Price(5_000_000_000_000),
        size=UsdAmount(10_000_000_000),
        collateral=UsdAmount(1_000_000_000),
        side=Side.LONG,
    )
    values.update(overrides)
    return OpenPositionParams(**values)


def _ids(start: int = 1000) -> PositionIdSequence:
    return PositionIdSequence(clock_ms=lambda: start)


@pytest.fixture
def network_key() -> nacl.public.PrivateKey:
    return nacl.public.PrivateKey.generate()


@pytest.fixture
def contexts(network_key: nacl.public.PrivateKey) -> EncryptionContextManager:
    mgr = EncryptionContextManager(_KeySource(bytes(network_key.public_key)), sleep=lambda _: None)
    mgr.initialize()
    return mgr


def _confidential(ledger: _FakeLedger, contexts: EncryptionContextManager, registry: PendingComputationRegistry):
    return ComputationRequestBuilder(
        owner=OWNER,
        program_id=PROGRAM,
        ledger=ledger,
        mpc_program_id=MPC,
        registry=registry,
        contexts=contexts,
        id_sequence=_ids(),
    )


def test_confidential_open_seals_fields_for_the_network(
    contexts: EncryptionContextManager, network_key: nacl.public.PrivateKey
) -> None:
    registry = PendingComputationRegistry()
    builder = _confidential(_FakeLedger(), contexts, registry)

    req = builder.build_open(_open_params())

    assert req.confidential
    assert req.kind is ComputationKind.OPEN
    assert req.position_id == 1000
    assert req.position_key == position_address(OWNER, 1000, PROGRAM)
    assert registry.is_in_use(req.offset)
    assert req.size_nonce != req.collateral_nonce

    network = Cipher(nacl.bindings.crypto_scalarmult(bytes(network_key), req.ephemeral_public_key))
    assert network.decrypt(req.enc_size.ciphertext, req.enc_size.nonce) == 10_000_000_000
    assert network.decrypt(req.enc_collateral.ciphertext, req.enc_collateral.nonce) == 1_000_000_000

    ix = builder.instruction(req)
    assert ix.name == "open_position"
    assert ix.args["computation_offset"] == req.offset
    assert ix.args["entry_price"] == 5_000_000_000_000
    assert ix.args["client_pubkey"] == req.ephemeral_public_key
    assert int_to_nonce(ix.args["size_nonce"]) == req.size_nonce
    assert ix.accounts["owner"] == OWNER
    assert ix.accounts["computation_account"] == req.routing.computation


def test_each_request_gets_a_distinct_offset(contexts: EncryptionContextManager) -> None:
    registry = PendingComputationRegistry()
    builder = _confidential(_FakeLedger(), contexts, registry)

    a = builder.build_close(owner=OWNER, position_id=7, price=Price(1))
    b = builder.build_close(owner=OWNER, position_id=7, price=Price(1))
    assert a.offset != b.offset


def test_liquidate_is_signed_by_the_builder_owner_as_liquidator(contexts: EncryptionContextManager) -> None:
    other = Address(b"\x09" * 32)
    builder = _confidential(_FakeLedger(), contexts, PendingComputationRegistry())

    req = builder.build_liquidate(owner=other, position_id=3, price=Price(4_700_000_000_000))
    ix = builder.instruction(req)

    assert ix.name == "liquidate"
    assert ix.accounts["liquidator"] == OWNER
    assert ix.accounts["position"] == position_address(other, 3, PROGRAM)
    assert ix.args["price"] == 4_700_000_000_000


def test_used_position_ids_are_skipped() -> None:
    taken = {position_address(OWNER, 1000, PROGRAM), position_address(OWNER, 1001, PROGRAM)}
    builder = ComputationRequestBuilder(
        owner=OWNER, program_id=PROGRAM, ledger=_FakeLedger(taken), funding_account=FUNDING, id_sequence=_ids()
    )
    assert builder.allocate_position_id() == 1002


def test_position_id_probing_is_bounded() -> None:
    taken = {position_address(OWNER, i, PROGRAM) for i in range(1000, 1010)}
    builder = ComputationRequestBuilder(
        owner=OWNER,
        program_id=PROGRAM,
        ledger=_FakeLedger(taken),
        funding_account=FUNDING,
        id_sequence=_ids(),
        max_id_attempts=3,
    )
    with pytest.raises(DuplicatePositionId):
        builder.allocate_position_id()


@pytest.mark.parametrize(
    "overrides",
    [
        {"price": UsdAmount(5_000_000_000_000)},
        {"size": Price(10_000_000_000)},
        {"collateral": 1_000_000_000},
    ],
)
def test_mixed_fixed_point_types_are_rejected(overrides: dict) -> None:
    builder = ComputationRequestBuilder(owner=OWNER, program_id=PROGRAM, ledger=_FakeLedger(), funding_account=FUNDING)
    with pytest.raises(TypeError):
        builder.build_open(_open_params(**overrides))


def test_non_positive_amounts_are_rejected() -> None:
    builder = ComputationRequestBuilder(owner=OWNER, program_id=PROGRAM, ledger=_FakeLedger(), funding_account=FUNDING)
    with pytest.raises(ValueError):
        builder.build_open(_open_params(size=UsdAmount(0)))
    with pytest.raises(ValueError):
        builder.build_add_collateral(owner=OWNER, position_id=1, amount=UsdAmount(-5))


def test_plaintext_open_instruction() -> None:
    builder = ComputationRequestBuilder(
        owner=OWNER, program_id=PROGRAM, ledger=_FakeLedger(), funding_account=FUNDING, id_sequence=_ids()
    )
    req = builder.build_open(_open_params(side=Side.SHORT))
    ix = builder.instruction(req)

    assert not req.confidential
    assert ix.name == "open_position_public"
    assert ix.args == {
        "position_id": 1000,
        "side": 1,
        "price": 5_000_000_000_000,
        "size": 10_000_000_000,
        "collateral": 1_000_000_000,
    }
    assert ix.accounts["funding_account"] == FUNDING
    assert "computation_account" not in ix.accounts


def test_plaintext_collateral_move_needs_funding_account() -> None:
    builder = ComputationRequestBuilder(owner=OWNER, program_id=PROGRAM, ledger=_FakeLedger())
    req = builder.build_add_collateral(owner=OWNER, position_id=1, amount=UsdAmount(500_000_000))
    with pytest.raises(ModeMisconfigured):
        builder.instruction(req)

    close = builder.build_close(owner=OWNER, position_id=1, price=Price(1))
    assert builder.instruction(close).name == "close_position_public"


def test_uninitialized_context_is_a_misconfiguration(network_key: nacl.public.PrivateKey) -> None:
    mgr = EncryptionContextManager(_KeySource(bytes(network_key.public_key)), sleep=lambda _: None)
    draws: list[int] = []
    registry = PendingComputationRegistry(offset_source=lambda: draws.append(42) or 42)
    builder = _confidential(_FakeLedger(), mgr, registry)

    with pytest.raises(ModeMisconfigured):
        builder.build_close(owner=OWNER, position_id=1, price=Price(1))
    assert draws == []


def test_confidential_builder_requires_registry(contexts: EncryptionContextManager) -> None:
    with pytest.raises(ModeMisconfigured):
        ComputationRequestBuilder(owner=OWNER, program_id=PROGRAM, ledger=_FakeLedger(), contexts=contexts)


def test_incomplete_request_is_rejected(contexts: EncryptionContextManager) -> None:
    builder = _confidential(_FakeLedger(), contexts, PendingComputationRegistry())
    req = builder.build_close(owner=OWNER, position_id=1, price=Price(1))

    with pytest.raises(ValueError, match="missing price"):
        builder.instruction(replace(req, price=None))
    with pytest.raises(ValueError, match="missing routing"):
        builder.instruction(replace(req, routing=None))

    plain = ComputationRequestBuilder(owner=OWNER, program_id=PROGRAM, ledger=_FakeLedger(), funding_account=FUNDING)
    add = plain.build_add_collateral(owner=OWNER, position_id=1, amount=UsdAmount(5))
    with pytest.raises(ValueError, match="missing plain_collateral"):
        plain.instruction(replace(add, plain_collateral=None))
