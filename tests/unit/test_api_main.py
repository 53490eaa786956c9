from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from veilperp.api.main import app
from veilperp.core.fixed_point import Price, UsdAmount
from veilperp.core.models import Address, OpenPositionParams, Side
from veilperp.execution.adapter import ModeAdapter
from veilperp.execution.venues.simulated import SimulatedVenue


PROGRAM = Address(b"\x01" * 32)
MPC = Address(b"\x02" * 32)
FUNDING = Address(b"\x03" * 32)
OWNER = Address(b"\x04" * 32)
SOL = Address(b"\x05" * 32)


@pytest.fixture
def venue() -> SimulatedVenue:
    return SimulatedVenue(program_id=PROGRAM, mpc_program_id=MPC)


@pytest.fixture
def adapter(venue: SimulatedVenue) -> Iterator[ModeAdapter]:
    adapter = ModeAdapter(
        ledger=venue,
        finalizations=venue,
        key_source=venue,
        program_id=PROGRAM,
        mpc_program_id=MPC,
        owner=OWNER,
        funding_account=FUNDING,
        sleep=lambda _: None,
    )
    adapter.initialize()
    previous = getattr(app.state, "adapter", None)
    app.state.adapter = adapter
    yield adapter
    app.state.adapter = previous
    adapter.teardown()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_mode_is_unavailable_without_adapter(client: TestClient) -> None:
    previous = getattr(app.state, "adapter", None)
    app.state.adapter = None
    try:
        assert client.get("/mode").status_code == 503
    finally:
        app.state.adapter = previous


def test_mode_switch(client: TestClient, adapter: ModeAdapter) -> None:
    assert client.get("/mode").json() == {"mode": "confidential"}

    resp = client.post("/mode", json={"mode": "transparent"})
    assert resp.status_code == 200
    assert resp.json() == {"mode": "transparent"}

    assert client.post("/mode", json={"mode": "hybrid"}).status_code == 422


def test_mode_switch_conflict(client: TestClient, adapter: ModeAdapter) -> None:
    adapter.switch_mode("transparent")
    adapter.contexts.teardown()

    resp = client.post("/mode", json={"mode": "confidential"})
    assert resp.status_code == 409
    assert adapter.mode.value == "transparent"


def test_get_position(client: TestClient, adapter: ModeAdapter) -> None:
    result = adapter.open_position(
        OpenPositionParams(
            price=Price(5_000_000_000_000),
            size=UsdAmount(10_000_000_000),
            collateral=UsdAmount(1_000_000_000),
            side=Side.LONG,
        )
    )
    assert result.success, result.error

    body = client.get(f"/positions/{result.position_key.hex()}").json()
    assert body["owner"] == OWNER.hex()
    assert body["side"] == "long"
    assert body["entry_price"] == "50000"
    assert body["size"] == "10000"
    assert body["collateral"] == "1000"
    assert body["closed"] is False


def test_get_position_errors(client: TestClient, adapter: ModeAdapter) -> None:
    assert client.get("/positions/not-hex").status_code == 400
    assert client.get(f"/positions/{'ab' * 32}").status_code == 404


def test_oracle_price(client: TestClient, adapter: ModeAdapter, venue: SimulatedVenue) -> None:
    custody = venue.add_custody("main", SOL, price=Price(5_000_000_000_000))

    body = client.get(f"/oracle-price/{custody.hex()}").json()
    assert body["raw"] == 5_000_000_000_000
    assert body["price"] == "50000"
    assert client.get(f"/oracle-price/{'cd' * 32}").status_code == 404
