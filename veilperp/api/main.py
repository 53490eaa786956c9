from __future__ import annotations

import logging
import secrets
from typing import Any, Dict

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
import uvicorn

from veilperp.core.errors import DecryptionError, ModeMisconfigured, PositionNotFound
from veilperp.core.models import Address, ExecutionMode, PositionView
from veilperp.core.settings import load_settings
from veilperp.execution.adapter import ModeAdapter


logger = logging.getLogger(__name__)

app = FastAPI(title="VeilPerp API")


class ModeSwitch(BaseModel):
    mode: ExecutionMode


def _adapter() -> ModeAdapter:
    adapter = getattr(app.state, "adapter", None)
    if adapter is None:
        raise HTTPException(status_code=503, detail="adapter not initialized")
    return adapter


def _address(value: str) -> Address:
    try:
        return Address.from_hex(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="address must be 32-byte hex")


def _position_json(view: PositionView) -> Dict[str, Any]:
    return {
        "address": view.address.hex(),
        "owner": view.owner.hex(),
        "position_id": view.position_id,
        "side": view.side.name.lower(),
        "entry_price": str(view.entry_price),
        "size": str(view.size),
        "collateral": str(view.collateral),
        "open_time": view.open_time,
        "update_time": view.update_time,
        "liquidator": view.liquidator.hex(),
        "closed": view.is_closed,
    }


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/mode")
def get_mode() -> dict:
    try:
        return {"mode": _adapter().mode.value}
    except ModeMisconfigured as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.post("/mode")
def switch_mode(body: ModeSwitch) -> dict:
    adapter = _adapter()
    try:
        adapter.switch_mode(body.mode)
    except ModeMisconfigured as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"mode": adapter.mode.value}


@app.get("/positions/{address}")
def get_position(address: str) -> dict:
    adapter = _adapter()
    try:
        view = adapter.get_position(_address(address))
    except PositionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DecryptionError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _position_json(view)


@app.get("/oracle-price/{custody}")
def get_oracle_price(custody: str, ema: bool = False) -> dict:
    price = _adapter().get_oracle_price(_address(custody), ema=ema)
    if price is None:
        raise HTTPException(status_code=404, detail="oracle price unavailable")
    return {"custody": custody, "price": str(price), "raw": price.raw}


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = load_settings()
    if settings.venue != "simulated":
        raise SystemExit(f"venue {settings.venue!r} needs a LedgerClient wired in by the deployment")

    from veilperp.execution.venues.simulated import SimulatedVenue

    venue = SimulatedVenue(
        program_id=Address.from_hex(settings.program_id),
        mpc_program_id=Address.from_hex(settings.mpc_program_id),
        cluster_offset=settings.cluster_offset,
    )
    adapter = ModeAdapter.from_settings(
        settings,
        ledger=venue,
        finalizations=venue,
        key_source=venue,
        owner=Address(secrets.token_bytes(32)),
    )
    adapter.initialize()
    app.state.adapter = adapter
    logger.info(f"Serving {settings.mode} mode against the simulated venue")
    try:
        uvicorn.run(app, host="0.0.0.0", port=8000)
    finally:
        adapter.teardown()


if __name__ == "__main__":
    main()
