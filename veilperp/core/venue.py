"""Boundaries to the external ledger and MPC network.

Everything behind these protocols is an external collaborator: the settlement
program that owns account state and the MPC network that runs the circuits.
`veilperp.execution.venues.simulated` provides an in-memory implementation of
all of them for tests and dry runs.
"""

from __future__ import annotations

import threading
from typing import Optional, Protocol

from .models import Address, EventEnvelope


class LedgerClient(Protocol):
    def submit(self, transaction: bytes) -> str:
        """Submit an encoded transaction and return its signature.

        Raises `LedgerError` (or a subclass of `VeilPerpError`) on rejection.
        """

    def fetch(self, address: Address) -> Optional[bytes]:
        """Return raw account bytes, or None if the account does not exist."""

    def simulate(self, transaction: bytes) -> bytes:
        """Run a read-only instruction and return its return data."""

    def find_positions(self, program_id: Address, owner: Address) -> list[Address]:
        """Addresses of all position accounts of `owner` under `program_id`."""


class FinalizationSource(Protocol):
    def await_finalization(
        self,
        offset: int,
        *,
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[EventEnvelope]:
        """Block until the record for `offset` arrives.

        Returns the finalization envelope (success schema or
        `mpc.computation_failed.v1`), or None on timeout / cancellation.
        """
