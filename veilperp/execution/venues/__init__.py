"""Venue implementations of the ledger / MPC network boundary."""

from .simulated import CustodyState, SimulatedVenue

__all__ = ["CustodyState", "SimulatedVenue"]
