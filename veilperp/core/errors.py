"""Error taxonomy shared by every layer.

Each error carries a `retryable` flag so callers can decide without matching
on concrete classes. Mutating operations never let these escape: the backends
turn them into `TransactionResult(success=False, ...)`.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class VeilPerpError(Exception):
    retryable = False

    def describe(self) -> str:
        return f"{type(self).__name__}: {self}"


class NetworkKeyUnavailable(VeilPerpError):
    """The MPC network public key could not be fetched (retries exhausted)."""

    retryable = True


class DecryptionError(VeilPerpError):
    """Ciphertext failed authentication or was malformed."""


class ComputationTimeout(VeilPerpError):
    retryable = True

    def __init__(self, offset: int, timeout_seconds: float) -> None:
        super().__init__(f"computation {offset} not finalized within {timeout_seconds}s")
        self.offset = offset
        self.timeout_seconds = timeout_seconds


class ComputationCancelled(VeilPerpError):
    def __init__(self, offset: int) -> None:
        super().__init__(f"computation {offset} cancelled")
        self.offset = offset


class ComputationRejected(VeilPerpError):
    """The network finalized the computation with a failure.

    `payload` is the diagnostic record exactly as the network reported it.
    """

    def __init__(self, offset: int, payload: Optional[Mapping[str, Any]] = None) -> None:
        self.offset = offset
        self.payload = dict(payload or {})
        reason = self.payload.get("reason") or "computation failed"
        super().__init__(f"computation {offset} rejected: {reason}")


class ResultCorrelationError(VeilPerpError):
    """A finalization record does not belong to the pending computation."""


class ModeMisconfigured(VeilPerpError):
    """Preconditions of the selected execution path are not met."""


class PositionNotFound(VeilPerpError):
    pass


class DuplicatePositionId(VeilPerpError):
    pass


class LedgerError(VeilPerpError):
    """Submit or fetch against the ledger failed."""

    retryable = True
