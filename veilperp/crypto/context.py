"""Session key material for the confidential path.

One `EncryptionContextManager` per session. `initialize()` creates an
ephemeral x25519 keypair, fetches the MPC network's public key (bounded
exponential backoff) and derives the shared secret; `teardown()` drops it.
The context is never persisted and never logged beyond public-key prefixes.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import nacl.bindings
import nacl.public
from tenacity import RetryError, Retrying, stop_after_attempt, wait_exponential

from veilperp.core.errors import ModeMisconfigured, NetworkKeyUnavailable

from .cipher import Cipher


logger = logging.getLogger(__name__)

KEY_BYTES = 32


class NetworkKeySource(Protocol):
    def get_network_public_key(self) -> Optional[bytes]:
        """Return the network's x25519 public key, or None if not yet available."""


@dataclass(frozen=True)
class EncryptionContext:
    private_key: bytearray
    public_key: bytes
    network_public_key: bytes
    shared_secret: bytearray

    def wipe(self) -> None:
        for buf in (self.private_key, self.shared_secret):
            for i in range(len(buf)):
                buf[i] = 0


class _KeyNotReady(Exception):
    pass


class EncryptionContextManager:
    def __init__(
        self,
        key_source: NetworkKeySource,
        *,
        max_attempts: int = 5,
        initial_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._key_source = key_source
        self._max_attempts = max_attempts
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._context: EncryptionContext | None = None
        self._cipher: Cipher | None = None

    @property
    def is_initialized(self) -> bool:
        return self._context is not None

    @property
    def context(self) -> EncryptionContext:
        ctx = self._context
        if ctx is None:
            raise ModeMisconfigured("encryption context is not initialized")
        return ctx

    def cipher(self) -> Cipher:
        c = self._cipher
        if c is None:
            raise ModeMisconfigured("encryption context is not initialized")
        return c

    def _fetch_network_key(self) -> bytes:
        key = self._key_source.get_network_public_key()
        if key is None:
            raise _KeyNotReady("network public key not available yet")
        key = bytes(key)
        if len(key) != KEY_BYTES or not any(key):
            raise _KeyNotReady("network public key malformed")
        return key

    def _fetch_with_backoff(self) -> bytes:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._initial_backoff, max=self._max_backoff),
            sleep=self._sleep,
            before_sleep=lambda rs: logger.warning(
                "network_key_fetch_retry",
                extra={"attempt": rs.attempt_number, "max_attempts": self._max_attempts},
            ),
        )
        try:
            return retrying(self._fetch_network_key)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise NetworkKeyUnavailable(
                f"network public key unavailable after {self._max_attempts} attempts: {last}"
            ) from last

    def initialize(self) -> EncryptionContext:
        """Create the session context. A second call while initialized is a no-op."""
        with self._lock:
            if self._context is not None:
                return self._context

            network_key = self._fetch_with_backoff()
            private = nacl.public.PrivateKey.generate()
            try:
                shared = nacl.bindings.crypto_scalarmult(bytes(private), network_key)
            except Exception as e:
                raise NetworkKeyUnavailable(f"key agreement with network key failed: {e}") from e

            ctx = EncryptionContext(
                private_key=bytearray(bytes(private)),
                public_key=bytes(private.public_key),
                network_public_key=network_key,
                shared_secret=bytearray(shared),
            )
            self._context = ctx
            self._cipher = Cipher(bytes(shared))
            logger.info(
                "encryption_context_initialized",
                extra={"client_pubkey": ctx.public_key.hex()[:16], "network_pubkey": network_key.hex()[:16]},
            )
            return ctx

    def teardown(self) -> None:
        with self._lock:
            ctx = self._context
            self._context = None
            self._cipher = None
        if ctx is not None:
            ctx.wipe()
            logger.info("encryption_context_torn_down")
