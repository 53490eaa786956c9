from __future__ import annotations

import nacl.bindings
import nacl.public
import pytest

from veilperp.core.errors import ModeMisconfigured, NetworkKeyUnavailable
from veilperp.crypto.context import EncryptionContextManager


NETWORK = nacl.public.PrivateKey.generate()
NETWORK_PUB = bytes(NETWORK.public_key)


class _KeySource:
    def __init__(self, answers: list) -> None:
        self._answers = list(answers)
        self.calls = 0

    def get_network_public_key(self):
        self.calls += 1
        return self._answers.pop(0) if self._answers else None


def _manager(source: _KeySource, sleeps: list[float], **kw) -> EncryptionContextManager:
    return EncryptionContextManager(source, sleep=sleeps.append, **kw)


def test_initialize_derives_shared_secret_with_network() -> None:
    sleeps: list[float] = []
    mgr = _manager(_KeySource([NETWORK_PUB]), sleeps)
    ctx = mgr.initialize()

    assert mgr.is_initialized
    assert ctx.network_public_key == NETWORK_PUB
    assert bytes(ctx.shared_secret) == nacl.bindings.crypto_scalarmult(bytes(NETWORK), ctx.public_key)
    assert sleeps == []


def test_initialize_retries_with_exponential_backoff() -> None:
    sleeps: list[float] = []
    source = _KeySource([None, bytes(31), NETWORK_PUB])
    mgr = _manager(source, sleeps, max_attempts=5, initial_backoff_seconds=0.5)
    mgr.initialize()

    assert source.calls == 3
    assert sleeps == [0.5, 1.0]


def test_initialize_fails_after_bounded_attempts() -> None:
    sleeps: list[float] = []
    source = _KeySource([])
    mgr = _manager(source, sleeps, max_attempts=3)

    with pytest.raises(NetworkKeyUnavailable) as exc:
        mgr.initialize()
    assert exc.value.retryable is True
    assert source.calls == 3
    assert len(sleeps) == 2
    assert not mgr.is_initialized


def test_initialize_is_idempotent() -> None:
    source = _KeySource([NETWORK_PUB, NETWORK_PUB])
    mgr = _manager(source, [])
    first = mgr.initialize()
    second = mgr.initialize()
    assert first is second
    assert source.calls == 1


def test_teardown_wipes_key_material() -> None:
    mgr = _manager(_KeySource([NETWORK_PUB]), [])
    ctx = mgr.initialize()
    mgr.teardown()

    assert not mgr.is_initialized
    assert not any(ctx.private_key)
    assert not any(ctx.shared_secret)
    with pytest.raises(ModeMisconfigured):
        mgr.cipher()
    with pytest.raises(ModeMisconfigured):
        mgr.context


def test_reinitialize_after_teardown_uses_fresh_keypair() -> None:
    mgr = _manager(_KeySource([NETWORK_PUB, NETWORK_PUB]), [])
    first_pub = mgr.initialize().public_key
    mgr.teardown()
    assert mgr.initialize().public_key != first_pub
