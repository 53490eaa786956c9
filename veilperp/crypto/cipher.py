"""Authenticated encryption of u64 fields under a session shared secret.

Each value is padded to a 16-byte block and sealed with
XChaCha20-Poly1305, giving the 32-byte ciphertext the wire layouts expect
(16 bytes of ciphertext + 16-byte tag). The 24-byte AEAD nonce is the
caller's 128-bit nonce followed by a u64 field counter, so a record that
encrypts several fields under one nonce still never reuses a keystream.
"""

from __future__ import annotations

import struct
from typing import Sequence

import nacl.bindings
import nacl.encoding
import nacl.exceptions
import nacl.hash
import nacl.utils

from veilperp.core.errors import DecryptionError
from veilperp.core.fixed_point import U64_MAX
from veilperp.core.models import ConfidentialField

NONCE_BYTES = 16
CIPHERTEXT_BYTES = 32
_BLOCK = 16
_AAD = b"veilperp:u64:v1"
_KDF_PERSON = b"veilperp-cipher"


def new_nonce() -> bytes:
    return nacl.utils.random(NONCE_BYTES)


class Cipher:
    def __init__(self, shared_secret: bytes) -> None:
        if len(shared_secret) != 32:
            raise ValueError("shared secret must be 32 bytes")
        self._key = nacl.hash.blake2b(
            shared_secret,
            digest_size=32,
            person=_KDF_PERSON,
            encoder=nacl.encoding.RawEncoder,
        )

    @staticmethod
    def _aead_nonce(nonce: bytes, counter: int) -> bytes:
        if not isinstance(nonce, (bytes, bytearray)) or len(nonce) != NONCE_BYTES:
            raise ValueError("nonce must be 16 bytes")
        return bytes(nonce) + struct.pack("<Q", counter)

    def _seal(self, value: int, nonce: bytes, counter: int) -> bytes:
        if isinstance(value, bool) or not isinstance(value, int) or not (0 <= value <= U64_MAX):
            raise ValueError(f"value must be a u64, got {value!r}")
        block = struct.pack("<Q", value) + bytes(_BLOCK - 8)
        return nacl.bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(
            block, _AAD, self._aead_nonce(nonce, counter), self._key
        )

    def _open(self, ciphertext: bytes, nonce: bytes, counter: int) -> int:
        if not isinstance(ciphertext, (bytes, bytearray)) or len(ciphertext) != CIPHERTEXT_BYTES:
            raise DecryptionError("ciphertext must be 32 bytes")
        try:
            aead_nonce = self._aead_nonce(nonce, counter)
        except ValueError as e:
            raise DecryptionError(str(e)) from e
        try:
            block = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(
                bytes(ciphertext), _AAD, aead_nonce, self._key
            )
        except nacl.exceptions.CryptoError as e:
            raise DecryptionError("authentication failed (tampered ciphertext or wrong key)") from e
        if len(block) != _BLOCK or any(block[8:]):
            raise DecryptionError("malformed plaintext block")
        return struct.unpack("<Q", block[:8])[0]

    def encrypt(self, value: int, nonce: bytes | None = None) -> ConfidentialField:
        nonce = nonce if nonce is not None else new_nonce()
        return ConfidentialField(ciphertext=self._seal(value, nonce, 0), nonce=bytes(nonce))

    def decrypt(self, ciphertext: bytes, nonce: bytes) -> int:
        return self._open(ciphertext, nonce, 0)

    def encrypt_many(self, values: Sequence[int], nonce: bytes | None = None) -> tuple[list[bytes], bytes]:
        """Encrypt several fields under one nonce (distinct counters)."""
        nonce = nonce if nonce is not None else new_nonce()
        return [self._seal(v, nonce, i) for i, v in enumerate(values)], bytes(nonce)

    def decrypt_many(self, ciphertexts: Sequence[bytes], nonce: bytes) -> list[int]:
        return [self._open(c, nonce, i) for i, c in enumerate(ciphertexts)]

    def encrypt_pair(self, size: int, collateral: int) -> tuple[ConfidentialField, ConfidentialField]:
        """Size and collateral get independent nonces: collateral is re-encrypted alone on add/remove."""
        return self.encrypt(size), self.encrypt(collateral)

    def decrypt_pair(self, size: ConfidentialField, collateral: ConfidentialField) -> tuple[int, int]:
        return (
            self.decrypt(size.ciphertext, size.nonce),
            self.decrypt(collateral.ciphertext, collateral.nonce),
        )
