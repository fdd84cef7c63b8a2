"""
Signer capability.

The signing engine only ever asks a signer to sign a 32-byte hash for a
derivation path and to provide blinding keys. Hardware signers implement
the same interface out of process.
"""

from __future__ import annotations

import hashlib
import hmac
from abc import ABC, abstractmethod

from loguru import logger

from gdktx.bip32 import HDKey
from gdktx.crypto import ec_public_key, ec_sig_from_bytes

SLIP77_DOMAIN = b"Symmetric key seed"
SLIP77_LABEL = b"SLIP-0077"


class Signer(ABC):
    """Abstract signer interface."""

    @abstractmethod
    def sign_hash(self, path: list[int], message_hash: bytes) -> bytes:
        """Sign ``message_hash`` with the key at ``path``, returning a DER signature"""

    @abstractmethod
    def get_public_key(self, path: list[int]) -> bytes:
        """Compressed public key at ``path``"""

    def supports_low_r(self) -> bool:
        """Whether signatures are guaranteed to have a low R value (72 bytes max)"""
        return False

    @abstractmethod
    def get_master_blinding_key(self) -> bytes:
        """32-byte SLIP-77 master blinding key"""

    def get_blinding_key_from_script(self, script: bytes) -> bytes:
        """Private blinding key for an output script (SLIP-77)."""
        return hmac.new(self.get_master_blinding_key(), script, hashlib.sha256).digest()

    def get_blinding_public_key(self, script: bytes) -> bytes:
        return ec_public_key(self.get_blinding_key_from_script(script))


class SoftwareSigner(Signer):
    """Signer holding a BIP32 seed in memory."""

    def __init__(self, seed: bytes):
        self._master = HDKey.from_seed(seed)
        root = hmac.new(SLIP77_DOMAIN, seed, hashlib.sha512).digest()
        node = hmac.new(root[:32], b"\x00" + SLIP77_LABEL, hashlib.sha512).digest()
        self._master_blinding_key = node[32:]
        self._cache: dict[tuple[int, ...], HDKey] = {}

    def _derive(self, path: list[int]) -> HDKey:
        key = tuple(path)
        if key not in self._cache:
            self._cache[key] = self._master.derive(path)
        return self._cache[key]

    def sign_hash(self, path: list[int], message_hash: bytes) -> bytes:
        if len(message_hash) != 32:
            raise ValueError(f"Expected a 32-byte hash, got {len(message_hash)} bytes")
        logger.trace(f"Signing hash {message_hash.hex()} with path {path}")
        return ec_sig_from_bytes(self._derive(path).get_private_key_bytes(), message_hash)

    def get_public_key(self, path: list[int]) -> bytes:
        return self._derive(path).get_public_key_bytes()

    def get_master_blinding_key(self) -> bytes:
        return self._master_blinding_key
