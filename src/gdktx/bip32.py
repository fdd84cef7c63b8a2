"""
BIP32 HD key derivation for the software signer.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey

from gdktx.crypto import SECP256K1_N

HARDENED = 0x80000000


def parse_path(path: str) -> list[int]:
    """
    Parse path notation (e.g., "m/84'/0'/0'/0/0") into child indexes.
    ' or h indicates hardened derivation.
    """
    if not path.startswith("m"):
        raise ValueError("Path must start with 'm'")

    indexes = []
    for part in path.split("/")[1:]:
        if not part:
            continue
        hardened = part.endswith("'") or part.endswith("h")
        index = int(part.rstrip("'h"))
        indexes.append(index + HARDENED if hardened else index)
    return indexes


def format_path(path: list[int]) -> str:
    parts = ["m"]
    for index in path:
        parts.append(f"{index - HARDENED}'" if index >= HARDENED else str(index))
    return "/".join(parts)


class HDKey:
    """
    Hierarchical Deterministic private key.
    Implements BIP32 private derivation.
    """

    def __init__(self, private_key: PrivateKey, chain_code: bytes, depth: int = 0):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(hmac_result[:32]), hmac_result[32:], depth=0)

    def derive(self, path: list[int]) -> HDKey:
        key = self
        for index in path:
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        if index >= HARDENED:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        offset_int = int.from_bytes(hmac_result[:32], "big")
        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        child_key_int = (parent_key_int + offset_int) % SECP256K1_N
        if child_key_int == 0:
            raise ValueError("Invalid child key")

        child_private_key = PrivateKey(child_key_int.to_bytes(32, "big"))
        return HDKey(child_private_key, hmac_result[32:], depth=self.depth + 1)

    def get_private_key_bytes(self) -> bytes:
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        return self._public_key.format(compressed=compressed)
