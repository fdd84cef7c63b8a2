"""
Cryptographic primitives used by the transaction core.

ECDSA and ECDH go through coincurve. The confidential-transaction
primitives (asset generators, Pedersen value commitments, range and
surjection proofs) come from libwally's secp256k1-zkp bindings.
"""

from __future__ import annotations

import hashlib

import wallycore as wally
from coincurve import PrivateKey, PublicKey

from gdktx.constants import (
    RANGEPROOF_EXP,
    RANGEPROOF_MIN_BITS,
    RANGEPROOF_MIN_VALUE,
)

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)


class CryptoError(Exception):
    pass


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def h2b_rev(hex_str: str) -> bytes:
    """Decode display-order hex (txids, asset ids, blinders) to internal byte order."""
    return bytes.fromhex(hex_str)[::-1]


def b2h_rev(data: bytes) -> str:
    return bytes(data)[::-1].hex()


def ec_public_key(private_key: bytes, compressed: bool = True) -> bytes:
    return PrivateKey(private_key).public_key.format(compressed=compressed)


def ec_sig_from_bytes(private_key: bytes, message_hash: bytes) -> bytes:
    """Sign a 32-byte hash, returning a DER signature without sighash byte."""
    return PrivateKey(private_key).sign(message_hash, hasher=None)


def ec_sig_verify(public_key: bytes, message_hash: bytes, der_sig: bytes) -> bool:
    """Verify a DER signature (without sighash byte) over a pre-hashed message."""
    try:
        return PublicKey(public_key).verify(der_sig, message_hash, hasher=None)
    except Exception:
        return False


def split_sighash(der_with_sighash: bytes) -> tuple[bytes, int]:
    """Split ``<DER><sighash>`` into its parts."""
    if len(der_with_sighash) < 9 or der_with_sighash[0] != 0x30:
        raise CryptoError(f"Invalid DER signature: {der_with_sighash.hex()}")
    return der_with_sighash[:-1], der_with_sighash[-1]


def is_valid_private_key(key: bytes) -> bool:
    if len(key) != 32:
        return False
    value = int.from_bytes(key, "big")
    return 0 < value < SECP256K1_N


def get_ephemeral_keypair() -> tuple[bytes, bytes]:
    """Fresh random (private, compressed public) keypair."""
    key = PrivateKey()
    return key.secret, key.public_key.format(compressed=True)


def ecdh(public_key: bytes, private_key: bytes) -> bytes:
    """SHA256 of the compressed shared point, as libsecp256k1's default ECDH."""
    return PrivateKey(private_key).ecdh(public_key)


# Scalar arithmetic modulo the curve order


def scalar_from_bytes(data: bytes) -> int:
    value = int.from_bytes(data, "big")
    if value >= SECP256K1_N:
        raise CryptoError("Scalar overflows the curve order")
    return value


def scalar_to_bytes(value: int) -> bytes:
    return (value % SECP256K1_N).to_bytes(32, "big")


def ec_scalar_add(a: bytes, b: bytes) -> bytes:
    return scalar_to_bytes(scalar_from_bytes(a) + scalar_from_bytes(b))


# Confidential transaction primitives


def asset_generator_from_bytes(asset: bytes, abf: bytes) -> bytes:
    """Blinded asset generator (33 bytes) for an asset tag and asset blinder."""
    return bytes(wally.asset_generator_from_bytes(asset, abf))


def asset_value_commitment(value: int, vbf: bytes, generator: bytes) -> bytes:
    """Pedersen commitment to ``value`` under ``generator`` with blinder ``vbf``."""
    return bytes(wally.asset_value_commitment(value, vbf, generator))


def asset_rangeproof(
    value: int,
    blinding_pubkey: bytes,
    eph_private_key: bytes,
    asset: bytes,
    abf: bytes,
    vbf: bytes,
    commitment: bytes,
    scriptpubkey: bytes,
    generator: bytes,
) -> bytes:
    return bytes(
        wally.asset_rangeproof(
            value,
            blinding_pubkey,
            eph_private_key,
            asset,
            abf,
            vbf,
            commitment,
            scriptpubkey,
            generator,
            RANGEPROOF_MIN_VALUE,
            RANGEPROOF_EXP,
            RANGEPROOF_MIN_BITS,
        )
    )


def asset_surjectionproof(
    output_asset: bytes,
    output_abf: bytes,
    output_generator: bytes,
    entropy: bytes,
    input_assets: bytes,
    input_abfs: bytes,
    input_generators: bytes,
) -> bytes:
    """Prove ``output_generator`` commits to one of the (concatenated) input assets."""
    return bytes(
        wally.asset_surjectionproof(
            output_asset,
            output_abf,
            output_generator,
            entropy,
            input_assets,
            input_abfs,
            input_generators,
        )
    )


def asset_unblind(
    nonce_commitment: bytes,
    blinding_private_key: bytes,
    rangeproof: bytes,
    value_commitment: bytes,
    scriptpubkey: bytes,
    asset_commitment: bytes,
) -> tuple[bytes, bytes, bytes, int]:
    """
    Rewind a rangeproof with the output's private blinding key.

    Returns:
        (asset, abf, vbf, value) with byte values in internal order
    """
    try:
        value, asset, abf, vbf = wally.asset_unblind(
            nonce_commitment,
            blinding_private_key,
            rangeproof,
            value_commitment,
            scriptpubkey,
            asset_commitment,
        )
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Failed to unblind output: {e}") from e
    return bytes(asset), bytes(abf), bytes(vbf), int(value)
