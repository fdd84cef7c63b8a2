"""
Address and private key format conversions.

Only unconfidential encodings are handled here. On Liquid the destination's
blinding public key travels separately on the addressee.
"""

from __future__ import annotations

import base58
import bech32

from gdktx.models import NetworkParams

# WIF version bytes
WIF_MAINNET = 0x80
WIF_TESTNET = 0xEF


def address_to_scriptpubkey(address: str, network: NetworkParams) -> bytes:
    """
    Convert an address to scriptPubKey.

    Supports:
    - P2WPKH and P2WSH (bech32 with the network's HRP)
    - P2PKH and P2SH (base58check with the network's version bytes)

    Raises:
        ValueError: if the address is malformed or for another network
    """
    hrp = network.bech32_hrp
    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0 and len(program) in (20, 32):
            # OP_0 <20-byte-pubkeyhash> or OP_0 <32-byte-scripthash>
            return bytes([0x00, len(program)]) + program
        if witver == 1 and len(program) == 32:
            # P2TR: OP_1 <32-byte-pubkey>
            return bytes([0x51, 0x20]) + program

        raise ValueError(f"Unsupported witness program: version {witver}, {len(program)} bytes")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid address length: {address}")
    version, payload = decoded[0], decoded[1:]

    if version == network.p2pkh_version:
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    if version == network.p2sh_version:
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Address {address} is not valid for {network.name}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: NetworkParams) -> str:
    """Convert a standard scriptPubKey to its address, or raise ValueError."""
    # P2WPKH / P2WSH
    if len(scriptpubkey) in (22, 34) and scriptpubkey[0] == 0x00:
        if scriptpubkey[1] == len(scriptpubkey) - 2:
            result = bech32.encode(network.bech32_hrp, 0, scriptpubkey[2:])
            if result is None:
                raise ValueError(f"Failed to encode segwit address: {scriptpubkey.hex()}")
            return result

    # P2PKH
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == bytes([0x76, 0xA9, 0x14])
        and scriptpubkey[23:] == bytes([0x88, 0xAC])
    ):
        return base58.b58encode_check(bytes([network.p2pkh_version]) + scriptpubkey[3:23]).decode()

    # P2SH
    if len(scriptpubkey) == 23 and scriptpubkey[:2] == bytes([0xA9, 0x14]) and scriptpubkey[22] == 0x87:
        return base58.b58encode_check(bytes([network.p2sh_version]) + scriptpubkey[2:22]).decode()

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")


def decode_private_key(key: str, network: NetworkParams) -> tuple[bytes, bool]:
    """
    Decode a WIF or raw hex private key.

    Returns:
        (32-byte secret, whether the public key is compressed)
    """
    key = key.strip()
    if len(key) == 64:
        try:
            return bytes.fromhex(key), True
        except ValueError:
            pass

    try:
        decoded = base58.b58decode_check(key)
    except ValueError as e:
        raise ValueError("Invalid private key") from e

    expected_version = WIF_MAINNET if network.mainnet else WIF_TESTNET
    if decoded[0] != expected_version:
        raise ValueError("Private key is for another network")
    if len(decoded) == 34 and decoded[33] == 0x01:
        return decoded[1:33], True
    if len(decoded) == 33:
        return decoded[1:], False
    raise ValueError("Invalid private key length")
