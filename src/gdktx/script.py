"""
Script and witness construction for the supported address types.

Everything here is a pure function of keys, scripts and signatures. The
``dummy_*`` variants produce placeholders with the exact size of the real
thing, so fee estimation before signing is accurate.
"""

from __future__ import annotations

import random

from gdktx.constants import (
    ANTI_SNIPE_MAX_DELTA,
    ANTI_SNIPE_OLDER_ODDS,
    DER_SIG_MAX_LEN,
    DER_SIG_MAX_LOW_R_LEN,
)
from gdktx.crypto import hash160, sha256
from gdktx.errors import TxInvariantError
from gdktx.models import AddressType

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_2 = 0x52
OP_16 = 0x60
OP_IF = 0x63
OP_NOTIF = 0x64
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_DEPTH = 0x74
OP_IFDUP = 0x73
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_1SUB = 0x8C
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKSIGVERIFY = 0xAD
OP_CHECKMULTISIG = 0xAE
OP_CHECKSEQUENCEVERIFY = 0xB2


def push_data(data: bytes) -> bytes:
    """Minimal push of ``data`` onto the stack."""
    n = len(data)
    if n == 0:
        return bytes([OP_0])
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xFF:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + n.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + n.to_bytes(4, "little") + data


def script_num_encode(value: int) -> bytes:
    """CScriptNum encoding of ``value``."""
    if value == 0:
        return b""
    negative = value < 0
    value = abs(value)
    result = bytearray()
    while value:
        result.append(value & 0xFF)
        value >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def script_num_decode(data: bytes) -> int:
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def push_int(value: int) -> bytes:
    if value == 0:
        return bytes([OP_0])
    if value == -1:
        return bytes([OP_1NEGATE])
    if 1 <= value <= 16:
        return bytes([OP_1 + value - 1])
    return push_data(script_num_encode(value))


def parse_script(script: bytes) -> list[int | bytes]:
    """
    Split a script into opcodes and pushed data.

    Push operations (including OP_0) are returned as ``bytes``, everything
    else as the integer opcode.
    """
    items: list[int | bytes] = []
    offset = 0
    while offset < len(script):
        op = script[offset]
        offset += 1
        if op == OP_0:
            items.append(b"")
            continue
        if op < OP_PUSHDATA1:
            n = op
        elif op == OP_PUSHDATA1:
            n = script[offset]
            offset += 1
        elif op == OP_PUSHDATA2:
            n = int.from_bytes(script[offset : offset + 2], "little")
            offset += 2
        elif op == OP_PUSHDATA4:
            n = int.from_bytes(script[offset : offset + 4], "little")
            offset += 4
        else:
            items.append(op)
            continue
        if offset + n > len(script):
            raise TxInvariantError(f"Truncated push in script: {script.hex()}")
        items.append(script[offset : offset + n])
        offset += n
    return items


def get_script_pushes(script: bytes) -> list[bytes]:
    """Return the pushed items of a push-only script such as a scriptSig."""
    items = parse_script(script)
    if not all(isinstance(item, bytes) for item in items):
        raise TxInvariantError(f"Script is not push-only: {script.hex()}")
    return [item for item in items if isinstance(item, bytes)]


# Output scripts


def p2pkh_script(public_key: bytes) -> bytes:
    # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    return bytes([OP_DUP, OP_HASH160, 0x14]) + hash160(public_key) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2wpkh_script(public_key: bytes) -> bytes:
    return bytes([OP_0, 0x14]) + hash160(public_key)


def p2sh_script(redeem_script: bytes) -> bytes:
    return bytes([OP_HASH160, 0x14]) + hash160(redeem_script) + bytes([OP_EQUAL])


def p2wsh_script(witness_script: bytes) -> bytes:
    return bytes([OP_0, 0x20]) + sha256(witness_script)


def multisig_script(public_keys: list[bytes], threshold: int = 2) -> bytes:
    """Bare ``threshold``-of-n CHECKMULTISIG script."""
    script = push_int(threshold)
    for key in public_keys:
        script += push_data(key)
    return script + push_int(len(public_keys)) + bytes([OP_CHECKMULTISIG])


def csv_script(service_key: bytes, user_key: bytes, csv_blocks: int, is_liquid: bool) -> bytes:
    """
    2-of-2 script that decays to the user key alone after ``csv_blocks``.

    Bitcoin uses the compact form
    ``<user> CHECKSIGVERIFY <service> CHECKSIG IFDUP NOTIF <csv> CSV ENDIF``;
    Liquid keeps the older depth-switched form.
    """
    if is_liquid:
        return (
            bytes([OP_DEPTH, OP_1SUB, OP_IF])
            + push_data(service_key)
            + bytes([OP_CHECKSIGVERIFY, OP_ELSE])
            + push_int(csv_blocks)
            + bytes([OP_CHECKSEQUENCEVERIFY, OP_DROP, OP_ENDIF])
            + push_data(user_key)
            + bytes([OP_CHECKSIG])
        )
    return (
        push_data(user_key)
        + bytes([OP_CHECKSIGVERIFY])
        + push_data(service_key)
        + bytes([OP_CHECKSIG, OP_IFDUP, OP_NOTIF])
        + push_int(csv_blocks)
        + bytes([OP_CHECKSEQUENCEVERIFY, OP_ENDIF])
    )


def get_csv_blocks_from_csv_redeem_script(script: bytes) -> int:
    """Read the relative timelock back out of a csv script."""
    items = parse_script(script)
    for i, item in enumerate(items):
        if item == OP_CHECKSEQUENCEVERIFY and i > 0:
            blocks = items[i - 1]
            if isinstance(blocks, bytes):
                return script_num_decode(blocks)
            if OP_1 <= blocks <= OP_16:
                return blocks - OP_1 + 1
    raise TxInvariantError(f"Not a csv script: {script.hex()}")


def scriptpubkey_for_utxo(address_type: AddressType, prevout_script: bytes, public_key: bytes) -> bytes:
    """Output script paying to a wallet script of ``address_type``."""
    if address_type == AddressType.P2PKH:
        return p2pkh_script(public_key)
    if address_type == AddressType.P2WPKH:
        return p2wpkh_script(public_key)
    if address_type == AddressType.P2SH_P2WPKH:
        return p2sh_script(p2wpkh_script(public_key))
    if address_type == AddressType.P2SH:
        return p2sh_script(prevout_script)
    # p2wsh and csv are wrapped in p2sh
    return p2sh_script(p2wsh_script(prevout_script))


# Spending scripts and witnesses


def dummy_signature(is_low_r: bool) -> bytes:
    """Signature-sized placeholder including the sighash byte."""
    length = DER_SIG_MAX_LOW_R_LEN if is_low_r else DER_SIG_MAX_LEN
    return bytes([0x30]) + bytes(length - 2) + bytes([0x01])


def multisig_script_sig(service_sig: bytes, user_sig: bytes, script: bytes) -> bytes:
    """``OP_0 <service sig> <user sig> <script>`` for p2sh 2-of-2 spends."""
    return bytes([OP_0]) + push_data(service_sig) + push_data(user_sig) + push_data(script)


def multisig_witness(
    address_type: AddressType, service_sig: bytes, user_sig: bytes, script: bytes, is_liquid: bool
) -> list[bytes]:
    if address_type == AddressType.P2WSH:
        # Leading empty item for the CHECKMULTISIG off-by-one
        return [b"", service_sig, user_sig, script]
    if address_type == AddressType.CSV:
        if is_liquid:
            return [user_sig, service_sig, script]
        return [service_sig, user_sig, script]
    raise TxInvariantError(f"{address_type.value} is not a segwit multisig type")


def get_script_sig_and_witness(
    address_type: AddressType,
    prevout_script: bytes,
    public_key: bytes,
    signatures: list[bytes],
    is_liquid: bool = False,
) -> tuple[bytes, list[bytes]]:
    """
    Complete scriptSig and witness for an input.

    ``signatures`` is ``[user_sig]`` for single-key types and
    ``[service_sig, user_sig]`` for 2-of-2 types.
    """
    if address_type == AddressType.P2PKH:
        return push_data(signatures[0]) + push_data(public_key), []
    if address_type == AddressType.P2WPKH:
        return b"", [signatures[0], public_key]
    if address_type == AddressType.P2SH_P2WPKH:
        return push_data(p2wpkh_script(public_key)), [signatures[0], public_key]

    service_sig, user_sig = signatures
    if address_type == AddressType.P2SH:
        return multisig_script_sig(service_sig, user_sig, prevout_script), []
    witness = multisig_witness(address_type, service_sig, user_sig, prevout_script, is_liquid)
    return push_data(p2wsh_script(prevout_script)), witness


def get_dummy_script_sig_and_witness(
    address_type: AddressType,
    prevout_script: bytes,
    public_key: bytes,
    is_low_r: bool,
    is_liquid: bool = False,
) -> tuple[bytes, list[bytes]]:
    """Like ``get_script_sig_and_witness`` with placeholder signatures."""
    user_sig = dummy_signature(is_low_r)
    if address_type.is_multisig:
        # The service always signs low-R
        signatures = [dummy_signature(True), user_sig]
    else:
        signatures = [user_sig]
    return get_script_sig_and_witness(address_type, prevout_script, public_key, signatures, is_liquid)


def get_user_script_sig_and_witness(
    address_type: AddressType,
    prevout_script: bytes,
    public_key: bytes,
    user_sig: bytes,
) -> tuple[bytes, list[bytes]]:
    """
    Spend data carrying only the user's signature.

    Single-key types are complete. For 2-of-2 types the service signature
    slot is left empty for the co-signer to fill.
    """
    if not address_type.is_multisig:
        return get_script_sig_and_witness(address_type, prevout_script, public_key, [user_sig])
    if address_type == AddressType.P2SH:
        return multisig_script_sig(b"", user_sig, prevout_script), []
    return push_data(p2wsh_script(prevout_script)), [user_sig]


def set_anti_snipe_locktime(current_height: int, rng: random.Random) -> int:
    """
    Locktime discouraging fee sniping.

    Usually the current height; occasionally a little earlier so that
    transactions delayed by privacy tools don't stand out.
    """
    locktime = current_height
    if rng.randrange(ANTI_SNIPE_OLDER_ODDS) == 0:
        locktime = max(0, locktime - rng.randrange(ANTI_SNIPE_MAX_DELTA))
    return locktime
