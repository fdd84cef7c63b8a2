"""
Signing engine: signature hashes, signature application and extraction.

Supports legacy (p2pkh, p2sh multisig) and BIP143 segwit spends on
Bitcoin, and the Elements segwit sighash on Liquid, where the spent amount
is committed to as either an explicit value or a value commitment.
"""

from __future__ import annotations

import struct

from loguru import logger

from gdktx.constants import (
    SIGHASH_ALL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_NONE,
    SIGHASH_SINGLE,
    SIGHASH_SINGLE_ANYONECANPAY,
)
from gdktx.crypto import ec_sig_from_bytes, hash256
from gdktx.errors import SigningError, TxInvariantError, UserError, ensure
from gdktx.fees import calculated_fee_rate
from gdktx.models import AddressType, BuildResult, NetworkParams, SignedTransaction, Utxo
from gdktx.script import get_script_pushes, get_user_script_sig_and_witness
from gdktx.session import WalletSession
from gdktx.transaction import Transaction, encode_varbytes, encode_varint


def check_sighash(network: NetworkParams, sighash: int) -> None:
    """Only ALL is allowed, plus SINGLE|ANYONECANPAY on Liquid for swaps."""
    if sighash == SIGHASH_ALL:
        return
    if network.is_liquid and sighash == SIGHASH_SINGLE_ANYONECANPAY:
        return
    raise TxInvariantError(f"Unsupported sighash type {sighash:#x}")


def _legacy_signature_hash(tx: Transaction, index: int, script_code: bytes, sighash: int) -> bytes:
    """Pre-segwit signature hash for SIGHASH_ALL."""
    result = struct.pack("<I", tx.version) + encode_varint(len(tx.inputs))
    for i, txin in enumerate(tx.inputs):
        # Only the signed input carries a script
        script = script_code if i == index else b""
        result += txin.serialize_outpoint() + encode_varbytes(script) + struct.pack("<I", txin.sequence)
    result += encode_varint(len(tx.outputs))
    result += b"".join(out.serialize(False) for out in tx.outputs)
    result += struct.pack("<I", tx.locktime)
    result += struct.pack("<I", sighash)
    return hash256(result)


def _segwit_signature_hash(
    tx: Transaction, index: int, script_code: bytes, value: bytes, sighash: int
) -> bytes:
    """BIP143 signature hash; on Elements also commits to issuances (none here)."""
    base_type = sighash & 0x1F
    anyone_can_pay = bool(sighash & SIGHASH_ANYONECANPAY)
    zero = bytes(32)

    hash_prevouts = zero if anyone_can_pay else tx.hash_prevouts()
    if anyone_can_pay or base_type in (SIGHASH_SINGLE, SIGHASH_NONE):
        hash_sequence = zero
    else:
        hash_sequence = tx.hash_sequence()
    if base_type not in (SIGHASH_SINGLE, SIGHASH_NONE):
        hash_outputs = tx.hash_outputs()
    elif base_type == SIGHASH_SINGLE and index < len(tx.outputs):
        hash_outputs = tx.hash_outputs(index)
    else:
        hash_outputs = zero

    txin = tx.inputs[index]
    preimage = struct.pack("<I", tx.version) + hash_prevouts + hash_sequence
    if tx.is_elements:
        # One null issuance per input
        hash_issuance = zero if anyone_can_pay else hash256(bytes(len(tx.inputs)))
        preimage += hash_issuance
    preimage += (
        txin.serialize_outpoint()
        + encode_varbytes(script_code)
        + value
        + struct.pack("<I", txin.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash)
    )
    return hash256(preimage)


def get_signature_hash(
    network: NetworkParams, utxo: Utxo, tx: Transaction, index: int, sighash: int = SIGHASH_ALL
) -> bytes:
    """Hash signed by ``utxo``'s key when spent as input ``index`` of ``tx``."""
    check_sighash(network, sighash)
    ensure(index < len(tx.inputs), f"Input index {index} out of range")
    ensure(bool(utxo.prevout_script), f"Input {index} has no prevout script")
    script_code = bytes.fromhex(utxo.prevout_script)

    if not utxo.address_type.is_segwit:
        ensure(not network.is_liquid, "Legacy inputs are not supported on Liquid")
        return _legacy_signature_hash(tx, index, script_code, sighash)

    if network.is_liquid:
        if utxo.commitment:
            value = bytes.fromhex(utxo.commitment)
        else:
            value = b"\x01" + utxo.satoshi.to_bytes(8, "big")
    else:
        value = struct.pack("<Q", utxo.satoshi)
    return _segwit_signature_hash(tx, index, script_code, value, sighash)


def add_input_signature(tx: Transaction, index: int, utxo: Utxo, signature: bytes) -> None:
    """Place the user's DER+sighash signature into input ``index``."""
    script_sig, witness = get_user_script_sig_and_witness(
        utxo.address_type,
        bytes.fromhex(utxo.prevout_script),
        bytes.fromhex(utxo.public_key),
        signature,
    )
    tx.inputs[index].script_sig = script_sig
    tx.inputs[index].witness = witness


def sign_input(session: WalletSession, tx: Transaction, index: int, utxo: Utxo) -> str:
    """
    Sign input ``index`` and embed the signature.

    Sweep inputs are signed with their own key; wallet inputs go through
    the session's signer.

    Returns:
        DER signature with sighash byte, hex encoded
    """
    sighash = utxo.user_sighash if utxo.user_sighash is not None else SIGHASH_ALL
    message_hash = get_signature_hash(session.network, utxo, tx, index, sighash)

    if utxo.is_external:
        der = ec_sig_from_bytes(bytes.fromhex(utxo.private_key), message_hash)
    else:
        path = utxo.user_path or session.get_subaccount_full_path(
            utxo.subaccount, utxo.pointer, utxo.is_internal
        )
        der = session.signer.sign_hash(path, message_hash)

    signature = der + bytes([sighash])
    add_input_signature(tx, index, utxo, signature)
    return signature.hex()


def extract_signatures(network: NetworkParams, utxo: Utxo, tx: Transaction, index: int) -> list[bytes]:
    """
    Recover the signatures of a fully signed input.

    Returns ``[user_sig]`` for single-key types and ``[service_sig,
    user_sig]`` for 2-of-2 types, each DER with its sighash byte.
    """
    txin = tx.inputs[index]
    address_type = utxo.address_type

    if address_type == AddressType.P2PKH:
        pushes = get_script_pushes(txin.script_sig)
        ensure(len(pushes) == 2, f"Invalid p2pkh scriptSig on input {index}")
        return [pushes[0]]

    if address_type in (AddressType.P2WPKH, AddressType.P2SH_P2WPKH):
        ensure(len(txin.witness) == 2, f"Invalid {address_type.value} witness on input {index}")
        return [txin.witness[0]]

    if address_type == AddressType.P2SH:
        pushes = get_script_pushes(txin.script_sig)
        ensure(len(pushes) == 4 and pushes[0] == b"", f"Invalid p2sh scriptSig on input {index}")
        return [pushes[1], pushes[2]]

    if address_type == AddressType.P2WSH:
        witness = txin.witness
        ensure(len(witness) == 4 and witness[0] == b"", f"Invalid p2wsh witness on input {index}")
        return [witness[1], witness[2]]

    witness = txin.witness
    ensure(len(witness) == 3, f"Invalid csv witness on input {index}")
    if network.is_liquid:
        # Older csv scripts take the user signature first
        return [witness[1], witness[0]]
    return [witness[0], witness[1]]


def get_signing_inputs(result: BuildResult) -> list[Utxo]:
    """Inputs of the built transaction in order: replaced inputs first."""
    if result.has_error:
        raise UserError(f"Cannot sign a transaction with error: {result.error.value}")
    return list(result.old_used_utxos or []) + list(result.used_utxos)


def sign_transaction(session: WalletSession, result: BuildResult) -> SignedTransaction:
    """Sign every input of a built (and on Liquid, blinded) transaction."""
    network = session.network
    inputs = get_signing_inputs(result)
    if network.is_liquid and not result.is_blinded:
        raise SigningError("Liquid transactions must be blinded before signing")

    tx = Transaction.from_hex(result.transaction, network.is_liquid)
    ensure(len(inputs) == len(tx.inputs), "Signing inputs do not match the transaction")

    signatures = []
    for index, utxo in enumerate(inputs):
        if utxo.skip_signing:
            signatures.append("")
            continue
        ensure(
            tx.inputs[index].txhash == utxo.txhash and tx.inputs[index].pt_idx == utxo.pt_idx,
            f"Input {index} does not spend {utxo.txhash}:{utxo.pt_idx}",
        )
        signatures.append(sign_input(session, tx, index, utxo))

    signed = SignedTransaction(
        transaction=tx.to_hex(),
        txid=tx.txid,
        signatures=signatures,
        fee=result.fee,
        transaction_size=tx.size,
        transaction_vsize=tx.vsize,
        transaction_weight=tx.weight,
    )
    logger.info(
        f"Signed transaction {signed.txid}: {len(inputs)} inputs, "
        f"{signed.transaction_vsize} vbytes, "
        f"{calculated_fee_rate(signed.fee, signed.transaction_vsize)} sat/kvB"
    )
    return signed
