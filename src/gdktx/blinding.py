"""
Confidential transaction blinding for Liquid.

Wallet outputs get asset and amount blinders derived from the master
blinding key and the transaction's inputs, so the same transaction shape
always rederives the same factors. The amount blinder of the last blinded
output is solved so that the value commitments balance.
"""

from __future__ import annotations

import hashlib
import hmac
import random
import secrets
import struct

from loguru import logger

from gdktx.constants import ZERO_BLINDER_HEX
from gdktx.crypto import (
    SECP256K1_N,
    CryptoError,
    asset_generator_from_bytes,
    asset_rangeproof,
    asset_surjectionproof,
    asset_unblind,
    asset_value_commitment,
    b2h_rev,
    ec_scalar_add,
    ecdh,
    get_ephemeral_keypair,
    h2b_rev,
    scalar_from_bytes,
    scalar_to_bytes,
    sha256,
)
from gdktx.errors import BlindingError, TxInvariantError, UserError, ensure
from gdktx.fees import calculated_fee_rate
from gdktx.models import BlindingFactors, BuildResult, UnblindedOutput, Utxo
from gdktx.session import WalletSession
from gdktx.signing import get_signing_inputs
from gdktx.transaction import (
    ASSET_COMMITMENT_PREFIXES,
    EXPLICIT_PREFIX,
    Transaction,
    TxOut,
)


def derive_abf_vbf(
    master_blinding_key: bytes, hash_prevouts: bytes, output_index: int
) -> tuple[bytes, bytes]:
    """Deterministic (asset blinder, amount blinder) for one output."""
    digest = hmac.new(
        master_blinding_key, hash_prevouts + struct.pack("<I", output_index), hashlib.sha512
    ).digest()
    abf = scalar_to_bytes(int.from_bytes(digest[:32], "big"))
    vbf = scalar_to_bytes(int.from_bytes(digest[32:], "big"))
    return abf, vbf


def _blinding_term(value: int, abf: bytes, vbf: bytes) -> int:
    # Coefficient of G in value * (H + abf*G) + vbf*G
    return value * scalar_from_bytes(abf) + scalar_from_bytes(vbf)


def compute_final_vbf(
    input_values: list[int],
    input_abfs: list[bytes],
    input_vbfs: list[bytes],
    output_values: list[int],
    output_abfs: list[bytes],
    output_vbfs: list[bytes],
) -> bytes:
    """
    Amount blinder for the last output that balances the commitments.

    ``output_abfs`` has one more entry than ``output_vbfs``: the last
    output's asset blinder, whose amount blinder is being solved for.
    """
    ensure(len(input_values) == len(input_abfs) == len(input_vbfs), "Mismatched input blinders")
    ensure(
        len(output_values) == len(output_abfs) == len(output_vbfs) + 1,
        "Mismatched output blinders",
    )
    total = sum(_blinding_term(v, a, b) for v, a, b in zip(input_values, input_abfs, input_vbfs))
    total -= sum(
        _blinding_term(v, a, b) for v, a, b in zip(output_values[:-1], output_abfs[:-1], output_vbfs)
    )
    total -= output_values[-1] * scalar_from_bytes(output_abfs[-1])
    return scalar_to_bytes(total % SECP256K1_N)


def _input_blinders(inputs: list[Utxo]) -> tuple[list[bytes], list[bytes], list[bytes], list[int]]:
    assets, abfs, vbfs, values = [], [], [], []
    for utxo in inputs:
        assets.append(h2b_rev(utxo.asset_id))
        abfs.append(h2b_rev(utxo.assetblinder or ZERO_BLINDER_HEX))
        vbfs.append(h2b_rev(utxo.amountblinder or ZERO_BLINDER_HEX))
        values.append(utxo.satoshi)
    return assets, abfs, vbfs, values


def _outputs_to_blind(result: BuildResult) -> list[int]:
    return [
        i
        for i, output in enumerate(result.transaction_outputs)
        if output.blinding_key and not output.is_fee and not output.is_preblinded
    ]


def _derive_output_blinders(
    master_blinding_key: bytes, tx: Transaction, indexes: list[int]
) -> dict[int, tuple[bytes, bytes]]:
    hash_prevouts = tx.hash_prevouts()
    return {i: derive_abf_vbf(master_blinding_key, hash_prevouts, i) for i in indexes}


def get_blinding_factors(master_blinding_key: bytes, result: BuildResult) -> BlindingFactors:
    """
    Per-output asset and amount blinders, display-order hex.

    Outputs not blinded by the wallet report zero (or, when pre-blinded,
    their sender's) blinders. For complete transactions the last blinded
    output's amount blinder is left empty since it must be solved.
    """
    if result.has_error:
        raise UserError(f"Cannot blind a transaction with error: {result.error.value}")
    tx = Transaction.from_hex(result.transaction, is_elements=True)
    indexes = _outputs_to_blind(result)
    blinders = _derive_output_blinders(master_blinding_key, tx, indexes)

    assetblinders, amountblinders = [], []
    for i, output in enumerate(result.transaction_outputs):
        if i in blinders:
            abf, vbf = blinders[i]
            assetblinders.append(b2h_rev(abf))
            amountblinders.append(b2h_rev(vbf))
        else:
            assetblinders.append(output.assetblinder or ZERO_BLINDER_HEX)
            amountblinders.append(output.amountblinder or ZERO_BLINDER_HEX)

    if indexes and not result.is_partial:
        amountblinders[indexes[-1]] = ""
    return BlindingFactors(assetblinders=assetblinders, amountblinders=amountblinders)


def blind_transaction(
    session: WalletSession, result: BuildResult, rng: random.Random | None = None
) -> BuildResult:
    """
    Blind the wallet's outputs of a built Liquid transaction.

    Returns a new result with commitments and proofs in ``transaction`` and
    the blinders recorded on ``transaction_outputs``.
    """
    network = session.network
    if not network.is_liquid:
        raise BlindingError("Only Liquid transactions can be blinded")
    inputs = get_signing_inputs(result)
    rng = rng or secrets.SystemRandom()

    result = result.model_copy(deep=True)
    tx = Transaction.from_hex(result.transaction, is_elements=True)
    ensure(len(inputs) == len(tx.inputs), "Blinding inputs do not match the transaction")
    ensure(
        len(result.transaction_outputs) == len(tx.outputs),
        "Output details do not match the transaction",
    )

    indexes = _outputs_to_blind(result)
    if not indexes:
        raise BlindingError("Transaction has no outputs to blind")

    blinders = _derive_output_blinders(session.signer.get_master_blinding_key(), tx, indexes)
    input_assets, input_abfs, input_vbfs, input_values = _input_blinders(inputs)
    input_generators = [asset_generator_from_bytes(a, f) for a, f in zip(input_assets, input_abfs)]

    if not result.is_partial:
        final_index = indexes[-1]
        # Pre-blinded outputs with both blinders balance directly, the others through scalars
        preblinded = [
            output
            for output in result.transaction_outputs
            if output.is_preblinded and output.assetblinder and output.amountblinder
        ]
        values = [o.satoshi for o in preblinded] + [result.transaction_outputs[i].satoshi for i in indexes]
        abfs = [h2b_rev(o.assetblinder) for o in preblinded] + [blinders[i][0] for i in indexes]
        vbfs = [h2b_rev(o.amountblinder) for o in preblinded] + [blinders[i][1] for i in indexes[:-1]]
        final_vbf = compute_final_vbf(input_values, input_abfs, input_vbfs, values, abfs, vbfs)
        if result.scalars:
            num_blinded = sum(1 for a in result.addressees if a.is_blinded)
            ensure(
                len(result.scalars) == num_blinded,
                f"Expected {num_blinded} scalars, got {len(result.scalars)}",
            )
        for scalar in result.scalars:
            final_vbf = ec_scalar_add(final_vbf, bytes.fromhex(scalar))
        blinders[final_index] = (blinders[final_index][0], final_vbf)

    nonces = []
    for i, output in enumerate(result.transaction_outputs):
        if i not in blinders:
            nonces.append("")
            continue
        abf, vbf = blinders[i]
        txout = tx.outputs[i]
        blinding_pubkey = bytes.fromhex(output.blinding_key)
        nonce = _blind_output(
            txout,
            asset=h2b_rev(output.asset_id),
            value=output.satoshi,
            abf=abf,
            vbf=vbf,
            blinding_pubkey=blinding_pubkey,
            input_assets=input_assets,
            input_abfs=input_abfs,
            input_generators=input_generators,
            rng=rng,
            with_surjection_proof=not result.is_partial,
        )
        output.assetblinder = b2h_rev(abf)
        output.amountblinder = b2h_rev(vbf)
        output.eph_public_key = txout.nonce.hex()
        if nonce:
            output.blinding_nonce = nonce.hex()
        nonces.append(output.blinding_nonce or "")

    result.transaction = tx.to_hex()
    result.is_blinded = True
    result.blinding_nonces = nonces if result.blinding_nonces_required else []
    result.transaction_size = tx.size
    result.transaction_vsize = tx.vsize
    result.transaction_weight = tx.weight
    result.calculated_fee_rate = calculated_fee_rate(result.fee, tx.vsize)

    logger.info(f"Blinded {len(indexes)} outputs, {tx.vsize} vbytes")
    return result


def _blind_output(
    txout: TxOut,
    asset: bytes,
    value: int,
    abf: bytes,
    vbf: bytes,
    blinding_pubkey: bytes,
    input_assets: list[bytes],
    input_abfs: list[bytes],
    input_generators: list[bytes],
    rng: random.Random,
    with_surjection_proof: bool = True,
) -> bytes:
    """
    Commit ``txout`` to ``asset``/``value`` and attach its proofs.

    Proofs are kept when the commitments are unchanged. Partial transactions
    get no surjection proof, as their input set is not final. Returns the
    blinding nonce shared with the recipient, empty when proofs were kept.
    """
    generator = asset_generator_from_bytes(asset, abf)
    commitment = asset_value_commitment(value, vbf, generator)
    if txout.asset == generator and txout.value == commitment and txout.range_proof:
        logger.debug("Commitments unchanged, keeping existing proofs")
        return b""

    eph_private_key, eph_public_key = get_ephemeral_keypair()
    txout.range_proof = asset_rangeproof(
        value,
        blinding_pubkey,
        eph_private_key,
        asset,
        abf,
        vbf,
        commitment,
        txout.script,
        generator,
    )
    txout.surjection_proof = b""
    if with_surjection_proof:
        entropy = rng.getrandbits(256).to_bytes(32, "big")
        txout.surjection_proof = asset_surjectionproof(
            asset,
            abf,
            generator,
            entropy,
            b"".join(input_assets),
            b"".join(input_abfs),
            b"".join(input_generators),
        )
    txout.asset = generator
    txout.value = commitment
    txout.nonce = eph_public_key
    return sha256(ecdh(blinding_pubkey, eph_private_key))


def unblind_output(session: WalletSession, tx: Transaction, index: int) -> UnblindedOutput:
    """
    Recover the plaintext of output ``index`` with the wallet's blinding key.

    Explicit outputs are returned as is with zero blinders. A rangeproof
    that does not rewind is reported on the result.
    """
    ensure(tx.is_elements, "Only Elements outputs can be unblinded")
    ensure(index < len(tx.outputs), f"Output index {index} out of range")
    txout = tx.outputs[index]

    asset_explicit = not txout.asset
    value_explicit = not txout.value or txout.value[0] == EXPLICIT_PREFIX
    if asset_explicit and value_explicit:
        return UnblindedOutput(
            satoshi=txout.satoshi,
            asset_id=txout.asset_id or "",
            assetblinder=ZERO_BLINDER_HEX,
            amountblinder=ZERO_BLINDER_HEX,
        )

    is_confidential = (
        len(txout.asset) == 33
        and txout.asset[0] in ASSET_COMMITMENT_PREFIXES
        and txout.is_confidential
        and len(txout.nonce) == 33
    )
    if not is_confidential:
        raise TxInvariantError(f"Output {index} is only partially blinded")

    blinding_private_key = session.signer.get_blinding_key_from_script(txout.script)
    try:
        asset, abf, vbf, value = asset_unblind(
            txout.nonce,
            blinding_private_key,
            txout.range_proof,
            txout.value,
            txout.script,
            txout.asset,
        )
    except CryptoError as e:
        logger.warning(f"Output {index}: {e}")
        return UnblindedOutput(error="failed to unblind utxo")

    return UnblindedOutput(
        satoshi=value,
        asset_id=b2h_rev(asset),
        assetblinder=b2h_rev(abf),
        amountblinder=b2h_rev(vbf),
    )
