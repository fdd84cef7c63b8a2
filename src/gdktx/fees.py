"""
Fee and size model for draft transactions.
"""

from __future__ import annotations

from gdktx.constants import (
    ASSET_COMMITMENT_LEN,
    DUMMY_RANGEPROOF_LEN,
    NONCE_COMMITMENT_LEN,
    VALUE_COMMITMENT_LEN,
    surjectionproof_size,
)
from gdktx.transaction import Transaction, TxOut


def fee_for_vsize(vsize: int, fee_rate: int, min_fee_rate: int) -> int:
    """Fee in satoshi for ``vsize`` virtual bytes at a sat/kvB rate."""
    rate = max(fee_rate, min_fee_rate)
    return (vsize * rate + 999) // 1000


def set_dummy_blinding(txout: TxOut, num_inputs: int) -> None:
    """Fill an unblinded output with commitments and proofs of blinded size."""
    txout.asset = bytes([0x0A]) + bytes(ASSET_COMMITMENT_LEN - 1)
    txout.value = bytes([0x08]) + bytes(VALUE_COMMITMENT_LEN - 1)
    txout.nonce = bytes([0x02]) + bytes(NONCE_COMMITMENT_LEN - 1)
    txout.range_proof = bytes(DUMMY_RANGEPROOF_LEN)
    txout.surjection_proof = bytes(surjectionproof_size(num_inputs))


def refresh_dummy_blinding(tx: Transaction) -> None:
    """Resize placeholder proofs on outputs awaiting blinding to the current input count."""
    if not tx.is_elements:
        return
    for txout in tx.outputs:
        if txout.needs_blinding:
            set_dummy_blinding(txout, len(tx.inputs))


def get_tx_fee(tx: Transaction, fee_rate: int, min_fee_rate: int) -> int:
    """Fee for ``tx`` as it would be once signed (and blinded on Elements)."""
    refresh_dummy_blinding(tx)
    return fee_for_vsize(tx.vsize, fee_rate, min_fee_rate)


def calculated_fee_rate(fee: int, vsize: int) -> int:
    if vsize == 0:
        return 0
    return fee * 1000 // vsize


def clear_dummy_blinding(tx: Transaction) -> None:
    """Restore explicit fields on outputs that only carry placeholder blinding."""
    if not tx.is_elements:
        return
    for txout in tx.outputs:
        if txout.needs_blinding:
            txout.asset = txout.value = txout.nonce = b""
            txout.range_proof = txout.surjection_proof = b""
