"""
Fee bumping: rebuilds a request from an unconfirmed wallet transaction.

Replace-by-fee keeps every input of the original and re-creates its
payments; child-pays-for-parent spends one of its wallet outputs back to
the wallet, paying enough extra to lift the parent's fee rate.
"""

from __future__ import annotations

from loguru import logger

from gdktx.constants import BTC_ASSET
from gdktx.crypto import CryptoError, ec_sig_verify, split_sighash
from gdktx.errors import TxInvariantError, ensure
from gdktx.fees import fee_for_vsize
from gdktx.models import (
    Addressee,
    AddressType,
    BuildResult,
    PreviousTransaction,
    ReceiveAddress,
    TxIo,
    Utxo,
    UtxoStrategy,
)
from gdktx.script import get_csv_blocks_from_csv_redeem_script
from gdktx.session import WalletSession
from gdktx.signing import extract_signatures, get_signature_hash
from gdktx.transaction import Transaction


def check_bump_tx(session: WalletSession, result: BuildResult, subaccounts: set[int]) -> tuple[bool, bool]:
    """
    Prepare ``result`` to replace or fee-bump its ``previous_transaction``.

    Returns:
        (is_rbf, is_cpfp)
    """
    prev = result.previous_transaction
    if prev is None:
        return False, False

    is_rbf = prev.can_rbf
    is_cpfp = not is_rbf and prev.can_cpfp
    ensure(is_rbf or is_cpfp, f"Transaction {prev.txhash} can not be fee-bumped")
    ensure(not session.network.is_liquid, "Fee bumping is not supported on Liquid")
    ensure(
        any(io.is_relevant and io.subaccount in subaccounts for io in prev.inputs + prev.outputs),
        "Cannot bump a transaction from another subaccount",
    )

    raw = session.get_raw_transaction(prev.txhash)
    result.old_fee = prev.fee
    result.old_fee_rate = prev.fee_rate
    if result.fee_rate is None:
        result.fee_rate = session.get_default_fee_rate()
    if not result.memo:
        result.memo = prev.memo

    if is_rbf:
        _reconstruct_rbf(session, result, prev, raw)
    else:
        _reconstruct_cpfp(session, result, prev, raw, subaccounts)

    logger.info(
        f"Bumping {prev.txhash} by {'RBF' if is_rbf else 'CPFP'}: "
        f"old fee {prev.fee}, old rate {prev.fee_rate} sat/kvB, new rate {result.fee_rate} sat/kvB"
    )
    return is_rbf, is_cpfp


def _addressee_from_output(output: TxIo, raw: Transaction) -> Addressee:
    return Addressee(
        address=output.address,
        scriptpubkey=raw.outputs[output.pt_idx].script.hex(),
        satoshi=output.satoshi,
        asset_id=BTC_ASSET,
    )


def _reconstruct_rbf(
    session: WalletSession, result: BuildResult, prev: PreviousTransaction, raw: Transaction
) -> None:
    # Single-sig wallets may mark change explicitly; otherwise the first wallet output is change
    have_explicit_change = session.network.is_singlesig and any(
        output.is_relevant and output.is_internal for output in prev.outputs
    )

    change: TxIo | None = None
    addressees = []
    for output in prev.outputs:
        ensure(output.pt_idx < len(raw.outputs), f"Output {output.pt_idx} not in {prev.txhash}")
        if change is None and output.is_relevant:
            if not have_explicit_change or output.is_internal:
                change = output
                continue
        addressees.append(_addressee_from_output(output, raw))

    if not addressees:
        ensure(change is not None, f"Transaction {prev.txhash} has no outputs")
        result.is_redeposit = True
        addressees = [_addressee_from_output(change, raw)]
        change = None

    result.addressees = addressees
    if change is not None:
        subaccount = change.subaccount if change.subaccount is not None else result.subaccount
        result.change_subaccount = subaccount
        result.change_address[BTC_ASSET] = ReceiveAddress(
            address=change.address,
            scriptpubkey=raw.outputs[change.pt_idx].script.hex(),
            subaccount=subaccount,
            pointer=change.pointer,
            is_internal=change.is_internal,
            address_type=change.address_type or session.get_subaccount_type(subaccount),
        )

    ensure(len(prev.inputs) == len(raw.inputs), "Previous transaction inputs do not match")
    old_utxos = []
    for index, (txio, txin) in enumerate(zip(prev.inputs, raw.inputs)):
        ensure(txio.is_relevant and txio.subaccount is not None, f"Input {index} is not from this wallet")
        address_type = txio.address_type or session.get_subaccount_type(txio.subaccount)
        utxo = Utxo(
            txhash=txin.txhash,
            pt_idx=txin.pt_idx,
            satoshi=txio.satoshi,
            address_type=address_type,
            subaccount=txio.subaccount,
            pointer=txio.pointer,
            is_internal=txio.is_internal,
            sequence=txin.sequence,
        )
        if address_type == AddressType.CSV:
            # The wallet's csv setting may have changed since; use the spent script's
            ensure(bool(txin.witness), f"Input {index} has no witness")
            utxo.subtype = get_csv_blocks_from_csv_redeem_script(txin.witness[-1])
        session.add_utxo_paths(utxo)
        _verify_input_signature(session, utxo, raw, index)
        old_utxos.append(utxo)

    result.old_used_utxos = old_utxos
    if result.is_redeposit:
        result.send_all = True
        result.utxo_strategy = UtxoStrategy.MANUAL
        result.used_utxos = []


def _verify_input_signature(session: WalletSession, utxo: Utxo, raw: Transaction, index: int) -> None:
    """Check every signature on a replaced input against its recomputed hash."""
    signatures = extract_signatures(session.network, utxo, raw, index)
    pubkeys = session.pubkeys_from_utxo(utxo)
    ensure(len(signatures) == len(pubkeys), f"Input {index}: expected {len(pubkeys)} signatures")
    for signature, pubkey in zip(signatures, pubkeys):
        try:
            der, sighash = split_sighash(signature)
        except CryptoError as e:
            raise TxInvariantError(f"Input {index}: {e}") from e
        message_hash = get_signature_hash(session.network, utxo, raw, index, sighash)
        ensure(
            ec_sig_verify(pubkey, message_hash, der),
            f"Signature verification failed for input {index} of {raw.txid}",
        )


def _reconstruct_cpfp(
    session: WalletSession,
    result: BuildResult,
    prev: PreviousTransaction,
    raw: Transaction,
    subaccounts: set[int],
) -> None:
    fee_rate = result.fee_rate if result.fee_rate is not None else session.get_default_fee_rate()
    parent_fee = fee_for_vsize(raw.vsize, fee_rate, session.get_min_fee_rate())
    result.network_fee = max(0, parent_fee - prev.fee)

    spendable = [o for o in prev.outputs if o.is_relevant and o.subaccount in subaccounts]
    ensure(bool(spendable), f"Transaction {prev.txhash} has no output to spend")
    output = spendable[0]
    utxo = Utxo(
        txhash=prev.txhash,
        pt_idx=output.pt_idx,
        satoshi=output.satoshi,
        address_type=output.address_type or session.get_subaccount_type(output.subaccount),
        subaccount=output.subaccount,
        pointer=output.pointer,
        is_internal=output.is_internal,
        subtype=output.subtype,
    )

    result.is_redeposit = True
    result.send_all = True
    result.utxo_strategy = UtxoStrategy.MANUAL
    result.used_utxos = [utxo]
    if not result.addressees:
        address = session.get_receive_address(output.subaccount, is_internal=True)
        result.addressees = [
            Addressee(address=address.address, scriptpubkey=address.scriptpubkey, asset_id=BTC_ASSET)
        ]
    logger.debug(f"CPFP network fee {result.network_fee} for parent of {raw.vsize} vbytes")
