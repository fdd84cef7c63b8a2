"""
Tests for replace-by-fee and child-pays-for-parent fee bumping.
"""

from __future__ import annotations

import random

import pytest

from gdktx.builder import TxBuilder
from gdktx.errors import TxErrorCode, TxInvariantError
from gdktx.fees import fee_for_vsize
from gdktx.models import Addressee, AddressType, PreviousTransaction, TxIo, TxRequest
from gdktx.signing import sign_transaction
from gdktx.transaction import Transaction


def build(session, seed: int = 3, **kwargs):
    return TxBuilder(session, rng=random.Random(seed)).create_transaction(TxRequest(**kwargs))


@pytest.fixture
def broadcast(singlesig_session, make_utxo, recipient):
    """Build, sign and record a 30k payment with change, returning (result, signed tx)."""
    utxo = make_utxo(singlesig_session, 100_000)
    result = build(
        singlesig_session,
        addressees=[recipient(singlesig_session, 30_000)],
        utxos={"btc": [utxo]},
        fee_rate=1000,
    )
    assert result.error is None
    signed = sign_transaction(singlesig_session, result)
    tx = Transaction.from_hex(signed.transaction)
    return result, tx


def previous_transaction(
    result, tx: Transaction, internal_change: bool = True, **kwargs
) -> PreviousTransaction:
    """Describe ``tx`` the way the wallet lists it."""
    change = result.change_address["btc"]
    inputs = [
        TxIo(
            satoshi=utxo.satoshi,
            is_relevant=True,
            subaccount=utxo.subaccount,
            pointer=utxo.pointer,
            is_internal=utxo.is_internal,
            address_type=utxo.address_type,
        )
        for utxo in result.used_utxos
    ]
    outputs = [
        TxIo(
            address=out.address,
            satoshi=out.satoshi,
            pt_idx=index,
            is_relevant=out.is_change,
            is_internal=out.is_change and internal_change,
            subaccount=change.subaccount if out.is_change else None,
            pointer=change.pointer if out.is_change else 0,
            address_type=change.address_type if out.is_change else None,
        )
        for index, out in enumerate(result.transaction_outputs)
    ]
    fields = dict(
        txhash=tx.txid,
        can_rbf=True,
        fee=result.fee,
        fee_rate=result.calculated_fee_rate,
        inputs=inputs,
        outputs=outputs,
    )
    fields.update(kwargs)
    return PreviousTransaction(**fields)


def broadcast_multisig(session, make_utxo, recipient, cosign, subaccount: int, **utxo_kwargs):
    """Build and fully sign a 30k payment from a 2-of-2 subaccount, returning (result, tx)."""
    utxo = make_utxo(session, 100_000, subaccount=subaccount, **utxo_kwargs)
    result = build(
        session,
        addressees=[recipient(session, 30_000)],
        utxos={"btc": [utxo]},
        subaccount=subaccount,
        fee_rate=1000,
    )
    assert result.error is None
    signed = sign_transaction(session, result)
    tx = Transaction.from_hex(signed.transaction)
    cosign(session, tx, 0, result.used_utxos[0], bytes.fromhex(signed.signatures[0]))
    return result, tx


class TestReplaceByFee:
    def test_replacement(self, singlesig_session, broadcast) -> None:
        original, tx = broadcast
        singlesig_session.add_transaction(tx)

        result = build(
            singlesig_session,
            previous_transaction=previous_transaction(original, tx),
            fee_rate=2000,
        )
        assert result.error is None
        assert result.addressees_read_only
        assert result.old_fee == original.fee
        assert len(result.old_used_utxos) == 1
        assert result.used_utxos == []

        replacement = Transaction.from_hex(result.transaction)
        # Same inputs, same payment, same locktime; only the change pays more
        outpoints = [(i.txhash, i.pt_idx) for i in tx.inputs]
        assert [(i.txhash, i.pt_idx) for i in replacement.inputs] == outpoints
        assert replacement.locktime == tx.locktime
        assert result.satoshi["btc"] == 30_000
        assert result.fee > original.fee
        assert result.change_amount["btc"] == 100_000 - 30_000 - result.fee
        change_out = result.transaction_outputs[result.change_index["btc"]]
        assert change_out.address == original.change_address["btc"].address

    def test_same_fee_rate_is_not_a_replacement(self, singlesig_session, broadcast) -> None:
        original, tx = broadcast
        singlesig_session.add_transaction(tx)

        result = build(
            singlesig_session,
            previous_transaction=previous_transaction(original, tx),
            fee_rate=1000,
        )
        assert result.error == TxErrorCode.INVALID_REPLACEMENT_FEE_RATE

    def test_tampered_signature_is_rejected(self, singlesig_session, broadcast) -> None:
        original, tx = broadcast
        witness = tx.inputs[0].witness
        sig = bytearray(witness[0])
        sig[-2] ^= 0x01
        witness[0] = bytes(sig)
        singlesig_session.add_transaction(tx)

        with pytest.raises(TxInvariantError):
            build(
                singlesig_session,
                previous_transaction=previous_transaction(original, tx),
                fee_rate=2000,
            )

    def test_other_subaccount_is_rejected(self, singlesig_session, broadcast) -> None:
        original, tx = broadcast
        singlesig_session.add_transaction(tx)

        with pytest.raises(TxInvariantError):
            build(
                singlesig_session,
                previous_transaction=previous_transaction(original, tx),
                fee_rate=2000,
                subaccount=1,
            )

    def test_not_bumpable(self, singlesig_session, broadcast) -> None:
        original, tx = broadcast
        singlesig_session.add_transaction(tx)

        with pytest.raises(TxInvariantError):
            build(
                singlesig_session,
                previous_transaction=previous_transaction(original, tx, can_rbf=False),
            )

    def test_unflagged_wallet_output_is_change(self, singlesig_session, broadcast) -> None:
        original, tx = broadcast
        singlesig_session.add_transaction(tx)

        result = build(
            singlesig_session,
            previous_transaction=previous_transaction(original, tx, internal_change=False),
            fee_rate=5000,
        )
        assert result.error is None
        assert not result.is_redeposit
        assert [a.satoshi for a in result.addressees] == [30_000]
        assert result.change_amount["btc"] == 100_000 - 30_000 - result.fee

    def test_redeposit(self, singlesig_session, make_utxo) -> None:
        own = singlesig_session.get_receive_address(0)
        original = build(
            singlesig_session,
            addressees=[Addressee(address=own.address)],
            utxos={"btc": [make_utxo(singlesig_session, 100_000)]},
            send_all=True,
            fee_rate=1000,
        )
        assert original.error is None
        tx = Transaction.from_hex(sign_transaction(singlesig_session, original).transaction)
        singlesig_session.add_transaction(tx)
        spent = original.used_utxos[0]
        prev = PreviousTransaction(
            txhash=tx.txid,
            can_rbf=True,
            fee=original.fee,
            fee_rate=original.calculated_fee_rate,
            inputs=[
                TxIo(
                    satoshi=spent.satoshi,
                    is_relevant=True,
                    subaccount=0,
                    pointer=spent.pointer,
                    address_type=AddressType.P2WPKH,
                )
            ],
            outputs=[
                TxIo(
                    address=own.address,
                    satoshi=tx.outputs[0].satoshi,
                    is_relevant=True,
                    subaccount=0,
                    pointer=own.pointer,
                    address_type=AddressType.P2WPKH,
                )
            ],
        )

        result = build(singlesig_session, previous_transaction=prev, fee_rate=3000)

        assert result.error is None
        assert result.is_redeposit
        assert result.send_all
        assert len(result.transaction_outputs) == 1
        assert result.transaction_outputs[0].scriptpubkey == own.scriptpubkey
        assert result.transaction_outputs[0].satoshi == 100_000 - result.fee
        assert result.fee > original.fee

    def test_liquid_is_unsupported(self, liquid_session) -> None:
        prev = PreviousTransaction(
            txhash="cd" * 32,
            can_rbf=True,
            fee=100,
            fee_rate=1000,
            inputs=[TxIo(is_relevant=True, subaccount=0)],
        )
        with pytest.raises(TxInvariantError):
            build(liquid_session, previous_transaction=prev, fee_rate=2000)


class TestChildPaysForParent:
    def test_child_lifts_parent_fee(self, singlesig_session, broadcast) -> None:
        original, tx = broadcast
        singlesig_session.add_transaction(tx)
        prev = previous_transaction(original, tx, can_rbf=False, can_cpfp=True)

        result = build(singlesig_session, previous_transaction=prev, fee_rate=3000)

        assert result.error is None
        assert result.is_redeposit
        assert result.send_all
        assert result.addressees_read_only
        expected_network_fee = max(0, fee_for_vsize(tx.vsize, 3000, 1000) - original.fee)
        assert result.network_fee == expected_network_fee > 0
        assert result.fee == fee_for_vsize(result.transaction_vsize, 3000, 1000) + expected_network_fee

        child = Transaction.from_hex(result.transaction)
        assert len(child.inputs) == 1
        assert child.inputs[0].txhash == tx.txid
        assert child.inputs[0].pt_idx == original.change_index["btc"]
        assert len(child.outputs) == 1
        assert child.outputs[0].satoshi == original.change_amount["btc"] - result.fee

    def test_child_is_signable(self, singlesig_session, broadcast) -> None:
        original, tx = broadcast
        singlesig_session.add_transaction(tx)
        prev = previous_transaction(original, tx, can_rbf=False, can_cpfp=True)

        result = build(singlesig_session, previous_transaction=prev, fee_rate=3000)
        signed = sign_transaction(singlesig_session, result)
        assert signed.signatures[0]


class TestMultisigReplacement:
    @pytest.mark.parametrize("subaccount", [0, 1, 2])
    def test_replacement(self, multisig_session, make_utxo, recipient, cosign, subaccount: int) -> None:
        original, tx = broadcast_multisig(multisig_session, make_utxo, recipient, cosign, subaccount)
        multisig_session.add_transaction(tx)

        result = build(
            multisig_session,
            previous_transaction=previous_transaction(original, tx),
            fee_rate=3000,
            subaccount=subaccount,
        )

        assert result.error is None
        assert result.satoshi["btc"] == 30_000
        assert result.fee > original.fee
        replacement = Transaction.from_hex(result.transaction)
        assert [(i.txhash, i.pt_idx) for i in replacement.inputs] == [(i.txhash, i.pt_idx) for i in tx.inputs]

    def test_csv_blocks_come_from_the_spent_script(
        self, multisig_session, make_utxo, recipient, cosign
    ) -> None:
        # The wallet now creates 25920-block outputs; the spent one used 144
        assert multisig_session.get_csv_blocks() == 25920
        original, tx = broadcast_multisig(multisig_session, make_utxo, recipient, cosign, 2, subtype=144)
        multisig_session.add_transaction(tx)

        result = build(
            multisig_session,
            previous_transaction=previous_transaction(original, tx),
            fee_rate=3000,
            subaccount=2,
        )

        assert result.error is None
        old = result.old_used_utxos[0]
        assert old.subtype == 144
        assert old.prevout_script == original.used_utxos[0].prevout_script

    def test_tampered_service_signature_is_rejected(
        self, multisig_session, make_utxo, recipient, cosign
    ) -> None:
        original, tx = broadcast_multisig(multisig_session, make_utxo, recipient, cosign, 1)
        witness = tx.inputs[0].witness
        service_sig = bytearray(witness[1])
        service_sig[-2] ^= 0x01
        witness[1] = bytes(service_sig)
        multisig_session.add_transaction(tx)

        with pytest.raises(TxInvariantError):
            build(
                multisig_session,
                previous_transaction=previous_transaction(original, tx),
                fee_rate=3000,
                subaccount=1,
            )
