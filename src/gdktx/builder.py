"""
Coin selection and transaction building.

Builds a draft transaction from the caller's addressees and wallet UTXOs,
one asset at a time with the fee-paying asset last, iterating inputs,
change and fee until they agree. Problems with the request are reported
on the result for the caller to correct; broken invariants raise.
"""

from __future__ import annotations

import random
import re
import secrets
from dataclasses import dataclass, field
from itertools import count

from loguru import logger

from gdktx.address import address_to_scriptpubkey, decode_private_key, scriptpubkey_to_address
from gdktx.bump import check_bump_tx
from gdktx.constants import (
    BTC_ASSET,
    MIN_FEE_LOOP_ITERATIONS,
    NO_CHANGE_INDEX,
    SEQUENCE_NO_RBF,
    SEQUENCE_RBF,
)
from gdktx.crypto import is_valid_private_key
from gdktx.errors import TxErrorCode, TxInvariantError, ensure
from gdktx.fees import (
    calculated_fee_rate,
    clear_dummy_blinding,
    fee_for_vsize,
    get_tx_fee,
    refresh_dummy_blinding,
)
from gdktx.models import (
    Addressee,
    BuildResult,
    TransactionOutput,
    TxRequest,
    Utxo,
    UtxoStrategy,
)
from gdktx.script import get_dummy_script_sig_and_witness, set_anti_snipe_locktime
from gdktx.session import WalletSession
from gdktx.transaction import Transaction, TxIn, TxOut

ASSET_ID_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class _Draft:
    """State of one build, owned by the builder until the result is returned."""

    result: BuildResult
    tx: Transaction
    min_fee_rate: int
    default_sequence: int
    is_rbf: bool = False
    is_cpfp: bool = False
    inputs: list[Utxo] = field(default_factory=list)
    num_old_inputs: int = 0
    inputs_selected: bool = False
    fee: int = 0
    available: dict[str, int] = field(default_factory=dict)

    @property
    def is_manual(self) -> bool:
        return self.result.utxo_strategy == UtxoStrategy.MANUAL


class TxBuilder:
    """
    Builds unsigned transactions for a wallet session.

    ``rng`` drives input shuffling, change placement and anti-fee-sniping;
    it defaults to the system CSPRNG.
    """

    def __init__(self, session: WalletSession, rng: random.Random | None = None):
        self.session = session
        self.network = session.network
        self.rng = rng or secrets.SystemRandom()

    def create_transaction(self, request: TxRequest) -> BuildResult:
        result = BuildResult.from_request(request)
        tx = Transaction(version=result.transaction_version, is_elements=self.network.is_liquid)
        draft = _Draft(
            result=result,
            tx=tx,
            min_fee_rate=self.session.get_min_fee_rate(),
            default_sequence=SEQUENCE_RBF if self.session.is_rbf_enabled() else SEQUENCE_NO_RBF,
        )

        self._build(draft)
        self._update_tx_info(draft)

        if result.has_error:
            logger.info(f"Built transaction with error {result.error.value}: {result.error_detail}")
        else:
            logger.info(
                f"Built transaction: {len(tx.inputs)} inputs, {len(tx.outputs)} outputs, "
                f"fee {result.fee} sat, {result.transaction_vsize} vbytes"
            )
        return result

    def _build(self, draft: _Draft) -> None:
        result = draft.result
        session = self.session

        draft.is_rbf, draft.is_cpfp = check_bump_tx(session, result, {result.subaccount})
        if result.is_sweep and not self._prepare_sweep(draft):
            return
        result.is_sweep_tx = result.is_sweep
        if result.is_redeposit:
            result.send_all = True
        result.addressees_read_only = (
            draft.is_rbf or draft.is_cpfp or result.is_redeposit or result.is_sweep
        )
        result.amount_read_only = result.addressees_read_only or result.send_all

        if result.fee_rate is None:
            result.fee_rate = session.get_default_fee_rate()
        if result.fee_rate < draft.min_fee_rate:
            result.set_error(
                TxErrorCode.FEE_RATE_BELOW_MINIMUM,
                f"{result.fee_rate} < {draft.min_fee_rate} sat/kvB",
            )

        if result.transaction_locktime is None:
            if draft.is_rbf:
                result.transaction_locktime = session.get_raw_transaction(
                    result.previous_transaction.txhash
                ).locktime
            else:
                result.transaction_locktime = set_anti_snipe_locktime(session.get_block_height(), self.rng)
        draft.tx.locktime = result.transaction_locktime

        if not result.addressees:
            result.set_error(TxErrorCode.NO_RECIPIENTS, force=True)
        elif result.send_all and len(result.addressees) > 1:
            result.set_error(TxErrorCode.SEND_ALL_REQUIRES_SINGLE_OUTPUT)
        for index, addressee in enumerate(result.addressees):
            self._add_addressee_output(draft, index, addressee)

        for utxo in result.old_used_utxos or []:
            self._add_input(draft, utxo)
        draft.num_old_inputs = len(draft.inputs)

        assets = self._get_assets(draft)
        if draft.is_manual and not self._check_manual_utxos(draft, assets):
            return
        draft.inputs_selected = True

        self._set_change_subaccount(draft)

        for asset_id in assets:
            self._create_asset_outputs(draft, asset_id)
        if draft.is_manual:
            # Partial transactions may spend assets whose outputs another party adds
            spent = {u.outpoint for u in draft.inputs}
            for utxo in result.used_utxos:
                if utxo.outpoint not in spent:
                    self._add_input(draft, utxo)

        self._randomize_inputs(draft)
        self._place_change_outputs(draft)
        self._place_indexed_addressees(draft)

        if draft.is_rbf and not result.has_error:
            self._check_replacement_fee(draft)

    def _prepare_sweep(self, draft: _Draft) -> bool:
        result = draft.result
        if self.network.is_liquid:
            result.set_error(TxErrorCode.SWEEP_NOT_SUPPORTED_FOR_LIQUID)
            return False
        try:
            private_key, compressed = decode_private_key(result.private_key, self.network)
        except ValueError:
            private_key, compressed = b"", True
        if not is_valid_private_key(private_key):
            result.set_error(TxErrorCode.INVALID_PRIVATE_KEY)
            return False

        utxos = self.session.get_unspent_outputs_for_private_key(private_key, compressed)
        if not utxos:
            result.set_error(TxErrorCode.NO_UTXOS_FOUND)
            return False

        result.utxos = {BTC_ASSET: utxos}
        result.used_utxos = list(utxos)
        result.utxo_strategy = UtxoStrategy.MANUAL
        result.send_all = True
        if not result.addressees:
            address = self.session.get_receive_address(result.subaccount)
            result.addressees = [Addressee(address=address.address, scriptpubkey=address.scriptpubkey)]
        logger.debug(f"Sweeping {len(utxos)} outputs, {sum(u.satoshi for u in utxos)} sat")
        return True

    def _add_addressee_output(self, draft: _Draft, index: int, addressee: Addressee) -> None:
        result = draft.result
        network = self.network

        if network.is_liquid:
            asset_id = network.asset_id_or_policy(addressee.asset_id)
            if not ASSET_ID_RE.match(asset_id):
                result.set_error(TxErrorCode.INVALID_ASSET_ID, asset_id)
                return
        else:
            if addressee.asset_id not in (None, BTC_ASSET):
                result.set_error(TxErrorCode.ASSETS_ON_BITCOIN)
                return
            asset_id = BTC_ASSET
        addressee.asset_id = asset_id

        try:
            if addressee.scriptpubkey:
                script = bytes.fromhex(addressee.scriptpubkey)
            else:
                script = address_to_scriptpubkey(addressee.address, network)
        except ValueError as e:
            result.set_error(TxErrorCode.INVALID_ADDRESS, str(e))
            return
        if not script:
            result.set_error(TxErrorCode.INVALID_ADDRESS, "Empty output script")
            return
        addressee.scriptpubkey = script.hex()
        if not addressee.address:
            try:
                addressee.address = scriptpubkey_to_address(script, network)
            except ValueError:
                logger.debug(f"Output script {script.hex()} has no address form")

        if network.is_liquid and not addressee.is_blinded and not addressee.blinding_key:
            result.set_error(TxErrorCode.NONCONFIDENTIAL_ADDRESS, addressee.address)
        if addressee.satoshi == 0 and not result.send_all:
            result.set_error(TxErrorCode.NO_AMOUNT_SPECIFIED)

        txout = TxOut(
            script=script,
            satoshi=addressee.satoshi,
            asset_id=asset_id,
            address=addressee.address,
            blinding_key=bytes.fromhex(addressee.blinding_key),
            addressee_index=index,
        )
        if addressee.is_blinded:
            txout.asset = bytes.fromhex(addressee.asset_commitment)
            txout.value = bytes.fromhex(addressee.value_commitment)
            txout.nonce = bytes.fromhex(addressee.nonce_commitment)
            txout.range_proof = bytes.fromhex(addressee.range_proof)
            txout.surjection_proof = bytes.fromhex(addressee.surjection_proof)
            txout.is_preblinded = True
        draft.tx.add_output(txout)

    def _add_input(self, draft: _Draft, utxo: Utxo) -> None:
        self.session.add_utxo_paths(utxo)
        script_sig, witness = get_dummy_script_sig_and_witness(
            utxo.address_type,
            bytes.fromhex(utxo.prevout_script),
            bytes.fromhex(utxo.public_key),
            self.session.signer.supports_low_r(),
            self.network.is_liquid,
        )
        sequence = utxo.sequence if utxo.sequence is not None else draft.default_sequence
        draft.tx.add_input(TxIn(utxo.txhash, utxo.pt_idx, sequence, script_sig, witness))
        draft.inputs.append(utxo)

    def _get_assets(self, draft: _Draft) -> list[str]:
        """Assets to process, the fee-paying asset last."""
        policy_asset = self.network.policy_asset
        assets = {out.asset_id for out in draft.tx.outputs if out.asset_id}
        assets.update(u.asset_id for u in draft.inputs)
        if self.network.is_liquid:
            assets.add(policy_asset)
        ordered = sorted(a for a in assets if a != policy_asset)
        if policy_asset in assets:
            ordered.append(policy_asset)
        return ordered

    def _check_manual_utxos(self, draft: _Draft, assets: list[str]) -> bool:
        result = draft.result
        if not result.used_utxos and not draft.inputs:
            result.set_error(TxErrorCode.NO_UTXOS_FOUND)
            return False
        if result.is_partial:
            return True
        for utxo in result.used_utxos:
            if utxo.asset_id not in assets:
                result.set_error(TxErrorCode.MISSING_RECIPIENT_FOR_ASSET, utxo.asset_id)
                return False
        return True

    def _set_change_subaccount(self, draft: _Draft) -> None:
        result = draft.result
        if result.change_subaccount is not None:
            return
        if draft.is_manual:
            candidates = list(result.used_utxos)
        else:
            candidates = [u for utxos in result.utxos.values() for u in utxos]
        candidates += draft.inputs
        subaccounts = {u.subaccount for u in candidates if not u.is_external}
        if len(subaccounts) > 1:
            result.set_error(TxErrorCode.CANNOT_DETERMINE_CHANGE_SUBACCOUNT)
        result.change_subaccount = subaccounts.pop() if len(subaccounts) == 1 else result.subaccount

    def _candidate_utxos(self, draft: _Draft, asset_id: str) -> list[Utxo]:
        result = draft.result
        spent = {u.outpoint for u in draft.inputs}
        utxos = result.used_utxos if draft.is_manual else result.utxos.get(asset_id, [])
        return [u for u in utxos if u.asset_id == asset_id and u.outpoint not in spent]

    def _add_change_output(self, draft: _Draft, asset_id: str, satoshi: int) -> int:
        result = draft.result
        tx = draft.tx
        address = result.change_address.get(asset_id)
        if address is None:
            ensure(result.change_subaccount is not None, "Change subaccount not set")
            address = self.session.get_receive_address(result.change_subaccount, is_internal=True)
            result.change_address[asset_id] = address

        change_index = tx.add_output(
            TxOut(
                script=bytes.fromhex(address.scriptpubkey),
                satoshi=satoshi,
                asset_id=asset_id,
                address=address.address,
                blinding_key=bytes.fromhex(address.blinding_key),
                is_change=True,
            )
        )
        fee_index = next((i for i, out in enumerate(tx.outputs) if out.is_fee), None)
        if fee_index is not None:
            # Keep the fee output last
            tx.outputs[fee_index], tx.outputs[change_index] = tx.outputs[change_index], tx.outputs[fee_index]
            change_index = fee_index
        return change_index

    def _add_next_candidate(self, draft: _Draft, candidates: list[Utxo]) -> int:
        """Spend the next unused candidate; returns its value, or 0 when none remain."""
        spent = {u.outpoint for u in draft.inputs}
        for utxo in candidates:
            if utxo.outpoint not in spent:
                self._add_input(draft, utxo)
                return utxo.satoshi
        return 0

    def _create_asset_outputs(self, draft: _Draft, asset_id: str) -> None:
        """Select inputs and set change (and fee) for one asset until they converge."""
        result = draft.result
        tx = draft.tx
        is_policy = asset_id == self.network.policy_asset
        addressee_indexes = [
            i
            for i, out in enumerate(tx.outputs)
            if out.addressee_index is not None and out.asset_id == asset_id
        ]
        send_all = result.send_all and bool(addressee_indexes)
        required = 0 if send_all else sum(tx.outputs[i].satoshi for i in addressee_indexes)
        dust_threshold = self.session.get_dust_threshold(asset_id)

        candidates = self._candidate_utxos(draft, asset_id)
        draft.available[asset_id] = sum(u.satoshi for u in draft.inputs if u.asset_id == asset_id) + sum(
            u.satoshi for u in candidates
        )
        if draft.is_manual or send_all:
            for utxo in candidates:
                self._add_input(draft, utxo)
            candidates = []
        total = sum(u.satoshi for u in draft.inputs if u.asset_id == asset_id)

        if self.network.is_liquid and is_policy:
            tx.add_output(TxOut(script=b"", asset_id=asset_id, is_fee=True))

        num_utxos = sum(1 for u in draft.inputs if u.asset_id == asset_id) + len(candidates)
        max_loop_count = max(MIN_FEE_LOOP_ITERATIONS, 2 * num_utxos + 1)
        change_index: int | None = None
        fee = 0

        for loop_count in count():
            if loop_count >= max_loop_count:
                logger.error(f"Fee loop for {asset_id} did not converge: {result.model_dump_json()}")
                raise TxInvariantError(f"Fee calculation for {asset_id} did not converge")

            if is_policy:
                fee = get_tx_fee(tx, result.fee_rate or 0, draft.min_fee_rate) + result.network_fee
            logger.debug(
                f"{asset_id} iteration {loop_count}: total {total}, required {required}, "
                f"fee {fee}, {len(tx.inputs)} inputs"
            )

            if send_all:
                ensure(len(addressee_indexes) == 1, "Send all requires a single output")
                output = tx.outputs[addressee_indexes[0]]
                amount = total - fee
                if amount < dust_threshold:
                    # Only dust would be left after the fee
                    result.set_error(TxErrorCode.INSUFFICIENT_FUNDS, f"{asset_id}: have {total}, fee {fee}")
                    break
                if output.satoshi == amount:
                    break
                output.satoshi = amount
                result.addressees[output.addressee_index].satoshi = amount
                continue

            needed = required + fee
            if change_index is not None:
                change = total - needed
                if change >= dust_threshold:
                    if tx.outputs[change_index].satoshi == change:
                        break
                    tx.outputs[change_index].satoshi = change
                    continue
                # The change output's own cost made the change dust
                added = self._add_next_candidate(draft, candidates)
                if not added:
                    result.set_error(
                        TxErrorCode.INSUFFICIENT_FUNDS, f"{asset_id}: change of {change} would be dust"
                    )
                    break
                total += added
                continue

            if total < needed:
                added = self._add_next_candidate(draft, candidates)
                if not added:
                    result.set_error(
                        TxErrorCode.INSUFFICIENT_FUNDS, f"{asset_id}: have {total}, need {needed}"
                    )
                    break
                total += added
                continue

            change = total - needed
            if change == 0:
                break
            if change < dust_threshold:
                # Too small to be worth an output; it goes to the fee
                fee = total - required
                break
            change_index = self._add_change_output(draft, asset_id, change)

        if is_policy:
            draft.fee = fee
            for output in tx.outputs:
                if output.is_fee:
                    output.satoshi = fee

    def _randomize_inputs(self, draft: _Draft) -> None:
        """Shuffle new inputs; replaced inputs keep their leading positions."""
        if draft.is_manual or not draft.result.randomize_inputs:
            return
        start = draft.num_old_inputs
        pairs = list(zip(draft.tx.inputs[start:], draft.inputs[start:]))
        self.rng.shuffle(pairs)
        draft.tx.inputs[start:] = [txin for txin, _ in pairs]
        draft.inputs[start:] = [utxo for _, utxo in pairs]

    def _place_change_outputs(self, draft: _Draft) -> None:
        """Move Bitcoin change to a random position; Liquid change keeps the fee's old slot."""
        if self.network.is_liquid:
            return
        outputs = draft.tx.outputs
        for index, output in enumerate(outputs):
            if output.is_change:
                outputs.pop(index)
                outputs.insert(self.rng.randrange(len(outputs) + 1), output)
                break

    def _place_indexed_addressees(self, draft: _Draft) -> None:
        """Move addressees that requested an output index to that position."""
        addressees = draft.result.addressees
        outputs = draft.tx.outputs
        indexed = [
            out
            for out in outputs
            if out.addressee_index is not None and addressees[out.addressee_index].index is not None
        ]
        indexed.sort(key=lambda out: addressees[out.addressee_index].index)

        last_position = len(outputs) - 1
        if outputs and outputs[-1].is_fee:
            last_position -= 1
        for output in indexed:
            outputs.remove(output)
            outputs.insert(min(addressees[output.addressee_index].index, last_position), output)

    def _check_replacement_fee(self, draft: _Draft) -> None:
        """A replacement must pay for its own relay on top of the old fee, at a higher rate."""
        result = draft.result
        vsize = draft.tx.vsize
        old_fee = result.old_fee or 0
        min_fee = old_fee + fee_for_vsize(vsize, draft.min_fee_rate, 0)
        new_rate = calculated_fee_rate(draft.fee, vsize)
        if draft.fee < min_fee or new_rate <= (result.old_fee_rate or 0):
            result.set_error(
                TxErrorCode.INVALID_REPLACEMENT_FEE_RATE,
                f"fee {draft.fee} (min {min_fee}), rate {new_rate} (old {result.old_fee_rate})",
            )

    def _update_tx_info(self, draft: _Draft) -> None:
        """Copy the draft's transaction, sizes and per-output details onto the result."""
        result = draft.result
        tx = draft.tx

        if draft.inputs_selected:
            result.used_utxos = draft.inputs[draft.num_old_inputs :]
        # Sizes include placeholder signatures and blinding, as the final transaction will
        refresh_dummy_blinding(tx)
        result.transaction_version = tx.version
        result.transaction_size = tx.size
        result.transaction_vsize = tx.vsize
        result.transaction_weight = tx.weight
        result.fee = draft.fee
        result.calculated_fee_rate = calculated_fee_rate(draft.fee, tx.vsize)
        clear_dummy_blinding(tx)
        result.transaction = tx.to_hex()

        addressees = result.addressees
        transaction_outputs = []
        change_index: dict[str, int] = {}
        change_amount: dict[str, int] = {}
        satoshi: dict[str, int] = {}
        for index, out in enumerate(tx.outputs):
            asset_id = out.asset_id or BTC_ASSET
            details = TransactionOutput(
                address=out.address,
                scriptpubkey=out.script.hex(),
                satoshi=out.satoshi,
                asset_id=asset_id,
                is_change=out.is_change,
                is_fee=out.is_fee,
                blinding_key=out.blinding_key.hex(),
                is_preblinded=out.is_preblinded,
            )
            if out.is_preblinded:
                details.assetblinder = addressees[out.addressee_index].assetblinder
                details.amountblinder = addressees[out.addressee_index].amountblinder
            transaction_outputs.append(details)

            if out.is_change:
                change_index[asset_id] = index
                change_amount[asset_id] = out.satoshi
            elif not out.is_fee:
                satoshi[asset_id] = satoshi.get(asset_id, 0) + out.satoshi

        for asset_id in draft.available:
            change_index.setdefault(asset_id, NO_CHANGE_INDEX)
            change_amount.setdefault(asset_id, 0)
            satoshi.setdefault(asset_id, 0)

        ordered = [addressees[out.addressee_index] for out in tx.outputs if out.addressee_index is not None]
        if len(ordered) == len(addressees):
            result.addressees = ordered
        result.transaction_outputs = transaction_outputs
        result.change_index = change_index
        result.change_amount = change_amount
        result.satoshi = satoshi
        result.available_total = draft.available.get(self.network.policy_asset, 0)
