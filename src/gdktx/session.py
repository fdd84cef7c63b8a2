"""
Wallet session interface consumed by the transaction core.

The core never manages keys, addresses or chain state itself; it asks the
session. ``MemorySession`` is a complete in-memory implementation backed by
a software signer, used by the CLI and the tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from loguru import logger

from gdktx.address import scriptpubkey_to_address
from gdktx.bip32 import HARDENED, HDKey
from gdktx.config import BuilderSettings
from gdktx.crypto import ec_public_key
from gdktx.models import AddressType, NetworkParams, ReceiveAddress, Utxo
from gdktx.script import (
    csv_script,
    multisig_script,
    p2pkh_script,
    scriptpubkey_for_utxo,
)
from gdktx.signer import Signer
from gdktx.transaction import Transaction


class WalletSession(ABC):
    """
    Abstract session interface.
    Provides derivation lookups, the signer and chain-state queries.
    """

    network: NetworkParams
    signer: Signer

    @abstractmethod
    def get_subaccount_type(self, subaccount: int) -> AddressType:
        """Address type of a subaccount"""

    @abstractmethod
    def get_subaccount_full_path(self, subaccount: int, pointer: int, is_internal: bool) -> list[int]:
        """User key derivation path for an address"""

    @abstractmethod
    def pubkeys_from_utxo(self, utxo: Utxo) -> list[bytes]:
        """[user] for single-key types, [service, user] for 2-of-2 types"""

    @abstractmethod
    def output_script_from_utxo(self, utxo: Utxo) -> bytes:
        """Script code signed over: the redeem/witness script, or p2pkh for single keys"""

    @abstractmethod
    def get_receive_address(self, subaccount: int, is_internal: bool = False) -> ReceiveAddress:
        """Fresh address of a subaccount"""

    @abstractmethod
    def get_default_fee_rate(self) -> int:
        """Default fee rate in sat/kvB"""

    @abstractmethod
    def get_min_fee_rate(self) -> int:
        """Minimum relay fee rate in sat/kvB"""

    @abstractmethod
    def get_dust_threshold(self, asset_id: str) -> int:
        """Smallest change output worth creating for ``asset_id``"""

    @abstractmethod
    def get_block_height(self) -> int:
        """Current chain tip height"""

    @abstractmethod
    def get_raw_transaction(self, txhash: str) -> Transaction:
        """A wallet transaction as broadcast"""

    @abstractmethod
    def get_unspent_outputs_for_private_key(self, private_key: bytes, compressed: bool) -> list[Utxo]:
        """Outputs spendable by a foreign private key, for sweeping"""

    @abstractmethod
    def is_rbf_enabled(self) -> bool:
        """Whether new transactions signal opt-in replaceability"""

    @abstractmethod
    def get_csv_blocks(self) -> int:
        """Relative timelock of new csv outputs"""

    def add_utxo_paths(self, utxo: Utxo) -> Utxo:
        """Annotate ``utxo`` with its derivation path, public key and prevout script."""
        if not utxo.is_external:
            if utxo.address_type == AddressType.CSV and not utxo.subtype:
                utxo.subtype = self.get_csv_blocks()
            utxo.user_path = self.get_subaccount_full_path(utxo.subaccount, utxo.pointer, utxo.is_internal)
        pubkeys = self.pubkeys_from_utxo(utxo)
        utxo.public_key = pubkeys[-1].hex()
        utxo.prevout_script = self.output_script_from_utxo(utxo).hex()
        return utxo

    def scriptpubkey_from_utxo(self, utxo: Utxo) -> bytes:
        pubkeys = self.pubkeys_from_utxo(utxo)
        return scriptpubkey_for_utxo(utxo.address_type, self.output_script_from_utxo(utxo), pubkeys[-1])


class MemorySession(WalletSession):
    """
    In-memory session.

    Single-sig networks derive BIP44/49/84 style paths. Multisig networks
    pair each user key with a service key for 2-of-2 p2sh, p2wsh and csv
    scripts.
    """

    def __init__(
        self,
        network: NetworkParams,
        signer: Signer,
        subaccounts: dict[int, AddressType],
        settings: BuilderSettings | None = None,
        service_seed: bytes | None = None,
        block_height: int = 0,
    ):
        self.network = network
        self.signer = signer
        self.settings = settings or BuilderSettings()
        self.subaccounts = dict(subaccounts)
        self.block_height = block_height
        self._service = HDKey.from_seed(service_seed) if service_seed else None
        self._transactions: dict[str, Transaction] = {}
        self._sweep_utxos: dict[bytes, list[Utxo]] = {}
        self._next_pointer: dict[tuple[int, bool], int] = {}

        for subaccount, address_type in self.subaccounts.items():
            if address_type.is_multisig and network.is_singlesig:
                raise ValueError(f"Subaccount {subaccount}: {address_type.value} needs a multisig network")
            if not address_type.is_multisig and not network.is_singlesig:
                raise ValueError(f"Subaccount {subaccount}: {address_type.value} needs a single-sig network")
            if address_type.is_multisig and self._service is None:
                raise ValueError("Multisig subaccounts require a service seed")

    def get_subaccount_type(self, subaccount: int) -> AddressType:
        try:
            return self.subaccounts[subaccount]
        except KeyError:
            raise ValueError(f"Unknown subaccount {subaccount}") from None

    def _coin_type(self) -> int:
        if self.network.is_liquid:
            return 1776 if self.network.mainnet else 1
        return 0 if self.network.mainnet else 1

    def get_subaccount_full_path(self, subaccount: int, pointer: int, is_internal: bool) -> list[int]:
        address_type = self.get_subaccount_type(subaccount)
        if address_type.is_multisig:
            # Service-style paths: internal and external chains share the pointer space
            return [HARDENED + 3, HARDENED + subaccount, 1, pointer]
        purpose = {
            AddressType.P2PKH: 44,
            AddressType.P2SH_P2WPKH: 49,
            AddressType.P2WPKH: 84,
        }[address_type]
        return [
            HARDENED + purpose,
            HARDENED + self._coin_type(),
            HARDENED + subaccount,
            1 if is_internal else 0,
            pointer,
        ]

    def service_key(self, subaccount: int, pointer: int) -> HDKey:
        if self._service is None:
            raise ValueError("No service key configured")
        return self._service.derive([subaccount, pointer])

    def pubkeys_from_utxo(self, utxo: Utxo) -> list[bytes]:
        if utxo.is_external:
            if utxo.public_key:
                return [bytes.fromhex(utxo.public_key)]
            return [ec_public_key(bytes.fromhex(utxo.private_key))]
        path = self.get_subaccount_full_path(utxo.subaccount, utxo.pointer, utxo.is_internal)
        user_key = self.signer.get_public_key(path)
        if not utxo.address_type.is_multisig:
            return [user_key]
        service_key = self.service_key(utxo.subaccount, utxo.pointer).get_public_key_bytes()
        return [service_key, user_key]

    def output_script_from_utxo(self, utxo: Utxo) -> bytes:
        if utxo.is_external:
            return p2pkh_script(bytes.fromhex(utxo.public_key))
        pubkeys = self.pubkeys_from_utxo(utxo)
        if utxo.address_type == AddressType.CSV:
            csv_blocks = utxo.subtype or self.settings.csv_blocks
            return csv_script(pubkeys[0], pubkeys[1], csv_blocks, self.network.is_liquid)
        if utxo.address_type.is_multisig:
            return multisig_script(pubkeys)
        return p2pkh_script(pubkeys[0])

    def get_receive_address(self, subaccount: int, is_internal: bool = False) -> ReceiveAddress:
        address_type = self.get_subaccount_type(subaccount)
        # Multisig chains share one pointer space
        counter = (subaccount, is_internal and not address_type.is_multisig)
        pointer = self._next_pointer.get(counter, 0)
        self._next_pointer[counter] = pointer + 1

        utxo = Utxo(
            txhash="00" * 32,
            pt_idx=0,
            satoshi=0,
            address_type=address_type,
            subaccount=subaccount,
            pointer=pointer,
            is_internal=is_internal,
            subtype=self.settings.csv_blocks if address_type == AddressType.CSV else 0,
        )
        scriptpubkey = self.scriptpubkey_from_utxo(utxo)
        blinding_key = ""
        if self.network.is_liquid:
            blinding_key = self.signer.get_blinding_public_key(scriptpubkey).hex()

        logger.debug(f"New {'internal' if is_internal else 'external'} address {subaccount}/{pointer}")
        return ReceiveAddress(
            address=scriptpubkey_to_address(scriptpubkey, self.network),
            scriptpubkey=scriptpubkey.hex(),
            subaccount=subaccount,
            pointer=pointer,
            is_internal=is_internal,
            address_type=address_type,
            blinding_key=blinding_key,
        )

    def get_default_fee_rate(self) -> int:
        return self.settings.default_fee_rate

    def get_min_fee_rate(self) -> int:
        return self.settings.min_fee_rate

    def get_dust_threshold(self, asset_id: str) -> int:
        if self.network.is_liquid and asset_id != self.network.policy_asset:
            # Non-policy change never pays fees, any amount is worth keeping
            return 1
        return self.settings.dust_threshold

    def get_block_height(self) -> int:
        return self.block_height

    def add_transaction(self, tx: Transaction) -> str:
        txid = tx.txid
        self._transactions[txid] = tx
        return txid

    def get_raw_transaction(self, txhash: str) -> Transaction:
        try:
            tx = self._transactions[txhash]
        except KeyError:
            raise ValueError(f"Transaction {txhash} not found") from None
        return Transaction.from_hex(tx.to_hex(), tx.is_elements)

    def add_sweep_utxos(self, private_key: bytes, utxos: list[Utxo]) -> None:
        self._sweep_utxos.setdefault(private_key, []).extend(utxos)

    def get_unspent_outputs_for_private_key(self, private_key: bytes, compressed: bool) -> list[Utxo]:
        public_key = ec_public_key(private_key, compressed)
        return [
            utxo.model_copy(
                update={
                    "address_type": AddressType.P2PKH,
                    "private_key": private_key.hex(),
                    "public_key": public_key.hex(),
                    "prevout_script": p2pkh_script(public_key).hex(),
                }
            )
            for utxo in self._sweep_utxos.get(private_key, [])
        ]

    def is_rbf_enabled(self) -> bool:
        return self.settings.rbf_enabled

    def get_csv_blocks(self) -> int:
        return self.settings.csv_blocks
