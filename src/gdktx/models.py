"""
Data models for transaction construction using Pydantic for validation.

A build moves through three shapes: the caller's ``TxRequest``, the draft
``Transaction`` owned by the builder, and the ``BuildResult`` handed back.
A ``BuildResult`` is itself a valid request, so callers can correct an
error on it and feed it straight back into the builder.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from gdktx.constants import BTC_ASSET, TX_VERSION_2
from gdktx.errors import TxErrorCode

HEX64 = r"^[0-9a-fA-F]{64}$"


class AddressType(str, Enum):
    P2PKH = "p2pkh"  # Only used for sweeping
    P2WPKH = "p2wpkh"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2SH = "p2sh"  # Multisig
    P2WSH = "p2wsh"  # Multisig, actually p2sh-p2wsh
    CSV = "csv"  # Multisig with CSV recovery path, p2sh-p2wsh

    @property
    def is_segwit(self) -> bool:
        return self not in (AddressType.P2PKH, AddressType.P2SH)

    @property
    def is_multisig(self) -> bool:
        return self in (AddressType.P2SH, AddressType.P2WSH, AddressType.CSV)


class UtxoStrategy(str, Enum):
    DEFAULT = "default"  # Add UTXOs in order until the amounts and fee are covered
    MANUAL = "manual"  # Use all and only the UTXOs given by the caller


class NetworkParams(BaseModel):
    name: str
    is_liquid: bool = False
    is_singlesig: bool = True
    policy_asset: str = BTC_ASSET
    bech32_hrp: str
    p2pkh_version: int
    p2sh_version: int
    mainnet: bool = False

    model_config = ConfigDict(frozen=True)

    def asset_id_or_policy(self, asset_id: str | None) -> str:
        return asset_id or self.policy_asset


NETWORKS: dict[str, NetworkParams] = {
    "mainnet": NetworkParams(
        name="mainnet", bech32_hrp="bc", p2pkh_version=0x00, p2sh_version=0x05, mainnet=True
    ),
    "testnet": NetworkParams(
        name="testnet", bech32_hrp="tb", p2pkh_version=0x6F, p2sh_version=0xC4
    ),
    "regtest": NetworkParams(
        name="regtest", bech32_hrp="bcrt", p2pkh_version=0x6F, p2sh_version=0xC4
    ),
    "liquid": NetworkParams(
        name="liquid",
        is_liquid=True,
        policy_asset="6f0279e9ed041c3d710a9f57d0c02928416460c4b722ae3457a11eec381c526d",
        bech32_hrp="ex",
        p2pkh_version=57,
        p2sh_version=39,
        mainnet=True,
    ),
    "liquid-testnet": NetworkParams(
        name="liquid-testnet",
        is_liquid=True,
        policy_asset="144c654344aa716d6f3abcc1ca90e5641e4e2a7f633bc09fe3baf64585819a49",
        bech32_hrp="tex",
        p2pkh_version=36,
        p2sh_version=19,
    ),
    "elements-regtest": NetworkParams(
        name="elements-regtest",
        is_liquid=True,
        policy_asset="5ac9f65c0efcc4775e0baec4ec03abdde22473cd3cf33c0419ca290e0751b225",
        bech32_hrp="ert",
        p2pkh_version=235,
        p2sh_version=75,
    ),
}


def get_network(name: str, singlesig: bool = True) -> NetworkParams:
    """Look up network parameters by name."""
    try:
        params = NETWORKS[name]
    except KeyError:
        raise ValueError(f"Unknown network: {name}") from None
    if singlesig:
        return params
    return params.model_copy(update={"is_singlesig": False})


class Utxo(BaseModel):
    """A spendable output as reported by the wallet, annotated during building."""

    txhash: str = Field(..., pattern=HEX64)
    pt_idx: int = Field(..., ge=0)  # Output index within the funding transaction
    satoshi: int = Field(..., ge=0)
    asset_id: str = BTC_ASSET
    address_type: AddressType
    subaccount: int = 0
    pointer: int = 0
    is_internal: bool = False
    block_height: int = 0
    sequence: int | None = None

    # Derived by the builder
    prevout_script: str = ""
    user_path: list[int] | None = None
    subtype: int = 0  # CSV blocks for csv outputs

    # Sweep inputs carry their own key
    private_key: str = ""
    public_key: str = ""

    # Liquid unblinding data
    assetblinder: str | None = None
    amountblinder: str | None = None
    commitment: str = ""

    # Signing controls
    user_sighash: int | None = None
    skip_signing: bool = False
    script_sig: str | None = None
    witness: list[str] | None = None

    @property
    def outpoint(self) -> tuple[str, int]:
        return self.txhash, self.pt_idx

    @property
    def is_external(self) -> bool:
        return bool(self.private_key)


class Addressee(BaseModel):
    """A requested payment."""

    address: str = ""
    scriptpubkey: str = ""
    satoshi: int = Field(default=0, ge=0)
    asset_id: str | None = None
    index: int | None = Field(default=None, ge=0)

    # Liquid: public blinding key of the confidential destination
    blinding_key: str = ""

    # Pre-blinded outputs from another party
    is_blinded: bool = False
    asset_commitment: str = ""
    value_commitment: str = ""
    nonce_commitment: str = ""
    range_proof: str = ""
    surjection_proof: str = ""
    assetblinder: str | None = None
    amountblinder: str | None = None


class ReceiveAddress(BaseModel):
    address: str
    scriptpubkey: str
    subaccount: int = 0
    pointer: int = 0
    is_internal: bool = False
    address_type: AddressType = AddressType.P2WPKH
    blinding_key: str = ""


class TxIo(BaseModel):
    """An input or output of a previous wallet transaction."""

    address: str = ""
    satoshi: int = 0
    asset_id: str = BTC_ASSET
    is_relevant: bool = False
    is_internal: bool = False
    subaccount: int | None = None
    pointer: int = 0
    address_type: AddressType | None = None
    pt_idx: int = 0
    subtype: int = 0


class PreviousTransaction(BaseModel):
    """A wallet transaction as listed by the session, used for fee bumping."""

    txhash: str = Field(..., pattern=HEX64)
    can_rbf: bool = False
    can_cpfp: bool = False
    fee: int = Field(..., ge=0)
    fee_rate: int = Field(..., ge=0)
    memo: str = ""
    inputs: list[TxIo] = Field(default_factory=list)
    outputs: list[TxIo] = Field(default_factory=list)


class TransactionOutput(BaseModel):
    """Plaintext description of an output of the built transaction."""

    address: str = ""
    scriptpubkey: str = ""
    satoshi: int = 0
    asset_id: str = BTC_ASSET
    is_change: bool = False
    is_fee: bool = False
    blinding_key: str = ""
    assetblinder: str | None = None
    amountblinder: str | None = None
    eph_public_key: str = ""
    blinding_nonce: str | None = None
    is_preblinded: bool = False


class TxRequest(BaseModel):
    """Caller's request to create a transaction."""

    addressees: list[Addressee] = Field(default_factory=list)
    utxos: dict[str, list[Utxo]] = Field(default_factory=dict)
    used_utxos: list[Utxo] = Field(default_factory=list)
    utxo_strategy: UtxoStrategy = UtxoStrategy.DEFAULT
    fee_rate: int | None = Field(default=None, ge=0)
    send_all: bool = False
    subaccount: int = 0
    change_subaccount: int | None = None
    change_address: dict[str, ReceiveAddress] = Field(default_factory=dict)
    transaction_locktime: int | None = Field(default=None, ge=0)
    transaction_version: int = TX_VERSION_2
    is_partial: bool = False
    previous_transaction: PreviousTransaction | None = None
    private_key: str = ""
    randomize_inputs: bool = True
    memo: str = ""
    scalars: list[str] = Field(default_factory=list)
    blinding_nonces_required: bool = False

    @property
    def is_sweep(self) -> bool:
        return bool(self.private_key)


class BuildResult(TxRequest):
    """Accumulating record of a build. Remains usable when ``error`` is set."""

    error: TxErrorCode | None = None
    error_detail: str = ""

    fee: int = 0
    network_fee: int = 0
    available_total: int = 0
    satoshi: dict[str, int] = Field(default_factory=dict)
    change_index: dict[str, int] = Field(default_factory=dict)
    change_amount: dict[str, int] = Field(default_factory=dict)

    old_used_utxos: list[Utxo] | None = None
    old_fee: int | None = None
    old_fee_rate: int | None = None

    is_redeposit: bool = False
    is_sweep_tx: bool = False
    addressees_read_only: bool = False
    amount_read_only: bool = False

    transaction: str = ""
    transaction_outputs: list[TransactionOutput] = Field(default_factory=list)
    transaction_size: int = 0
    transaction_vsize: int = 0
    transaction_weight: int = 0
    calculated_fee_rate: int = 0

    is_blinded: bool = False
    blinding_nonces: list[str] = Field(default_factory=list)

    @classmethod
    def from_request(cls, request: TxRequest) -> BuildResult:
        # Only request fields carry over; results are recomputed on every build
        return cls.model_validate(request.model_dump(include=set(TxRequest.model_fields)))

    def set_error(self, code: TxErrorCode, detail: str = "", force: bool = False) -> None:
        """Record an error; only the first one is kept unless ``force`` is set."""
        if self.error is None or force:
            self.error = code
            self.error_detail = detail

    @property
    def has_error(self) -> bool:
        return self.error is not None


class BlindingFactors(BaseModel):
    assetblinders: list[str]
    amountblinders: list[str]


class UnblindedOutput(BaseModel):
    satoshi: int = 0
    asset_id: str = ""
    assetblinder: str = ""
    amountblinder: str = ""
    error: str = ""


class SignedTransaction(BaseModel):
    """Immutable hand-off value of a signed transaction."""

    transaction: str
    txid: str
    signatures: list[str]
    fee: int
    transaction_size: int
    transaction_vsize: int
    transaction_weight: int

    model_config = ConfigDict(frozen=True)
