"""
gdktx - Transaction construction core for Bitcoin and Liquid wallets

Provides coin selection, fee bumping, signing and confidential blinding.
"""

__version__ = "0.1.0"

from gdktx.blinding import blind_transaction, get_blinding_factors, unblind_output
from gdktx.builder import TxBuilder
from gdktx.config import BuilderSettings, get_settings
from gdktx.errors import (
    BlindingError,
    SigningError,
    TransactionParseError,
    TxError,
    TxErrorCode,
    TxInvariantError,
    UserError,
)
from gdktx.models import (
    Addressee,
    AddressType,
    BuildResult,
    NetworkParams,
    SignedTransaction,
    TxRequest,
    Utxo,
    UtxoStrategy,
    get_network,
)
from gdktx.session import MemorySession, WalletSession
from gdktx.signer import Signer, SoftwareSigner
from gdktx.signing import get_signing_inputs, sign_transaction
from gdktx.transaction import Transaction

__all__ = [
    "Addressee",
    "AddressType",
    "BlindingError",
    "BuildResult",
    "BuilderSettings",
    "MemorySession",
    "NetworkParams",
    "SignedTransaction",
    "Signer",
    "SigningError",
    "SoftwareSigner",
    "Transaction",
    "TransactionParseError",
    "TxBuilder",
    "TxError",
    "TxErrorCode",
    "TxInvariantError",
    "TxRequest",
    "UserError",
    "Utxo",
    "UtxoStrategy",
    "WalletSession",
    "blind_transaction",
    "get_blinding_factors",
    "get_network",
    "get_settings",
    "get_signing_inputs",
    "sign_transaction",
    "unblind_output",
]
