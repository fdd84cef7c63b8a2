"""
Error taxonomy for transaction construction.

Recoverable problems with the caller's request are reported as a
``TxErrorCode`` on the build result so the caller can adjust and retry.
Violated invariants raise ``TxInvariantError`` and abort the build.
"""

from __future__ import annotations

from enum import Enum


class TxErrorCode(str, Enum):
    NO_RECIPIENTS = "id_no_recipients"
    INSUFFICIENT_FUNDS = "id_insufficient_funds"
    FEE_RATE_BELOW_MINIMUM = "id_fee_rate_is_below_minimum"
    NO_AMOUNT_SPECIFIED = "id_no_amount_specified"
    SEND_ALL_REQUIRES_SINGLE_OUTPUT = "id_send_all_requires_a_single_output"
    NO_UTXOS_FOUND = "id_no_utxos_found"
    INVALID_PRIVATE_KEY = "id_invalid_private_key"
    INVALID_REPLACEMENT_FEE_RATE = "id_invalid_replacement_fee_rate"
    INVALID_ADDRESS = "id_invalid_address"
    INVALID_ASSET_ID = "id_invalid_asset_id"
    ASSETS_ON_BITCOIN = "id_assets_cannot_be_used_on_bitcoin"
    NONCONFIDENTIAL_ADDRESS = "id_nonconfidential_addresses_not_supported"
    MISSING_RECIPIENT_FOR_ASSET = "id_missing_recipient_for_asset"
    SWEEP_NOT_SUPPORTED_FOR_LIQUID = "id_sweep_not_supported_for_liquid"
    CANNOT_DETERMINE_CHANGE_SUBACCOUNT = "id_cannot_determine_change_subaccount"


class TxError(Exception):
    """Base class for transaction construction errors."""


class TxInvariantError(TxError):
    """A precondition or internal invariant was violated; the build is aborted."""


class UserError(TxError):
    """An operation was attempted on a result that carries a user-facing error."""


class SigningError(TxError):
    pass


class BlindingError(TxError):
    pass


class TransactionParseError(TxError):
    pass


def ensure(condition: bool, message: str) -> None:
    """Raise ``TxInvariantError`` with ``message`` unless ``condition`` holds."""
    if not condition:
        raise TxInvariantError(message)
