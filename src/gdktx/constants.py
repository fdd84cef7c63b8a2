"""
Bitcoin and Liquid transaction-construction constants.

Fee rates throughout the package are expressed in satoshi per 1000 virtual
bytes (sat/kvB), matching the wallet session's fee estimates.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Default relay fee rate: 1 sat/vbyte
DEFAULT_MIN_FEE_RATE = 1000  # sat/kvB
DEFAULT_FEE_RATE = 1000  # sat/kvB

# Marker for "no change output" in change_index maps
NO_CHANGE_INDEX = 0xFFFFFFFF

# Input sequence numbers
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_NO_RBF = 0xFFFFFFFE  # Allows nLockTime, not replaceable
SEQUENCE_RBF = 0xFFFFFFFD  # BIP125 opt-in replaceable

TX_VERSION_2 = 2

# Signature hash types
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80
SIGHASH_SINGLE_ANYONECANPAY = SIGHASH_SINGLE | SIGHASH_ANYONECANPAY

# DER signature sizes including the trailing sighash byte
DER_SIG_MAX_LEN = 73
DER_SIG_MAX_LOW_R_LEN = 72

# Asset id used for Bitcoin UTXO maps
BTC_ASSET = "btc"

# Confidential transaction sizes
BLINDING_FACTOR_LEN = 32
ASSET_COMMITMENT_LEN = 33
VALUE_COMMITMENT_LEN = 33
NONCE_COMMITMENT_LEN = 33

# Rangeproof parameters used by the wallet (exp=0, 52 bit mantissa)
RANGEPROOF_MIN_VALUE = 1
RANGEPROOF_EXP = 0
RANGEPROOF_MIN_BITS = 52
# Size of a rangeproof generated with the parameters above
DUMMY_RANGEPROOF_LEN = 4174

# Surjection proofs use at most this many inputs
SURJECTIONPROOF_MAX_USED_INPUTS = 3

ZERO_BLINDER_HEX = "00" * BLINDING_FACTOR_LEN

# Anti fee sniping: with probability 1/ANTI_SNIPE_OLDER_ODDS move the locktime
# back by up to ANTI_SNIPE_MAX_DELTA blocks
ANTI_SNIPE_OLDER_ODDS = 10
ANTI_SNIPE_MAX_DELTA = 100

# Lower bound on fee/change convergence iterations
MIN_FEE_LOOP_ITERATIONS = 8


def surjectionproof_size(num_inputs: int) -> int:
    """Serialized size of a surjection proof over ``num_inputs`` inputs."""
    num_used = min(num_inputs, SURJECTIONPROOF_MAX_USED_INPUTS)
    return 2 + (num_inputs + 7) // 8 + 32 * (1 + num_used)
