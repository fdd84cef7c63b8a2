"""
Shared fixtures for gdktx tests.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from itertools import count

import pytest

from gdktx.address import scriptpubkey_to_address
from gdktx.config import BuilderSettings
from gdktx.crypto import ec_public_key, ec_sig_from_bytes
from gdktx.models import Addressee, AddressType, Utxo, get_network
from gdktx.script import get_script_sig_and_witness, p2wpkh_script
from gdktx.session import MemorySession
from gdktx.signer import SoftwareSigner
from gdktx.signing import get_signature_hash
from gdktx.transaction import Transaction

USER_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
SERVICE_SEED = bytes.fromhex("fffcf9f6f3f0edeae7e4e1dedbd8d5d2cfccc9c6c3c0bdbab7b4b1aeaba8a5a2")
BLOCK_HEIGHT = 800_000

# Keys of parties outside the wallet
RECIPIENT_KEY = bytes([0x11]) * 32
RECIPIENT_BLINDING_KEY = bytes([0x22]) * 32

# A non-policy Liquid asset
OTHER_ASSET = "ab" * 32


def make_settings(**kwargs) -> BuilderSettings:
    return BuilderSettings(_env_file=None, **kwargs)


@pytest.fixture
def settings() -> BuilderSettings:
    return make_settings()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(42)


@pytest.fixture
def singlesig_session(settings: BuilderSettings) -> MemorySession:
    """Testnet single-sig wallet: 0 is p2wpkh, 1 is p2sh-p2wpkh."""
    return MemorySession(
        get_network("testnet"),
        SoftwareSigner(USER_SEED),
        {0: AddressType.P2WPKH, 1: AddressType.P2SH_P2WPKH},
        settings=settings,
        block_height=BLOCK_HEIGHT,
    )


@pytest.fixture
def multisig_session(settings: BuilderSettings) -> MemorySession:
    """Testnet 2-of-2 wallet: 0 is p2sh, 1 is p2wsh, 2 is csv."""
    return MemorySession(
        get_network("testnet", singlesig=False),
        SoftwareSigner(USER_SEED),
        {0: AddressType.P2SH, 1: AddressType.P2WSH, 2: AddressType.CSV},
        settings=settings,
        service_seed=SERVICE_SEED,
        block_height=BLOCK_HEIGHT,
    )


@pytest.fixture
def liquid_session(settings: BuilderSettings) -> MemorySession:
    return MemorySession(
        get_network("elements-regtest"),
        SoftwareSigner(USER_SEED),
        {0: AddressType.P2WPKH},
        settings=settings,
        block_height=BLOCK_HEIGHT,
    )


@pytest.fixture
def make_utxo() -> Callable[..., Utxo]:
    """Factory for wallet UTXOs with distinct funding txids."""
    txids = count(1)

    def factory(
        session: MemorySession,
        satoshi: int,
        subaccount: int = 0,
        pointer: int | None = None,
        asset_id: str | None = None,
        **kwargs,
    ) -> Utxo:
        n = next(txids)
        return Utxo(
            txhash=f"{n:064x}",
            pt_idx=n % 3,
            satoshi=satoshi,
            asset_id=asset_id or session.network.policy_asset,
            address_type=session.get_subaccount_type(subaccount),
            subaccount=subaccount,
            pointer=n if pointer is None else pointer,
            **kwargs,
        )

    return factory


@pytest.fixture
def recipient() -> Callable[..., Addressee]:
    """Factory for payments to a p2wpkh address outside the wallet."""

    def factory(session: MemorySession, satoshi: int, **kwargs) -> Addressee:
        script = p2wpkh_script(ec_public_key(RECIPIENT_KEY))
        if session.network.is_liquid:
            kwargs.setdefault("blinding_key", ec_public_key(RECIPIENT_BLINDING_KEY).hex())
        return Addressee(
            address=scriptpubkey_to_address(script, session.network),
            satoshi=satoshi,
            **kwargs,
        )

    return factory


@pytest.fixture
def cosign() -> Callable[[MemorySession, Transaction, int, Utxo, bytes], None]:
    """Add the service signature to a user-signed 2-of-2 input."""

    def sign(session: MemorySession, tx: Transaction, index: int, utxo: Utxo, user_sig: bytes) -> None:
        message_hash = get_signature_hash(session.network, utxo, tx, index)
        service_key = session.service_key(utxo.subaccount, utxo.pointer)
        service_sig = ec_sig_from_bytes(service_key.get_private_key_bytes(), message_hash) + b"\x01"
        script_sig, witness = get_script_sig_and_witness(
            utxo.address_type,
            bytes.fromhex(utxo.prevout_script),
            bytes.fromhex(utxo.public_key),
            [service_sig, user_sig],
            session.network.is_liquid,
        )
        tx.inputs[index].script_sig = script_sig
        tx.inputs[index].witness = witness

    return sign
