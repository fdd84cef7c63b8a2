"""
gdktx CLI - build, sign, blind and inspect wallet transactions.

Wallets are described by a JSON file, for example::

    {
        "network": "testnet",
        "singlesig": true,
        "seed": "000102030405060708090a0b0c0d0e0f",
        "subaccounts": {"0": "p2wpkh"},
        "block_height": 800000,
        "transactions": ["0200000001..."]
    }

Multisig wallets set ``"singlesig": false`` and a ``"service_seed"``.
"""

from __future__ import annotations

import json
import random
import sys
from pathlib import Path

import typer
from loguru import logger
from pydantic import ValidationError

from gdktx.blinding import blind_transaction, unblind_output
from gdktx.builder import TxBuilder
from gdktx.config import BuilderSettings, get_settings
from gdktx.errors import TxError
from gdktx.models import AddressType, BuildResult, TxRequest, get_network
from gdktx.session import MemorySession
from gdktx.signer import SoftwareSigner
from gdktx.signing import sign_transaction
from gdktx.transaction import Transaction

app = typer.Typer(
    name="gdktx",
    help="Bitcoin and Liquid transaction construction",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _read_json(path: Path) -> dict:
    if not path.exists():
        logger.error(f"File not found: {path}")
        raise typer.Exit(1)
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in {path}: {e}")
        raise typer.Exit(1)


def load_session(wallet_file: Path, settings: BuilderSettings) -> MemorySession:
    """Create an in-memory session from a wallet description file."""
    wallet = _read_json(wallet_file)
    try:
        network = get_network(wallet.get("network", settings.network), wallet.get("singlesig", True))
        subaccounts = {
            int(subaccount): AddressType(address_type)
            for subaccount, address_type in wallet.get("subaccounts", {"0": "p2wpkh"}).items()
        }
        service_seed = wallet.get("service_seed")
        session = MemorySession(
            network,
            SoftwareSigner(bytes.fromhex(wallet["seed"])),
            subaccounts,
            settings=settings,
            service_seed=bytes.fromhex(service_seed) if service_seed else None,
            block_height=wallet.get("block_height", 0),
        )
        for tx_hex in wallet.get("transactions", []):
            session.add_transaction(Transaction.from_hex(tx_hex, network.is_liquid))
    except (KeyError, ValueError, TxError) as e:
        logger.error(f"Invalid wallet file {wallet_file}: {e}")
        raise typer.Exit(1)
    return session


def _load_result(result_file: Path) -> BuildResult:
    try:
        return BuildResult.model_validate(_read_json(result_file))
    except ValidationError as e:
        logger.error(f"Invalid build result {result_file}: {e}")
        raise typer.Exit(1)


def _write_output(data: str, output_file: Path | None) -> None:
    if output_file:
        output_file.write_text(data + "\n")
        logger.info(f"Written to {output_file}")
    else:
        typer.echo(data)


@app.command()
def create(
    request_file: Path = typer.Argument(..., help="Transaction request JSON"),
    wallet_file: Path = typer.Option(..., "--wallet", "-w", help="Wallet description JSON"),
    output_file: Path | None = typer.Option(None, "--output", "-o", help="Write the result here"),
    seed: int | None = typer.Option(None, "--seed", help="Seed the RNG for reproducible builds"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Build an unsigned transaction from a request."""
    setup_logging(log_level)
    settings = get_settings()
    session = load_session(wallet_file, settings)

    try:
        request = TxRequest.model_validate(_read_json(request_file))
    except ValidationError as e:
        logger.error(f"Invalid request {request_file}: {e}")
        raise typer.Exit(1)
    request.randomize_inputs = request.randomize_inputs and settings.randomize_inputs

    rng = random.Random(seed) if seed is not None else None
    try:
        result = TxBuilder(session, rng=rng).create_transaction(request)
    except TxError as e:
        logger.error(f"Failed to build transaction: {e}")
        raise typer.Exit(1)

    _write_output(result.model_dump_json(indent=2), output_file)
    if result.has_error:
        logger.warning(f"Build reported {result.error.value}: {result.error_detail}")
        raise typer.Exit(2)


@app.command()
def sign(
    result_file: Path = typer.Argument(..., help="Build result JSON"),
    wallet_file: Path = typer.Option(..., "--wallet", "-w", help="Wallet description JSON"),
    output_file: Path | None = typer.Option(None, "--output", "-o"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Sign every input of a built transaction."""
    setup_logging(log_level)
    session = load_session(wallet_file, get_settings())
    result = _load_result(result_file)

    try:
        signed = sign_transaction(session, result)
    except TxError as e:
        logger.error(f"Failed to sign transaction: {e}")
        raise typer.Exit(1)
    _write_output(signed.model_dump_json(indent=2), output_file)


@app.command()
def blind(
    result_file: Path = typer.Argument(..., help="Build result JSON"),
    wallet_file: Path = typer.Option(..., "--wallet", "-w", help="Wallet description JSON"),
    output_file: Path | None = typer.Option(None, "--output", "-o"),
    seed: int | None = typer.Option(None, "--seed", help="Seed the RNG for reproducible proofs"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Blind the wallet outputs of a built Liquid transaction."""
    setup_logging(log_level)
    session = load_session(wallet_file, get_settings())
    result = _load_result(result_file)

    rng = random.Random(seed) if seed is not None else None
    try:
        blinded = blind_transaction(session, result, rng=rng)
    except TxError as e:
        logger.error(f"Failed to blind transaction: {e}")
        raise typer.Exit(1)
    _write_output(blinded.model_dump_json(indent=2), output_file)


@app.command()
def unblind(
    tx_hex: str = typer.Argument(..., help="Raw Liquid transaction hex"),
    index: int = typer.Argument(..., help="Output index"),
    wallet_file: Path = typer.Option(..., "--wallet", "-w", help="Wallet description JSON"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Unblind one output of a Liquid transaction with the wallet's blinding key."""
    setup_logging(log_level)
    session = load_session(wallet_file, get_settings())

    try:
        tx = Transaction.from_hex(tx_hex, is_elements=True)
        unblinded = unblind_output(session, tx, index)
    except TxError as e:
        logger.error(f"Failed to unblind output {index}: {e}")
        raise typer.Exit(1)
    typer.echo(unblinded.model_dump_json(indent=2))
    if unblinded.error:
        raise typer.Exit(2)


@app.command()
def decode(
    tx_hex: str = typer.Argument(..., help="Raw transaction hex"),
    liquid: bool = typer.Option(False, "--liquid", help="Decode as an Elements transaction"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Print the inputs and outputs of a raw transaction."""
    setup_logging(log_level)
    try:
        tx = Transaction.from_hex(tx_hex, is_elements=liquid)
    except TxError as e:
        logger.error(f"Failed to decode transaction: {e}")
        raise typer.Exit(1)

    decoded = {
        "txid": tx.txid,
        "version": tx.version,
        "locktime": tx.locktime,
        "size": tx.size,
        "vsize": tx.vsize,
        "weight": tx.weight,
        "inputs": [
            {
                "txhash": txin.txhash,
                "pt_idx": txin.pt_idx,
                "sequence": txin.sequence,
                "script_sig": txin.script_sig.hex(),
                "witness": [item.hex() for item in txin.witness],
            }
            for txin in tx.inputs
        ],
        "outputs": [
            {
                "scriptpubkey": txout.script.hex(),
                "satoshi": None if txout.is_confidential else txout.satoshi,
                "asset_id": txout.asset_id,
                "asset_commitment": txout.asset.hex(),
                "value_commitment": txout.value.hex(),
                "nonce_commitment": txout.nonce.hex(),
                "is_fee": liquid and not txout.script,
            }
            for txout in tx.outputs
        ],
    }
    typer.echo(json.dumps(decoded, indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
