"""
Tests for script construction and parsing.
"""

from __future__ import annotations

import random

import pytest

from gdktx.errors import TxInvariantError
from gdktx.models import AddressType
from gdktx.script import (
    OP_CHECKMULTISIG,
    csv_script,
    dummy_signature,
    get_csv_blocks_from_csv_redeem_script,
    get_dummy_script_sig_and_witness,
    get_script_pushes,
    multisig_script,
    parse_script,
    push_data,
    push_int,
    script_num_decode,
    script_num_encode,
    set_anti_snipe_locktime,
)

SERVICE_KEY = bytes.fromhex("02" + "aa" * 32)
USER_KEY = bytes.fromhex("03" + "bb" * 32)


class TestPushData:
    @pytest.mark.parametrize(
        "length,prefix",
        [
            (0, b"\x00"),
            (1, b"\x01"),
            (75, b"\x4b"),
            (76, b"\x4c\x4c"),
            (255, b"\x4c\xff"),
            (256, b"\x4d\x00\x01"),
        ],
    )
    def test_minimal_prefix(self, length: int, prefix: bytes) -> None:
        data = bytes(length)
        assert push_data(data) == prefix + data

    def test_parse_round_trip(self) -> None:
        items = [b"", b"\x01", bytes(80), bytes(300)]
        script = b"".join(push_data(item) for item in items)
        assert parse_script(script) == items
        assert get_script_pushes(script) == items

    def test_truncated_push(self) -> None:
        with pytest.raises(TxInvariantError):
            parse_script(b"\x05\x01\x02")

    def test_non_push_script(self) -> None:
        with pytest.raises(TxInvariantError):
            get_script_pushes(push_data(b"\x01") + bytes([OP_CHECKMULTISIG]))


class TestScriptNum:
    @pytest.mark.parametrize(
        "value,encoded",
        [
            (0, b""),
            (1, b"\x01"),
            (-1, b"\x81"),
            (127, b"\x7f"),
            (128, b"\x80\x00"),
            (-128, b"\x80\x80"),
            (25920, b"\x40\x65"),
            (65535, b"\xff\xff\x00"),
        ],
    )
    def test_encoding(self, value: int, encoded: bytes) -> None:
        assert script_num_encode(value) == encoded
        assert script_num_decode(encoded) == value

    def test_small_ints_use_opcodes(self) -> None:
        assert push_int(0) == b"\x00"
        assert push_int(1) == b"\x51"
        assert push_int(16) == b"\x60"
        assert push_int(17) == b"\x01\x11"


class TestMultisigScripts:
    def test_two_of_two(self) -> None:
        script = multisig_script([SERVICE_KEY, USER_KEY])
        assert script == b"\x52" + b"\x21" + SERVICE_KEY + b"\x21" + USER_KEY + b"\x52\xae"

    @pytest.mark.parametrize("is_liquid", [False, True])
    @pytest.mark.parametrize("blocks", [1, 16, 144, 25920, 65535])
    def test_csv_blocks_round_trip(self, blocks: int, is_liquid: bool) -> None:
        script = csv_script(SERVICE_KEY, USER_KEY, blocks, is_liquid)
        assert get_csv_blocks_from_csv_redeem_script(script) == blocks

    def test_csv_forms_differ(self) -> None:
        assert csv_script(SERVICE_KEY, USER_KEY, 144, False) != csv_script(SERVICE_KEY, USER_KEY, 144, True)

    def test_not_csv(self) -> None:
        with pytest.raises(TxInvariantError):
            get_csv_blocks_from_csv_redeem_script(multisig_script([SERVICE_KEY, USER_KEY]))


class TestDummySignatures:
    def test_sizes(self) -> None:
        assert len(dummy_signature(False)) == 73
        assert len(dummy_signature(True)) == 72

    def test_p2wpkh_placeholder(self) -> None:
        script_sig, witness = get_dummy_script_sig_and_witness(AddressType.P2WPKH, b"", USER_KEY, False)
        assert script_sig == b""
        assert [len(item) for item in witness] == [73, 33]

    def test_multisig_service_signature_is_low_r(self) -> None:
        script = multisig_script([SERVICE_KEY, USER_KEY])
        _, witness = get_dummy_script_sig_and_witness(AddressType.P2WSH, script, USER_KEY, False)
        assert [len(item) for item in witness] == [0, 72, 73, len(script)]

    def test_p2sh_placeholder(self) -> None:
        script = multisig_script([SERVICE_KEY, USER_KEY])
        script_sig, witness = get_dummy_script_sig_and_witness(AddressType.P2SH, script, USER_KEY, True)
        assert witness == []
        assert [len(item) for item in get_script_pushes(script_sig)] == [0, 72, 72, len(script)]


class TestAntiSnipe:
    def test_mostly_current_height(self) -> None:
        rng = random.Random(0)
        locktimes = [set_anti_snipe_locktime(800_000, rng) for _ in range(1000)]
        assert all(800_000 - 100 < locktime <= 800_000 for locktime in locktimes)
        current = sum(1 for locktime in locktimes if locktime == 800_000)
        assert current > 800

    def test_never_negative(self) -> None:
        rng = random.Random(0)
        assert all(set_anti_snipe_locktime(5, rng) >= 0 for _ in range(200))
