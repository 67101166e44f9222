from __future__ import annotations

import pytest
from eth_utils import keccak

from solvency import encoding
from solvency.errors import InputError

ROOT = "0x" + "ab" * 32
EMPTY_KECCAK = "0xc5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


def _word(n: int) -> bytes:
    return n.to_bytes(32, "big")


class TestLeafHash:
    def test_packed_address_then_uint256(self):
        address = "0x" + "11" * 20
        expected = keccak(bytes.fromhex("11" * 20) + _word(1000))
        assert encoding.leaf_hash(address, 1000) == expected

    def test_short_address_is_left_padded(self):
        assert encoding.leaf_hash("0x1", 5) == encoding.leaf_hash("0x" + "0" * 39 + "1", 5)

    def test_case_insensitive_address(self):
        assert encoding.leaf_hash("0x" + "AB" * 20, 7) == encoding.leaf_hash("0x" + "ab" * 20, 7)

    def test_balance_changes_leaf(self):
        address = "0x" + "22" * 20
        assert encoding.leaf_hash(address, 1) != encoding.leaf_hash(address, 2)

    def test_rejects_negative_balance(self):
        with pytest.raises(InputError):
            encoding.leaf_hash("0x" + "22" * 20, -1)

    def test_rejects_long_address(self):
        with pytest.raises(InputError):
            encoding.leaf_hash("0x" + "22" * 21, 1)


class TestHashPair:
    def test_order_independent(self):
        a, b = b"\x01" * 32, b"\x02" * 32
        assert encoding.hash_pair(a, b) == encoding.hash_pair(b, a)

    def test_smaller_child_first(self):
        a, b = b"\x01" * 32, b"\x02" * 32
        assert encoding.hash_pair(b, a) == keccak(a + b)


class TestCommitments:
    def test_reserves_commitment_layout(self):
        expected = keccak(_word(500) + bytes.fromhex(ROOT[2:]) + _word(1700000000))
        assert encoding.reserves_commitment(500, ROOT, 1700000000) == "0x" + expected.hex()

    def test_liabilities_commitment_layout(self):
        expected = keccak(_word(300) + bytes.fromhex(ROOT[2:]) + _word(42))
        assert encoding.liabilities_commitment(300, ROOT, 42) == "0x" + expected.hex()

    def test_witness_hash_encodes_bool_as_word(self):
        body = _word(10) + _word(5) + bytes.fromhex(ROOT[2:]) + _word(99)
        assert encoding.witness_hash(10, 5, ROOT, 99, True) == "0x" + keccak(body + _word(1)).hex()
        assert encoding.witness_hash(10, 5, ROOT, 99, False) == "0x" + keccak(body + _word(0)).hex()

    def test_solvency_assertion_layout(self):
        r = "0x" + "01" * 32
        liab = "0x" + "02" * 32
        expected = keccak(bytes.fromhex(r[2:]) + bytes.fromhex(liab[2:]) + _word(1))
        assert encoding.solvency_assertion(r, liab, True) == "0x" + expected.hex()

    def test_master_commitment_layout(self):
        w = "0x" + "03" * 32
        a = "0x" + "04" * 32
        expected = keccak(bytes.fromhex(w[2:]) + bytes.fromhex(a[2:]) + bytes.fromhex(ROOT[2:]))
        assert encoding.master_commitment(w, a, ROOT) == "0x" + expected.hex()

    def test_commitments_reject_malformed_hash(self):
        with pytest.raises(InputError):
            encoding.reserves_commitment(1, "0x1234", 1)


class TestEpochKey:
    def test_keccak_of_utf8(self):
        assert encoding.epoch_key("20250101-000000") == "0x" + keccak(b"20250101-000000").hex()

    def test_deterministic(self):
        assert encoding.epoch_key("epoch-1") == encoding.epoch_key("epoch-1")
        assert encoding.epoch_key("epoch-1") != encoding.epoch_key("epoch-2")

    def test_empty_rejected(self):
        with pytest.raises(InputError):
            encoding.epoch_key("")

    def test_empty_keccak_vector(self):
        assert "0x" + keccak(b"").hex() == EMPTY_KECCAK


class TestParsing:
    def test_parse_uint256_accepts_digits(self):
        assert encoding.parse_uint256(" 1000 ") == 1000

    @pytest.mark.parametrize("value", ["-1", "1.5", "1e18", "", "abc", "١٢"])
    def test_parse_uint256_rejects(self, value):
        with pytest.raises(InputError):
            encoding.parse_uint256(value)

    def test_parse_uint256_rejects_overflow(self):
        with pytest.raises(InputError):
            encoding.parse_uint256(str(2**256))

    def test_parse_uint256_max(self):
        assert encoding.parse_uint256(str(2**256 - 1)) == encoding.UINT256_MAX

    def test_normalize_hash_lowercases(self):
        assert encoding.normalize_hash("0x" + "AB" * 32) == "0x" + "ab" * 32

    def test_hash_requires_prefix(self):
        with pytest.raises(InputError):
            encoding.hash_to_bytes("ab" * 32)


class TestFormatUnits:
    def test_whole(self):
        assert encoding.format_units(2 * 10**18) == "2.0"

    def test_fraction(self):
        assert encoding.format_units(1_500_000_000_000_000_000) == "1.5"

    def test_zero(self):
        assert encoding.format_units(0) == "0.0"

    def test_negative(self):
        assert encoding.format_units(-50) == "-0.00000000000000005"

    def test_no_float_rounding(self):
        assert encoding.format_units(2**256 - 1).startswith("115792089237316195423570985008687907853269984665640564039457")
