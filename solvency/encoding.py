"""Byte-stable encodings shared by the Merkle tree and the commitment chain.

Every hash in the pipeline is keccak256 over an Ethereum ABI encoding, so
proofs produced here can be checked by an EVM contract or any other ABI-aware
implementation:

* leaves use the packed encoding ``address (20 bytes) || uint256 (32 bytes)``;
* internal Merkle nodes hash the two children concatenated in ascending byte
  order;
* commitments use the standard (32-byte word) ABI encoding of their inputs.
"""

from __future__ import annotations

import re

from eth_abi import encode
from eth_abi.packed import encode_packed
from eth_utils import keccak

from solvency.errors import InputError

UINT256_MAX = 2**256 - 1
HASH_HEX_LENGTH = 66  # "0x" + 64 hex digits

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def hash_to_bytes(value: str) -> bytes:
    """Decode a ``0x``-prefixed 32-byte hash."""
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != HASH_HEX_LENGTH:
        raise InputError(f"not a 32-byte hex hash: {value!r}")
    body = value[2:]
    if not _HEX_RE.match(body):
        raise InputError(f"not a 32-byte hex hash: {value!r}")
    return bytes.fromhex(body)


def normalize_hash(value: str) -> str:
    return to_hex(hash_to_bytes(value))


def normalize_address(value: str) -> str:
    """Lower-case an address and left-pad it to 20 bytes."""
    if not isinstance(value, str):
        raise InputError(f"address must be a string, got {type(value).__name__}")
    raw = value.strip()
    if raw[:2].lower() == "0x":
        raw = raw[2:]
    if not raw or len(raw) > 40 or not _HEX_RE.match(raw):
        raise InputError(f"malformed address: {value!r}")
    return "0x" + raw.lower().rjust(40, "0")


def check_uint256(value: int, field: str = "value") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InputError(f"{field} must be an integer, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise InputError(f"{field} out of uint256 range: {value}")
    return value


def parse_uint256(value: str | int, field: str = "value") -> int:
    """Parse a decimal balance in the ledger's smallest unit."""
    if isinstance(value, str):
        text = value.strip()
        if not (text.isascii() and text.isdigit()):
            raise InputError(f"malformed {field}: {value!r}")
        value = int(text)
    return check_uint256(value, field)


# --- Merkle ---------------------------------------------------------------


def leaf_hash(address: str, balance: int) -> bytes:
    packed = encode_packed(
        ["address", "uint256"],
        [bytes.fromhex(normalize_address(address)[2:]), check_uint256(balance, "balance")],
    )
    return keccak(packed)


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Sorted-pair node hash: children are ordered by raw bytes before hashing."""
    if a <= b:
        return keccak(a + b)
    return keccak(b + a)


# --- Commitments ----------------------------------------------------------


def reserves_commitment(reserves_total: int, merkle_root: str, timestamp: int) -> str:
    return to_hex(
        keccak(
            encode(
                ["uint256", "bytes32", "uint256"],
                [reserves_total, hash_to_bytes(merkle_root), timestamp],
            )
        )
    )


def liabilities_commitment(liabilities_sum: int, merkle_root: str, timestamp: int) -> str:
    return to_hex(
        keccak(
            encode(
                ["uint256", "bytes32", "uint256"],
                [liabilities_sum, hash_to_bytes(merkle_root), timestamp],
            )
        )
    )


def witness_hash(
    reserves_total: int,
    liabilities_sum: int,
    merkle_root: str,
    timestamp: int,
    is_solvent: bool,
) -> str:
    return to_hex(
        keccak(
            encode(
                ["uint256", "uint256", "bytes32", "uint256", "bool"],
                [reserves_total, liabilities_sum, hash_to_bytes(merkle_root), timestamp, is_solvent],
            )
        )
    )


def solvency_assertion(reserves_commit: str, liabilities_commit: str, is_solvent: bool) -> str:
    return to_hex(
        keccak(
            encode(
                ["bytes32", "bytes32", "bool"],
                [hash_to_bytes(reserves_commit), hash_to_bytes(liabilities_commit), is_solvent],
            )
        )
    )


def master_commitment(witness_digest: str, assertion: str, merkle_root: str) -> str:
    return to_hex(
        keccak(
            encode(
                ["bytes32", "bytes32", "bytes32"],
                [hash_to_bytes(witness_digest), hash_to_bytes(assertion), hash_to_bytes(merkle_root)],
            )
        )
    )


def epoch_key(epoch_id: str) -> str:
    """Registry key for an epoch: keccak256 of its UTF-8 bytes."""
    if not epoch_id:
        raise InputError("epoch id is required")
    return to_hex(keccak(text=epoch_id))


# --- Display --------------------------------------------------------------


def format_units(value: int, decimals: int = 18) -> str:
    """Render a signed integer amount in whole-token units without rounding."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10**decimals)
    frac_text = str(frac).rjust(decimals, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_text}"
