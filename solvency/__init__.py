"""Proof-of-solvency pipeline for off-chain custody.

Liabilities are committed to a sorted-pair keccak256 Merkle tree, compared
with custody reserves read from the ledger, bound into a hash-commitment
proof, verified locally, and published write-once to a proof registry.
"""

from solvency.composer import ProofComposer, compute_commitments
from solvency.errors import (
    AlreadyPublishedError,
    EmptyInputError,
    InputError,
    IntegrityError,
    ProofConstructionError,
    PublishFailedError,
    PublishTimeoutError,
    RegistryReadError,
    ReserveReadError,
    SolvencyError,
    TransientIOError,
)
from solvency.merkle import MerkleCommitter, MerkleTree, verify_inclusion
from solvency.models import (
    InclusionProof,
    LiabilityEntry,
    LiabilitySet,
    Proof,
    PublishedRecord,
    SolvencyVerdict,
    VerificationReport,
    Witness,
)
from solvency.publisher import LedgerPublisher, MemoryRegistry
from solvency.reserves import ReservesOracle, assess_solvency
from solvency.verifier import ProofVerifier

__all__ = [
    "AlreadyPublishedError",
    "EmptyInputError",
    "InclusionProof",
    "InputError",
    "IntegrityError",
    "LedgerPublisher",
    "LiabilityEntry",
    "LiabilitySet",
    "MemoryRegistry",
    "MerkleCommitter",
    "MerkleTree",
    "Proof",
    "ProofComposer",
    "ProofConstructionError",
    "ProofVerifier",
    "PublishFailedError",
    "PublishTimeoutError",
    "PublishedRecord",
    "RegistryReadError",
    "ReserveReadError",
    "ReservesOracle",
    "SolvencyError",
    "SolvencyVerdict",
    "TransientIOError",
    "VerificationReport",
    "Witness",
    "assess_solvency",
    "compute_commitments",
    "verify_inclusion",
]
