from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    computed_field,
)

from solvency.encoding import (
    UINT256_MAX,
    leaf_hash,
    normalize_address,
    normalize_hash,
    parse_uint256,
    to_hex,
)

PROOF_VERSION = "1.0.0"
PROOF_TYPE = "solvency-proof-commitment-scheme"


def _uint256(value: object) -> int:
    return parse_uint256(value)  # type: ignore[arg-type]


def _signed_int(value: object) -> int:
    if isinstance(value, str):
        return int(value.strip())
    return value  # type: ignore[return-value]


# 256-bit integers are carried as decimal strings in JSON.
Uint256 = Annotated[
    int,
    BeforeValidator(_uint256),
    PlainSerializer(str, return_type=str, when_used="json"),
]
SignedAmount = Annotated[
    int,
    BeforeValidator(_signed_int),
    PlainSerializer(str, return_type=str, when_used="json"),
]
Hash32 = Annotated[str, AfterValidator(normalize_hash)]
Address = Annotated[str, AfterValidator(normalize_address)]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Liabilities ----------------------------------------------------------


class LiabilityEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: Address
    balance: Uint256

    @property
    def leaf(self) -> str:
        return to_hex(leaf_hash(self.address, self.balance))


class LiabilitySet(BaseModel):
    """One epoch's liabilities, in export order."""

    model_config = ConfigDict(frozen=True)

    entries: tuple[LiabilityEntry, ...]
    epoch: str | None = None

    @property
    def total_liabilities(self) -> int:
        return sum(e.balance for e in self.entries)

    def duplicate_addresses(self) -> list[str]:
        counts = Counter(e.address for e in self.entries)
        return sorted(addr for addr, n in counts.items() if n > 1)

    def __len__(self) -> int:
        return len(self.entries)


# --- Merkle ---------------------------------------------------------------


class InclusionProof(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: Address
    balance: Uint256
    leaf: Hash32
    proof: tuple[Hash32, ...]
    root: Hash32
    index: int = Field(..., ge=0)
    generated_at: datetime | None = None


class MerkleParticipant(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: Address
    balance: Uint256
    leaf: Hash32


class MerkleMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    root: Hash32
    leaf_count: int
    tree_depth: int
    total_liabilities: Uint256
    participants: tuple[MerkleParticipant, ...] = ()
    generated_at: datetime = Field(default_factory=_utcnow)


# --- Reserves -------------------------------------------------------------


class ReservesSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: str
    balance: Uint256
    timestamp: int = Field(..., ge=0)

    @property
    def measured_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


class SolvencyVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_solvent: bool
    ratio: str
    excess: SignedAmount
    ratio_bps: int | None = None


# --- Proof ----------------------------------------------------------------


class Witness(BaseModel):
    """Private input of the commitment scheme, kept for audit."""

    model_config = ConfigDict(frozen=True)

    reserves_total: Uint256
    liabilities_sum: Uint256
    merkle_root: Hash32
    timestamp: int = Field(..., ge=0, le=UINT256_MAX)
    is_solvent: bool


class CommitmentChain(BaseModel):
    model_config = ConfigDict(frozen=True)

    reserves_commitment: Hash32
    liabilities_commitment: Hash32
    witness_hash: Hash32
    solvency_assertion: Hash32
    master_commitment: Hash32


class PublicSignals(BaseModel):
    model_config = ConfigDict(frozen=True)

    merkle_root: Hash32
    timestamp: int = Field(..., ge=0, le=UINT256_MAX)
    is_solvent: bool


class ProofMetadata(BaseModel):
    """Human-readable totals. Advisory only; never checked by verifiers."""

    model_config = ConfigDict(frozen=True)

    reserves_total: Uint256
    liabilities_sum: Uint256
    excess: SignedAmount
    ratio: str
    participant_count: int = 0
    generated_at: datetime = Field(default_factory=_utcnow)


class Proof(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = PROOF_VERSION
    type: str = PROOF_TYPE
    epoch: str
    public_signals: PublicSignals
    commitments: CommitmentChain
    metadata: ProofMetadata | None = None
    verification_steps: tuple[str, ...] = ()


class VerificationCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    passed: bool
    message: str = ""
    expected: str | None = None
    actual: str | None = None


class VerificationReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    checks: tuple[VerificationCheck, ...]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def valid(self) -> bool:
        return all(c.passed for c in self.checks)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def summary(self) -> str:
        if self.valid:
            return "Proof is VALID and verifies correctly"
        return "Proof FAILED verification"

    def failed(self) -> list[str]:
        return [c.name for c in self.checks if not c.passed]

    def check(self, name: str) -> VerificationCheck:
        for c in self.checks:
            if c.name == name:
                return c
        raise KeyError(name)


# --- Registry -------------------------------------------------------------


class PublishedRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    epoch_key: Hash32
    merkle_root: Hash32
    timestamp: int = Field(..., ge=0, le=UINT256_MAX)
    is_solvent: bool
    master_commitment: Hash32
    witness_hash: Hash32
    reserves_commitment: Hash32
    liabilities_commitment: Hash32
    solvency_assertion: Hash32
    publisher: str = ""
    verified: bool = False
    block_number: int | None = None

    @classmethod
    def from_proof(cls, key: str, proof: Proof, *, publisher: str = "") -> PublishedRecord:
        chain = proof.commitments
        return cls(
            epoch_key=key,
            merkle_root=proof.public_signals.merkle_root,
            timestamp=proof.public_signals.timestamp,
            is_solvent=proof.public_signals.is_solvent,
            master_commitment=chain.master_commitment,
            witness_hash=chain.witness_hash,
            reserves_commitment=chain.reserves_commitment,
            liabilities_commitment=chain.liabilities_commitment,
            solvency_assertion=chain.solvency_assertion,
            publisher=publisher,
        )


class WriteReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    tx_hash: str
    block_number: int
    publisher: str = ""


class PublishStatus(str, Enum):
    PUBLISHED = "published"
    ALREADY_PUBLISHED = "already_published"


class PublishOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: PublishStatus
    epoch_id: str
    epoch_key: Hash32
    receipt: WriteReceipt | None = None
    record: PublishedRecord | None = None

    @property
    def already_published(self) -> bool:
        return self.status is PublishStatus.ALREADY_PUBLISHED


class OnChainStatus(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"


class OnChainVerification(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OnChainStatus
    epoch_id: str
    epoch_key: Hash32
    expected_root: Hash32
    record: PublishedRecord | None = None

    @property
    def found(self) -> bool:
        return self.status is not OnChainStatus.NOT_FOUND

    @property
    def verified(self) -> bool:
        return self.status is OnChainStatus.VERIFIED


class PublicationEntry(BaseModel):
    """One line of the local publication history."""

    model_config = ConfigDict(frozen=True)

    epoch: str
    epoch_key: str
    status: Literal["published", "already_published", "failed"]
    tx_hash: str | None = None
    block_number: int | None = None
    publisher: str = ""
    is_solvent: bool | None = None
    error: str | None = None
    published_at: datetime = Field(default_factory=_utcnow)
