"""Per-epoch artifact documents written between pipeline stages.

Each stage reads only the artifacts persisted by the stages before it, so
these models are the contract between stages (and with anything outside the
pipeline that reads an epoch directory).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from solvency.encoding import format_units
from solvency.models import (
    MerkleMetadata,
    ReservesSnapshot,
    SignedAmount,
    SolvencyVerdict,
    Uint256,
)

LIABILITIES_CSV = "liabilities.csv"
SESSION = "session.json"
EPOCH_METADATA = "metadata.json"
MERKLE_ROOT = "merkle_root.txt"
MERKLE_METADATA = "merkle_metadata.json"
RESERVES = "reserves.json"
PROOF = "proof.json"
PUBLIC_SIGNALS = "publicSignals.json"
WITNESS = "witness.json"
VERIFICATION = "verification.json"
PUBLICATION = "publication.json"
PUBLICATION_HISTORY = "publication_history.json"


def inclusion_name(address: str, index: int | None = None) -> str:
    """File name for an account's inclusion proof; ``index`` tells repeated addresses apart."""
    if index is None:
        return f"inclusion_{address.lower()}.json"
    return f"inclusion_{address.lower()}_{index}.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EpochMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    epoch_id: str
    session_id: str
    participant_count: int
    total_liabilities: Uint256
    exported_at: datetime = Field(default_factory=_utcnow)


class SessionRecord(BaseModel):
    """A closed session's final allocations, as handed over by the exporter's caller."""

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., min_length=1)
    participants: list[str] = Field(default_factory=list)
    allocations: dict[str, Uint256]
    timestamp: int | None = None
    rounds: int = 0


class ExportResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    epoch_id: str
    total_liabilities: Uint256
    participant_count: int


class ReservesAmount(BaseModel):
    model_config = ConfigDict(frozen=True)

    native: Uint256
    native_formatted: str


class LiabilitiesAmount(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: Uint256
    total_formatted: str
    participant_count: int


class SolvencySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_solvent: bool
    ratio: str
    excess: SignedAmount
    excess_formatted: str


class ReservesReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    epoch: str
    network: str = ""
    chain_id: int | None = None
    custody_account: str
    reserves: ReservesAmount
    liabilities: LiabilitiesAmount
    solvency: SolvencySummary
    timestamp: int
    timestamp_iso: str
    scanned_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def build(
        cls,
        *,
        epoch: str,
        snapshot: ReservesSnapshot,
        merkle: MerkleMetadata,
        verdict: SolvencyVerdict,
        network: str = "",
        chain_id: int | None = None,
    ) -> ReservesReport:
        return cls(
            epoch=epoch,
            network=network,
            chain_id=chain_id,
            custody_account=snapshot.account,
            reserves=ReservesAmount(
                native=snapshot.balance,
                native_formatted=format_units(snapshot.balance),
            ),
            liabilities=LiabilitiesAmount(
                total=merkle.total_liabilities,
                total_formatted=format_units(merkle.total_liabilities),
                participant_count=merkle.leaf_count,
            ),
            solvency=SolvencySummary(
                is_solvent=verdict.is_solvent,
                ratio=verdict.ratio,
                excess=verdict.excess,
                excess_formatted=format_units(verdict.excess),
            ),
            timestamp=snapshot.timestamp,
            timestamp_iso=snapshot.measured_at.isoformat(),
        )


class PublicationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    epoch: str
    epoch_key: str
    status: Literal["published", "already_published"]
    tx_hash: str | None = None
    block_number: int | None = None
    publisher: str = ""
    published_at: datetime = Field(default_factory=_utcnow)
