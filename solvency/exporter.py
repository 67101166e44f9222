from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone

from solvency.artifacts import (
    EPOCH_METADATA,
    LIABILITIES_CSV,
    SESSION,
    EpochMetadata,
    ExportResult,
    SessionRecord,
)
from solvency.encoding import normalize_address, parse_uint256
from solvency.errors import InputError
from solvency.models import LiabilityEntry, LiabilitySet
from solvency.store import ArtifactStore

logger = logging.getLogger(__name__)

CSV_HEADER = "address,balance"


def generate_epoch_id(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%d-%H%M%S")


def render_liabilities_csv(allocations: Mapping[str, int] | Iterable[tuple[str, int]]) -> str:
    rows = allocations.items() if isinstance(allocations, Mapping) else allocations
    lines = [CSV_HEADER]
    lines.extend(f"{address},{balance}" for address, balance in rows)
    return "\n".join(lines) + "\n"


def parse_liabilities_csv(text: str, *, epoch: str = "") -> LiabilitySet:
    """Parse an ``address,balance`` export.

    The header line is skipped and blank lines are ignored. Rows missing a
    field are skipped with a warning; a malformed address or balance is an
    error.
    """
    entries: list[LiabilityEntry] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if lineno == 1 or not line.strip():
            continue
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            logger.warning("Skipping incomplete liabilities row %d: %r", lineno, line)
            continue
        try:
            address = normalize_address(parts[0])
            balance = parse_uint256(parts[1], "balance")
        except InputError as exc:
            raise InputError(f"liabilities row {lineno}: {exc}") from exc
        entries.append(LiabilityEntry(address=address, balance=balance))
    return LiabilitySet(entries=tuple(entries), epoch=epoch)


class LiabilityExporter:
    """Turns a closed session's final allocations into a new epoch."""

    def __init__(self, store: ArtifactStore, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def export_session(self, session: SessionRecord) -> ExportResult:
        if not session.allocations:
            raise InputError(f"session {session.session_id} has no allocations")

        now = self._clock()
        epoch_id = generate_epoch_id(now)
        if self.store.list_names(epoch_id):
            raise InputError(f"epoch {epoch_id} already exists")

        # Addresses equal after normalization stay separate rows; no balance is dropped.
        allocations = [(normalize_address(address), balance) for address, balance in session.allocations.items()]
        total = sum(balance for _, balance in allocations)
        participant_count = len(allocations)
        if len({address for address, _ in allocations}) < participant_count:
            logger.warning("Session %s has allocations that normalize to the same address", session.session_id)

        self.store.write_text(epoch_id, LIABILITIES_CSV, render_liabilities_csv(allocations))
        session_doc = session.model_dump(mode="json")
        session_doc.update(
            epoch_id=epoch_id,
            total_liabilities=str(total),
            exported_at=now.isoformat(),
        )
        self.store.write_json(epoch_id, SESSION, session_doc)
        self.store.write_model(
            epoch_id,
            EPOCH_METADATA,
            EpochMetadata(
                epoch_id=epoch_id,
                session_id=session.session_id,
                participant_count=participant_count,
                total_liabilities=total,
                exported_at=now,
            ),
        )
        logger.info(
            "Exported session %s as epoch %s (%d participants, total %d)",
            session.session_id,
            epoch_id,
            participant_count,
            total,
        )
        return ExportResult(epoch_id=epoch_id, total_liabilities=total, participant_count=participant_count)

    def list_epochs(self) -> list[str]:
        return self.store.list_epochs()

    def get_epoch_metadata(self, epoch: str) -> EpochMetadata:
        return self.store.read_model(epoch, EPOCH_METADATA, EpochMetadata)

    def read_liabilities(self, epoch: str) -> LiabilitySet:
        return parse_liabilities_csv(self.store.read_text(epoch, LIABILITIES_CSV), epoch=epoch)

    def latest_epoch(self) -> str | None:
        return self.store.latest_epoch()
