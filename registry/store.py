from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from registry.models import ProofRecord
from solvency.encoding import normalize_hash
from solvency.errors import AlreadyPublishedError
from solvency.models import PublishedRecord, WriteReceipt
from solvency.publisher import Signer, receipt_hash

logger = logging.getLogger(__name__)


def to_published(row: ProofRecord) -> PublishedRecord:
    return PublishedRecord(
        epoch_key=row.epoch_key,
        merkle_root=row.merkle_root,
        timestamp=int(row.timestamp),
        is_solvent=row.is_solvent,
        master_commitment=row.master_commitment,
        witness_hash=row.witness_hash,
        reserves_commitment=row.reserves_commitment,
        liabilities_commitment=row.liabilities_commitment,
        solvency_assertion=row.solvency_assertion,
        publisher=row.publisher,
        verified=row.verified,
        block_number=row.sequence,
    )


class SqlRegistry:
    """Write-once proof registry over the ``proof_records`` table.

    The unique index on ``epoch_key`` is what makes a write atomic and
    at-most-once; a losing concurrent insert surfaces as AlreadyPublishedError.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        on_write: Callable[[PublishedRecord], object] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._on_write = on_write

    def exists(self, key: str) -> bool:
        key = normalize_hash(key)
        with self._session_factory() as session, session.begin():
            found = session.execute(select(ProofRecord.sequence).where(ProofRecord.epoch_key == key)).first()
        return found is not None

    def read(self, key: str) -> PublishedRecord | None:
        key = normalize_hash(key)
        with self._session_factory() as session, session.begin():
            row = session.execute(select(ProofRecord).where(ProofRecord.epoch_key == key)).scalar_one_or_none()
            return to_published(row) if row is not None else None

    def latest(self) -> PublishedRecord | None:
        with self._session_factory() as session, session.begin():
            row = session.execute(
                select(ProofRecord).order_by(ProofRecord.sequence.desc()).limit(1)
            ).scalar_one_or_none()
            return to_published(row) if row is not None else None

    def history(self, *, limit: int = 50, offset: int = 0) -> tuple[list[PublishedRecord], int]:
        with self._session_factory() as session, session.begin():
            total = session.execute(select(func.count()).select_from(ProofRecord)).scalar_one()
            rows = (
                session.execute(
                    select(ProofRecord).order_by(ProofRecord.sequence.desc()).limit(limit).offset(offset)
                )
                .scalars()
                .all()
            )
            return [to_published(r) for r in rows], int(total)

    def mark_verified(self, key: str) -> None:
        key = normalize_hash(key)
        with self._session_factory() as session, session.begin():
            row = session.execute(select(ProofRecord).where(ProofRecord.epoch_key == key)).scalar_one()
            row.verified = True
            session.add(row)

    def write(self, record: PublishedRecord, signer: Signer, *, timeout: float | None = None) -> WriteReceipt:
        stored = record.model_copy(update={"publisher": signer.identity, "verified": False})
        tx_hash = receipt_hash(stored)
        row = ProofRecord(
            epoch_key=stored.epoch_key,
            merkle_root=stored.merkle_root,
            timestamp=stored.timestamp,
            is_solvent=stored.is_solvent,
            master_commitment=stored.master_commitment,
            witness_hash=stored.witness_hash,
            reserves_commitment=stored.reserves_commitment,
            liabilities_commitment=stored.liabilities_commitment,
            solvency_assertion=stored.solvency_assertion,
            publisher=stored.publisher,
            tx_hash=tx_hash,
        )
        try:
            with self._session_factory() as session, session.begin():
                session.add(row)
                session.flush()
                sequence = row.sequence
        except DBIntegrityError as exc:
            logger.info("Proof for %s already recorded", stored.epoch_key)
            raise AlreadyPublishedError(stored.epoch_key, self.read(stored.epoch_key)) from exc

        logger.info("Recorded proof %s as #%d (publisher %s)", stored.epoch_key, sequence, stored.publisher)
        if self._on_write is not None:
            self._on_write(stored.model_copy(update={"block_number": sequence}))
        return WriteReceipt(tx_hash=tx_hash, block_number=sequence, publisher=stored.publisher)
