"""Write-once publication of proofs to an external registry.

The registry is keyed by ``keccak256(epoch_id)``. Publishing checks for an
existing record first and treats a present record as a successful no-op, so
retrying after a timeout or a crash is always safe.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from eth_utils import keccak
from pydantic import BaseModel, ConfigDict, TypeAdapter

from solvency.artifacts import PUBLICATION_HISTORY
from solvency.encoding import epoch_key, normalize_hash, to_hex
from solvency.errors import (
    AlreadyPublishedError,
    PublishFailedError,
    RegistryReadError,
    SolvencyError,
)
from solvency.models import (
    OnChainStatus,
    OnChainVerification,
    Proof,
    PublicationEntry,
    PublishedRecord,
    PublishOutcome,
    PublishStatus,
    WriteReceipt,
)
from solvency.store import ArtifactStore, KeyValueStore, MemoryKeyValueStore

logger = logging.getLogger(__name__)


@runtime_checkable
class Signer(Protocol):
    """Whoever authorises a registry write. ``identity`` ends up in the record."""

    @property
    def identity(self) -> str: ...


@runtime_checkable
class RegistryReader(Protocol):
    def exists(self, key: str) -> bool: ...

    def read(self, key: str) -> PublishedRecord | None: ...


@runtime_checkable
class Registry(RegistryReader, Protocol):
    def write(self, record: PublishedRecord, signer: Signer, *, timeout: float | None = None) -> WriteReceipt:
        """Store ``record`` atomically. Raises AlreadyPublishedError if the key exists."""
        ...


class ProofPublished(BaseModel):
    """Event emitted once per successful registry write."""

    model_config = ConfigDict(frozen=True)

    epoch_key: str
    merkle_root: str
    is_solvent: bool
    publisher: str
    timestamp: int


def receipt_hash(record: PublishedRecord) -> str:
    """Deterministic transaction id for registries that have no chain of their own."""
    payload = record.model_dump(mode="json", exclude={"verified"})
    return to_hex(keccak(json.dumps(payload, sort_keys=True).encode("utf-8")))


class StaticSigner:
    """A signer that only carries an identity, for registries that need no signature."""

    def __init__(self, identity: str) -> None:
        self._identity = identity

    @property
    def identity(self) -> str:
        return self._identity


class MemoryRegistry:
    """In-process registry over a write-once key/value store.

    ``block_number`` is the registry's own write sequence and ``tx_hash`` is
    the keccak of the stored record.
    """

    def __init__(self, store: KeyValueStore | None = None) -> None:
        self._store = store if store is not None else MemoryKeyValueStore()
        self._sequence = 0
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[ProofPublished], None]] = []

    def subscribe(self, callback: Callable[[ProofPublished], None]) -> None:
        self._subscribers.append(callback)

    def exists(self, key: str) -> bool:
        return self._store.exists(normalize_hash(key))

    def read(self, key: str) -> PublishedRecord | None:
        data = self._store.get(normalize_hash(key))
        if data is None:
            return None
        return PublishedRecord.model_validate(data)

    def write(self, record: PublishedRecord, signer: Signer, *, timeout: float | None = None) -> WriteReceipt:
        with self._lock:
            block_number = self._sequence + 1
            stored = record.model_copy(update={"publisher": signer.identity, "block_number": block_number})
            payload = stored.model_dump(mode="json")
            if not self._store.put(stored.epoch_key, payload):
                raise AlreadyPublishedError(stored.epoch_key, self.read(stored.epoch_key))
            self._sequence = block_number

        tx_hash = receipt_hash(stored)
        event = ProofPublished(
            epoch_key=stored.epoch_key,
            merkle_root=stored.merkle_root,
            is_solvent=stored.is_solvent,
            publisher=stored.publisher,
            timestamp=stored.timestamp,
        )
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("ProofPublished subscriber failed for %s", stored.epoch_key)
        return WriteReceipt(tx_hash=tx_hash, block_number=block_number, publisher=stored.publisher)


class LedgerPublisher:
    def __init__(self, registry: Registry) -> None:
        self.registry = registry

    def publish(
        self,
        epoch_id: str,
        proof: Proof,
        signer: Signer,
        *,
        timeout: float | None = None,
        require_new: bool = False,
    ) -> PublishOutcome:
        """Write ``proof`` under ``keccak256(epoch_id)`` unless a record is already there.

        An existing record is reported as ALREADY_PUBLISHED, or raised as
        AlreadyPublishedError when ``require_new`` is set.
        """
        key = epoch_key(epoch_id)
        existing = self._read(key)
        if existing is not None:
            if require_new:
                raise AlreadyPublishedError(epoch_id, existing)
            logger.info("Epoch %s already published under %s; nothing to do", epoch_id, key)
            return PublishOutcome(
                status=PublishStatus.ALREADY_PUBLISHED,
                epoch_id=epoch_id,
                epoch_key=key,
                record=existing,
            )

        record = PublishedRecord.from_proof(key, proof, publisher=signer.identity)
        logger.info("Publishing epoch %s (key %s, solvent=%s)", epoch_id, key, record.is_solvent)
        try:
            receipt = self.registry.write(record, signer, timeout=timeout)
        except AlreadyPublishedError as exc:
            # Lost a race with a concurrent publisher.
            if require_new:
                raise
            stored = exc.record if isinstance(exc.record, PublishedRecord) else self._read(key)
            logger.info("Epoch %s was published concurrently under %s", epoch_id, key)
            return PublishOutcome(
                status=PublishStatus.ALREADY_PUBLISHED,
                epoch_id=epoch_id,
                epoch_key=key,
                record=stored,
            )
        except PublishFailedError as exc:
            exc.epoch_id = exc.epoch_id or epoch_id
            exc.epoch_key = exc.epoch_key or key
            raise
        except Exception as exc:
            raise PublishFailedError(epoch_id, str(exc) or type(exc).__name__, epoch_key=key) from exc

        logger.info("Published epoch %s in tx %s (block %d)", epoch_id, receipt.tx_hash, receipt.block_number)
        return PublishOutcome(
            status=PublishStatus.PUBLISHED,
            epoch_id=epoch_id,
            epoch_key=key,
            receipt=receipt,
            record=record.model_copy(update={"block_number": receipt.block_number}),
        )

    def verify_published(
        self,
        epoch_id: str,
        expected_root: str,
        registry_reader: RegistryReader | None = None,
    ) -> OnChainVerification:
        """Compare the registry's root for ``epoch_id`` with ``expected_root``.

        Only the Merkle root is compared; the registry does not re-check the
        commitment chain.
        """
        reader = registry_reader if registry_reader is not None else self.registry
        key = epoch_key(epoch_id)
        expected = normalize_hash(expected_root)
        record = self._read(key, reader)
        if record is None:
            status = OnChainStatus.NOT_FOUND
            logger.warning("No published proof for epoch %s", epoch_id)
        elif record.merkle_root == expected:
            status = OnChainStatus.VERIFIED
            logger.info("Published root for epoch %s matches %s", epoch_id, expected)
        else:
            status = OnChainStatus.MISMATCH
            logger.warning(
                "Published root for epoch %s is %s, expected %s", epoch_id, record.merkle_root, expected
            )
        return OnChainVerification(
            status=status,
            epoch_id=epoch_id,
            epoch_key=key,
            expected_root=expected,
            record=record,
        )

    def _read(self, key: str, reader: RegistryReader | None = None) -> PublishedRecord | None:
        reader = reader if reader is not None else self.registry
        try:
            return reader.read(key)
        except SolvencyError:
            raise
        except Exception as exc:
            raise RegistryReadError(f"reading registry record {key} failed: {exc}") from exc


_HISTORY = TypeAdapter(list[PublicationEntry])
MAX_HISTORY_ENTRIES = 100


class ProofHistory:
    """Latest publication attempt per epoch, kept at the artifact store root.

    A new attempt for an epoch replaces the earlier one, and only the most
    recent ``MAX_HISTORY_ENTRIES`` epochs are kept.
    """

    def __init__(self, store: ArtifactStore) -> None:
        self.store = store
        self._listeners: list[Callable[[PublicationEntry], None]] = []

    def add_listener(self, callback: Callable[[PublicationEntry], None]) -> None:
        self._listeners.append(callback)

    def entries(self) -> list[PublicationEntry]:
        text = self.store.read_shared(PUBLICATION_HISTORY)
        if not text:
            return []
        return _HISTORY.validate_json(text)

    def latest(self, epoch: str | None = None) -> PublicationEntry | None:
        for entry in reversed(self.entries()):
            if epoch is None or entry.epoch == epoch:
                return entry
        return None

    def record(self, entry: PublicationEntry) -> None:
        entries = [e for e in self.entries() if e.epoch != entry.epoch]
        entries.append(entry)
        entries = entries[-MAX_HISTORY_ENTRIES:]
        self.store.write_shared(PUBLICATION_HISTORY, _HISTORY.dump_json(entries, indent=2).decode("utf-8"))
        for callback in self._listeners:
            try:
                callback(entry)
            except Exception:
                logger.exception("Publication listener failed for epoch %s", entry.epoch)

    def record_outcome(self, outcome: PublishOutcome, proof: Proof) -> PublicationEntry:
        entry = PublicationEntry(
            epoch=outcome.epoch_id,
            epoch_key=outcome.epoch_key,
            status=outcome.status.value,
            tx_hash=outcome.receipt.tx_hash if outcome.receipt else None,
            block_number=outcome.receipt.block_number if outcome.receipt else None,
            publisher=(outcome.record.publisher if outcome.record else ""),
            is_solvent=proof.public_signals.is_solvent,
        )
        self.record(entry)
        return entry

    def record_failure(self, epoch: str, error: BaseException) -> PublicationEntry:
        entry = PublicationEntry(
            epoch=epoch,
            epoch_key=epoch_key(epoch),
            status="failed",
            error=str(error),
        )
        self.record(entry)
        return entry
