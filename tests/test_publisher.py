from __future__ import annotations

import pytest

from conftest import ETHER, make_proof
from solvency.encoding import epoch_key
from solvency.errors import AlreadyPublishedError, PublishFailedError, PublishTimeoutError, RegistryReadError
from solvency.models import OnChainStatus, PublishedRecord, PublishStatus
from solvency.publisher import (
    MAX_HISTORY_ENTRIES,
    LedgerPublisher,
    MemoryRegistry,
    ProofHistory,
    StaticSigner,
    receipt_hash,
)
from solvency.store import MemoryArtifactStore

EPOCH = "20250101-000000"
SIGNER = StaticSigner("operator-1")


class FailingRegistry(MemoryRegistry):
    def __init__(self, error: Exception) -> None:
        super().__init__()
        self.error = error

    def write(self, record, signer, *, timeout=None):
        raise self.error


class RacingRegistry(MemoryRegistry):
    """Another publisher lands the same epoch between our read and our write."""

    def write(self, record, signer, *, timeout=None):
        super().write(record, StaticSigner("someone-else"), timeout=timeout)
        return super().write(record, signer, timeout=timeout)


class BrokenReader:
    def exists(self, key):
        raise OSError("connection reset")

    def read(self, key):
        raise OSError("connection reset")


class TestPublish:
    def test_first_publish_writes_record(self):
        _, _, proof = make_proof(4 * ETHER, 2 * ETHER, ETHER, epoch=EPOCH)
        registry = MemoryRegistry()
        outcome = LedgerPublisher(registry).publish(EPOCH, proof, SIGNER)

        assert outcome.status is PublishStatus.PUBLISHED
        assert outcome.epoch_key == epoch_key(EPOCH)
        assert outcome.receipt.block_number == 1
        stored = registry.read(epoch_key(EPOCH))
        assert stored.merkle_root == proof.public_signals.merkle_root
        assert stored.master_commitment == proof.commitments.master_commitment
        assert stored.publisher == "operator-1"
        assert outcome.receipt.tx_hash == receipt_hash(stored)

    def test_second_publish_is_noop(self):
        _, _, proof = make_proof(4 * ETHER, 2 * ETHER, ETHER, epoch=EPOCH)
        registry = MemoryRegistry()
        publisher = LedgerPublisher(registry)
        publisher.publish(EPOCH, proof, SIGNER)

        again = publisher.publish(EPOCH, proof, StaticSigner("operator-2"))
        assert again.already_published
        assert again.receipt is None
        assert again.record.publisher == "operator-1"

    def test_require_new_raises_on_existing(self):
        _, _, proof = make_proof(4 * ETHER, 2 * ETHER, ETHER, epoch=EPOCH)
        publisher = LedgerPublisher(MemoryRegistry())
        publisher.publish(EPOCH, proof, SIGNER)
        with pytest.raises(AlreadyPublishedError) as exc_info:
            publisher.publish(EPOCH, proof, SIGNER, require_new=True)
        assert exc_info.value.record.publisher == "operator-1"

    def test_require_new_raises_on_lost_race(self):
        _, _, proof = make_proof(4 * ETHER, 2 * ETHER, ETHER, epoch=EPOCH)
        with pytest.raises(AlreadyPublishedError):
            LedgerPublisher(RacingRegistry()).publish(EPOCH, proof, SIGNER, require_new=True)

    def test_lost_race_reports_already_published(self):
        _, _, proof = make_proof(4 * ETHER, 2 * ETHER, ETHER, epoch=EPOCH)
        outcome = LedgerPublisher(RacingRegistry()).publish(EPOCH, proof, SIGNER)
        assert outcome.status is PublishStatus.ALREADY_PUBLISHED
        assert outcome.record.publisher == "someone-else"

    def test_insolvent_proof_is_published_as_is(self):
        _, _, proof = make_proof(ETHER, 2 * ETHER, epoch=EPOCH)
        registry = MemoryRegistry()
        LedgerPublisher(registry).publish(EPOCH, proof, SIGNER)
        assert registry.read(epoch_key(EPOCH)).is_solvent is False

    def test_transport_failure_wrapped_with_cause(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        publisher = LedgerPublisher(FailingRegistry(ConnectionError("rpc down")))
        with pytest.raises(PublishFailedError) as exc_info:
            publisher.publish(EPOCH, proof, SIGNER)
        assert exc_info.value.epoch_id == EPOCH
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    def test_timeout_passes_through(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        error = PublishTimeoutError(EPOCH, "no receipt after 1s")
        with pytest.raises(PublishTimeoutError) as exc_info:
            LedgerPublisher(FailingRegistry(error)).publish(EPOCH, proof, SIGNER, timeout=1)
        assert exc_info.value is error

    def test_adapter_error_names_epoch(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        error = PublishFailedError(None, "transaction reverted", epoch_key=epoch_key(EPOCH))
        with pytest.raises(PublishFailedError) as exc_info:
            LedgerPublisher(FailingRegistry(error)).publish(EPOCH, proof, SIGNER)
        assert exc_info.value.epoch_id == EPOCH
        assert exc_info.value.epoch_key == epoch_key(EPOCH)
        assert str(exc_info.value) == f"publishing epoch {EPOCH!r} failed: transaction reverted"

    def test_read_failure_is_registry_read_error(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        with pytest.raises(RegistryReadError):
            LedgerPublisher(BrokenReader()).publish(EPOCH, proof, SIGNER)

    def test_sequence_increments_per_write(self):
        registry = MemoryRegistry()
        publisher = LedgerPublisher(registry)
        blocks = []
        for epoch in ("e1", "e2", "e3"):
            _, _, proof = make_proof(4, 1, epoch=epoch)
            blocks.append(publisher.publish(epoch, proof, SIGNER).receipt.block_number)
        assert blocks == [1, 2, 3]


class TestMemoryRegistry:
    def test_write_once(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        registry = MemoryRegistry()
        record = PublishedRecord.from_proof(epoch_key(EPOCH), proof)
        registry.write(record, SIGNER)
        with pytest.raises(AlreadyPublishedError) as exc_info:
            registry.write(record, SIGNER)
        assert exc_info.value.record.block_number == 1

    def test_subscribers_get_event(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        registry = MemoryRegistry()
        events = []
        registry.subscribe(events.append)
        LedgerPublisher(registry).publish(EPOCH, proof, SIGNER)
        assert len(events) == 1
        assert events[0].epoch_key == epoch_key(EPOCH)
        assert events[0].publisher == "operator-1"

    def test_failing_subscriber_does_not_undo_write(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        registry = MemoryRegistry()

        def boom(event):
            raise RuntimeError("listener crashed")

        registry.subscribe(boom)
        outcome = LedgerPublisher(registry).publish(EPOCH, proof, SIGNER)
        assert outcome.status is PublishStatus.PUBLISHED
        assert registry.exists(epoch_key(EPOCH))

    def test_lookup_is_case_insensitive(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        registry = MemoryRegistry()
        LedgerPublisher(registry).publish(EPOCH, proof, SIGNER)
        assert registry.exists(epoch_key(EPOCH).upper().replace("0X", "0x"))


class TestVerifyPublished:
    def test_not_found(self):
        result = LedgerPublisher(MemoryRegistry()).verify_published(EPOCH, "0x" + "ab" * 32)
        assert result.status is OnChainStatus.NOT_FOUND
        assert not result.found
        assert result.record is None

    def test_verified(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        publisher = LedgerPublisher(MemoryRegistry())
        publisher.publish(EPOCH, proof, SIGNER)
        result = publisher.verify_published(EPOCH, proof.public_signals.merkle_root.upper().replace("0X", "0x"))
        assert result.status is OnChainStatus.VERIFIED
        assert result.verified

    def test_mismatch(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        publisher = LedgerPublisher(MemoryRegistry())
        publisher.publish(EPOCH, proof, SIGNER)
        result = publisher.verify_published(EPOCH, "0x" + "00" * 32)
        assert result.status is OnChainStatus.MISMATCH
        assert result.found
        assert not result.verified

    def test_explicit_reader(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        other = MemoryRegistry()
        LedgerPublisher(other).publish(EPOCH, proof, SIGNER)
        result = LedgerPublisher(MemoryRegistry()).verify_published(
            EPOCH, proof.public_signals.merkle_root, registry_reader=other
        )
        assert result.verified


class TestProofHistory:
    def test_empty(self):
        history = ProofHistory(MemoryArtifactStore())
        assert history.entries() == []
        assert history.latest() is None

    def test_records_outcomes_and_failures(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        store = MemoryArtifactStore()
        history = ProofHistory(store)
        outcome = LedgerPublisher(MemoryRegistry()).publish(EPOCH, proof, SIGNER)
        history.record_outcome(outcome, proof)
        history.record_failure("e2", PublishFailedError("e2", "reverted"))

        entries = ProofHistory(store).entries()
        assert [e.status for e in entries] == ["published", "failed"]
        assert entries[0].tx_hash == outcome.receipt.tx_hash
        assert entries[0].is_solvent is True
        assert "reverted" in entries[1].error
        assert history.latest(EPOCH).status == "published"
        assert history.latest().epoch == "e2"

    def test_listeners_notified(self):
        history = ProofHistory(MemoryArtifactStore())
        seen = []
        history.add_listener(seen.append)
        history.record_failure(EPOCH, RuntimeError("x"))
        assert [e.epoch for e in seen] == [EPOCH]

    def test_rerun_replaces_entry_for_epoch(self):
        _, _, proof = make_proof(4, 1, epoch=EPOCH)
        store = MemoryArtifactStore()
        history = ProofHistory(store)
        publisher = LedgerPublisher(MemoryRegistry())
        history.record_failure(EPOCH, PublishFailedError(EPOCH, "rpc down"))
        history.record_outcome(publisher.publish(EPOCH, proof, SIGNER), proof)
        history.record_outcome(publisher.publish(EPOCH, proof, SIGNER), proof)

        entries = history.entries()
        assert len(entries) == 1
        assert entries[0].status == "already_published"

    def test_keeps_most_recent_epochs(self):
        history = ProofHistory(MemoryArtifactStore())
        for n in range(MAX_HISTORY_ENTRIES + 5):
            history.record_failure(f"e{n}", RuntimeError("x"))
        entries = history.entries()
        assert len(entries) == MAX_HISTORY_ENTRIES
        assert entries[0].epoch == "e5"
        assert entries[-1].epoch == f"e{MAX_HISTORY_ENTRIES + 4}"
