"""Epoch pipeline: each stage reads the artifacts persisted by the previous one.

    build_merkle -> scan_reserves -> generate_proof -> verify_proof -> publish -> verify_on_chain

Stages can be run one at a time (days apart, from different processes) or
all at once with :meth:`ProofPipeline.run`.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from solvency import artifacts
from solvency.artifacts import PublicationRecord, ReservesReport
from solvency.composer import ProofComposer, derive_witness
from solvency.errors import InputError, SolvencyError
from solvency.exporter import parse_liabilities_csv
from solvency.merkle import MerkleCommitter
from solvency.models import (
    MerkleMetadata,
    OnChainVerification,
    Proof,
    PublishOutcome,
    VerificationReport,
    Witness,
)
from solvency.publisher import LedgerPublisher, ProofHistory, Signer
from solvency.reserves import LedgerReader, ReservesOracle
from solvency.store import ArtifactStore
from solvency.verifier import CHECK_SOLVENCY, ProofVerifier

logger = logging.getLogger(__name__)

STAGES = ("build_merkle", "scan_reserves", "generate_proof", "verify_proof", "publish", "verify_on_chain")


@dataclass(frozen=True)
class StepResult:
    name: str
    success: bool
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineResult:
    epoch: str
    steps: tuple[StepResult, ...]

    @property
    def success(self) -> bool:
        return bool(self.steps) and all(s.success for s in self.steps)

    def step(self, name: str) -> StepResult | None:
        for s in self.steps:
            if s.name == name:
                return s
        return None


class ProofPipeline:
    def __init__(
        self,
        store: ArtifactStore,
        *,
        ledger_reader: LedgerReader | None = None,
        custody_account: str = "",
        publisher: LedgerPublisher | None = None,
        signer: Signer | None = None,
        committer: MerkleCommitter | None = None,
        oracle: ReservesOracle | None = None,
        composer: ProofComposer | None = None,
        verifier: ProofVerifier | None = None,
        history: ProofHistory | None = None,
        network: str = "",
        chain_id: int | None = None,
        publish_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.ledger_reader = ledger_reader
        self.custody_account = custody_account
        self.publisher = publisher
        self.signer = signer
        self.committer = committer or MerkleCommitter()
        self.oracle = oracle or ReservesOracle()
        self.composer = composer or ProofComposer()
        self.verifier = verifier or ProofVerifier()
        self.history = history or ProofHistory(store)
        self.network = network
        self.chain_id = chain_id
        self.publish_timeout = publish_timeout

    # --- Stages -----------------------------------------------------------

    def build_merkle(self, epoch: str) -> MerkleMetadata:
        liabilities = parse_liabilities_csv(self.store.read_text(epoch, artifacts.LIABILITIES_CSV), epoch=epoch)
        tree = self.committer.build(liabilities)
        proofs = self.committer.prove_all(tree)

        self.store.write_text(epoch, artifacts.MERKLE_ROOT, tree.root)
        repeated = {a for a, n in Counter(p.address for p in proofs).items() if n > 1}
        for proof in proofs:
            index = proof.index if proof.address in repeated else None
            self.store.write_model(epoch, artifacts.inclusion_name(proof.address, index), proof)
        metadata = tree.metadata()
        self.store.write_model(epoch, artifacts.MERKLE_METADATA, metadata)
        logger.info("Epoch %s: committed %d liabilities under root %s", epoch, metadata.leaf_count, metadata.root)
        return metadata

    def scan_reserves(self, epoch: str) -> ReservesReport:
        if self.ledger_reader is None:
            raise InputError("no ledger reader configured")
        merkle = self.store.read_model(epoch, artifacts.MERKLE_METADATA, MerkleMetadata)
        snapshot = self.oracle.scan(self.custody_account, self.ledger_reader)
        verdict = self.oracle.assess_solvency(snapshot.balance, merkle.total_liabilities)
        report = ReservesReport.build(
            epoch=epoch,
            snapshot=snapshot,
            merkle=merkle,
            verdict=verdict,
            network=self.network,
            chain_id=self.chain_id,
        )
        self.store.write_model(epoch, artifacts.RESERVES, report)
        logger.info(
            "Epoch %s: reserves %s vs liabilities %s, ratio %s",
            epoch,
            report.reserves.native_formatted,
            report.liabilities.total_formatted,
            verdict.ratio,
        )
        return report

    def generate_proof(self, epoch: str) -> Proof:
        reserves = self.store.read_model(epoch, artifacts.RESERVES, ReservesReport)
        merkle = self.store.read_model(epoch, artifacts.MERKLE_METADATA, MerkleMetadata)
        witness = derive_witness(reserves, merkle)
        proof = self.composer.compose(witness, epoch=epoch, participant_count=merkle.leaf_count)

        self.store.write_model(epoch, artifacts.PROOF, proof)
        public = proof.public_signals.model_dump(mode="json")
        public["master_commitment"] = proof.commitments.master_commitment
        self.store.write_json(epoch, artifacts.PUBLIC_SIGNALS, public)
        self.store.write_model(epoch, artifacts.WITNESS, witness)
        return proof

    def verify_proof(self, epoch: str) -> VerificationReport:
        proof = self.store.read_model(epoch, artifacts.PROOF, Proof)
        witness = self.store.read_model(epoch, artifacts.WITNESS, Witness)
        merkle = self.store.read_model(epoch, artifacts.MERKLE_METADATA, MerkleMetadata)
        report = self.verifier.verify(proof, witness, merkle)
        self.store.write_model(epoch, artifacts.VERIFICATION, report)
        return report

    def publish(self, epoch: str) -> PublishOutcome:
        if self.publisher is None or self.signer is None:
            raise InputError("no registry publisher configured")
        proof = self.store.read_model(epoch, artifacts.PROOF, Proof)
        try:
            outcome = self.publisher.publish(epoch, proof, self.signer, timeout=self.publish_timeout)
        except SolvencyError as exc:
            self.history.record_failure(epoch, exc)
            raise

        record = PublicationRecord(
            epoch=epoch,
            epoch_key=outcome.epoch_key,
            status=outcome.status.value,
            tx_hash=outcome.receipt.tx_hash if outcome.receipt else None,
            block_number=(
                outcome.receipt.block_number
                if outcome.receipt
                else (outcome.record.block_number if outcome.record else None)
            ),
            publisher=outcome.record.publisher if outcome.record else self.signer.identity,
        )
        self.store.write_model(epoch, artifacts.PUBLICATION, record)
        self.history.record_outcome(outcome, proof)
        return outcome

    def verify_on_chain(self, epoch: str) -> OnChainVerification:
        if self.publisher is None:
            raise InputError("no registry publisher configured")
        merkle = self.store.read_model(epoch, artifacts.MERKLE_METADATA, MerkleMetadata)
        return self.publisher.verify_published(epoch, merkle.root)

    # --- Driver -----------------------------------------------------------

    def run(self, epoch: str, *, publish: bool = False) -> PipelineResult:
        steps: list[StepResult] = []

        def attempt(name: str, fn, *args):
            logger.info("Epoch %s: running %s", epoch, name)
            try:
                value = fn(*args)
            except SolvencyError as exc:
                logger.error("Epoch %s: %s failed: %s", epoch, name, exc)
                steps.append(StepResult(name=name, success=False, error=str(exc)))
                return None, False
            return value, True

        metadata, ok = attempt("build_merkle", self.build_merkle, epoch)
        if not ok:
            return PipelineResult(epoch=epoch, steps=tuple(steps))
        steps.append(StepResult("build_merkle", True, detail={"root": metadata.root, "leaves": metadata.leaf_count}))

        reserves, ok = attempt("scan_reserves", self.scan_reserves, epoch)
        if not ok:
            return PipelineResult(epoch=epoch, steps=tuple(steps))
        steps.append(
            StepResult(
                "scan_reserves",
                True,
                detail={"is_solvent": reserves.solvency.is_solvent, "ratio": reserves.solvency.ratio},
            )
        )

        proof, ok = attempt("generate_proof", self.generate_proof, epoch)
        if not ok:
            return PipelineResult(epoch=epoch, steps=tuple(steps))
        steps.append(
            StepResult("generate_proof", True, detail={"master_commitment": proof.commitments.master_commitment})
        )

        report, ok = attempt("verify_proof", self.verify_proof, epoch)
        if not ok:
            return PipelineResult(epoch=epoch, steps=tuple(steps))
        failed = report.failed()
        steps.append(
            StepResult(
                "verify_proof",
                report.valid,
                error=None if report.valid else "failed checks: " + ", ".join(failed),
                detail={"checks": len(report.checks), "failed": failed},
            )
        )
        # An insolvent proof is still a faithful one and may be published.
        if any(name != CHECK_SOLVENCY for name in failed) or not publish:
            return PipelineResult(epoch=epoch, steps=tuple(steps))

        outcome, ok = attempt("publish", self.publish, epoch)
        if not ok:
            return PipelineResult(epoch=epoch, steps=tuple(steps))
        steps.append(
            StepResult(
                "publish",
                True,
                detail={
                    "status": outcome.status.value,
                    "tx_hash": outcome.receipt.tx_hash if outcome.receipt else None,
                },
            )
        )

        check, ok = attempt("verify_on_chain", self.verify_on_chain, epoch)
        if ok:
            steps.append(
                StepResult(
                    "verify_on_chain",
                    check.verified,
                    error=None if check.verified else f"registry status {check.status.value}",
                    detail={"status": check.status.value},
                )
            )
        return PipelineResult(epoch=epoch, steps=tuple(steps))
