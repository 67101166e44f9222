from __future__ import annotations

import logging

from solvency import encoding
from solvency.artifacts import ReservesReport
from solvency.errors import InputError
from solvency.models import (
    CommitmentChain,
    MerkleMetadata,
    Proof,
    ProofMetadata,
    PublicSignals,
    Witness,
)
from solvency.reserves import assess_solvency

logger = logging.getLogger(__name__)

VERIFICATION_STEPS = (
    "1. Verify merkle_root matches merkle_metadata.json",
    "2. Verify timestamp is recent and not in future",
    "3. Recompute witness_hash from reserves + liabilities + merkle_root",
    "4. Verify witness_hash matches proof.witness_hash",
    "5. Verify reserves >= liabilities (check is_solvent = true)",
    "6. Recompute all commitments and verify they match",
    "7. Check master commitment binds all elements together",
)


def compute_commitments(witness: Witness) -> CommitmentChain:
    """Derive the commitment chain. The master commitment depends on the rest, so it comes last."""
    reserves_commit = encoding.reserves_commitment(
        witness.reserves_total, witness.merkle_root, witness.timestamp
    )
    liabilities_commit = encoding.liabilities_commitment(
        witness.liabilities_sum, witness.merkle_root, witness.timestamp
    )
    witness_digest = encoding.witness_hash(
        witness.reserves_total,
        witness.liabilities_sum,
        witness.merkle_root,
        witness.timestamp,
        witness.is_solvent,
    )
    assertion = encoding.solvency_assertion(reserves_commit, liabilities_commit, witness.is_solvent)
    master = encoding.master_commitment(witness_digest, assertion, witness.merkle_root)
    return CommitmentChain(
        reserves_commitment=reserves_commit,
        liabilities_commitment=liabilities_commit,
        witness_hash=witness_digest,
        solvency_assertion=assertion,
        master_commitment=master,
    )


def derive_witness(reserves: ReservesReport, merkle: MerkleMetadata) -> Witness:
    if reserves.liabilities.total != merkle.total_liabilities:
        raise InputError(
            f"reserves snapshot was taken against {reserves.liabilities.total} in liabilities, "
            f"but the Merkle tree commits to {merkle.total_liabilities}"
        )
    return Witness(
        reserves_total=reserves.reserves.native,
        liabilities_sum=reserves.liabilities.total,
        merkle_root=merkle.root,
        timestamp=reserves.timestamp,
        is_solvent=reserves.solvency.is_solvent,
    )


class ProofComposer:
    """Binds a witness into a published proof.

    Solvency is taken from the witness as given. An insolvent witness yields
    a well-formed proof that records the insolvency; it is the verifier that
    refuses it.
    """

    def compose(
        self,
        witness: Witness,
        *,
        epoch: str,
        participant_count: int = 0,
    ) -> Proof:
        if not epoch:
            raise InputError("epoch id is required")
        commitments = compute_commitments(witness)
        verdict = assess_solvency(witness.reserves_total, witness.liabilities_sum)
        if not witness.is_solvent:
            logger.warning("Composing a proof for an insolvent witness (epoch %s)", epoch)

        proof = Proof(
            epoch=epoch,
            public_signals=PublicSignals(
                merkle_root=witness.merkle_root,
                timestamp=witness.timestamp,
                is_solvent=witness.is_solvent,
            ),
            commitments=commitments,
            metadata=ProofMetadata(
                reserves_total=witness.reserves_total,
                liabilities_sum=witness.liabilities_sum,
                excess=verdict.excess,
                ratio=verdict.ratio,
                participant_count=participant_count,
            ),
            verification_steps=VERIFICATION_STEPS,
        )
        logger.info("Composed proof for epoch %s with commitment %s", epoch, commitments.master_commitment)
        return proof
