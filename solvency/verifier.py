from __future__ import annotations

import logging
import time
from collections.abc import Callable

from solvency import encoding
from solvency.encoding import format_units
from solvency.errors import IntegrityError
from solvency.models import (
    PROOF_TYPE,
    PROOF_VERSION,
    MerkleMetadata,
    Proof,
    VerificationCheck,
    VerificationReport,
    Witness,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 86400 * 365

CHECK_STRUCTURE = "Proof Structure"
CHECK_MERKLE_ROOT = "Merkle Root"
CHECK_TIMESTAMP = "Timestamp"
CHECK_WITNESS_HASH = "Witness Hash"
CHECK_RESERVES_COMMITMENT = "Reserves Commitment"
CHECK_LIABILITIES_COMMITMENT = "Liabilities Commitment"
CHECK_SOLVENCY = "Solvency Check"
CHECK_SOLVENCY_ASSERTION = "Solvency Assertion"
CHECK_MASTER_COMMITMENT = "Master Commitment"

HASH_CHECKS = (
    CHECK_MERKLE_ROOT,
    CHECK_WITNESS_HASH,
    CHECK_RESERVES_COMMITMENT,
    CHECK_LIABILITIES_COMMITMENT,
    CHECK_SOLVENCY_ASSERTION,
    CHECK_MASTER_COMMITMENT,
)


def _hash_check(name: str, expected: str, actual: str, ok_message: str) -> VerificationCheck:
    passed = expected == actual
    return VerificationCheck(
        name=name,
        passed=passed,
        message=ok_message if passed else f"{name} mismatch - data may be tampered",
        expected=expected,
        actual=actual,
    )


class ProofVerifier:
    """Recomputes every commitment of a proof from its witness.

    All nine checks always run and are all reported, in a fixed order, so a
    failing report shows exactly which link of the chain broke.
    """

    def __init__(
        self,
        *,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def verify(self, proof: Proof, witness: Witness, merkle: MerkleMetadata) -> VerificationReport:
        checks: list[VerificationCheck] = []
        signals = proof.public_signals
        chain = proof.commitments

        structure_ok = proof.version == PROOF_VERSION and proof.type == PROOF_TYPE
        checks.append(
            VerificationCheck(
                name=CHECK_STRUCTURE,
                passed=structure_ok,
                message="Valid proof format"
                if structure_ok
                else f"Invalid proof format: version={proof.version!r}, type={proof.type!r}",
            )
        )

        checks.append(
            _hash_check(CHECK_MERKLE_ROOT, merkle.root, signals.merkle_root, "Merkle root matches metadata")
        )

        now = int(self._clock())
        ts = signals.timestamp
        timestamp_ok = 0 < ts <= now and ts > now - self.max_age_seconds
        checks.append(
            VerificationCheck(
                name=CHECK_TIMESTAMP,
                passed=timestamp_ok,
                message="Timestamp is valid"
                if timestamp_ok
                else f"Timestamp {ts} is invalid (future or older than {self.max_age_seconds}s)",
            )
        )

        witness_digest = encoding.witness_hash(
            witness.reserves_total,
            witness.liabilities_sum,
            witness.merkle_root,
            witness.timestamp,
            witness.is_solvent,
        )
        checks.append(
            _hash_check(CHECK_WITNESS_HASH, witness_digest, chain.witness_hash, "Witness hash verification passed")
        )

        reserves_commit = encoding.reserves_commitment(
            witness.reserves_total, witness.merkle_root, witness.timestamp
        )
        checks.append(
            _hash_check(
                CHECK_RESERVES_COMMITMENT,
                reserves_commit,
                chain.reserves_commitment,
                "Reserves commitment valid",
            )
        )

        liabilities_commit = encoding.liabilities_commitment(
            witness.liabilities_sum, witness.merkle_root, witness.timestamp
        )
        checks.append(
            _hash_check(
                CHECK_LIABILITIES_COMMITMENT,
                liabilities_commit,
                chain.liabilities_commitment,
                "Liabilities commitment valid",
            )
        )

        actually_solvent = witness.reserves_total >= witness.liabilities_sum
        reserves_text = format_units(witness.reserves_total)
        liabilities_text = format_units(witness.liabilities_sum)
        if actually_solvent:
            message = f"SOLVENT: Reserves ({reserves_text}) >= Liabilities ({liabilities_text})"
        else:
            message = f"INSOLVENT: Reserves ({reserves_text}) < Liabilities ({liabilities_text})"
        if actually_solvent != witness.is_solvent:
            message += f"; witness claims is_solvent={witness.is_solvent}"
        checks.append(
            VerificationCheck(
                name=CHECK_SOLVENCY,
                passed=actually_solvent and actually_solvent == witness.is_solvent,
                message=message,
            )
        )

        assertion = encoding.solvency_assertion(reserves_commit, liabilities_commit, witness.is_solvent)
        checks.append(
            _hash_check(
                CHECK_SOLVENCY_ASSERTION,
                assertion,
                chain.solvency_assertion,
                "Solvency assertion valid",
            )
        )

        master = encoding.master_commitment(witness_digest, assertion, witness.merkle_root)
        checks.append(
            _hash_check(
                CHECK_MASTER_COMMITMENT,
                master,
                chain.master_commitment,
                "Master commitment binds all elements correctly",
            )
        )

        report = VerificationReport(checks=tuple(checks))
        if report.valid:
            logger.info("Proof for epoch %s verified: all %d checks passed", proof.epoch, len(checks))
        else:
            logger.warning("Proof for epoch %s failed checks: %s", proof.epoch, ", ".join(report.failed()))
        return report

    def require_valid(self, proof: Proof, witness: Witness, merkle: MerkleMetadata) -> VerificationReport:
        """Like :meth:`verify`, but raise :class:`IntegrityError` on the first broken hash link."""
        report = self.verify(proof, witness, merkle)
        for check in report.checks:
            if not check.passed and check.name in HASH_CHECKS:
                raise IntegrityError(
                    f"{check.name} check failed for epoch {proof.epoch}",
                    expected=check.expected or "",
                    actual=check.actual or "",
                )
        return report
