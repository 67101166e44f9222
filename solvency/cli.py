"""Command-line entry point.

Usage:
    python -m solvency export --session session.json
    python -m solvency build [EPOCH]
    python -m solvency scan [EPOCH] [--account ADDRESS]
    python -m solvency prove [EPOCH]
    python -m solvency verify [EPOCH]
    python -m solvency publish [EPOCH]
    python -m solvency verify-onchain [EPOCH]
    python -m solvency run [EPOCH] [--publish]

EPOCH defaults to the latest epoch in the epochs directory. Ledger and
registry endpoints come from the SOLVENCY_* environment variables (see
``solvency.config``).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError

from solvency.artifacts import SessionRecord
from solvency.config import settings
from solvency.errors import InputError, SolvencyError
from solvency.exporter import LiabilityExporter
from solvency.merkle import MerkleCommitter
from solvency.pipeline import ProofPipeline
from solvency.publisher import LedgerPublisher, Registry, Signer
from solvency.store import FileArtifactStore
from solvency.verifier import ProofVerifier

logger = logging.getLogger("solvency.cli")

EXIT_SUCCESS = 0
EXIT_RUNTIME_ERROR = 1
EXIT_VERIFICATION_FAILED = 2


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="solvency",
        description="Build, verify and publish proof-of-solvency epochs.",
    )
    parser.add_argument("--epochs-dir", type=Path, default=None, help="Epoch artifact directory")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: SOLVENCY_LOG_LEVEL or INFO)",
    )
    sub = parser.add_subparsers(dest="command")

    export = sub.add_parser("export", help="Export a closed session's allocations as a new epoch")
    export.add_argument("--session", type=Path, required=True, help="Session JSON file")

    for name, help_text in (
        ("build", "Build the liabilities Merkle tree and inclusion proofs"),
        ("scan", "Scan custody reserves against the epoch's liabilities"),
        ("prove", "Compose the solvency proof"),
        ("verify", "Verify the proof locally"),
        ("publish", "Publish the proof to the registry"),
        ("verify-onchain", "Check the registry's root against the local Merkle root"),
        ("run", "Run every stage in order"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("epoch", nargs="?", default=None, help="Epoch id (default: latest)")
        if name in ("scan", "run"):
            p.add_argument("--account", default=None, help="Custody account (default: SOLVENCY_CUSTODY_ACCOUNT)")
        if name == "run":
            p.add_argument("--publish", action="store_true", help="Publish after a passing verification")
    return parser


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def make_registry(*, signing: bool = True) -> tuple[Registry, Signer | None]:
    if settings.registry_url:
        from solvency.registry_client import ApiKeySigner, HttpRegistry

        return HttpRegistry(settings.registry_url), ApiKeySigner(settings.registry_api_key)
    if settings.verifier_contract and (settings.publisher_private_key or not signing):
        from solvency.chain import AccountSigner, Web3Registry, connect

        w3 = connect(settings.rpc_url, timeout_s=settings.rpc_timeout_seconds)
        signer = AccountSigner.from_key(settings.publisher_private_key) if settings.publisher_private_key else None
        return Web3Registry(w3, settings.verifier_contract, chain_id=settings.chain_id), signer
    raise InputError(
        "no registry configured: set SOLVENCY_REGISTRY_URL, or SOLVENCY_VERIFIER_CONTRACT "
        "and SOLVENCY_PUBLISHER_PRIVATE_KEY"
    )


def make_pipeline(
    store: FileArtifactStore,
    *,
    ledger: bool = False,
    registry: bool = False,
    signing: bool = True,
    account: str | None = None,
) -> ProofPipeline:
    kwargs: dict[str, Any] = {}
    if ledger:
        from solvency.chain import Web3LedgerReader, connect

        w3 = connect(settings.rpc_url, timeout_s=settings.rpc_timeout_seconds)
        kwargs["ledger_reader"] = Web3LedgerReader(w3, expected_chain_id=settings.chain_id)
        kwargs["custody_account"] = account or settings.custody_account
    if registry:
        reg, signer = make_registry(signing=signing)
        kwargs["publisher"] = LedgerPublisher(reg)
        kwargs["signer"] = signer
    return ProofPipeline(
        store,
        committer=MerkleCommitter(sort_leaves=settings.sort_leaves),
        verifier=ProofVerifier(max_age_seconds=settings.max_proof_age_seconds),
        network=settings.network,
        chain_id=settings.chain_id,
        publish_timeout=settings.publish_timeout_seconds,
        **kwargs,
    )


def _resolve_epoch(store: FileArtifactStore, epoch: str | None) -> str:
    if epoch:
        return epoch
    latest = store.latest_epoch()
    if latest is None:
        raise InputError(f"no epochs found in {store.base_dir}")
    logger.info("Using latest epoch %s", latest)
    return latest


def dispatch(args: argparse.Namespace, store: FileArtifactStore) -> int:
    if args.command == "export":
        session = SessionRecord.model_validate_json(args.session.read_text(encoding="utf-8"))
        result = LiabilityExporter(store).export_session(session)
        _emit(result.model_dump(mode="json"))
        return EXIT_SUCCESS

    epoch = _resolve_epoch(store, args.epoch)
    account = getattr(args, "account", None)

    if args.command == "build":
        metadata = make_pipeline(store).build_merkle(epoch)
        _emit({"epoch": epoch, "root": metadata.root, "leaf_count": metadata.leaf_count})
        return EXIT_SUCCESS

    if args.command == "scan":
        report = make_pipeline(store, ledger=True, account=account).scan_reserves(epoch)
        _emit(report.model_dump(mode="json"))
        return EXIT_SUCCESS if report.solvency.is_solvent else EXIT_VERIFICATION_FAILED

    if args.command == "prove":
        proof = make_pipeline(store).generate_proof(epoch)
        _emit(proof.model_dump(mode="json"))
        return EXIT_SUCCESS

    if args.command == "verify":
        report = make_pipeline(store).verify_proof(epoch)
        _emit(report.model_dump(mode="json"))
        return EXIT_SUCCESS if report.valid else EXIT_VERIFICATION_FAILED

    if args.command == "publish":
        outcome = make_pipeline(store, registry=True).publish(epoch)
        _emit(outcome.model_dump(mode="json"))
        return EXIT_SUCCESS

    if args.command == "verify-onchain":
        check = make_pipeline(store, registry=True, signing=False).verify_on_chain(epoch)
        _emit(check.model_dump(mode="json"))
        return EXIT_SUCCESS if check.verified else EXIT_VERIFICATION_FAILED

    if args.command == "run":
        pipeline = make_pipeline(store, ledger=True, registry=args.publish, account=account)
        result = pipeline.run(epoch, publish=args.publish)
        _emit(
            {
                "epoch": result.epoch,
                "success": result.success,
                "steps": [
                    {"name": s.name, "success": s.success, "error": s.error, **s.detail} for s in result.steps
                ],
            }
        )
        return EXIT_SUCCESS if result.success else EXIT_VERIFICATION_FAILED

    raise InputError(f"unknown command {args.command!r}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_RUNTIME_ERROR

    setup_logging(args.log_level or settings.log_level)
    store = FileArtifactStore(args.epochs_dir or settings.epochs_dir)
    try:
        return dispatch(args, store)
    except SolvencyError as exc:
        logger.error("%s", exc)
        return EXIT_RUNTIME_ERROR
    except ValidationError as exc:
        logger.error("Invalid input: %s", exc)
        return EXIT_RUNTIME_ERROR
    except OSError as exc:
        logger.error("I/O error: %s", exc)
        return EXIT_RUNTIME_ERROR
