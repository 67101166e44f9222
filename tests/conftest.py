from __future__ import annotations

import importlib
import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from solvency.composer import ProofComposer  # noqa: E402
from solvency.merkle import MerkleCommitter  # noqa: E402
from solvency.models import LiabilityEntry, LiabilitySet, Witness  # noqa: E402

# Fixed clock: 2025-01-01T00:00:00Z
NOW = 1_735_689_600
ETHER = 10**18


class FakeLedger:
    """LedgerReader returning canned balances."""

    def __init__(self, balances: dict[str, int] | None = None, error: Exception | None = None) -> None:
        self.balances = {k.lower(): v for k, v in (balances or {}).items()}
        self.error = error
        self.calls: list[str] = []

    def get_balance(self, account: str) -> int:
        self.calls.append(account)
        if self.error is not None:
            raise self.error
        return self.balances.get(account.lower(), 0)


def make_liabilities(*balances: int) -> LiabilitySet:
    return LiabilitySet(
        entries=tuple(
            LiabilityEntry(address=f"0x{i + 1:040x}", balance=b) for i, b in enumerate(balances)
        )
    )


def make_proof(reserves: int, *balances: int, epoch: str = "20250101-000000", timestamp: int = NOW - 60):
    """Build (merkle metadata, witness, proof) for the given reserves and liabilities."""
    merkle = MerkleCommitter().build(make_liabilities(*balances)).metadata()
    witness = Witness(
        reserves_total=reserves,
        liabilities_sum=merkle.total_liabilities,
        merkle_root=merkle.root,
        timestamp=timestamp,
        is_solvent=reserves >= merkle.total_liabilities,
    )
    proof = ProofComposer().compose(witness, epoch=epoch, participant_count=merkle.leaf_count)
    return merkle, witness, proof


@pytest.fixture()
def clock():
    return lambda: NOW


@pytest.fixture()
def registry_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # Isolated DB and epochs directory per test.
    monkeypatch.setenv("SOLVENCY_REGISTRY_DATABASE_URL", f"sqlite:///{tmp_path / 'registry.db'}")
    monkeypatch.setenv("SOLVENCY_REGISTRY_AUTO_CREATE_SCHEMA", "true")
    monkeypatch.setenv("SOLVENCY_REGISTRY_API_KEY_SALT_ROUNDS", "4")
    monkeypatch.setenv("SOLVENCY_REGISTRY_INVITE_CODE", "")
    monkeypatch.setenv("SOLVENCY_REGISTRY_REQUIRE_SIGNATURES", "false")
    monkeypatch.setenv("SOLVENCY_REGISTRY_EPOCHS_DIR", str(tmp_path / "epochs"))

    import registry.config as config_mod
    import registry.auth as auth_mod
    import registry.webhooks as webhooks_mod
    import registry.routes.publishers as publishers_mod
    import registry.routes.proofs as proofs_mod
    import registry.routes.epochs as epochs_mod
    import registry.routes.webhooks as webhook_routes_mod
    import registry.app as app_mod

    importlib.reload(config_mod)
    importlib.reload(auth_mod)
    importlib.reload(webhooks_mod)
    importlib.reload(publishers_mod)
    importlib.reload(proofs_mod)
    importlib.reload(epochs_mod)
    importlib.reload(webhook_routes_mod)
    importlib.reload(app_mod)

    return app_mod.create_app()


@pytest.fixture()
def auth_header():
    def _auth(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    return _auth
