from __future__ import annotations

import json

import pytest

import solvency.chain as chain_mod
import solvency.cli as cli
from conftest import ETHER, FakeLedger
from solvency.publisher import MemoryRegistry, StaticSigner

CUSTODY = "0x" + "cc" * 20
SESSION = {
    "session_id": "sess-42",
    "participants": ["0x" + "a1" * 20, "0x" + "b2" * 20],
    "allocations": {"0x" + "a1" * 20: str(2 * ETHER), "0x" + "b2" * 20: str(ETHER)},
    "rounds": 4,
}


@pytest.fixture()
def epochs_dir(tmp_path):
    return tmp_path / "epochs"


@pytest.fixture()
def session_file(tmp_path):
    path = tmp_path / "session.json"
    path.write_text(json.dumps(SESSION))
    return path


@pytest.fixture()
def ledger(monkeypatch):
    fake = FakeLedger({CUSTODY: 4 * ETHER})
    monkeypatch.setattr(chain_mod, "connect", lambda rpc_url, timeout_s=30.0: object())
    monkeypatch.setattr(chain_mod, "Web3LedgerReader", lambda w3, expected_chain_id=None: fake)
    return fake


@pytest.fixture()
def registry(monkeypatch):
    reg = MemoryRegistry()
    monkeypatch.setattr(cli, "make_registry", lambda signing=True: (reg, StaticSigner("cli")))
    return reg


def _run(capsys, epochs_dir, *argv):
    code = cli.main(["--epochs-dir", str(epochs_dir), *argv])
    out = capsys.readouterr().out
    return code, (json.loads(out) if out.strip() else None)


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == cli.EXIT_RUNTIME_ERROR
        assert "usage" in capsys.readouterr().out.lower()

    def test_no_epochs(self, capsys, epochs_dir):
        code, _ = _run(capsys, epochs_dir, "build")
        assert code == cli.EXIT_RUNTIME_ERROR

    def test_bad_session_file(self, capsys, epochs_dir, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text('{"session_id": ""}')
        code, _ = _run(capsys, epochs_dir, "export", "--session", str(bad))
        assert code == cli.EXIT_RUNTIME_ERROR

    def test_missing_session_file(self, capsys, epochs_dir, tmp_path):
        code, _ = _run(capsys, epochs_dir, "export", "--session", str(tmp_path / "nope.json"))
        assert code == cli.EXIT_RUNTIME_ERROR

    def test_stage_by_stage(self, capsys, epochs_dir, session_file, ledger, registry):
        code, exported = _run(capsys, epochs_dir, "export", "--session", str(session_file))
        assert code == cli.EXIT_SUCCESS
        epoch = exported["epoch_id"]
        assert exported["participant_count"] == 2

        code, built = _run(capsys, epochs_dir, "build")
        assert code == cli.EXIT_SUCCESS
        assert built["epoch"] == epoch
        assert built["leaf_count"] == 2

        code, scanned = _run(capsys, epochs_dir, "scan", epoch, "--account", CUSTODY)
        assert code == cli.EXIT_SUCCESS
        assert scanned["solvency"]["ratio"] == "133.33%"
        assert ledger.calls == [CUSTODY]

        code, proof = _run(capsys, epochs_dir, "prove", epoch)
        assert code == cli.EXIT_SUCCESS
        assert proof["public_signals"]["merkle_root"] == built["root"]

        code, report = _run(capsys, epochs_dir, "verify", epoch)
        assert code == cli.EXIT_SUCCESS
        assert report["valid"] is True

        code, outcome = _run(capsys, epochs_dir, "publish", epoch)
        assert code == cli.EXIT_SUCCESS
        assert outcome["status"] == "published"

        code, check = _run(capsys, epochs_dir, "verify-onchain", epoch)
        assert code == cli.EXIT_SUCCESS
        assert check["status"] == "verified"

        assert (epochs_dir / epoch / "publication.json").is_file()
        assert (epochs_dir / "publication_history.json").is_file()

    def test_insolvent_scan_exit_code(self, capsys, epochs_dir, session_file, ledger):
        ledger.balances[CUSTODY] = ETHER
        _run(capsys, epochs_dir, "export", "--session", str(session_file))
        _run(capsys, epochs_dir, "build")
        code, scanned = _run(capsys, epochs_dir, "scan", "--account", CUSTODY)
        assert code == cli.EXIT_VERIFICATION_FAILED
        assert scanned["solvency"]["is_solvent"] is False

    def test_run_with_publish(self, capsys, epochs_dir, session_file, ledger, registry):
        _run(capsys, epochs_dir, "export", "--session", str(session_file))
        code, result = _run(capsys, epochs_dir, "run", "--account", CUSTODY, "--publish")
        assert code == cli.EXIT_SUCCESS
        assert result["success"] is True
        assert [s["name"] for s in result["steps"]][-2:] == ["publish", "verify_on_chain"]

    def test_run_failure_exit_code(self, capsys, epochs_dir, session_file, monkeypatch):
        fake = FakeLedger(error=ConnectionError("rpc down"))
        monkeypatch.setattr(chain_mod, "connect", lambda rpc_url, timeout_s=30.0: object())
        monkeypatch.setattr(chain_mod, "Web3LedgerReader", lambda w3, expected_chain_id=None: fake)
        _run(capsys, epochs_dir, "export", "--session", str(session_file))
        code, result = _run(capsys, epochs_dir, "run", "--account", CUSTODY)
        assert code == cli.EXIT_VERIFICATION_FAILED
        assert result["steps"][-1]["name"] == "scan_reserves"
        assert result["steps"][-1]["success"] is False

    def test_publish_without_registry(self, capsys, epochs_dir, session_file, monkeypatch):
        monkeypatch.setattr(cli.settings, "registry_url", "")
        monkeypatch.setattr(cli.settings, "verifier_contract", "")
        _run(capsys, epochs_dir, "export", "--session", str(session_file))
        code, _ = _run(capsys, epochs_dir, "publish")
        assert code == cli.EXIT_RUNTIME_ERROR
