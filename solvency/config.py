from __future__ import annotations

import os


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


class Settings:
    epochs_dir: str = os.getenv("SOLVENCY_EPOCHS_DIR", "./solvency_epochs")

    # Ledger (Avalanche Fuji by default)
    rpc_url: str = os.getenv("SOLVENCY_RPC_URL", "https://api.avax-test.network/ext/bc/C/rpc")
    chain_id: int = _get_int("SOLVENCY_CHAIN_ID", 43113)
    network: str = os.getenv("SOLVENCY_NETWORK", "Avalanche Fuji Testnet")
    custody_account: str = os.getenv("SOLVENCY_CUSTODY_ACCOUNT", "")
    rpc_timeout_seconds: float = _get_float("SOLVENCY_RPC_TIMEOUT_SECONDS", 30.0)

    # Registry
    verifier_contract: str = os.getenv("SOLVENCY_VERIFIER_CONTRACT", "")
    publisher_private_key: str = os.getenv("SOLVENCY_PUBLISHER_PRIVATE_KEY", "")
    registry_url: str = os.getenv("SOLVENCY_REGISTRY_URL", "")
    registry_api_key: str = os.getenv("SOLVENCY_REGISTRY_API_KEY", "")
    publish_timeout_seconds: float = _get_float("SOLVENCY_PUBLISH_TIMEOUT_SECONDS", 120.0)

    # Proofs
    max_proof_age_seconds: int = _get_int("SOLVENCY_MAX_PROOF_AGE_SECONDS", 31_536_000)
    sort_leaves: bool = _get_bool("SOLVENCY_SORT_LEAVES", True)

    log_level: str = os.getenv("SOLVENCY_LOG_LEVEL", "INFO")


settings = Settings()
