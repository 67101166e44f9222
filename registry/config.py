from __future__ import annotations

import os
from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


class Settings:
    database_url: str = os.getenv("SOLVENCY_REGISTRY_DATABASE_URL", "sqlite:///./solvency_registry.db")
    auto_create_schema: bool = _get_bool("SOLVENCY_REGISTRY_AUTO_CREATE_SCHEMA", True)

    host: str = os.getenv("SOLVENCY_REGISTRY_HOST", "127.0.0.1")
    port: int = _get_int("SOLVENCY_REGISTRY_PORT", 3100)

    # Publishers
    api_key_salt_rounds: int = _get_int("SOLVENCY_REGISTRY_API_KEY_SALT_ROUNDS", 10)
    invite_code: str = os.getenv("SOLVENCY_REGISTRY_INVITE_CODE", "")
    require_signatures: bool = _get_bool("SOLVENCY_REGISTRY_REQUIRE_SIGNATURES", False)
    signature_max_age_seconds: int = _get_int("SOLVENCY_REGISTRY_SIGNATURE_MAX_AGE_SECONDS", 300)

    # Epoch artifacts served and produced by the /epochs endpoints
    epochs_dir: str = os.getenv("SOLVENCY_REGISTRY_EPOCHS_DIR") or os.getenv("SOLVENCY_EPOCHS_DIR", "./solvency_epochs")

    # Webhooks
    webhook_timeout_seconds: int = _get_int("SOLVENCY_REGISTRY_WEBHOOK_TIMEOUT", 10)
    webhook_max_retries: int = _get_int("SOLVENCY_REGISTRY_WEBHOOK_MAX_RETRIES", 3)


settings = Settings()


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite:"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)

SessionLocal = sessionmaker(
    bind=engine,
    class_=Session,
    expire_on_commit=False,
    autoflush=False,
    autobegin=False,
)


def get_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
