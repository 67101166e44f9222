from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Publisher(Base):
    __tablename__ = "publishers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    api_key_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProofRecord(Base):
    """One published proof. ``sequence`` doubles as the receipt's block number."""

    __tablename__ = "proof_records"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    epoch_key: Mapped[str] = mapped_column(String(66), nullable=False, unique=True, index=True)
    merkle_root: Mapped[str] = mapped_column(String(66), nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_solvent: Mapped[bool] = mapped_column(Boolean, nullable=False)
    master_commitment: Mapped[str] = mapped_column(String(66), nullable=False)
    witness_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    reserves_commitment: Mapped[str] = mapped_column(String(66), nullable=False)
    liabilities_commitment: Mapped[str] = mapped_column(String(66), nullable=False)
    solvency_assertion: Mapped[str] = mapped_column(String(66), nullable=False)
    publisher: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebhookConfig(Base):
    __tablename__ = "webhook_configs"

    publisher_id: Mapped[str] = mapped_column(String(36), ForeignKey("publishers.id"), primary_key=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
