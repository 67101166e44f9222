from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from registry.auth import authenticate_publisher
from registry.config import SessionLocal
from registry.schemas import (
    ExistsResponse,
    ProofHistoryResponse,
    PublishRequest,
    ReceiptResponse,
    VerifyRequest,
    VerifyResponse,
)
from registry.store import SqlRegistry
from registry.webhooks import PROOF_PUBLISHED, PROOF_VERIFIED, fire_proof_event
from solvency.encoding import normalize_hash
from solvency.errors import AlreadyPublishedError, InputError
from solvency.models import OnChainStatus, PublishedRecord
from solvency.publisher import StaticSigner

logger = logging.getLogger(__name__)

router = APIRouter()


def notify_published(record: PublishedRecord) -> None:
    fire_proof_event(record, PROOF_PUBLISHED)


def get_registry() -> SqlRegistry:
    return SqlRegistry(SessionLocal, on_write=notify_published)


def _epoch_key(value: str) -> str:
    try:
        return normalize_hash(value)
    except InputError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/proofs", response_model=ProofHistoryResponse, tags=["Proofs"])
def list_proofs(
    limit: int = 50,
    offset: int = 0,
    registry: SqlRegistry = Depends(get_registry),
) -> ProofHistoryResponse:
    limit = max(1, min(limit, 500))
    proofs, total = registry.history(limit=limit, offset=max(0, offset))
    return ProofHistoryResponse(proofs=proofs, count=len(proofs), total=total)


@router.get("/proofs/latest", response_model=PublishedRecord, tags=["Proofs"])
def latest_proof(registry: SqlRegistry = Depends(get_registry)) -> PublishedRecord:
    record = registry.latest()
    if record is None:
        raise HTTPException(status_code=404, detail="No proofs published yet")
    return record


@router.get("/proofs/{epoch_key}/exists", response_model=ExistsResponse, tags=["Proofs"])
def proof_exists(epoch_key: str, registry: SqlRegistry = Depends(get_registry)) -> ExistsResponse:
    return ExistsResponse(exists=registry.exists(_epoch_key(epoch_key)))


@router.get("/proofs/{epoch_key}", response_model=PublishedRecord, tags=["Proofs"])
def get_proof(epoch_key: str, registry: SqlRegistry = Depends(get_registry)) -> PublishedRecord:
    record = registry.read(_epoch_key(epoch_key))
    if record is None:
        raise HTTPException(status_code=404, detail="Proof not found")
    return record


@router.post("/proofs", status_code=201, response_model=ReceiptResponse, tags=["Proofs"])
def publish_proof(
    req: PublishRequest,
    current: dict = Depends(authenticate_publisher),
    registry: SqlRegistry = Depends(get_registry),
) -> ReceiptResponse:
    record = PublishedRecord(**req.model_dump())
    try:
        receipt = registry.write(record, StaticSigner(current["name"]))
    except AlreadyPublishedError as exc:
        existing = exc.record
        detail = existing.model_dump(mode="json") if isinstance(existing, PublishedRecord) else "Proof already exists"
        raise HTTPException(status_code=409, detail=detail) from exc

    return ReceiptResponse(**receipt.model_dump())


@router.post("/proofs/{epoch_key}/verify", response_model=VerifyResponse, tags=["Proofs"])
def verify_proof(
    epoch_key: str,
    req: VerifyRequest,
    registry: SqlRegistry = Depends(get_registry),
) -> VerifyResponse:
    key = _epoch_key(epoch_key)
    record = registry.read(key)
    if record is None:
        return VerifyResponse(status=OnChainStatus.NOT_FOUND)
    if record.merkle_root != req.expected_root:
        logger.warning("Root mismatch for %s: stored %s, expected %s", key, record.merkle_root, req.expected_root)
        return VerifyResponse(status=OnChainStatus.MISMATCH, record=record)

    if not record.verified:
        registry.mark_verified(key)
        record = record.model_copy(update={"verified": True})
        fire_proof_event(record, PROOF_VERIFIED)
    return VerifyResponse(status=OnChainStatus.VERIFIED, record=record)
