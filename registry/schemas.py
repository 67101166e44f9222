from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from solvency.models import Hash32, OnChainStatus, PublishedRecord

# --- Publishers ---


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    invite_code: str | None = None


class PublisherInfo(BaseModel):
    id: str
    name: str
    status: str = "active"
    created_at: datetime | None = None


class RegisterResponse(BaseModel):
    message: str = "Publisher registered. Save your API key - it will not be shown again."
    publisher: PublisherInfo
    api_key: str


# --- Proofs ---


class PublishRequest(BaseModel):
    epoch_key: Hash32
    merkle_root: Hash32
    timestamp: int = Field(..., ge=0, lt=2**63)
    is_solvent: bool
    master_commitment: Hash32
    witness_hash: Hash32
    reserves_commitment: Hash32
    liabilities_commitment: Hash32
    solvency_assertion: Hash32


class ReceiptResponse(BaseModel):
    tx_hash: str
    block_number: int
    publisher: str = ""


class ExistsResponse(BaseModel):
    exists: bool


class ProofHistoryResponse(BaseModel):
    proofs: list[PublishedRecord]
    count: int
    total: int


class VerifyRequest(BaseModel):
    expected_root: Hash32


class VerifyResponse(BaseModel):
    status: OnChainStatus
    record: PublishedRecord | None = None


# --- Epochs ---


class EpochListResponse(BaseModel):
    epochs: list[str]
    latest: str | None = None


class EpochDetailResponse(BaseModel):
    epoch: str
    metadata: dict | None = None
    artifacts: list[str]


class PipelineRequest(BaseModel):
    publish: bool = False
    custody_account: str | None = None


class PipelineStep(BaseModel):
    name: str
    success: bool
    error: str | None = None
    detail: dict = Field(default_factory=dict)


class PipelineResponse(BaseModel):
    epoch: str
    success: bool
    steps: list[PipelineStep]


# --- Webhooks ---


class WebhookSetRequest(BaseModel):
    url: str
    events: list[str] | None = None


class WebhookResponse(BaseModel):
    webhook_url: str
    secret: str | None = None
    events: list[str]
    active: bool


class WebhookDeleteResponse(BaseModel):
    status: str = "removed"


class WebhookEventPayload(BaseModel):
    event: str
    timestamp: datetime
    data: dict


# --- Health ---


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "solvency-registry"
    version: str = "1.0.0"
