from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from registry.auth import authenticate_publisher
from registry.config import settings
from registry.schemas import (
    EpochDetailResponse,
    EpochListResponse,
    PipelineRequest,
    PipelineResponse,
    PipelineStep,
)
from registry.routes.proofs import get_registry
from solvency import artifacts
from solvency.artifacts import ExportResult, SessionRecord
from solvency.chain import Web3LedgerReader, connect
from solvency.config import settings as solvency_settings
from solvency.errors import InputError
from solvency.exporter import LiabilityExporter
from solvency.pipeline import ProofPipeline
from solvency.publisher import LedgerPublisher, StaticSigner
from solvency.reserves import LedgerReader
from solvency.store import FileArtifactStore, check_epoch_id

logger = logging.getLogger(__name__)

router = APIRouter()


def get_artifact_store() -> FileArtifactStore:
    return FileArtifactStore(settings.epochs_dir)


def get_ledger_reader(request: Request) -> LedgerReader:
    """The app's ledger reader, or a web3 reader built from the SOLVENCY_* settings."""
    reader = getattr(request.app.state, "ledger_reader", None)
    if reader is not None:
        return reader
    w3 = connect(solvency_settings.rpc_url, timeout_s=solvency_settings.rpc_timeout_seconds)
    reader = Web3LedgerReader(w3, expected_chain_id=solvency_settings.chain_id)
    request.app.state.ledger_reader = reader
    return reader


def _checked_epoch(epoch: str) -> str:
    try:
        return check_epoch_id(epoch)
    except InputError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/epochs/export", status_code=201, response_model=ExportResult, tags=["Epochs"])
def export_epoch(
    session_record: SessionRecord,
    store: FileArtifactStore = Depends(get_artifact_store),
) -> ExportResult:
    try:
        return LiabilityExporter(store).export_session(session_record)
    except InputError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/epochs", response_model=EpochListResponse, tags=["Epochs"])
def list_epochs(store: FileArtifactStore = Depends(get_artifact_store)) -> EpochListResponse:
    return EpochListResponse(epochs=store.list_epochs(), latest=store.latest_epoch())


@router.get("/epochs/{epoch}", response_model=EpochDetailResponse, tags=["Epochs"])
def get_epoch(epoch: str, store: FileArtifactStore = Depends(get_artifact_store)) -> EpochDetailResponse:
    epoch = _checked_epoch(epoch)
    names = store.list_names(epoch)
    if not names:
        raise HTTPException(status_code=404, detail="Epoch not found")
    metadata = store.read_json(epoch, artifacts.EPOCH_METADATA) if artifacts.EPOCH_METADATA in names else None
    return EpochDetailResponse(epoch=epoch, metadata=metadata, artifacts=names)


@router.post("/epochs/{epoch}/pipeline", response_model=PipelineResponse, tags=["Epochs"])
def run_pipeline(
    epoch: str,
    req: PipelineRequest,
    current: dict = Depends(authenticate_publisher),
    store: FileArtifactStore = Depends(get_artifact_store),
    ledger_reader: LedgerReader = Depends(get_ledger_reader),
) -> PipelineResponse:
    epoch = _checked_epoch(epoch)
    if not store.list_names(epoch):
        raise HTTPException(status_code=404, detail="Epoch not found")

    pipeline = ProofPipeline(
        store,
        ledger_reader=ledger_reader,
        custody_account=req.custody_account or solvency_settings.custody_account,
        publisher=LedgerPublisher(get_registry()),
        signer=StaticSigner(current["name"]),
        network=solvency_settings.network,
        chain_id=solvency_settings.chain_id,
    )
    logger.info("Publisher %s running pipeline for epoch %s (publish=%s)", current["name"], epoch, req.publish)
    result = pipeline.run(epoch, publish=req.publish)
    return PipelineResponse(
        epoch=result.epoch,
        success=result.success,
        steps=[PipelineStep(name=s.name, success=s.success, error=s.error, detail=s.detail) for s in result.steps],
    )
