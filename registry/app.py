from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI

from registry.config import engine, settings
from registry.middleware import RequestIdMiddleware
from registry.models import Base
from registry.routes import epochs, proofs, publishers, webhooks
from registry.schemas import HealthResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    logger.info("Solvency registry ready (epochs in %s)", settings.epochs_dir)
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="Solvency Proof Registry",
        version="1.0.0",
        description=(
            "Write-once registry of proof-of-solvency commitments, keyed by keccak256(epoch id). "
            "Also exports epochs and runs the proof pipeline against the configured ledger."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "Health", "description": "Service health check"},
            {"name": "Publishers", "description": "Publisher registration"},
            {"name": "Proofs", "description": "Publish, read and verify proof records"},
            {"name": "Epochs", "description": "Liability export and the proof pipeline"},
            {"name": "Webhooks", "description": "proof.published / proof.verified subscriptions"},
        ],
    )

    app.add_middleware(RequestIdMiddleware)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health() -> HealthResponse:
        return HealthResponse()

    api_router = APIRouter()
    api_router.include_router(publishers.router)
    api_router.include_router(proofs.router)
    api_router.include_router(epochs.router)
    api_router.include_router(webhooks.router)

    app.include_router(api_router, prefix="/v1")
    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()
