from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from registry.auth import authenticate_publisher
from registry.config import get_session
from registry.models import WebhookConfig
from registry.schemas import WebhookDeleteResponse, WebhookResponse, WebhookSetRequest
from registry.webhooks import ALL_EVENTS

router = APIRouter()


@router.put("/publishers/webhook", response_model=WebhookResponse, tags=["Webhooks"])
def set_webhook(
    req: WebhookSetRequest,
    current: dict = Depends(authenticate_publisher),
    session: Session = Depends(get_session),
) -> WebhookResponse:
    unknown = [e for e in req.events or [] if e not in ALL_EVENTS]
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown events: {', '.join(unknown)}")
    events = req.events if req.events else ALL_EVENTS

    with session.begin():
        existing = session.execute(
            select(WebhookConfig).where(WebhookConfig.publisher_id == current["id"])
        ).scalar_one_or_none()

        if existing is not None:
            existing.url = req.url
            existing.events = events
            existing.active = True
            session.add(existing)
            return WebhookResponse(webhook_url=existing.url, secret=None, events=existing.events, active=True)

        webhook_secret = f"whsec_{secrets.token_hex(24)}"
        cfg = WebhookConfig(
            publisher_id=current["id"],
            url=req.url,
            secret=webhook_secret,
            events=events,
            active=True,
        )
        session.add(cfg)

    return WebhookResponse(webhook_url=cfg.url, secret=webhook_secret, events=cfg.events, active=True)


@router.delete("/publishers/webhook", response_model=WebhookDeleteResponse, tags=["Webhooks"])
def delete_webhook(
    current: dict = Depends(authenticate_publisher),
    session: Session = Depends(get_session),
) -> WebhookDeleteResponse:
    with session.begin():
        existing = session.execute(
            select(WebhookConfig).where(WebhookConfig.publisher_id == current["id"])
        ).scalar_one_or_none()
        if existing is None:
            raise HTTPException(status_code=404, detail="No webhook configured")
        session.delete(existing)
    return WebhookDeleteResponse(status="removed")
