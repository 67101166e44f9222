from __future__ import annotations

import secrets

import bcrypt
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from registry.auth import API_KEY_PREFIX
from registry.config import get_session, settings
from registry.models import Publisher
from registry.schemas import PublisherInfo, RegisterRequest, RegisterResponse

router = APIRouter()


@router.post("/publishers/register", status_code=201, response_model=RegisterResponse, tags=["Publishers"])
def register(req: RegisterRequest, session: Session = Depends(get_session)) -> RegisterResponse:
    if settings.invite_code and req.invite_code != settings.invite_code:
        raise HTTPException(status_code=403, detail="Invalid or missing invite code")

    api_key = f"{API_KEY_PREFIX}{secrets.token_hex(16)}"
    api_key_hash = bcrypt.hashpw(
        api_key.encode("utf-8"),
        bcrypt.gensalt(rounds=settings.api_key_salt_rounds),
    ).decode("utf-8")

    with session.begin():
        existing = session.execute(select(Publisher.id).where(Publisher.name == req.name)).scalar_one_or_none()
        if existing is not None:
            raise HTTPException(status_code=409, detail="A publisher with this name already exists")
        publisher = Publisher(name=req.name, api_key_hash=api_key_hash)
        session.add(publisher)
        session.flush()

    return RegisterResponse(
        publisher=PublisherInfo(
            id=publisher.id,
            name=publisher.name,
            status=publisher.status,
            created_at=publisher.created_at,
        ),
        api_key=api_key,
    )
