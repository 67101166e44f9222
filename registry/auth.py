from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone

import bcrypt
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from registry.config import get_session, settings
from registry.models import Publisher

API_KEY_PREFIX = "spk_"


def _check_api_key(api_key: str, api_key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(api_key.encode("utf-8"), api_key_hash.encode("utf-8"))
    except ValueError:
        return False


def _verify_signature(
    api_key: str,
    method: str,
    path: str,
    body: bytes,
    signature: str,
    timestamp: str,
) -> bool:
    """Verify HMAC-SHA256 signature: sign(timestamp + method + path + body)."""
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False

    now_ts = int(datetime.now(timezone.utc).timestamp())
    if abs(now_ts - ts) > settings.signature_max_age_seconds:
        return False

    message = f"{timestamp}{method}{path}".encode("utf-8") + body
    expected = hmac.new(api_key.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


async def authenticate_publisher(
    request: Request,
    authorization: str | None = Header(default=None),
    x_solvency_signature: str | None = Header(default=None),
    x_solvency_timestamp: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail=f"Missing or invalid Authorization header. Use: Bearer {API_KEY_PREFIX}<your_api_key>",
        )
    api_key = authorization.split(" ", 1)[1].strip()
    if not api_key.startswith(API_KEY_PREFIX):
        raise HTTPException(status_code=401, detail="Invalid API key format")

    has_signature = x_solvency_signature is not None and x_solvency_timestamp is not None
    if settings.require_signatures and not has_signature:
        raise HTTPException(
            status_code=401,
            detail="Request signature required. Provide X-Solvency-Signature and X-Solvency-Timestamp headers.",
        )

    if has_signature:
        body = await request.body()
        if not _verify_signature(
            api_key,
            request.method,
            request.url.path,
            body,
            x_solvency_signature,  # type: ignore[arg-type]
            x_solvency_timestamp,  # type: ignore[arg-type]
        ):
            raise HTTPException(status_code=401, detail="Invalid request signature")

    with session.begin():
        publishers = session.execute(select(Publisher).where(Publisher.status == "active")).scalars().all()
        for pub in publishers:
            if _check_api_key(api_key, pub.api_key_hash):
                return {"id": pub.id, "name": pub.name, "status": pub.status}

    raise HTTPException(status_code=401, detail="Invalid API key")
