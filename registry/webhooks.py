from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from threading import Thread
from time import sleep

import httpx
from sqlalchemy import select

from registry.config import SessionLocal, settings
from registry.models import WebhookConfig
from solvency.models import PublishedRecord

logger = logging.getLogger(__name__)

PROOF_PUBLISHED = "proof.published"
PROOF_VERIFIED = "proof.verified"

ALL_EVENTS = [PROOF_PUBLISHED, PROOF_VERIFIED]

RETRY_BACKOFF = [5, 25, 125]


def _sign_payload(secret: str, body: bytes) -> str:
    sig = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


def _deliver(url: str, secret: str, event: str, payload: dict) -> None:
    body = json.dumps(payload).encode("utf-8")
    signature = _sign_payload(secret, body)
    delivery_id = f"evt_{uuid.uuid4().hex[:12]}"
    headers = {
        "Content-Type": "application/json",
        "X-Solvency-Signature": signature,
        "X-Solvency-Event": event,
        "X-Solvency-Delivery": delivery_id,
    }

    retries = settings.webhook_max_retries
    for attempt in range(1 + retries):
        try:
            resp = httpx.post(url, content=body, headers=headers, timeout=settings.webhook_timeout_seconds)
            if 200 <= resp.status_code < 300:
                return
            logger.warning("Webhook delivery to %s returned %s (attempt %d)", url, resp.status_code, attempt + 1)
        except httpx.HTTPError:
            logger.warning("Webhook delivery to %s failed (attempt %d)", url, attempt + 1, exc_info=True)
        if attempt < retries:
            backoff = RETRY_BACKOFF[attempt] if attempt < len(RETRY_BACKOFF) else RETRY_BACKOFF[-1]
            sleep(backoff)


def build_proof_payload(record: PublishedRecord, event: str) -> dict:
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": {
            "epoch_key": record.epoch_key,
            "merkle_root": record.merkle_root,
            "is_solvent": record.is_solvent,
            "publisher": record.publisher,
            "timestamp": record.timestamp,
            "block_number": record.block_number,
            "verified": record.verified,
        },
    }


def fire_proof_event(record: PublishedRecord, event: str) -> int:
    """Deliver ``event`` to every active subscription. Returns the number of deliveries started."""
    db = SessionLocal()
    try:
        with db.begin():
            configs = db.execute(select(WebhookConfig).where(WebhookConfig.active.is_(True))).scalars().all()
    finally:
        db.close()

    payload = build_proof_payload(record, event)
    started = 0
    for cfg in configs:
        if cfg.events and event not in cfg.events:
            continue
        thread = Thread(target=_deliver, args=(cfg.url, cfg.secret, event, payload), daemon=True)
        thread.start()
        started += 1
    return started
