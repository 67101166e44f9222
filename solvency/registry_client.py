from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from solvency.encoding import normalize_hash
from solvency.errors import (
    AlreadyPublishedError,
    InputError,
    PublishFailedError,
    PublishTimeoutError,
    RegistryReadError,
)
from solvency.models import OnChainStatus, PublishedRecord, WriteReceipt


def _join(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def sign_request(api_key: str, method: str, path: str, body: bytes | None = None) -> dict[str, str]:
    """Produce X-Solvency-Signature and X-Solvency-Timestamp headers."""
    timestamp = str(int(time.time()))
    message = f"{timestamp}{method.upper()}{path}".encode("utf-8") + (body or b"")
    sig = hmac.new(api_key.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return {"X-Solvency-Signature": sig, "X-Solvency-Timestamp": timestamp}


class ExistsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    exists: bool


class RemoteVerification(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OnChainStatus
    record: PublishedRecord | None = None


@dataclass
class ApiKeySigner:
    """Authenticates registry writes with a publisher API key."""

    api_key: str
    publisher_id: str = ""
    sign_requests: bool = True

    @property
    def identity(self) -> str:
        return self.publisher_id

    def headers(self, method: str, path: str, body: bytes | None = None) -> dict[str, str]:
        h = {"Authorization": f"Bearer {self.api_key}"}
        if self.sign_requests:
            h.update(sign_request(self.api_key, method, path, body))
        return h


@dataclass
class HttpRegistry:
    """Client for the ``registry`` service's proof endpoints."""

    base_url: str
    timeout_s: float = 10.0
    transport: httpx.BaseTransport | None = None
    default_headers: dict[str, str] = field(default_factory=dict)

    def _client(self, timeout: float | None = None) -> httpx.Client:
        headers = {**self.default_headers, "X-Request-Id": f"req_{uuid.uuid4().hex[:12]}"}
        return httpx.Client(timeout=timeout or self.timeout_s, transport=self.transport, headers=headers)

    def _get(self, path: str) -> httpx.Response:
        try:
            with self._client() as c:
                return c.get(_join(self.base_url, path))
        except httpx.HTTPError as exc:
            raise RegistryReadError(f"GET {path} failed: {exc}") from exc

    @staticmethod
    def _parse(model: type[BaseModel], response: httpx.Response) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise InputError(f"unexpected registry response from {response.request.url}: {exc}") from exc

    def exists(self, key: str) -> bool:
        key = normalize_hash(key)
        r = self._get(f"/v1/proofs/{key}/exists")
        if r.status_code != 200:
            raise RegistryReadError(f"exists({key}) returned HTTP {r.status_code}")
        return self._parse(ExistsResponse, r).exists

    def read(self, key: str) -> PublishedRecord | None:
        key = normalize_hash(key)
        r = self._get(f"/v1/proofs/{key}")
        if r.status_code == 404:
            return None
        if r.status_code != 200:
            raise RegistryReadError(f"read({key}) returned HTTP {r.status_code}")
        return self._parse(PublishedRecord, r)

    def verify_remote(self, key: str, expected_root: str) -> RemoteVerification:
        """Ask the registry to compare its root and set the record's verified flag."""
        key = normalize_hash(key)
        path = f"/v1/proofs/{key}/verify"
        try:
            with self._client() as c:
                r = c.post(_join(self.base_url, path), json={"expected_root": normalize_hash(expected_root)})
        except httpx.HTTPError as exc:
            raise RegistryReadError(f"POST {path} failed: {exc}") from exc
        if r.status_code != 200:
            raise RegistryReadError(f"verify({key}) returned HTTP {r.status_code}")
        return self._parse(RemoteVerification, r)

    def write(
        self,
        record: PublishedRecord,
        signer: ApiKeySigner,
        *,
        timeout: float | None = None,
    ) -> WriteReceipt:
        url = _join(self.base_url, "/v1/proofs")
        path = urlparse(url).path
        body = json.dumps(record.model_dump(mode="json", exclude={"publisher", "verified", "block_number"})).encode(
            "utf-8"
        )
        headers = {**signer.headers("POST", path, body), "Content-Type": "application/json"}
        try:
            with self._client(timeout) as c:
                r = c.post(url, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise PublishTimeoutError(
                None, f"registry did not answer within {timeout or self.timeout_s}s", epoch_key=record.epoch_key
            ) from exc
        except httpx.HTTPError as exc:
            raise PublishFailedError(
                None, f"POST /v1/proofs failed: {exc}", epoch_key=record.epoch_key
            ) from exc

        if r.status_code == 409:
            try:
                detail = r.json().get("detail")
            except ValueError:
                detail = None
            existing = None
            if isinstance(detail, dict):
                try:
                    existing = PublishedRecord.model_validate(detail)
                except ValidationError:
                    existing = None
            raise AlreadyPublishedError(record.epoch_key, existing)
        if r.status_code not in (200, 201):
            raise PublishFailedError(
                None, f"registry returned HTTP {r.status_code}: {r.text}", epoch_key=record.epoch_key
            )
        return self._parse(WriteReceipt, r)
