from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from conftest import make_proof
from solvency.encoding import epoch_key
from solvency.errors import (
    AlreadyPublishedError,
    InputError,
    PublishFailedError,
    PublishTimeoutError,
    RegistryReadError,
)
from solvency.models import OnChainStatus, PublishedRecord, PublishStatus
from solvency.publisher import LedgerPublisher
from solvency.registry_client import ApiKeySigner, HttpRegistry, sign_request

BASE = "http://registry.test"
API_KEY = "spk_" + "ab" * 16
EPOCH = "20250101-000000"


def _record() -> PublishedRecord:
    _, _, proof = make_proof(4, 1, epoch=EPOCH)
    return PublishedRecord.from_proof(epoch_key(EPOCH), proof)


def _registry(handler) -> HttpRegistry:
    return HttpRegistry(base_url=BASE + "/", transport=httpx.MockTransport(handler))


class TestSignRequest:
    def test_signature_covers_timestamp_method_path_body(self):
        headers = sign_request(API_KEY, "post", "/v1/proofs", b'{"a":1}')
        ts = headers["X-Solvency-Timestamp"]
        expected = hmac.new(API_KEY.encode(), f"{ts}POST/v1/proofs".encode() + b'{"a":1}', hashlib.sha256).hexdigest()
        assert headers["X-Solvency-Signature"] == expected

    def test_unsigned_signer_sends_only_bearer(self):
        headers = ApiKeySigner(API_KEY, sign_requests=False).headers("POST", "/v1/proofs")
        assert headers == {"Authorization": f"Bearer {API_KEY}"}


class TestReads:
    def test_read_found(self):
        record = _record()

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/v1/proofs/{record.epoch_key}"
            assert request.headers["X-Request-Id"].startswith("req_")
            return httpx.Response(200, json=record.model_dump(mode="json"))

        assert _registry(handler).read(record.epoch_key) == record

    def test_read_missing_is_none(self):
        assert _registry(lambda r: httpx.Response(404, json={"detail": "Proof not found"})).read(epoch_key("x")) is None

    def test_read_server_error(self):
        with pytest.raises(RegistryReadError):
            _registry(lambda r: httpx.Response(500)).read(epoch_key("x"))

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RegistryReadError):
            _registry(handler).exists(epoch_key("x"))

    def test_exists(self):
        assert _registry(lambda r: httpx.Response(200, json={"exists": True})).exists(epoch_key("x")) is True

    def test_unexpected_payload(self):
        with pytest.raises(InputError):
            _registry(lambda r: httpx.Response(200, json={"nope": 1})).exists(epoch_key("x"))

    def test_verify_remote(self):
        record = _record()

        def handler(request):
            assert json.loads(request.content) == {"expected_root": record.merkle_root}
            return httpx.Response(200, json={"status": "verified", "record": record.model_dump(mode="json")})

        result = _registry(handler).verify_remote(record.epoch_key, record.merkle_root)
        assert result.status is OnChainStatus.VERIFIED


class TestWrite:
    def test_posts_signed_body(self):
        record = _record()
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["headers"] = request.headers
            return httpx.Response(201, json={"tx_hash": "0x" + "ee" * 32, "block_number": 7, "publisher": "custodian"})

        receipt = _registry(handler).write(record, ApiKeySigner(API_KEY))
        assert receipt.block_number == 7
        assert "publisher" not in seen["body"]
        assert seen["body"]["epoch_key"] == record.epoch_key
        assert seen["headers"]["Authorization"] == f"Bearer {API_KEY}"
        assert "X-Solvency-Signature" in seen["headers"]

    def test_conflict_carries_existing_record(self):
        record = _record()
        existing = record.model_copy(update={"publisher": "other", "block_number": 3})

        def handler(request):
            return httpx.Response(409, json={"detail": existing.model_dump(mode="json")})

        with pytest.raises(AlreadyPublishedError) as exc_info:
            _registry(handler).write(record, ApiKeySigner(API_KEY))
        assert exc_info.value.record.publisher == "other"

    def test_conflict_through_publisher_is_noop(self):
        record = _record()
        _, _, proof = make_proof(4, 1, epoch=EPOCH)

        def handler(request):
            if request.method == "GET":
                return httpx.Response(404)
            return httpx.Response(409, json={"detail": record.model_dump(mode="json")})

        outcome = LedgerPublisher(_registry(handler)).publish(EPOCH, proof, ApiKeySigner(API_KEY))
        assert outcome.status is PublishStatus.ALREADY_PUBLISHED

    def test_server_error(self):
        with pytest.raises(PublishFailedError):
            _registry(lambda r: httpx.Response(503, text="down")).write(_record(), ApiKeySigner(API_KEY))

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(PublishTimeoutError):
            _registry(handler).write(_record(), ApiKeySigner(API_KEY), timeout=1)
