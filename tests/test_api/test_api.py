"""
HTTP-level tests: routing, headers, status codes and the error envelope.
"""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from docledger.config import settings
from docledger.dependencies import get_context, get_orchestrator
from docledger.engines.stub_engine import StubCapability
from docledger.main import app
from docledger.models.database import Base
from docledger.pipeline.orchestrator import ExtractionOrchestrator
from docledger.services.context import ServiceContext
from docledger.storage.artifact_store import LocalArtifactStore

from conftest import COMPANY, TENANT, InlineDispatcher, make_pdf, sample_proposal

BASE = "/api/v1/processing-documents"
HEADERS = {"X-Actor-Id": "user-1", "X-Tenant-Id": TENANT}


async def _create_schema(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def client(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    asyncio.run(_create_schema(engine))
    ctx = ServiceContext(
        session_factory=async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
        storage=LocalArtifactStore(str(tmp_path / "store")),
    )
    dispatcher = InlineDispatcher()
    orchestrator = ExtractionOrchestrator(ctx, StubCapability(sample_proposal()), dispatcher)
    dispatcher.orchestrator = orchestrator

    app.dependency_overrides[get_context] = lambda: ctx
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def _upload(client, content=None) -> dict:
    response = client.post(
        BASE,
        headers=HEADERS,
        files={"file": ("bundle.pdf", content or make_pdf(3), "application/pdf")},
        data={"tenant_id": TENANT, "company_id": COMPANY},
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"


class TestAuthHeaders:

    def test_missing_actor(self, client):
        response = client.get(BASE, params={"tenant_id": TENANT})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"

    def test_api_key_enforced_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "secret")

        assert client.get(BASE, params={"tenant_id": TENANT}, headers=HEADERS).status_code == 401
        ok = client.get(BASE, params={"tenant_id": TENANT}, headers={**HEADERS, "X-API-Key": "secret"})
        assert ok.status_code == 200

    def test_other_tenant_forbidden(self, client):
        doc = _upload(client)
        response = client.get(f"{BASE}/{doc['id']}", headers={"X-Actor-Id": "u9", "X-Tenant-Id": "tenant-9"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"


class TestDocuments:

    def test_upload_and_fetch(self, client):
        doc = _upload(client)
        assert doc["pipeline_status"] == "UPLOADED"
        assert doc["page_count"] == 3

        fetched = client.get(f"{BASE}/{doc['id']}", headers=HEADERS).json()
        assert fetched["id"] == doc["id"]

        listed = client.get(BASE, params={"tenant_id": TENANT}, headers=HEADERS).json()
        assert listed["total"] == 1

    def test_unsupported_upload(self, client):
        response = client.post(
            BASE,
            headers=HEADERS,
            files={"file": ("notes.txt", b"hello", "text/plain")},
            data={"tenant_id": TENANT, "company_id": COMPANY},
        )
        assert response.status_code == 415
        assert response.json()["error"]["code"] == "INVALID_TYPE"

    def test_not_found_envelope(self, client):
        response = client.get(f"{BASE}/{uuid.uuid4()}", headers=HEADERS)
        assert response.status_code == 404
        body = response.json()
        assert set(body["error"]) == {"code", "message", "details"}
        assert body["error"]["code"] == "RESOURCE_NOT_FOUND"

    def test_malformed_id(self, client):
        response = client.get(f"{BASE}/not-a-uuid", headers=HEADERS)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_reorder_and_delete_pages(self, client):
        doc = _upload(client)
        reordered = client.post(f"{BASE}/{doc['id']}/pages/reorder", headers=HEADERS, json={"new_order": [2, 3, 1]})
        assert reordered.status_code == 200
        assert reordered.json()["page_mapping"] == {"1": 2, "2": 3, "3": 1}

        deleted = client.post(f"{BASE}/{doc['id']}/pages/delete", headers=HEADERS, json={"page_numbers": [1]})
        assert deleted.status_code == 200
        assert deleted.json()["new_total_pages"] == 2

        everything = client.post(f"{BASE}/{doc['id']}/pages/delete", headers=HEADERS, json={"page_numbers": [1, 2]})
        assert everything.status_code == 400
        assert everything.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_split(self, client):
        doc = _upload(client)
        response = client.post(
            f"{BASE}/{doc['id']}/split",
            headers=HEADERS,
            json={"ranges": [{"page_from": 1, "page_to": 2}, {"page_from": 3, "page_to": 3}]},
        )
        assert response.status_code == 200
        assert len(response.json()["children"]) == 2

        links = client.get(f"{BASE}/{doc['id']}/links", headers=HEADERS).json()
        assert len(links["outgoing"]) == 2

    def test_append(self, client):
        doc = _upload(client)
        response = client.post(
            f"{BASE}/{doc['id']}/pages/append",
            headers=HEADERS,
            files=[("files", ("more.pdf", make_pdf(2), "application/pdf"))],
        )
        assert response.status_code == 200
        assert response.json()["new_total_pages"] == 5

    def test_events(self, client):
        doc = _upload(client)
        events = client.get(f"{BASE}/{doc['id']}/events", headers=HEADERS).json()
        assert [e["to_state"] for e in events] == ["UPLOADED"]


class TestIfMatch:

    def _rotate(self, client, doc_id, if_match=None, rotation=90):
        headers = dict(HEADERS)
        if if_match is not None:
            headers["If-Match"] = if_match
        return client.patch(f"{BASE}/{doc_id}/pages/1", headers=headers, json={"rotation_deg": rotation})

    def test_quoted_current_version(self, client):
        doc = _upload(client)
        response = self._rotate(client, doc["id"], '"0"')
        assert response.status_code == 200
        assert response.json()["lock_version"] == 1

    def test_stale_version(self, client):
        doc = _upload(client)
        self._rotate(client, doc["id"])
        response = self._rotate(client, doc["id"], "0")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "CONCURRENT_MODIFICATION"
        assert error["details"]["current_version"] == 1

    def test_garbage_header(self, client):
        doc = _upload(client)
        response = self._rotate(client, doc["id"], "abc")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_bad_body(self, client):
        doc = _upload(client)
        response = self._rotate(client, doc["id"], rotation="sideways")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_bad_angle(self, client):
        doc = _upload(client)
        assert self._rotate(client, doc["id"], rotation=45).status_code == 400


class TestExtractionAndApproval:

    def test_extract_review_approve(self, client):
        doc = _upload(client)

        job = client.post(f"{BASE}/{doc['id']}/extract", headers=HEADERS)
        assert job.status_code == 202
        assert job.json()["pipeline_status"] == "QUEUED"
        assert job.json()["job_id"].startswith("job_")

        revisions = client.get(f"{BASE}/{doc['id']}/revisions", headers=HEADERS).json()
        assert len(revisions) == 1
        revision = revisions[0]
        assert revision["status"] == "DRAFT"

        validation = client.post(f"{BASE}/{doc['id']}/revisions/{revision['id']}/validate", headers=HEADERS)
        assert validation.json()["status"] == "VALID"

        current = client.get(f"{BASE}/{doc['id']}", headers=HEADERS).json()
        approved = client.post(
            f"{BASE}/{doc['id']}/revisions/{revision['id']}/approve",
            headers={**HEADERS, "If-Match": str(current["lock_version"]), "Idempotency-Key": "approve-1"},
        )
        assert approved.status_code == 200, approved.text
        assert approved.json()["revision"]["status"] == "APPROVED"
        assert approved.json()["current_revision_id"] == revision["id"]

        replay = client.post(
            f"{BASE}/{doc['id']}/revisions/{revision['id']}/approve",
            headers={**HEADERS, "Idempotency-Key": "approve-1"},
        )
        assert replay.json() == approved.json()

    def test_extract_twice_while_queued_is_conflict(self, client):
        doc = _upload(client)
        client.post(f"{BASE}/{doc['id']}/status", headers=HEADERS, json={"to_status": "QUEUED"})

        response = client.post(f"{BASE}/{doc['id']}/extract", headers=HEADERS)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE"


class TestReferenceData:

    def test_system_rate_requires_service_actor(self, client):
        body = {"source_currency": "USD", "target_currency": "SGD", "rate": "1.35", "rate_date": "2024-03-15"}

        denied = client.post("/api/v1/exchange-rates", headers=HEADERS, json=body)
        assert denied.status_code == 403

        created = client.post(
            "/api/v1/exchange-rates", headers={"X-Actor-Id": "rates-bot", "X-Service": "true"}, json=body
        )
        assert created.status_code == 201
        assert created.json()["rate_type"] == "MANUAL_RATE"

    def test_tenant_override_rate(self, client):
        body = {
            "source_currency": "usd", "target_currency": "sgd", "rate": "1.40",
            "rate_date": "2024-03-15", "tenant_id": TENANT, "reason": "Bank quote",
        }
        created = client.post("/api/v1/exchange-rates", headers=HEADERS, json=body)
        assert created.status_code == 201
        assert created.json()["source_currency"] == "USD"
        assert created.json()["is_manual_override"] is True
