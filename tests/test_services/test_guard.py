"""
Tests for the optimistic-concurrency and idempotency guard.
"""

import uuid

import pytest

from docledger.config import settings
from docledger.errors import (
    ConcurrentModificationError,
    InvalidStateError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ValidationError,
)
from docledger.schemas.documents import PageRange
from docledger.services.guard import as_uuid, claim_next_version, load_document

SPLIT_RANGES = [PageRange(page_from=1, page_to=1), PageRange(page_from=2, page_to=3)]


class TestAsUuid:

    def test_accepts_strings_and_uuids(self):
        value = uuid.uuid4()
        assert as_uuid(value) is value
        assert as_uuid(str(value)) == value

    def test_rejects_garbage(self):
        with pytest.raises(ValidationError):
            as_uuid("not-a-uuid")


class TestExpectedVersion:

    async def test_matching_version_bumps(self, register, documents, actor):
        doc = await register()
        result = await documents.update_page_rotation(
            doc.id, actor=actor, expected_version=0, page_number=1, rotation_deg=90
        )
        assert result.lock_version == 1

    async def test_stale_version_rejected(self, register, documents, actor):
        doc = await register()
        await documents.update_page_rotation(doc.id, actor=actor, page_number=1, rotation_deg=90)

        with pytest.raises(ConcurrentModificationError) as exc:
            await documents.update_page_rotation(
                doc.id, actor=actor, expected_version=0, page_number=2, rotation_deg=180
            )
        assert exc.value.details == {"expected_version": 0, "current_version": 1}

        pages = await documents.list_pages(doc.id, actor=actor)
        assert pages[1].rotation_deg == 0

    async def test_failed_operation_leaves_version(self, register, documents, actor):
        doc = await register()
        with pytest.raises(ValidationError):
            await documents.update_page_rotation(doc.id, actor=actor, page_number=1, rotation_deg=45)

        assert (await documents.get_document(doc.id, actor=actor)).lock_version == 0

    async def test_concurrent_claim_loses(self, ctx, register):
        doc = await register()

        async with ctx.unit_of_work() as reader:
            stale = await load_document(reader.session, doc.id)

            async with ctx.unit_of_work() as winner:
                current = await load_document(winner.session, doc.id)
                assert await claim_next_version(winner.session, current, "test") == 1

            with pytest.raises(ConcurrentModificationError):
                await claim_next_version(reader.session, stale, "test")


class TestGuardChecks:

    async def test_missing_document(self, documents, actor):
        with pytest.raises(ResourceNotFoundError):
            await documents.update_page_rotation(uuid.uuid4(), actor=actor, page_number=1, rotation_deg=90)

    async def test_other_tenant_denied(self, register, documents, other_tenant_actor):
        doc = await register()
        with pytest.raises(PermissionDeniedError):
            await documents.update_page_rotation(doc.id, actor=other_tenant_actor, page_number=1, rotation_deg=90)

    async def test_container_rejects_edits(self, register, documents, actor):
        doc = await register()
        await documents.split_document(doc.id, actor=actor, ranges=SPLIT_RANGES)

        with pytest.raises(InvalidStateError):
            await documents.update_page_rotation(doc.id, actor=actor, page_number=1, rotation_deg=90)

    async def test_container_can_be_deleted(self, register, documents, actor):
        doc = await register()
        await documents.split_document(doc.id, actor=actor, ranges=SPLIT_RANGES)

        deleted = await documents.soft_delete_document(doc.id, actor=actor, reason="Bundle no longer needed")
        assert deleted.is_container is True


class TestIdempotency:

    async def test_same_key_replays_response(self, register, orchestrator, actor):
        doc = await register()
        first = await orchestrator.trigger_extraction(doc.id, actor=actor, idempotency_key="k-1")
        replay = await orchestrator.trigger_extraction(doc.id, actor=actor, idempotency_key="k-1")

        assert replay.job_id == first.job_id
        assert replay.lock_version == first.lock_version

    async def test_keys_are_scoped_per_document(self, register, orchestrator, actor):
        first_doc = await register()
        second_doc = await register()
        first = await orchestrator.trigger_extraction(first_doc.id, actor=actor, idempotency_key="shared")
        second = await orchestrator.trigger_extraction(second_doc.id, actor=actor, idempotency_key="shared")

        assert second.job_id != first.job_id
        assert second.document_id == second_doc.id

    async def test_expired_key_runs_again(self, register, orchestrator, actor, monkeypatch):
        monkeypatch.setattr(settings, "IDEMPOTENCY_TTL_EXTRACTION_SECONDS", 0)
        doc = await register()
        first = await orchestrator.trigger_extraction(doc.id, actor=actor, idempotency_key="k-2")
        second = await orchestrator.trigger_extraction(doc.id, actor=actor, idempotency_key="k-2")

        assert second.job_id != first.job_id

    async def test_uncached_operations_ignore_key(self, register, documents, actor):
        doc = await register()
        first = await documents.update_page_rotation(
            doc.id, actor=actor, idempotency_key="rot", page_number=1, rotation_deg=90
        )
        second = await documents.update_page_rotation(
            doc.id, actor=actor, idempotency_key="rot", page_number=1, rotation_deg=180
        )

        assert (first.lock_version, second.lock_version) == (1, 2)
        assert second.rotation_deg == 180
