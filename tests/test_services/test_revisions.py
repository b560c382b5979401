"""
Tests for revision reads, drafts, edits and approval.
"""

import uuid
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from docledger.errors import (
    DuplicateDecisionRequiredError,
    InvalidStateError,
    ResourceNotFoundError,
    ValidationError,
)
from docledger.models.enums import (
    DocumentCategory,
    DuplicateAction,
    ExchangeRateSource,
    RevisionStatus,
    RevisionType,
    ValidationStatus,
)
from docledger.schemas.revisions import (
    ApprovalInput,
    HeaderPatch,
    LineItemIn,
    RevisionPatch,
    UpdateDraftRequest,
)
from docledger.services.duplicates import DuplicateService
from docledger.services.revisions import RevisionManager, compute_document_key


@pytest.fixture
def revisions(ctx):
    return RevisionManager(ctx)


class TestReads:

    async def test_extracted_revision(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        revision = await revisions.get_revision(doc_id, rev_id, actor=actor)

        assert revision.revision_number == 1
        assert revision.status == RevisionStatus.DRAFT
        assert revision.validation_status == ValidationStatus.VALID
        assert revision.document_key == compute_document_key(revision)
        assert [i.line_no for i in revision.items] == [1, 2]
        assert revision.items[0].amount == Decimal("60.00")

    async def test_validate_is_side_effect_free(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        result = await revisions.validate_revision(doc_id, rev_id, actor=actor)

        assert result.status == ValidationStatus.VALID
        assert result.issues == []

    async def test_missing_revision(self, extracted, revisions, actor):
        doc_id, _ = await extracted()
        with pytest.raises(ResourceNotFoundError):
            await revisions.get_revision(doc_id, uuid.uuid4(), actor=actor)

    def test_document_key_ignores_case_and_spacing(self):
        plain = SimpleNamespace(
            vendor_name="Acme  Supplies", document_number="inv-1",
            document_date=date(2024, 1, 2), total_amount=Decimal("10"), currency="sgd",
        )
        shouted = SimpleNamespace(
            vendor_name=" ACME SUPPLIES ", document_number="INV-1",
            document_date=date(2024, 1, 2), total_amount=Decimal("10.00"), currency="SGD",
        )
        assert compute_document_key(plain) == compute_document_key(shouted)


class TestCreateRevision:

    async def test_patch_on_top_of_base(self, extracted, revisions, documents, actor, audit):
        doc_id, rev_id = await extracted()
        before = await documents.get_document(doc_id, actor=actor)

        result = await revisions.create_revision(
            doc_id,
            actor=actor,
            based_on_revision_id=rev_id,
            patch=RevisionPatch(
                header=HeaderPatch(vendor_name="Acme Supplies"),
                items_to_delete=[1],
                items_to_upsert=[LineItemIn(line_no=3, description="Delivery", amount=Decimal("5.00"))],
            ),
            reason="Vendor name tidy-up",
        )
        revision = result.revision

        assert result.lock_version == before.lock_version + 1
        assert revision.revision_number == 2
        assert revision.revision_type == RevisionType.USER_EDIT
        assert revision.based_on_revision_id == uuid.UUID(rev_id)
        assert revision.vendor_name == "Acme Supplies"
        assert revision.document_number == "INV-1001"
        assert [(i.line_no, i.description) for i in revision.items] == [(1, "Toner"), (2, "Delivery")]
        assert revision.validation_status == ValidationStatus.WARNINGS
        assert {i.code for i in revision.validation_issues} == {"LINE_SUM_MISMATCH"}
        assert audit.last("CREATE").metadata == {"reason": "Vendor name tidy-up"}

        original = await revisions.get_revision(doc_id, rev_id, actor=actor)
        assert original.vendor_name == "Acme Supplies Pte Ltd"
        assert len(original.items) == 2

    async def test_replayed_with_idempotency_key(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        kwargs = dict(actor=actor, based_on_revision_id=rev_id, patch=RevisionPatch(), idempotency_key="rev-1")

        first = await revisions.create_revision(doc_id, **kwargs)
        second = await revisions.create_revision(doc_id, **kwargs)

        assert second.revision.id == first.revision.id
        assert len(await revisions.list_revisions(doc_id, actor=actor)) == 2

    async def test_clearing_required_field(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        with pytest.raises(ValidationError):
            await revisions.create_revision(
                doc_id, actor=actor, based_on_revision_id=rev_id,
                patch=RevisionPatch(header=HeaderPatch(currency=None)),
            )


class TestUpdateDraft:

    async def test_header_and_items(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        draft = await revisions.get_revision(doc_id, rev_id, actor=actor)
        paper, toner = draft.items

        result = await revisions.update_draft(
            doc_id,
            actor=actor,
            revision_id=rev_id,
            changes=UpdateDraftRequest(
                header_updates=HeaderPatch(document_date=date.today() + timedelta(days=30)),
                items_to_delete=[paper.id],
                items_to_upsert=[
                    LineItemIn(id=toner.id, line_no=1, description="Toner XL", amount=Decimal("100.00")),
                ],
            ),
        )
        revision = result.revision

        assert revision.id == draft.id
        assert [(i.line_no, i.description, i.amount) for i in revision.items] == [
            (1, "Toner XL", Decimal("100.00"))
        ]
        assert revision.validation_status == ValidationStatus.WARNINGS
        assert [i.code for i in revision.validation_issues] == ["FUTURE_DATE"]

    async def test_new_line_by_number(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        result = await revisions.update_draft(
            doc_id, actor=actor, revision_id=rev_id,
            changes=UpdateDraftRequest(
                items_to_upsert=[LineItemIn(line_no=3, description="Freight", amount=Decimal("0.00"))]
            ),
        )
        assert [i.line_no for i in result.revision.items] == [1, 2, 3]

    async def test_swap_line_numbers(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        paper, toner = (await revisions.get_revision(doc_id, rev_id, actor=actor)).items

        result = await revisions.update_draft(
            doc_id, actor=actor, revision_id=rev_id,
            changes=UpdateDraftRequest(
                items_to_upsert=[
                    LineItemIn(id=paper.id, line_no=2, description="Paper A4", amount=Decimal("60.00")),
                    LineItemIn(id=toner.id, line_no=1, description="Toner", amount=Decimal("40.00")),
                ]
            ),
        )

        assert [(i.line_no, i.description) for i in result.revision.items] == [(1, "Toner"), (2, "Paper A4")]
        reloaded = await revisions.get_revision(doc_id, rev_id, actor=actor)
        assert [(i.line_no, i.id) for i in reloaded.items] == [(1, toner.id), (2, paper.id)]

    async def test_clearing_currency_rejected(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        with pytest.raises(ValidationError):
            await revisions.update_draft(
                doc_id, actor=actor, revision_id=rev_id,
                changes=UpdateDraftRequest(header_updates=HeaderPatch(currency=None)),
            )

    async def test_unknown_item_rejected(self, extracted, revisions, documents, actor):
        doc_id, rev_id = await extracted()
        before = await documents.get_document(doc_id, actor=actor)

        with pytest.raises(ValidationError):
            await revisions.update_draft(
                doc_id, actor=actor, revision_id=rev_id,
                changes=UpdateDraftRequest(items_to_delete=[uuid.uuid4()]),
            )
        assert (await documents.get_document(doc_id, actor=actor)).lock_version == before.lock_version

    async def test_colliding_line_numbers(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        draft = await revisions.get_revision(doc_id, rev_id, actor=actor)

        with pytest.raises(ValidationError):
            await revisions.update_draft(
                doc_id, actor=actor, revision_id=rev_id,
                changes=UpdateDraftRequest(
                    items_to_upsert=[LineItemIn(id=draft.items[1].id, line_no=1, description="Toner", amount=Decimal("40"))]
                ),
            )

    async def test_approved_revision_is_frozen(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        await revisions.approve_revision(doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput())

        with pytest.raises(InvalidStateError):
            await revisions.update_draft(
                doc_id, actor=actor, revision_id=rev_id,
                changes=UpdateDraftRequest(header_updates=HeaderPatch(vendor_name="Other")),
            )


class TestApproveRevision:

    async def test_same_currency_approval(self, extracted, revisions, documents, actor, audit):
        doc_id, rev_id = await extracted()
        result = await revisions.approve_revision(doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput())
        revision = result.revision

        assert revision.status == RevisionStatus.APPROVED
        assert revision.approved_by == "user-1"
        assert result.superseded_revision_id is None
        assert result.current_revision_id == revision.id
        assert revision.home_currency == "SGD"
        assert revision.home_exchange_rate == Decimal("1")
        assert revision.home_exchange_rate_source == ExchangeRateSource.SAME_CURRENCY
        assert revision.home_equivalent == Decimal("109.00")
        assert [i.home_amount for i in revision.items] == [Decimal("60.00"), Decimal("40.00")]

        document = await documents.get_document(doc_id, actor=actor)
        assert document.current_revision_id == revision.id
        assert document.lock_version == result.lock_version
        assert audit.last("APPROVE").entity_id == rev_id

    async def test_second_approval_supersedes_first(self, extracted, revisions, documents, actor):
        doc_id, rev_id = await extracted()
        await revisions.approve_revision(doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput())
        edit = await revisions.create_revision(
            doc_id, actor=actor, based_on_revision_id=rev_id,
            patch=RevisionPatch(header=HeaderPatch(document_number="INV-1001A")),
        )

        result = await revisions.approve_revision(
            doc_id, actor=actor, revision_id=edit.revision.id, approval=ApprovalInput()
        )

        assert result.superseded_revision_id == uuid.UUID(rev_id)
        listed = await revisions.list_revisions(doc_id, actor=actor)
        assert [(r.revision_number, r.status) for r in listed] == [
            (2, RevisionStatus.APPROVED),
            (1, RevisionStatus.SUPERSEDED),
        ]
        assert listed[1].superseded_at is not None
        assert (await documents.get_document(doc_id, actor=actor)).current_revision_id == edit.revision.id

    async def test_cannot_approve_twice(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        await revisions.approve_revision(doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput())

        with pytest.raises(InvalidStateError):
            await revisions.approve_revision(doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput())

    async def test_approval_replays_with_key(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        first = await revisions.approve_revision(
            doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput(), idempotency_key="approve-1"
        )
        second = await revisions.approve_revision(
            doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput(), idempotency_key="approve-1"
        )
        assert second == first

    async def test_blocking_errors_need_override_reason(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        await revisions.update_draft(
            doc_id, actor=actor, revision_id=rev_id,
            changes=UpdateDraftRequest(header_updates=HeaderPatch(document_category=DocumentCategory.CREDIT_NOTE)),
        )

        with pytest.raises(ValidationError) as exc:
            await revisions.approve_revision(doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput())
        assert exc.value.details == {"error_codes": ["CREDIT_NOTE_TOTAL_NOT_NEGATIVE"]}

        result = await revisions.approve_revision(
            doc_id, actor=actor, revision_id=rev_id,
            approval=ApprovalInput(override_reason="Supplier issues credit notes with positive totals"),
        )
        assert result.revision.status == RevisionStatus.APPROVED
        assert result.revision.validation_status == ValidationStatus.INVALID
        assert result.revision.override_reason.startswith("Supplier")

    async def test_duplicate_gate(self, ctx, extracted, register, revisions, actor):
        original = await register()
        doc_id, rev_id = await extracted()
        await DuplicateService(ctx).mark_suspected(doc_id, actor=actor, duplicate_of_id=original.id)

        with pytest.raises(DuplicateDecisionRequiredError):
            await revisions.approve_revision(doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput())

    async def test_approval_key_reusable_after_gate_cleared(self, ctx, extracted, register, revisions, actor):
        original = await register()
        doc_id, rev_id = await extracted()
        duplicates = DuplicateService(ctx)
        await duplicates.mark_suspected(doc_id, actor=actor, duplicate_of_id=original.id)

        with pytest.raises(DuplicateDecisionRequiredError):
            await revisions.approve_revision(
                doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput(), idempotency_key="approve-k"
            )

        await duplicates.record_duplicate_decision(doc_id, actor=actor, decision=DuplicateAction.REJECT_DUPLICATE)
        result = await revisions.approve_revision(
            doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput(), idempotency_key="approve-k"
        )

        assert result.revision.status == RevisionStatus.APPROVED

    async def test_draft_rate_override_carried_to_approval(self, extracted, revisions, actor):
        doc_id, rev_id = await extracted()
        await revisions.update_draft(
            doc_id, actor=actor, revision_id=rev_id,
            changes=UpdateDraftRequest(
                header_updates=HeaderPatch(
                    currency="USD",
                    home_currency="SGD",
                    home_exchange_rate=Decimal("1.40"),
                    is_home_exchange_rate_override=True,
                    home_exchange_rate_source=ExchangeRateSource.DOCUMENT,
                    exchange_rate_date=date(2024, 3, 1),
                )
            ),
        )

        result = await revisions.approve_revision(doc_id, actor=actor, revision_id=rev_id, approval=ApprovalInput())
        revision = result.revision

        assert revision.home_exchange_rate == Decimal("1.40")
        assert revision.home_exchange_rate_source == ExchangeRateSource.DOCUMENT
        assert revision.exchange_rate_date == date(2024, 3, 1)
        assert revision.is_home_exchange_rate_override is True
        assert revision.home_equivalent == Decimal("152.60")
