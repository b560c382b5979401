"""
Tests for document links.
"""

import uuid

import pytest

from docledger.errors import PermissionDeniedError, ResourceNotFoundError, ValidationError
from docledger.models.enums import DocumentLinkType
from docledger.services.links import LinkService

from conftest import make_pdf


@pytest.fixture
def links(ctx):
    return LinkService(ctx)


@pytest.fixture
async def pair(register):
    return await register(), await register()


class TestCreateLink:

    async def test_link_both_directions_visible(self, pair, links, actor, audit):
        invoice, credit_note = pair
        link = await links.create_link(
            invoice.id, credit_note.id, DocumentLinkType.INVOICE_TO_CN, actor=actor, notes="Partial refund"
        )

        assert link.linked_by == "user-1"
        assert audit.last("LINK").entity_id == str(link.id)

        outgoing = await links.list_links(invoice.id, actor=actor)
        incoming = await links.list_links(credit_note.id, actor=actor)
        assert [l.id for l in outgoing.outgoing] == [link.id]
        assert outgoing.incoming == []
        assert [l.id for l in incoming.incoming] == [link.id]

    async def test_self_link(self, pair, links, actor):
        invoice, _ = pair
        with pytest.raises(ValidationError):
            await links.create_link(invoice.id, invoice.id, DocumentLinkType.RELATED, actor=actor)

    async def test_duplicate_in_either_direction(self, pair, links, actor):
        a, b = pair
        await links.create_link(a.id, b.id, DocumentLinkType.RELATED, actor=actor)

        with pytest.raises(ValidationError):
            await links.create_link(a.id, b.id, DocumentLinkType.RELATED, actor=actor)
        with pytest.raises(ValidationError):
            await links.create_link(b.id, a.id, DocumentLinkType.RELATED, actor=actor)

        other_type = await links.create_link(a.id, b.id, DocumentLinkType.PO_TO_INVOICE, actor=actor)
        assert other_type.link_type == DocumentLinkType.PO_TO_INVOICE

    async def test_cross_tenant(self, register, documents, links, actor, other_tenant_actor):
        ours = await register()
        theirs = await documents.register_document(
            tenant_id="tenant-9", company_id="company-9", file_name="x.pdf",
            mime_type="application/pdf", content=make_pdf(), actor=other_tenant_actor,
        )
        with pytest.raises(ValidationError):
            await links.create_link(ours.id, theirs.id, DocumentLinkType.RELATED, actor=actor)

    async def test_requires_permission(self, pair, links, other_tenant_actor):
        a, b = pair
        with pytest.raises(PermissionDeniedError):
            await links.create_link(a.id, b.id, DocumentLinkType.RELATED, actor=other_tenant_actor)

    async def test_missing_target(self, pair, links, actor):
        a, _ = pair
        with pytest.raises(ResourceNotFoundError):
            await links.create_link(a.id, uuid.uuid4(), DocumentLinkType.RELATED, actor=actor)


class TestDeleteLink:

    async def test_delete(self, pair, links, actor, audit):
        a, b = pair
        link = await links.create_link(a.id, b.id, DocumentLinkType.RELATED, actor=actor)

        await links.delete_link(link.id, actor=actor)

        assert (await links.list_links(a.id, actor=actor)).outgoing == []
        assert audit.last("UNLINK").entity_id == str(link.id)

    async def test_delete_missing(self, links, actor):
        with pytest.raises(ResourceNotFoundError):
            await links.delete_link(uuid.uuid4(), actor=actor)
