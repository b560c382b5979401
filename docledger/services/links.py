"""
Links between processing documents (PO -> invoice, invoice -> credit note,
split lineage, ...). Links are plain associations and are not versioned.
"""

from typing import Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from docledger.errors import ResourceNotFoundError, ValidationError
from docledger.models.enums import DocumentLinkType
from docledger.models.tables import DocumentLink
from docledger.schemas.documents import DocumentLinks, LinkOut
from docledger.services.audit import AuditEntry
from docledger.services.authz import READ, UPDATE, Actor
from docledger.services.context import ServiceContext
from docledger.services.guard import as_uuid, load_document

logger = structlog.get_logger(__name__)


class LinkService:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    async def create_link(
        self,
        source_id,
        target_id,
        link_type: DocumentLinkType,
        *,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> LinkOut:
        source_uuid = as_uuid(source_id, "source document id")
        target_uuid = as_uuid(target_id, "target document id")
        if source_uuid == target_uuid:
            raise ValidationError("A document cannot be linked to itself")
        link_type = DocumentLinkType(link_type)

        try:
            async with self.ctx.unit_of_work() as uow:
                source = await load_document(uow.session, source_uuid)
                target = await load_document(uow.session, target_uuid)
                if source.tenant_id != target.tenant_id:
                    raise ValidationError("Documents belong to different tenants")
                await self.ctx.authorizer.require(actor, source.tenant_id, source.company_id, UPDATE)
                await self.ctx.authorizer.require(actor, target.tenant_id, target.company_id, READ)

                existing = await uow.session.execute(
                    select(DocumentLink.id).where(
                        DocumentLink.link_type == link_type,
                        or_(
                            (DocumentLink.source_document_id == source.id)
                            & (DocumentLink.target_document_id == target.id),
                            (DocumentLink.source_document_id == target.id)
                            & (DocumentLink.target_document_id == source.id),
                        ),
                    )
                )
                if existing.first() is not None:
                    raise ValidationError(
                        "These documents are already linked with this type",
                        details={"link_type": link_type.value},
                    )

                link = DocumentLink(
                    tenant_id=source.tenant_id,
                    source_document_id=source.id,
                    target_document_id=target.id,
                    link_type=link_type,
                    notes=notes,
                    linked_by=actor.user_id,
                )
                uow.session.add(link)
                await uow.session.flush()
                out = LinkOut.model_validate(link)
        except IntegrityError as e:
            raise ValidationError("These documents are already linked with this type") from e

        await self.ctx.audit.append(AuditEntry(
            tenant_id=source.tenant_id,
            company_id=source.company_id,
            actor_id=actor.user_id,
            action="LINK",
            entity_type="DocumentLink",
            entity_id=str(out.id),
            summary=f"{link_type.value}: {source.id} -> {target.id}",
        ))
        logger.info(
            "document_linked",
            source_document_id=str(source.id),
            target_document_id=str(target.id),
            link_type=link_type.value,
        )
        return out

    async def list_links(self, document_id, *, actor: Actor) -> DocumentLinks:
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            result = await uow.session.execute(
                select(DocumentLink)
                .where(
                    or_(
                        DocumentLink.source_document_id == document.id,
                        DocumentLink.target_document_id == document.id,
                    )
                )
                .order_by(DocumentLink.created_at)
            )
            links = list(result.scalars().all())

        return DocumentLinks(
            outgoing=[LinkOut.model_validate(l) for l in links if l.source_document_id == document.id],
            incoming=[LinkOut.model_validate(l) for l in links if l.target_document_id == document.id],
        )

    async def delete_link(self, link_id, *, actor: Actor) -> None:
        async with self.ctx.unit_of_work() as uow:
            link = await uow.session.get(DocumentLink, as_uuid(link_id, "link id"))
            if link is None:
                raise ResourceNotFoundError(f"Link {link_id} not found")
            source = await load_document(uow.session, link.source_document_id, include_deleted=True)
            await self.ctx.authorizer.require(actor, source.tenant_id, source.company_id, UPDATE)
            await uow.session.delete(link)

        await self.ctx.audit.append(AuditEntry(
            tenant_id=source.tenant_id,
            company_id=source.company_id,
            actor_id=actor.user_id,
            action="UNLINK",
            entity_type="DocumentLink",
            entity_id=str(link_id),
            summary=f"Removed {DocumentLinkType(link.link_type).value} link",
        ))
        logger.info("document_unlinked", link_id=str(link_id))
