"""
Processing document service: registration, reads, split, append,
page rotation, reorder, page deletion and soft delete.
"""

import io
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional

import structlog
from PIL import Image, UnidentifiedImageError
from sqlalchemy import func, select, update

from docledger.config import settings
from docledger.errors import (
    FileTooLargeError,
    InvalidStateError,
    InvalidTypeError,
    ResourceNotFoundError,
    ValidationError,
)
from docledger.models.enums import (
    DocumentLinkType,
    DuplicateStatus,
    PipelineStatus,
    StateEventType,
)
from docledger.models.tables import DocumentLink, DocumentPage, ProcessingDocument
from docledger.observability.metrics import documents_registered_total, page_operations_total
from docledger.pipeline import pages
from docledger.pipeline.state_machine import SPLITTABLE_STATES, apply_transition, record_event
from docledger.schemas.documents import (
    AppendResult,
    DeletePagesResult,
    DocumentListParams,
    DocumentListResponse,
    DocumentOut,
    PageOut,
    PageRange,
    ReorderResult,
    RotationResult,
    SplitResult,
)
from docledger.services.audit import AuditEntry
from docledger.services.authz import READ, SYSTEM_ACTOR, UPDATE, Actor
from docledger.services.context import ServiceContext
from docledger.services.guard import guarded_mutation, load_document
from docledger.storage.paths import content_hash, document_key, page_fingerprint

logger = structlog.get_logger(__name__)

ALLOWED_ROTATIONS = frozenset({0, 90, 180, 270})


def _max_file_bytes() -> int:
    return settings.MAX_FILE_SIZE_MB * 1024 * 1024


def _page_rows(document: ProcessingDocument, sizes: list[tuple[int, int]], first_page: int = 1) -> list[DocumentPage]:
    return [
        DocumentPage(
            processing_document_id=document.id,
            page_number=first_page + offset,
            storage_key=document.storage_key,
            fingerprint=page_fingerprint(document.storage_key, first_page + offset),
            width=width,
            height=height,
            render_dpi=pages.POINTS_DPI,
            rotation_deg=0,
        )
        for offset, (width, height) in enumerate(sizes)
    ]


async def soft_delete(session, document: ProcessingDocument, reason: str, actor_id: Optional[str]) -> None:
    """Stamp deleted_at and drop other documents' duplicate pointers to it."""
    now = datetime.now(timezone.utc)
    document.deleted_at = now
    document.deleted_reason = reason
    await session.execute(
        update(ProcessingDocument)
        .where(
            ProcessingDocument.duplicate_of_id == document.id,
            ProcessingDocument.id != document.id,
        )
        .values(duplicate_of_id=None, duplicate_status=DuplicateStatus.NONE)
        .execution_options(synchronize_session=False)
    )
    record_event(session, document, StateEventType.SOFT_DELETE, reason=reason, actor_id=actor_id)
    logger.info("document_soft_deleted", document_id=str(document.id), reason=reason)


class DocumentService:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    # ── Registration & reads ─────────────────────────────────

    async def register_document(
        self,
        *,
        tenant_id: str,
        company_id: str,
        file_name: str,
        mime_type: str,
        content: bytes,
        actor: Actor,
    ) -> DocumentOut:
        """Store an uploaded file and create its document in UPLOADED."""
        if mime_type not in pages.SUPPORTED_APPEND_MIMES:
            raise InvalidTypeError(f"Unsupported file type: {mime_type}")
        if len(content) > _max_file_bytes():
            raise FileTooLargeError(
                f"{file_name} exceeds {settings.MAX_FILE_SIZE_MB}MB",
                details={"size_bytes": len(content)},
            )
        await self.ctx.authorizer.require(actor, tenant_id, company_id, UPDATE)

        if mime_type == pages.PDF_MIME:
            pages.count_pages(content)
            sizes = pages.page_sizes(content)
        else:
            sizes = [_image_size(content, file_name)]

        key = self.ctx.storage.put(document_key(content, mime_type), content)

        async with self.ctx.unit_of_work() as uow:
            document = ProcessingDocument(
                tenant_id=tenant_id,
                company_id=company_id,
                file_name=file_name,
                mime_type=mime_type,
                file_size_bytes=len(content),
                storage_key=key,
                file_hash=content_hash(content),
                page_count=len(sizes),
                pipeline_status=PipelineStatus.UPLOADED,
                lock_version=0,
                version=1,
                created_by=actor.user_id,
            )
            uow.session.add(document)
            await uow.session.flush()
            document.root_document_id = document.id
            uow.session.add_all(_page_rows(document, sizes))
            record_event(
                uow.session, document, StateEventType.TRANSITION,
                to_state=PipelineStatus.UPLOADED.value, reason="Uploaded", actor_id=actor.user_id,
            )
            await uow.session.flush()
            out = DocumentOut.model_validate(document)

        documents_registered_total.labels(mime_type=mime_type).inc()
        logger.info(
            "document_registered",
            document_id=str(out.id),
            file_name=file_name,
            page_count=out.page_count,
            size_bytes=len(content),
        )

        # duplicates imports this module for soft_delete
        from docledger.services.duplicates import DuplicateService

        flagged = await DuplicateService(self.ctx).check_for_duplicates(out.id, actor=SYSTEM_ACTOR)
        return flagged or out

    async def get_document(self, document_id, *, actor: Actor) -> DocumentOut:
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            return DocumentOut.model_validate(document)

    async def list_documents(self, params: DocumentListParams, *, actor: Actor) -> DocumentListResponse:
        """Newest first, soft-deleted documents excluded."""
        # "*" asks for tenant-wide read access
        await self.ctx.authorizer.require(actor, params.tenant_id, params.company_id or "*", READ)

        filters = [
            ProcessingDocument.tenant_id == params.tenant_id,
            ProcessingDocument.deleted_at.is_(None),
        ]
        if params.company_id:
            filters.append(ProcessingDocument.company_id == params.company_id)
        if params.pipeline_status:
            filters.append(ProcessingDocument.pipeline_status == params.pipeline_status)
        if params.duplicate_status:
            filters.append(ProcessingDocument.duplicate_status == params.duplicate_status)
        if not params.include_containers:
            filters.append(ProcessingDocument.is_container.is_(False))
        if params.parent_id:
            filters.append(ProcessingDocument.parent_processing_doc_id == params.parent_id)

        async with self.ctx.unit_of_work() as uow:
            total = await uow.session.scalar(
                select(func.count()).select_from(ProcessingDocument).where(*filters)
            )
            result = await uow.session.execute(
                select(ProcessingDocument)
                .where(*filters)
                .order_by(ProcessingDocument.created_at.desc())
                .offset(params.offset)
                .limit(params.limit)
            )
            documents = [DocumentOut.model_validate(d) for d in result.scalars().all()]

        return DocumentListResponse(
            documents=documents, total=total or 0, limit=params.limit, offset=params.offset
        )

    async def list_pages(self, document_id, *, actor: Actor) -> list[PageOut]:
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            result = await uow.session.execute(
                select(DocumentPage)
                .where(DocumentPage.processing_document_id == document.id)
                .order_by(DocumentPage.page_number)
            )
            return [PageOut.model_validate(p) for p in result.scalars().all()]

    # ── Page manipulation ────────────────────────────────────

    @guarded_mutation(
        "split_document",
        response_model=SplitResult,
        endpoint="/processing-documents/{document_id}/split",
    )
    async def split_document(self, uow, document, *, actor: Actor, ranges: list[PageRange]):
        """Copy each page range into a child document; the source becomes a container."""
        if document.mime_type != pages.PDF_MIME:
            raise InvalidStateError("Only PDF documents can be split")
        if PipelineStatus(document.pipeline_status) not in SPLITTABLE_STATES:
            raise InvalidStateError(
                f"Cannot split a document in status {PipelineStatus(document.pipeline_status).value}"
            )

        bounds = [(r.page_from, r.page_to) for r in ranges]
        pages.validate_ranges(bounds, document.page_count or 0)
        source = self.ctx.storage.get(document.storage_key)
        parts = pages.split_pdf(source, bounds)

        stem = PurePosixPath(document.file_name).stem
        children = []
        for (page_from, page_to), part in zip(bounds, parts):
            key = self.ctx.storage.put(document_key(part, pages.PDF_MIME), part)
            child = ProcessingDocument(
                id=uuid.uuid4(),
                tenant_id=document.tenant_id,
                company_id=document.company_id,
                file_name=f"{stem}_p{page_from}-{page_to}.pdf",
                mime_type=pages.PDF_MIME,
                file_size_bytes=len(part),
                storage_key=key,
                file_hash=content_hash(part),
                parent_processing_doc_id=document.id,
                page_from=page_from,
                page_to=page_to,
                page_count=page_to - page_from + 1,
                pipeline_status=PipelineStatus.UPLOADED,
                lock_version=0,
                version=1,
                created_by=actor.user_id,
            )
            child.root_document_id = child.id
            uow.session.add(child)
            uow.session.add_all(_page_rows(child, pages.page_sizes(part)))
            uow.session.add(
                DocumentLink(
                    tenant_id=document.tenant_id,
                    source_document_id=document.id,
                    target_document_id=child.id,
                    link_type=DocumentLinkType.SPLIT,
                    notes=f"Pages {page_from}-{page_to}",
                    linked_by=actor.user_id,
                )
            )
            record_event(
                uow.session, child, StateEventType.TRANSITION,
                to_state=PipelineStatus.UPLOADED.value,
                reason="Created by split",
                metadata={"parent_id": str(document.id), "page_from": page_from, "page_to": page_to},
                actor_id=actor.user_id,
            )
            children.append(child)

        document.is_container = True
        document.split_plan = [{"page_from": f, "page_to": t} for f, t in bounds]
        apply_transition(
            uow.session, document, PipelineStatus.SPLIT_DONE,
            actor_id=actor.user_id, reason="Split", metadata={"ranges": document.split_plan},
        )
        await uow.session.flush()

        await self.ctx.audit.append(AuditEntry(
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            action="SPLIT",
            entity_type="ProcessingDocument",
            entity_id=str(document.id),
            summary=f"Split into {len(children)} documents",
            metadata={"child_ids": [str(c.id) for c in children]},
        ))
        page_operations_total.labels(operation="split").inc()
        logger.info("document_split", document_id=str(document.id), children=len(children))

        return SplitResult(
            document=DocumentOut.model_validate(document),
            children=[DocumentOut.model_validate(c) for c in children],
        )

    @guarded_mutation(
        "append_pages",
        response_model=AppendResult,
        endpoint="/processing-documents/{document_id}/pages/append",
    )
    async def append_pages(self, uow, document, *, actor: Actor, files: list[pages.AppendFile]):
        """Append PDF pages and rasterized images to a PDF document."""
        if document.mime_type != pages.PDF_MIME:
            raise InvalidTypeError("Only PDF documents accept appended pages")
        if not files:
            raise ValidationError("At least one file is required to append")
        for f in files:
            if f.mime_type not in pages.SUPPORTED_APPEND_MIMES:
                raise InvalidTypeError(
                    f"Unsupported file type for {f.file_name}: {f.mime_type}",
                    details={"file_name": f.file_name, "mime_type": f.mime_type},
                )
            if len(f.content) > _max_file_bytes():
                raise FileTooLargeError(
                    f"{f.file_name} exceeds {settings.MAX_FILE_SIZE_MB}MB",
                    details={"file_name": f.file_name, "size_bytes": len(f.content)},
                )

        existing = self.ctx.storage.get(document.storage_key)
        merged = pages.append_files(existing, files)
        key = self.ctx.storage.put(document_key(merged.content, pages.PDF_MIME), merged.content)

        original_total = merged.total_pages - merged.pages_added
        document.storage_key = key
        document.file_size_bytes = len(merged.content)
        document.file_hash = content_hash(merged.content)
        document.page_count = merged.total_pages
        uow.session.add_all(_page_rows(document, merged.new_page_sizes, first_page=original_total + 1))
        record_event(
            uow.session, document, StateEventType.APPEND,
            reason=f"Appended {merged.pages_added} pages",
            metadata={"files": [f.file_name for f in files], "new_total_pages": merged.total_pages},
            actor_id=actor.user_id,
        )
        await uow.session.flush()

        await self.ctx.audit.append(AuditEntry(
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            action="UPDATE",
            entity_type="ProcessingDocument",
            entity_id=str(document.id),
            summary=f"Appended {merged.pages_added} pages",
            metadata={"new_total_pages": merged.total_pages},
        ))
        page_operations_total.labels(operation="append").inc()
        logger.info(
            "pages_appended",
            document_id=str(document.id),
            pages_added=merged.pages_added,
            new_total_pages=merged.total_pages,
        )

        return AppendResult(
            document_id=document.id,
            pages_added=merged.pages_added,
            new_total_pages=merged.total_pages,
            file_size_bytes=document.file_size_bytes,
            lock_version=document.lock_version,
        )

    @guarded_mutation(
        "update_page_rotation",
        response_model=RotationResult,
        endpoint="/processing-documents/{document_id}/pages/{page_number}",
    )
    async def update_page_rotation(self, uow, document, *, actor: Actor, page_number: int, rotation_deg: int):
        if rotation_deg not in ALLOWED_ROTATIONS:
            raise ValidationError(
                "Rotation must be one of 0, 90, 180, 270",
                details={"rotation_deg": rotation_deg},
            )
        result = await uow.session.execute(
            select(DocumentPage).where(
                DocumentPage.processing_document_id == document.id,
                DocumentPage.page_number == page_number,
            )
        )
        page = result.scalar_one_or_none()
        if page is None:
            raise ResourceNotFoundError(f"Page {page_number} not found")

        previous = page.rotation_deg
        page.rotation_deg = rotation_deg
        record_event(
            uow.session, document, StateEventType.ROTATE,
            metadata={"page_number": page_number, "from": previous, "to": rotation_deg},
            actor_id=actor.user_id,
        )
        await uow.session.flush()
        page_operations_total.labels(operation="rotate").inc()

        return RotationResult(
            document_id=document.id,
            page_number=page_number,
            rotation_deg=rotation_deg,
            lock_version=document.lock_version,
        )

    @guarded_mutation(
        "reorder_pages",
        response_model=ReorderResult,
        endpoint="/processing-documents/{document_id}/pages/reorder",
    )
    async def reorder_pages(self, uow, document, *, actor: Actor, new_order: list[int]):
        """Rewrite a PDF with its pages in new_order (old page numbers)."""
        if document.mime_type != pages.PDF_MIME:
            raise InvalidTypeError("Only PDF documents can be reordered")
        pages.validate_order(new_order, document.page_count or 0)

        if new_order == sorted(new_order):
            return ReorderResult(
                document_id=document.id,
                reordered=False,
                total_pages=len(new_order),
                lock_version=document.lock_version,
            )

        content = pages.reorder_pdf(self.ctx.storage.get(document.storage_key), new_order)
        self._replace_content(document, content, len(new_order))

        rows = await self._page_rows_by_number(uow.session, document)
        mapping = {new_no: old_no for new_no, old_no in enumerate(new_order, start=1)}
        await self._renumber_pages(uow.session, document, [(rows[old_no], new_no) for new_no, old_no in mapping.items()])

        await self._record_page_operation(
            uow.session, document, actor, StateEventType.REORDER,
            summary=f"Reordered {len(new_order)} pages",
            metadata={"action": "REORDER_PAGES", "page_mapping": mapping},
        )
        page_operations_total.labels(operation="reorder").inc()
        logger.info("pages_reordered", document_id=str(document.id), total_pages=len(new_order))

        return ReorderResult(
            document_id=document.id,
            reordered=True,
            total_pages=len(new_order),
            page_mapping=mapping,
            lock_version=document.lock_version,
        )

    @guarded_mutation(
        "delete_pages",
        response_model=DeletePagesResult,
        endpoint="/processing-documents/{document_id}/pages/delete",
    )
    async def delete_pages(self, uow, document, *, actor: Actor, page_numbers: list[int]):
        """Drop pages from a PDF and renumber the rest from 1."""
        if document.mime_type != pages.PDF_MIME:
            raise InvalidTypeError("Only PDF documents support page deletion")
        doomed = pages.validate_deletion(page_numbers, document.page_count or 0)

        content = pages.delete_pdf_pages(self.ctx.storage.get(document.storage_key), doomed)
        new_total = document.page_count - len(doomed)
        self._replace_content(document, content, new_total)

        rows = await self._page_rows_by_number(uow.session, document)
        for number in doomed:
            page = rows.pop(number, None)
            if page is not None:
                await uow.session.delete(page)
        await uow.session.flush()
        kept = [rows[number] for number in sorted(rows)]
        await self._renumber_pages(uow.session, document, [(page, index) for index, page in enumerate(kept, start=1)])

        await self._record_page_operation(
            uow.session, document, actor, StateEventType.DELETE_PAGES,
            summary=f"Deleted {len(doomed)} pages",
            metadata={"action": "DELETE_PAGES", "pages_deleted": doomed, "new_total_pages": new_total},
        )
        page_operations_total.labels(operation="delete").inc()
        logger.info("pages_deleted", document_id=str(document.id), pages_deleted=doomed, new_total_pages=new_total)

        return DeletePagesResult(
            document_id=document.id,
            pages_deleted=doomed,
            new_total_pages=new_total,
            file_size_bytes=document.file_size_bytes,
            lock_version=document.lock_version,
        )

    def _replace_content(self, document: ProcessingDocument, content: bytes, page_count: int) -> None:
        document.storage_key = self.ctx.storage.put(document_key(content, pages.PDF_MIME), content)
        document.file_size_bytes = len(content)
        document.file_hash = content_hash(content)
        document.page_count = page_count

    @staticmethod
    async def _page_rows_by_number(session, document: ProcessingDocument) -> dict[int, DocumentPage]:
        result = await session.execute(
            select(DocumentPage).where(DocumentPage.processing_document_id == document.id)
        )
        return {page.page_number: page for page in result.scalars().all()}

    @staticmethod
    async def _renumber_pages(session, document: ProcessingDocument, moves: list[tuple[DocumentPage, int]]) -> None:
        """Give each page its new number; negatives first so no two rows ever share one."""
        for offset, (page, _) in enumerate(moves, start=1):
            page.page_number = -offset
        await session.flush()
        for page, number in moves:
            page.page_number = number
            page.storage_key = document.storage_key
            page.fingerprint = page_fingerprint(document.storage_key, number)
        await session.flush()

    async def _record_page_operation(
        self, session, document, actor: Actor, event_type: StateEventType, *, summary: str, metadata: dict
    ) -> None:
        record_event(
            session, document, event_type,
            reason=summary, metadata=metadata, actor_id=actor.user_id,
        )
        await session.flush()
        await self.ctx.audit.append(AuditEntry(
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            action="UPDATE",
            entity_type="ProcessingDocument",
            entity_id=str(document.id),
            summary=summary,
            metadata=metadata,
        ))

    @guarded_mutation(
        "soft_delete_document",
        response_model=DocumentOut,
        endpoint="/processing-documents/{document_id}/delete",
        allow_container=True,
    )
    async def soft_delete_document(self, uow, document, *, actor: Actor, reason: str):
        await soft_delete(uow.session, document, reason, actor.user_id)
        await uow.session.flush()
        await self.ctx.audit.append(AuditEntry(
            tenant_id=document.tenant_id,
            company_id=document.company_id,
            actor_id=actor.user_id,
            action="DELETE",
            entity_type="ProcessingDocument",
            entity_id=str(document.id),
            summary=reason,
        ))
        return DocumentOut.model_validate(document)


def _image_size(content: bytes, file_name: str) -> tuple[int, int]:
    """Page size an uploaded image will occupy once rasterized."""
    try:
        with Image.open(io.BytesIO(content)) as image:
            width, height = image.size
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidTypeError(f"{file_name} is not a readable image") from e
    page_width, page_height = pages.fit_image_page(width, height)
    return round(page_width), round(page_height)
