"""
Shared test fixtures.
Each test gets a throw-away SQLite database and artifact store.
"""

import io
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest
from PIL import Image
from pypdf import PdfWriter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import docledger.models.tables  # noqa: F401  (registers tables on Base.metadata)
from docledger.engines.stub_engine import StubCapability
from docledger.models.database import Base
from docledger.pipeline.orchestrator import ExtractionOrchestrator
from docledger.schemas.contracts import ExtractionProposal, ProposedLineItem
from docledger.services.audit import RecordingAuditSink
from docledger.services.authz import Actor
from docledger.services.context import ServiceContext
from docledger.services.documents import DocumentService
from docledger.services.revisions import RevisionManager
from docledger.storage.artifact_store import LocalArtifactStore

TENANT = "tenant-1"
COMPANY = "company-1"


def make_pdf(page_count: int = 1, width: float = 595, height: float = 842) -> bytes:
    """Blank PDF with page_count pages."""
    writer = PdfWriter()
    for _ in range(page_count):
        writer.add_blank_page(width=width, height=height)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def make_png(width: int = 400, height: int = 300, color: str = "white") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def make_text_pdf(pages: list[list[str]]) -> bytes:
    """
    Minimal PDF with a real text layer: one Helvetica line per string,
    top to bottom, one list of strings per page.
    """
    objects: list[bytes] = []
    page_count = len(pages)
    font_id = 3 + 2 * page_count
    kids = " ".join(f"{3 + 2 * i} 0 R" for i in range(page_count))

    objects.append(b"<< /Type /Catalog /Pages 2 0 R >>")
    objects.append(f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode())
    for i, lines in enumerate(pages):
        content_id = 4 + 2 * i
        objects.append(
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 595 842] "
            f"/Resources << /Font << /F1 {font_id} 0 R >> >> /Contents {content_id} 0 R >>".encode()
        )
        ops = ["BT", "/F1 11 Tf"]
        y = 800
        for line in lines:
            ops.append(f"1 0 0 1 50 {y} Tm ({_escape(line)}) Tj")
            y -= 18
        ops.append("ET")
        stream = "\n".join(ops).encode("latin-1")
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(b"%d 0 obj\n" % number + body + b"\nendobj\n")
    xref_at = out.tell()
    out.write(b"xref\n0 %d\n" % (len(objects) + 1))
    out.write(b"0000000000 65535 f \n")
    for offset in offsets:
        out.write(b"%010d 00000 n \n" % offset)
    out.write(b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at))
    return out.getvalue()


def sample_proposal(**overrides) -> ExtractionProposal:
    values = dict(
        vendor_name="Acme Supplies Pte Ltd",
        document_number="INV-1001",
        document_date=date(2024, 3, 15),
        currency="SGD",
        subtotal=Decimal("100.00"),
        tax_amount=Decimal("9.00"),
        total_amount=Decimal("109.00"),
        items=[
            ProposedLineItem(description="Paper A4", quantity=Decimal("10"), unit_price=Decimal("6.00"), amount=Decimal("60.00")),
            ProposedLineItem(description="Toner", quantity=Decimal("1"), unit_price=Decimal("40.00"), amount=Decimal("40.00")),
        ],
    )
    values.update(overrides)
    return ExtractionProposal(**values)


class InlineDispatcher:
    """Runs extraction jobs in-process right after the trigger commits."""

    def __init__(self):
        self.orchestrator = None
        self.calls: list[tuple[str, str, dict]] = []
        self.run_jobs = True

    async def __call__(self, document_id: str, job_id: str, options: dict) -> None:
        self.calls.append((document_id, job_id, options))
        if self.run_jobs and self.orchestrator is not None:
            await self.orchestrator.run_extraction(document_id, job_id, options)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def ctx(session_factory, tmp_path, audit):
    return ServiceContext(
        session_factory=session_factory,
        storage=LocalArtifactStore(str(tmp_path / "store")),
        audit=audit,
    )


@pytest.fixture
def actor():
    return Actor(user_id="user-1", tenant_id=TENANT)


@pytest.fixture
def other_tenant_actor():
    return Actor(user_id="user-9", tenant_id="tenant-9")


@pytest.fixture
def documents(ctx):
    return DocumentService(ctx)


@pytest.fixture
def capability():
    return StubCapability(sample_proposal())


@pytest.fixture
def dispatcher():
    return InlineDispatcher()


@pytest.fixture
def orchestrator(ctx, capability, dispatcher):
    orchestrator = ExtractionOrchestrator(ctx, capability, dispatcher)
    dispatcher.orchestrator = orchestrator
    return orchestrator


@pytest.fixture
def register(documents, actor):
    """Upload a PDF (default: 3 blank pages) and return its DocumentOut."""

    async def _register(content: Optional[bytes] = None, file_name: str = "bundle.pdf", mime_type: str = "application/pdf",
                        company_id: str = COMPANY):
        return await documents.register_document(
            tenant_id=TENANT,
            company_id=company_id,
            file_name=file_name,
            mime_type=mime_type,
            content=content if content is not None else make_pdf(3),
            actor=actor,
        )

    return _register


@pytest.fixture
def extracted(register, orchestrator, actor):
    """A document taken through extraction; returns (document_id, revision_id)."""

    async def _extracted(content: Optional[bytes] = None):
        doc = await register(content)
        await orchestrator.trigger_extraction(doc.id, actor=actor)
        revisions = await RevisionManager(orchestrator.ctx).list_revisions(doc.id, actor=actor)
        return str(doc.id), str(revisions[0].id)

    return _extracted
