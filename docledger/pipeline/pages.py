"""
Byte-level page manipulation: split, append, reorder, delete and image
rasterization.

Pure functions over document bytes. pypdf does the page copying,
Pillow turns raster images into PDF pages, pdfplumber reports page
geometry.
"""

import io
from dataclasses import dataclass

import pdfplumber
import structlog
from PIL import Image, ImageOps, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from docledger.errors import InvalidTypeError, ValidationError

logger = structlog.get_logger(__name__)

PDF_MIME = "application/pdf"
IMAGE_MIMES = frozenset({"image/png", "image/jpeg", "image/jpg", "image/tiff"})
SUPPORTED_APPEND_MIMES = frozenset({PDF_MIME}) | IMAGE_MIMES

# Page geometry in PDF points (72 per inch)
A4_HEIGHT = 842
MAX_PAGE_DIMENSION = 1200
MIN_PAGE_DIMENSION = 200
POINTS_DPI = 72


@dataclass
class AppendFile:
    file_name: str
    mime_type: str
    content: bytes


@dataclass
class MergeResult:
    content: bytes
    pages_added: int
    total_pages: int
    # (width, height) in points for each appended page
    new_page_sizes: list[tuple[int, int]]


def _read_pdf(data: bytes, label: str) -> PdfReader:
    try:
        return PdfReader(io.BytesIO(data))
    except (PdfReadError, ValueError) as e:
        raise InvalidTypeError(f"{label} is not a readable PDF") from e


def _write_pdf(writer: PdfWriter) -> bytes:
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def count_pages(pdf_bytes: bytes) -> int:
    return len(_read_pdf(pdf_bytes, "Document").pages)


def page_sizes(pdf_bytes: bytes) -> list[tuple[int, int]]:
    """(width, height) in points for every page."""
    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        return [(round(page.width), round(page.height)) for page in pdf.pages]


def validate_ranges(ranges: list[tuple[int, int]], page_count: int) -> None:
    """At least two ranges, each 1 <= from <= to <= page_count."""
    if page_count < 2:
        raise ValidationError(
            "Document must have at least 2 pages to split",
            details={"page_count": page_count},
        )
    if len(ranges) < 2:
        raise ValidationError(
            "At least 2 page ranges are required to split a document",
            details={"range_count": len(ranges)},
        )
    for index, (page_from, page_to) in enumerate(ranges):
        if page_from < 1 or page_to > page_count:
            raise ValidationError(
                f"Range {index + 1} ({page_from}-{page_to}) is outside pages 1-{page_count}",
                details={"range_index": index, "page_from": page_from, "page_to": page_to},
            )
        if page_from > page_to:
            raise ValidationError(
                f"Range {index + 1} starts after it ends ({page_from}-{page_to})",
                details={"range_index": index, "page_from": page_from, "page_to": page_to},
            )


def extract_range(pdf_bytes: bytes, page_from: int, page_to: int) -> bytes:
    """Copy pages page_from..page_to (1-indexed, inclusive) into a new PDF."""
    reader = _read_pdf(pdf_bytes, "Document")
    writer = PdfWriter()
    for index in range(page_from - 1, page_to):
        writer.add_page(reader.pages[index])
    return _write_pdf(writer)


def split_pdf(pdf_bytes: bytes, ranges: list[tuple[int, int]]) -> list[bytes]:
    """One PDF per range, after validating the ranges against the page count."""
    validate_ranges(ranges, count_pages(pdf_bytes))
    parts = [extract_range(pdf_bytes, page_from, page_to) for page_from, page_to in ranges]
    logger.debug("pdf_split", parts=len(parts))
    return parts


def validate_order(new_order: list[int], page_count: int) -> None:
    """new_order must name every page 1..page_count exactly once."""
    if len(new_order) != page_count or sorted(new_order) != list(range(1, page_count + 1)):
        raise ValidationError(
            f"New order must contain each page from 1 to {page_count} exactly once",
            details={"new_order": new_order, "total_pages": page_count},
        )


def reorder_pdf(pdf_bytes: bytes, new_order: list[int]) -> bytes:
    """Copy pages in new_order (1-indexed old page numbers) into a new PDF."""
    reader = _read_pdf(pdf_bytes, "Document")
    validate_order(new_order, len(reader.pages))
    writer = PdfWriter()
    for page_number in new_order:
        writer.add_page(reader.pages[page_number - 1])
    return _write_pdf(writer)


def validate_deletion(page_numbers: list[int], page_count: int) -> list[int]:
    """Deduplicated, sorted page numbers to delete; at least one page must remain."""
    if not page_numbers:
        raise ValidationError("At least one page number is required")
    unique = sorted(set(page_numbers))
    invalid = [n for n in unique if n < 1 or n > page_count]
    if invalid:
        raise ValidationError(
            f"Page numbers out of range 1-{page_count}",
            details={"invalid_pages": invalid, "total_pages": page_count},
        )
    if len(unique) >= page_count:
        raise ValidationError("Cannot delete all pages from the document")
    return unique


def delete_pdf_pages(pdf_bytes: bytes, page_numbers: list[int]) -> bytes:
    """Copy every page not in page_numbers, keeping their order."""
    reader = _read_pdf(pdf_bytes, "Document")
    doomed = set(validate_deletion(page_numbers, len(reader.pages)))
    writer = PdfWriter()
    for index, page in enumerate(reader.pages, start=1):
        if index not in doomed:
            writer.add_page(page)
    return _write_pdf(writer)


def fit_image_page(img_width: int, img_height: int) -> tuple[float, float]:
    """Page size in points that holds an image, A4 height on the long side."""
    aspect = img_width / img_height
    if aspect > 1:
        page_width = float(min(A4_HEIGHT, MAX_PAGE_DIMENSION))
        page_height = page_width / aspect
    else:
        page_height = float(min(A4_HEIGHT, MAX_PAGE_DIMENSION))
        page_width = page_height * aspect
    return max(page_width, MIN_PAGE_DIMENSION), max(page_height, MIN_PAGE_DIMENSION)


def image_to_pdf(image_bytes: bytes, label: str = "Image") -> bytes:
    """Rasterize an image into a single-page PDF sized by fit_image_page()."""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidTypeError(f"{label} is not a readable image") from e

    image = ImageOps.exif_transpose(image).convert("RGB")
    page_width, page_height = fit_image_page(image.width, image.height)

    # Keep the image's pixel density; resample only when a minimum
    # dimension stretched the page away from the image's aspect ratio.
    scale = image.width / page_width
    target = (max(1, round(page_width * scale)), max(1, round(page_height * scale)))
    if target != image.size:
        image = image.resize(target)

    buffer = io.BytesIO()
    image.save(buffer, format="PDF", resolution=POINTS_DPI * scale)
    return buffer.getvalue()


def append_files(base_pdf: bytes, files: list[AppendFile]) -> MergeResult:
    """Append each file's pages to base_pdf, images as one page each."""
    if not files:
        raise ValidationError("At least one file is required to append")

    writer = PdfWriter()
    writer.append(_read_pdf(base_pdf, "Document"))
    original_count = len(writer.pages)

    for f in files:
        if f.mime_type == PDF_MIME:
            writer.append(_read_pdf(f.content, f.file_name))
        elif f.mime_type in IMAGE_MIMES:
            writer.append(_read_pdf(image_to_pdf(f.content, f.file_name), f.file_name))
        else:
            raise InvalidTypeError(f"Unsupported file type: {f.mime_type}")

    merged = _write_pdf(writer)
    sizes = page_sizes(merged)
    pages_added = len(sizes) - original_count

    logger.debug("pdf_pages_appended", pages_added=pages_added, total_pages=len(sizes))
    return MergeResult(
        content=merged,
        pages_added=pages_added,
        total_pages=len(sizes),
        new_page_sizes=sizes[original_count:],
    )
