"""Policy bytes to Markdown: Docling for digital PDFs, Qwen2.5-VL for scanned."""

import base64
import hashlib
import logging
from io import BytesIO

import fitz  # PyMuPDF
import ollama
from docling.datamodel.base_models import DocumentStream
from docling.document_converter import DocumentConverter

from decoder.core.retry import RetryPolicy
from decoder.parsers.models import PolicyDocument

logger = logging.getLogger(__name__)

VISION_MODEL = "qwen2.5vl:7b"

_SCANNED_THRESHOLD = 100  # chars per page — below this, assume scanned
_HEADER_WINDOW = 1024  # PDF header must appear within the first KB
_PAGE_RETRY = RetryPolicy(max_retries=2, base_delay=2.0)


class DocumentReadError(Exception):
    """The document bytes could not be opened or contain nothing to read."""


class UnsupportedDocumentError(DocumentReadError):
    """The document is not a PDF."""


# ── Public API ───────────────────────────────────────────────────────


def compute_content_hash(data: bytes) -> str:
    """SHA-256 hash of the document bytes."""
    return hashlib.sha256(data).hexdigest()


def open_pdf(data: bytes) -> fitz.Document:
    """Open PDF bytes with PyMuPDF, raising DocumentReadError on anything unusable."""
    if not isinstance(data, (bytes, bytearray)):
        raise UnsupportedDocumentError(f"Expected document bytes, got {type(data).__name__}")
    if not data:
        raise DocumentReadError("Document is empty")
    if b"%PDF" not in data[:_HEADER_WINDOW]:
        raise UnsupportedDocumentError("Document is not a PDF")

    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise DocumentReadError(f"PDF could not be opened: {exc}") from exc

    if doc.needs_pass:
        doc.close()
        raise DocumentReadError("PDF is password-protected")
    if len(doc) == 0:
        doc.close()
        raise DocumentReadError("PDF has no pages")
    return doc


def is_scanned(doc: fitz.Document) -> bool:
    """Heuristic: if extractable text is sparse relative to page count, it's scanned."""
    num_pages = len(doc)
    if num_pages == 0:
        return True
    total_chars = sum(len(page.get_text().strip()) for page in doc)
    return total_chars / num_pages < _SCANNED_THRESHOLD


def parse_with_docling(data: bytes) -> str:
    """Convert a digital PDF to Markdown using Docling."""
    converter = DocumentConverter()
    result = converter.convert(DocumentStream(name="policy.pdf", stream=BytesIO(data)))
    return result.document.export_to_markdown()


def parse_with_pymupdf(doc: fitz.Document) -> str:
    """Plain text layer of every page, with page markers."""
    return "\n\n".join(
        f"<!-- Page {i} -->\n{page.get_text()}" for i, page in enumerate(doc, 1)
    )


def parse_with_vision(doc: fitz.Document) -> str:
    """Transcribe a scanned PDF by sending page images to Qwen2.5-VL via Ollama."""
    pages_md: list[str] = []

    for page_num in range(len(doc)):
        page = doc[page_num]
        pix = page.get_pixmap(dpi=200)
        img_b64 = base64.b64encode(pix.tobytes("png")).decode()

        response = _PAGE_RETRY.run(
            lambda: ollama.chat(
                model=VISION_MODEL,
                messages=[
                    {
                        "role": "user",
                        "content": (
                            "Transcribe all text on this insurance policy page. "
                            "Preserve tables, headings, form numbers and schedules. "
                            "Output as Markdown. Do not summarize."
                        ),
                        "images": [img_b64],
                    }
                ],
                options={"temperature": 0},
            ),
            label=f"page-transcription {page_num + 1}",
        )
        pages_md.append(f"<!-- Page {page_num + 1} -->\n{response.message.content or ''}")
        logger.info("Qwen2.5-VL transcribed page %d/%d", page_num + 1, len(doc))

    return "\n\n---\n\n".join(pages_md)


def load_policy_document(data: bytes) -> PolicyDocument:
    """Open policy bytes and route between Docling, PyMuPDF and the vision model."""
    doc = open_pdf(data)
    content_hash = compute_content_hash(data)

    try:
        page_count = len(doc)
        scanned = is_scanned(doc)

        if scanned:
            logger.info("Scanned PDF detected (%d pages), using Qwen2.5-VL", page_count)
            text = parse_with_vision(doc)
            parser_used = "qwen2.5vl"
        else:
            try:
                text = parse_with_docling(data)
                parser_used = "docling"
            except Exception as exc:
                logger.warning("Docling failed (%s), falling back to PyMuPDF text layer", exc)
                text = parse_with_pymupdf(doc)
                parser_used = "pymupdf"

            if len(text.strip()) < _SCANNED_THRESHOLD:
                logger.warning(
                    "Text output sparse (%d chars), falling back to Qwen2.5-VL",
                    len(text.strip()),
                )
                text = parse_with_vision(doc)
                parser_used = "qwen2.5vl"
                scanned = True
    finally:
        doc.close()

    if not text.strip():
        raise DocumentReadError("No readable text in document")

    return PolicyDocument(
        content_hash=content_hash,
        text=text,
        page_count=page_count,
        parser_used=parser_used,
        is_scanned=scanned,
    )
