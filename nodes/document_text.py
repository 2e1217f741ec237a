"""
Document Text Node - Contract PDF to Plain Text

Converts an uploaded contract (bytes from the deal-files bucket) into plain
text for the LLM contract extractor, using Docling.

Three distinct outcomes:
- TEXT: text was extracted and can go to the model
- NO_TEXT: the document parsed but holds no extractable text (typically a
  scanned, image-only PDF). Callers short-circuit to a "none" confidence
  result and tell the user to upload a text-based PDF.
- UNREADABLE: not a PDF, password protected, or corrupted

OCR is deliberately disabled so that scans surface as NO_TEXT rather than
a noisy, low quality transcript.
"""

import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


DEFAULT_MAX_CONTRACT_CHARS = 30000
TRUNCATION_MARKER = "\n\n[... contract text truncated ...]"

# Bytes scanned for the encryption dictionary
ENCRYPTION_SCAN_BYTES = 10000

NO_TEXT_MESSAGE = (
    "No text could be extracted from this document. It may be a scanned "
    "image. Please upload a text-based PDF."
)


# ============================================================================
# Result Types
# ============================================================================

class TextStatus(Enum):
    """Outcome of text extraction."""
    TEXT = "text"
    NO_TEXT = "no_text"        # Parsed, but nothing to read (scanned document)
    UNREADABLE = "unreadable"  # Not a PDF / encrypted / corrupted


@dataclass
class TextExtractionResult:
    """Extracted text plus a status the caller must branch on."""
    status: TextStatus
    text: str = ""
    message: Optional[str] = None
    error_type: Optional[str] = None
    page_count: int = 0

    @property
    def has_text(self) -> bool:
        return self.status is TextStatus.TEXT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "text_length": len(self.text),
            "message": self.message,
            "error_type": self.error_type,
            "page_count": self.page_count,
        }

    @staticmethod
    def with_text(text: str, page_count: int = 0) -> "TextExtractionResult":
        return TextExtractionResult(status=TextStatus.TEXT, text=text, page_count=page_count)

    @staticmethod
    def no_text(page_count: int = 0) -> "TextExtractionResult":
        return TextExtractionResult(
            status=TextStatus.NO_TEXT,
            message=NO_TEXT_MESSAGE,
            page_count=page_count,
        )

    @staticmethod
    def not_a_pdf() -> "TextExtractionResult":
        return TextExtractionResult(
            status=TextStatus.UNREADABLE,
            message="File is not a valid PDF document",
            error_type="InvalidFormat",
        )

    @staticmethod
    def password_protected() -> "TextExtractionResult":
        return TextExtractionResult(
            status=TextStatus.UNREADABLE,
            message="PDF is password-protected and cannot be processed automatically",
            error_type="PasswordProtected",
        )

    @staticmethod
    def corrupted(error: Exception) -> "TextExtractionResult":
        return TextExtractionResult(
            status=TextStatus.UNREADABLE,
            message=f"Failed to parse PDF: {error}",
            error_type=type(error).__name__,
        )


# ============================================================================
# Validation
# ============================================================================

def validate_pdf_bytes(data: bytes) -> Optional[TextExtractionResult]:
    """
    Cheap checks before handing bytes to Docling.

    Returns an UNREADABLE result when the bytes are empty, lack the %PDF-
    magic header, or carry an /Encrypt dictionary; None when they look fine.
    """
    if not data:
        return TextExtractionResult.not_a_pdf()
    if not data[:8].startswith(b"%PDF-"):
        return TextExtractionResult.not_a_pdf()
    if b"/Encrypt" in data[:ENCRYPTION_SCAN_BYTES]:
        return TextExtractionResult.password_protected()
    return None


# ============================================================================
# Docling Integration
# ============================================================================

def create_default_converter() -> Any:
    """Docling converter for text-layer PDFs (OCR off)."""
    from docling.datamodel.base_models import InputFormat
    from docling.datamodel.pipeline_options import PdfPipelineOptions
    from docling.document_converter import DocumentConverter, PdfFormatOption

    pipeline_options = PdfPipelineOptions(do_ocr=False, do_table_structure=True)
    return DocumentConverter(
        format_options={
            InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
        }
    )


def _document_source(data: bytes, filename: str) -> Any:
    from docling.datamodel.base_models import DocumentStream

    return DocumentStream(name=filename or "contract.pdf", stream=io.BytesIO(data))


def _table_text(table: Any) -> str:
    """Cell text of a Docling table, one row per line."""
    data = getattr(table, "data", None)
    cells = getattr(data, "table_cells", None) or []
    rows: Dict[int, List[str]] = {}
    for cell in cells:
        text = (getattr(cell, "text", None) or "").strip()
        if text:
            rows.setdefault(getattr(cell, "start_row_offset_idx", 0), []).append(text)
    return "\n".join(" | ".join(rows[index]) for index in sorted(rows))


def collect_document_text(doc: Any) -> str:
    """
    Join the text items of a Docling document, then its table cells.

    Only real text counts: picture items (and the placeholders a markdown
    export would write for them) never do, so an image-only scan yields "".
    """
    parts: List[str] = []
    for text_item in getattr(doc, "texts", None) or []:
        text = getattr(text_item, "text", None)
        if text and text.strip():
            parts.append(text.strip())
    for table in getattr(doc, "tables", None) or []:
        table_text = _table_text(table)
        if table_text:
            parts.append(table_text)
    return "\n".join(parts)


def extract_document_text(
    data: bytes,
    filename: str = "contract.pdf",
    converter: Any = None,
    source_factory: Callable[[bytes, str], Any] = _document_source,
) -> TextExtractionResult:
    """
    Extract plain text from an uploaded contract.

    Args:
        data: Raw file bytes
        filename: Original name, used for Docling's format detection
        converter: Optional pre-built converter (injected in tests)
        source_factory: Wraps bytes into the converter's input type

    Returns:
        TextExtractionResult; never raises for bad documents
    """
    invalid = validate_pdf_bytes(data)
    if invalid is not None:
        logger.info(f"Rejected {filename}: {invalid.message}")
        return invalid

    converter = converter or create_default_converter()

    try:
        result = converter.convert(source_factory(data, filename))
        doc = result.document
    except Exception as e:
        error_str = str(e).lower()
        logger.warning(f"Docling failed on {filename}: {e}")
        if "password" in error_str or "encrypted" in error_str:
            return TextExtractionResult.password_protected()
        return TextExtractionResult.corrupted(e)

    page_count = len(doc.pages) if hasattr(doc, "pages") and doc.pages else 0
    text = collect_document_text(doc)

    if not text.strip():
        logger.info(f"No extractable text in {filename} ({page_count} pages)")
        return TextExtractionResult.no_text(page_count)

    logger.info(f"Extracted {len(text)} chars from {filename} ({page_count} pages)")
    return TextExtractionResult.with_text(text, page_count)


def truncate_for_llm(text: str, max_chars: int = DEFAULT_MAX_CONTRACT_CHARS) -> str:
    """Cap text at max_chars, appending a marker only when something was cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER
