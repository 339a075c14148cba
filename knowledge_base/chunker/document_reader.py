"""
knowledge_base/chunker/document_reader.py

Boundary to the raw file-format decoders.

Responsibility: given raw upload bytes plus a filename / MIME type, return
the document's plain text. Text-like formats are decoded here; PDFs go
through PyMuPDF (fitz). Everything else is rejected as unsupported.
Normalization and chunking happen downstream in TextChunker.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF

from knowledge_base.core.config import settings
from knowledge_base.core.constants import (
    JSON_CONTENT_TYPE,
    PDF_CONTENT_TYPE,
    PDF_EXTENSION,
    TEXT_EXTENSIONS,
    TEXT_MIME_PREFIX,
)
from knowledge_base.core.exceptions import InvalidFileTypeError, ValidationError
from knowledge_base.core.logger import get_logger

logger = get_logger(__name__)


class DocumentReader:
    """
    Turns uploaded bytes into text.

    PDFs are opened entirely in memory — no temporary files are created.
    """

    def __init__(self, max_bytes: Optional[int] = None) -> None:
        self.max_bytes: int = max_bytes or settings.max_document_bytes

    def kind_of(self, filename: str, mime_type: Optional[str] = None) -> str:
        """
        Classify an upload as ``"pdf"`` or ``"text"``.

        Raises:
            InvalidFileTypeError: Neither the extension nor the MIME type is supported.
        """
        suffix = Path(filename or "").suffix.lower()
        mime = (mime_type or "").lower()
        if suffix == PDF_EXTENSION or mime == PDF_CONTENT_TYPE:
            return "pdf"
        if suffix in TEXT_EXTENSIONS or mime.startswith(TEXT_MIME_PREFIX) or mime == JSON_CONTENT_TYPE:
            return "text"
        raise InvalidFileTypeError(
            f"'{filename}' is not a supported document type "
            f"(accepted: {', '.join(sorted(TEXT_EXTENSIONS | {PDF_EXTENSION}))})."
        )

    def read(self, file_bytes: bytes, filename: str, mime_type: Optional[str] = None) -> str:
        """
        Decode an upload to text.

        Args:
            file_bytes : Raw bytes of the file.
            filename   : Original filename — drives type detection and messages.
            mime_type  : Optional content type sent by the client.

        Returns:
            The extracted text (may still contain irregular whitespace).

        Raises:
            InvalidFileTypeError: Unsupported file type.
            ValidationError     : Empty, oversized or undecodable content.
        """
        if not file_bytes:
            raise ValidationError(f"'{filename}' is empty — nothing to read.")
        if len(file_bytes) > self.max_bytes:
            raise ValidationError(
                f"'{filename}' is {len(file_bytes)} bytes; the limit is {self.max_bytes}."
            )

        if self.kind_of(filename, mime_type) == "pdf":
            return self._read_pdf(file_bytes, filename)
        return self._read_text(file_bytes)

    # ── Decoders ───────────────────────────────────────────────────────────────

    @staticmethod
    def _read_text(file_bytes: bytes) -> str:
        try:
            return file_bytes.decode("utf-8-sig")
        except UnicodeDecodeError:
            return file_bytes.decode("latin-1")

    @staticmethod
    def _read_pdf(file_bytes: bytes, filename: str) -> str:
        try:
            # stream= opens from bytes without touching the filesystem.
            doc = fitz.open(stream=file_bytes, filetype="pdf")
        except Exception as exc:
            raise ValidationError(f"'{filename}' could not be opened as a PDF: {exc}") from exc

        pages = []
        try:
            for page in doc:
                text = page.get_text("text")
                if text.strip():               # skip blank/image-only pages
                    pages.append(text)
            total_pages = len(doc)
        except Exception as exc:
            raise ValidationError(f"Text extraction failed for '{filename}': {exc}") from exc
        finally:
            doc.close()

        logger.info("'%s' — extracted text from %d / %d page(s).", filename, len(pages), total_pages)

        if not pages:
            raise ValidationError(
                f"'{filename}' contains no extractable text "
                "(the PDF may be image-only or empty)."
            )
        return "\n\n".join(pages)
