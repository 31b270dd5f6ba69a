"""Text extraction for uploaded documents.

Supported formats and the method label recorded for each:

    text/plain, text/markdown   → "utf8_decode"
    application/pdf             → "pymupdf"       (PyMuPDF / fitz)
    DOCX                        → "python_docx"   (python-docx)
    application/json            → "json_pretty"
    text/csv                    → "csv_text"

Parsing is CPU-bound and runs on ``asyncio.to_thread``.  Any document the
parsers reject raises :class:`IngestionValidationError` -- retrying a
corrupt file cannot help.
"""

from __future__ import annotations

import asyncio
import io
import json

import fitz  # PyMuPDF -- the "fitz" import name is a PyMuPDF convention
import structlog
from docx import Document

from agentkb.interfaces.text_extractor import ExtractedText, ITextExtractor
from agentkb.utils.errors import IngestionValidationError

logger = structlog.get_logger(logger_name=__name__)

_DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class DocumentTextExtractor(ITextExtractor):
    """Extracts plain text from the supported document formats."""

    def __init__(self) -> None:
        self._handlers = {
            "text/plain": self._decode_text,
            "text/markdown": self._decode_text,
            "text/x-markdown": self._decode_text,
            "application/pdf": self._extract_pdf,
            _DOCX_MIME: self._extract_docx,
            "application/json": self._extract_json,
            "text/csv": self._extract_csv,
        }

    def supports(self, mime_type: str) -> bool:
        return self._base_type(mime_type) in self._handlers

    async def extract(self, data: bytes, mime_type: str) -> ExtractedText:
        base_type = self._base_type(mime_type)
        handler = self._handlers.get(base_type)
        if handler is None:
            raise IngestionValidationError(
                message=f"Unsupported MIME type: {mime_type}",
                provider_name="extractor",
            )

        result = await asyncio.to_thread(handler, data)
        logger.info(
            "text_extracted",
            mime_type=base_type,
            method=result.method,
            length=len(result.text),
            pages=result.page_count,
        )
        return result

    # ------------------------------------------------------------------
    # Format handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _decode_text(data: bytes) -> ExtractedText:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = data.decode("latin-1")
        return ExtractedText(text=text, method="utf8_decode")

    @staticmethod
    def _extract_pdf(data: bytes) -> ExtractedText:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise IngestionValidationError(
                message=f"Unreadable PDF: {exc}",
                provider_name="pymupdf",
            ) from exc

        try:
            pages = [doc[i].get_text("text") for i in range(len(doc))]
        finally:
            doc.close()

        text = "\n\n".join(p.strip() for p in pages if p.strip())
        return ExtractedText(text=text, method="pymupdf", page_count=len(pages))

    @staticmethod
    def _extract_docx(data: bytes) -> ExtractedText:
        try:
            doc = Document(io.BytesIO(data))
        except Exception as exc:
            raise IngestionValidationError(
                message=f"Unreadable DOCX: {exc}",
                provider_name="python_docx",
            ) from exc
        text = "\n\n".join(para.text for para in doc.paragraphs if para.text.strip())
        return ExtractedText(text=text, method="python_docx")

    @staticmethod
    def _extract_json(data: bytes) -> ExtractedText:
        try:
            parsed = json.loads(data.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise IngestionValidationError(
                message=f"Invalid JSON document: {exc}",
                provider_name="extractor",
            ) from exc
        return ExtractedText(
            text=json.dumps(parsed, indent=2, ensure_ascii=False),
            method="json_pretty",
        )

    @staticmethod
    def _extract_csv(data: bytes) -> ExtractedText:
        decoded = DocumentTextExtractor._decode_text(data)
        return ExtractedText(text=decoded.text, method="csv_text")

    @staticmethod
    def _base_type(mime_type: str) -> str:
        return (mime_type or "").split(";", 1)[0].strip().lower()
