"""Text extraction implementations."""

from agentkb.providers.extraction.document_text_extractor import DocumentTextExtractor

__all__ = ["DocumentTextExtractor"]
