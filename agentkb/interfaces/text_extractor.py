"""Abstract base class for text extraction from uploaded bytes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class ExtractedText:
    """Plain text pulled out of a document, plus how it was obtained."""

    text: str
    method: str
    page_count: int | None = None


# Concrete implementation: DocumentTextExtractor (agentkb/providers/extraction/)
class ITextExtractor(ABC):
    """Contract for the ``extract(bytes, mimeType) -> (text, method)`` function."""

    @abstractmethod
    def supports(self, mime_type: str) -> bool:
        """Return ``True`` if *mime_type* can be extracted."""

    @abstractmethod
    async def extract(self, data: bytes, mime_type: str) -> ExtractedText:
        """Extract text from *data*.

        Raises
        ------
        agentkb.utils.errors.IngestionValidationError
            Unsupported MIME type or a document that cannot be parsed.
        """
