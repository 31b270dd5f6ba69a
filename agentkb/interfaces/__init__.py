"""Public interface definitions for all external collaborators.

Every backend the pipeline talks to is accessed through the abstract base
classes in this package.  Concrete adapters live in ``agentkb/providers/``
and are wired together in ``agentkb/main.py``; tests inject in-memory fakes
implementing the same interfaces.

CONCRETE PROVIDER MAP:
    Interface                  →  Concrete implementation
    ─────────────────────────────────────────────────────────────────────
    IEmbeddingProvider         →  OpenAIEmbeddingProvider
    IEmbeddingCache            →  TTLEmbeddingCache
    IVectorStoreProvider       →  ChromaDBVectorStore
    IObjectStorage             →  LocalObjectStorage
    ITextExtractor             →  DocumentTextExtractor
    IMetadataStore             →  SQLiteMetadataStore
    IJobQueue                  →  SQLiteJobQueue
"""

from agentkb.interfaces.embedding_cache import IEmbeddingCache
from agentkb.interfaces.embedding_provider import IEmbeddingProvider
from agentkb.interfaces.job_queue import IJobQueue
from agentkb.interfaces.metadata_store import IMetadataStore
from agentkb.interfaces.object_storage import IObjectStorage
from agentkb.interfaces.text_extractor import ExtractedText, ITextExtractor
from agentkb.interfaces.vector_store_provider import IVectorStoreProvider

__all__ = [
    "ExtractedText",
    "IEmbeddingCache",
    "IEmbeddingProvider",
    "IJobQueue",
    "IMetadataStore",
    "IObjectStorage",
    "ITextExtractor",
    "IVectorStoreProvider",
]
