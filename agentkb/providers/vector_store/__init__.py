"""Vector store provider implementations."""

from agentkb.providers.vector_store.chromadb_provider import ChromaDBVectorStore, collection_name_for

__all__ = ["ChromaDBVectorStore", "collection_name_for"]
