"""Abstract base class for tenant-scoped vector-store providers.

Tenant isolation is structural: every method takes the tenant id as a
required positional argument, each tenant gets its own collection, and
implementations bake tenant *and* agent into every query filter.  There
is no code path that searches without a tenant.

Writes and deletes are always scoped to a single file's record set so
concurrent ingestion of different files in the same tenant collection
cannot clobber each other.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from agentkb.models.rag import VectorMatch, VectorRecord


# Concrete implementation: ChromaDBVectorStore (agentkb/providers/vector_store/)
class IVectorStoreProvider(ABC):
    """Contract for the vector database behind ingestion and retrieval."""

    @abstractmethod
    async def ensure_collection(self, tenant_id: str, embedding_model: str) -> str:
        """Create the tenant's collection if needed and return its id.

        Safe to call concurrently for the same tenant: at most one physical
        collection is ever created.  *embedding_model* is recorded on
        creation and ignored for an existing collection.
        """

    @abstractmethod
    async def upsert(
        self,
        tenant_id: str,
        agent_id: str,
        file_id: str,
        records: list[VectorRecord],
    ) -> int:
        """Insert or replace *records* belonging to one file.

        Raises
        ------
        agentkb.utils.errors.TenantAccessError
            A record's metadata names another tenant, agent or file.
        agentkb.utils.errors.RAGError
            The backend write failed.

        Returns
        -------
        int
            Number of records written.
        """

    @abstractmethod
    async def delete_by_file(self, tenant_id: str, agent_id: str, file_id: str) -> int:
        """Delete every record of one file and return how many existed."""

    @abstractmethod
    async def count_by_file(self, tenant_id: str, agent_id: str, file_id: str) -> int:
        """Return the number of stored records for one file."""

    @abstractmethod
    async def search(
        self,
        tenant_id: str,
        agent_id: str,
        query_vector: list[float],
        limit: int,
        threshold: float,
    ) -> list[VectorMatch]:
        """Return matches ranked by similarity, descending.

        At most *limit* matches are returned and none scores below
        *threshold*.
        """

    @abstractmethod
    async def collection_model(self, tenant_id: str) -> str | None:
        """Return the embedding model recorded on the tenant's collection."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"chromadb"``."""
