"""ChromaDB vector store provider adapter.

Wraps ``chromadb.PersistentClient`` to implement :class:`IVectorStoreProvider`
with one collection per tenant and cosine distance.  Every read and delete
carries a ``where`` clause naming both tenant and agent, and hits whose
metadata names another tenant are dropped, so even a collection shared by
mistake cannot leak vectors across tenants.

ChromaDB's client is synchronous; calls run on ``asyncio.to_thread`` so a
large upsert never stalls the event loop the other stage workers share.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
from typing import Any

# Disable ChromaDB telemetry before importing chromadb.  A version mismatch
# between ChromaDB's bundled PostHog client and the installed one raises
# "capture() takes 1 positional argument" errors; the env var, the PostHog
# switch and the client Settings below cover every ChromaDB release.
os.environ["ANONYMIZED_TELEMETRY"] = "False"

import posthog

posthog.disabled = True

import chromadb
import structlog

from agentkb.interfaces.vector_store_provider import IVectorStoreProvider
from agentkb.models.rag import VectorMatch, VectorMetadata, VectorRecord
from agentkb.utils.concurrency import KeyedLocks
from agentkb.utils.errors import RAGError, TenantAccessError

logger = structlog.get_logger(logger_name=__name__)

_NAME_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]+")


def collection_name_for(tenant_id: str) -> str:
    """Return the deterministic, ChromaDB-safe collection name for a tenant.

    ChromaDB names must be 3-63 characters of ``[a-zA-Z0-9._-]`` and start
    and end with an alphanumeric; a hash suffix keeps sanitized names
    unique.
    """
    slug = _NAME_UNSAFE_RE.sub("-", tenant_id).strip("-_")[:40] or "tenant"
    digest = hashlib.sha1(tenant_id.encode("utf-8")).hexdigest()[:10]
    return f"kb-{slug}-{digest}"


class ChromaDBVectorStore(IVectorStoreProvider):
    """Vector store provider backed by ChromaDB with local persistence.

    Parameters
    ----------
    persist_directory:
        Where ChromaDB keeps its files.  Ignored when *client* is given.
    client:
        An existing ChromaDB client (tests pass one rooted in ``tmp_path``).
    upsert_batch_size:
        Records per ``collection.upsert`` call, bounding peak memory.
    """

    def __init__(
        self,
        persist_directory: str = "./data/chromadb",
        client: Any | None = None,
        upsert_batch_size: int = 100,
    ) -> None:
        self._client = client or chromadb.PersistentClient(
            path=persist_directory,
            settings=chromadb.config.Settings(anonymized_telemetry=False),
        )
        self._upsert_batch_size = upsert_batch_size
        self._collections: dict[str, Any] = {}
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def ensure_collection(self, tenant_id: str, embedding_model: str) -> str:
        """Get or create the tenant's collection; concurrent calls create one."""
        name = collection_name_for(tenant_id)
        if name in self._collections:
            return name

        async with self._locks.get(tenant_id):
            if name in self._collections:
                return name
            try:
                # An existing collection keeps the model it was built with.
                collection = await self._existing_collection(tenant_id)
                if collection is not None:
                    return name
                collection = await asyncio.to_thread(
                    self._client.get_or_create_collection,
                    name=name,
                    metadata={
                        "hnsw:space": "cosine",
                        "tenant_id": tenant_id,
                        "embedding_model": embedding_model,
                    },
                    embedding_function=None,
                )
            except Exception as exc:
                raise RAGError(
                    message=f"ChromaDB ensure_collection failed for tenant {tenant_id}: {exc}",
                    provider_name=self.get_provider_name(),
                ) from exc

            self._collections[name] = collection
            logger.info(
                "chromadb_collection_ready",
                tenant_id=tenant_id,
                collection=name,
                embedding_model=(collection.metadata or {}).get("embedding_model"),
            )
            return name

    async def collection_model(self, tenant_id: str) -> str | None:
        collection = await self._existing_collection(tenant_id)
        if collection is None:
            return None
        return (collection.metadata or {}).get("embedding_model")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(
        self,
        tenant_id: str,
        agent_id: str,
        file_id: str,
        records: list[VectorRecord],
    ) -> int:
        """Upsert one file's records in batches of ``upsert_batch_size``."""
        if not records:
            return 0
        for record in records:
            meta = record.metadata
            if (meta.tenant_id, meta.agent_id, meta.file_id) != (tenant_id, agent_id, file_id):
                raise TenantAccessError(
                    message=(
                        f"Record {record.record_id} belongs to "
                        f"{meta.tenant_id}/{meta.agent_id}/{meta.file_id}, "
                        f"not {tenant_id}/{agent_id}/{file_id}"
                    ),
                    provider_name=self.get_provider_name(),
                )

        collection = await self._collection(tenant_id, records[0].metadata.embedding_model)
        try:
            total = 0
            for start in range(0, len(records), self._upsert_batch_size):
                batch = records[start : start + self._upsert_batch_size]
                await asyncio.to_thread(
                    collection.upsert,
                    ids=[r.record_id for r in batch],
                    embeddings=[r.vector for r in batch],
                    documents=[r.document for r in batch],
                    metadatas=[r.metadata.model_dump() for r in batch],
                )
                total += len(batch)
        except Exception as exc:
            raise RAGError(
                message=f"ChromaDB upsert failed for file {file_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info(
            "chromadb_upsert",
            tenant_id=tenant_id,
            agent_id=agent_id,
            file_id=file_id,
            count=total,
        )
        return total

    async def delete_by_file(self, tenant_id: str, agent_id: str, file_id: str) -> int:
        """Delete all records of one file; returns how many existed."""
        collection = await self._existing_collection(tenant_id)
        if collection is None:
            return 0
        where = self._where(tenant_id, agent_id, file_id)
        try:
            existing = await asyncio.to_thread(collection.get, where=where, include=["metadatas"])
            count = len(existing["ids"]) if existing["ids"] else 0
            if count > 0:
                await asyncio.to_thread(collection.delete, where=where)
        except Exception as exc:
            raise RAGError(
                message=f"ChromaDB delete_by_file failed for file {file_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info(
            "chromadb_delete_by_file",
            tenant_id=tenant_id,
            agent_id=agent_id,
            file_id=file_id,
            deleted_count=count,
        )
        return count

    async def count_by_file(self, tenant_id: str, agent_id: str, file_id: str) -> int:
        collection = await self._existing_collection(tenant_id)
        if collection is None:
            return 0
        try:
            existing = await asyncio.to_thread(
                collection.get,
                where=self._where(tenant_id, agent_id, file_id),
                include=["metadatas"],
            )
        except Exception as exc:
            raise RAGError(
                message=f"ChromaDB count_by_file failed for file {file_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return len(existing["ids"]) if existing["ids"] else 0

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        tenant_id: str,
        agent_id: str,
        query_vector: list[float],
        limit: int,
        threshold: float,
    ) -> list[VectorMatch]:
        """Cosine search inside the tenant collection, filtered to one agent."""
        if limit <= 0:
            return []
        collection = await self._existing_collection(tenant_id)
        if collection is None:
            return []

        try:
            total = await asyncio.to_thread(collection.count)
            if total == 0:
                return []
            results = await asyncio.to_thread(
                collection.query,
                query_embeddings=[query_vector],
                n_results=min(limit, total),
                where=self._where(tenant_id, agent_id),
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise RAGError(
                message=f"ChromaDB query failed for tenant {tenant_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        ids = results["ids"][0] if results.get("ids") else []
        documents = results["documents"][0] if results.get("documents") else [""] * len(ids)
        metadatas = results["metadatas"][0] if results.get("metadatas") else [{}] * len(ids)
        distances = results["distances"][0] if results.get("distances") else [1.0] * len(ids)

        matches: list[VectorMatch] = []
        for record_id, document, meta, distance in zip(ids, documents, metadatas, distances):
            if (meta or {}).get("tenant_id") != tenant_id or meta.get("agent_id") != agent_id:
                logger.error(
                    "chromadb_foreign_record_dropped",
                    tenant_id=tenant_id,
                    agent_id=agent_id,
                    record_id=record_id,
                    record_tenant=(meta or {}).get("tenant_id"),
                )
                continue
            score = max(0.0, min(1.0, 1.0 - float(distance)))
            if score < threshold:
                continue
            matches.append(
                VectorMatch(
                    record_id=record_id,
                    score=score,
                    document=document or "",
                    metadata=VectorMetadata.model_validate(meta),
                )
            )

        matches.sort(key=lambda m: m.score, reverse=True)
        matches = matches[:limit]
        logger.info(
            "chromadb_query",
            tenant_id=tenant_id,
            agent_id=agent_id,
            raw_results=len(ids),
            results_count=len(matches),
            top_score=matches[0].score if matches else 0.0,
        )
        return matches

    def get_provider_name(self) -> str:
        return "chromadb"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _collection(self, tenant_id: str, embedding_model: str) -> Any:
        name = await self.ensure_collection(tenant_id, embedding_model)
        return self._collections[name]

    async def _existing_collection(self, tenant_id: str) -> Any | None:
        """Return the tenant's collection without creating it."""
        name = collection_name_for(tenant_id)
        if name in self._collections:
            return self._collections[name]
        existing = await asyncio.to_thread(self._client.list_collections)
        names = {getattr(c, "name", c) for c in existing}
        if name not in names:
            return None
        collection = await asyncio.to_thread(
            self._client.get_collection, name=name, embedding_function=None
        )
        self._collections[name] = collection
        return collection

    @staticmethod
    def _where(tenant_id: str, agent_id: str, file_id: str | None = None) -> dict[str, Any]:
        clauses: list[dict[str, Any]] = [{"tenant_id": tenant_id}, {"agent_id": agent_id}]
        if file_id is not None:
            clauses.append({"file_id": file_id})
        return {"$and": clauses}
