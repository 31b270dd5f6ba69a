"""Integration tests for the FastAPI endpoints using TestClient.

The app is built with :func:`agentkb.main.create_app` and its lifespan
runs normally, except that ``build_components`` is patched to return the
test object graph (SQLite in ``tmp_path``, in-memory vectors, hash
embeddings).  Pipeline jobs are drained through the client's portal so
they run on the same event loop as the app.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from agentkb import __version__
from agentkb.api.middleware import status_code_for
from agentkb.config.settings import Settings
from agentkb.main import create_app
from agentkb.pipeline.worker_pool import WorkerSupervisor
from agentkb.providers.metadata.sqlite_metadata_store import SQLiteMetadataStore
from agentkb.providers.queue.sqlite_job_queue import SQLiteJobQueue
from agentkb.utils.errors import (
    EmbeddingModelMismatchError,
    FileCancelledError,
    IngestionValidationError,
    InvalidTransitionError,
    NotFoundError,
    ProviderUnavailableError,
    RateLimitError,
    TenantAccessError,
)
from tests.conftest import InMemoryVectorStore, KBHarness, MockEmbeddingProvider, build_harness

_AGENT_URL = "/api/v1/tenants/tenant-a/agents/agent-1"


@pytest.fixture
def api_harness(
    settings: Settings,
    vector_store: InMemoryVectorStore,
    mock_embedding_provider: MockEmbeddingProvider,
) -> KBHarness:
    # The stores are initialised by the app lifespan.
    return build_harness(
        settings,
        SQLiteMetadataStore(settings.metadata_db_path),
        SQLiteJobQueue(settings.queue_db_path),
        vector_store,
        mock_embedding_provider,
    )


@pytest.fixture
def client(
    api_harness: KBHarness, settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> Iterator[TestClient]:
    h = api_harness

    def fake_build_components(app_settings: Settings) -> dict:
        return {
            "settings": app_settings,
            "metadata_store": h.store,
            "job_queue": h.queue,
            "object_storage": h.storage,
            "vector_store": h.vector_store,
            "embedding_provider": h.embedding_provider,
            "progress_tracker": h.tracker,
            "aggregator": h.aggregator,
            "orchestrator": h.orchestrator,
            "deletion": h.deletion,
            "retrieval": h.retrieval,
            "kb_service": h.kb,
            "supervisor": WorkerSupervisor(
                job_queue=h.queue,
                queues=list(h.orchestrator.handlers),
                process=h.orchestrator.process,
                settings=app_settings,
            ),
            "provider_registry": {
                "embedding": True,
                "embedding_provider": h.embedding_provider.get_provider_name(),
                "embedding_model": h.embedding_provider.get_model_name(),
                "vector_store": h.vector_store.get_provider_name(),
            },
        }

    monkeypatch.setattr("agentkb.main.build_components", fake_build_components)
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _drain(client: TestClient, harness: KBHarness) -> int:
    return client.portal.call(harness.orchestrator.drain)


def _register(client: TestClient) -> None:
    response = client.post("/api/v1/tenants/tenant-a/agents", json={"agent_id": "agent-1", "name": "Support"})
    assert response.status_code == 201


def _upload(client: TestClient, text: str, filename: str = "notes.txt", content_type: str = "text/plain"):
    return client.post(
        f"{_AGENT_URL}/files",
        files={"file": (filename, text.encode("utf-8"), content_type)},
    )


# ======================================================================
# Health
# ======================================================================


class TestHealth:
    def test_health_reports_queues_and_providers(self, client: TestClient) -> None:
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["version"] == __version__
        assert body["providers"]["vector_store"] == "memory"
        assert set(body["queues"]) == {
            "text-extraction",
            "chunking",
            "embeddings",
            "vector-storage",
            "file-deletion",
        }
        assert body["queues"]["chunking"] == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}


# ======================================================================
# Agents and uploads
# ======================================================================


class TestAgentsAndUploads:
    def test_register_agent(self, client: TestClient) -> None:
        response = client.post("/api/v1/tenants/tenant-a/agents", json={"agent_id": "agent-1"})

        assert response.status_code == 201
        body = response.json()
        assert body["agent_id"] == "agent-1"
        assert body["tenant_id"] == "tenant-a"
        assert body["status"] == "draft"

    def test_register_rejects_blank_id(self, client: TestClient) -> None:
        response = client.post("/api/v1/tenants/tenant-a/agents", json={"agent_id": ""})
        assert response.status_code == 422

    def test_unknown_agent_is_404(self, client: TestClient) -> None:
        response = client.get("/api/v1/tenants/tenant-a/agents/nobody/status")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    def test_upload_and_ingest(self, client: TestClient, api_harness: KBHarness, sample_text: str) -> None:
        _register(client)

        response = _upload(client, sample_text)
        assert response.status_code == 202
        body = response.json()
        assert body["job_id"]
        assert body["file"]["status"] == "queued"
        assert [s["stage"] for s in body["file"]["stages"]] == [
            "textExtraction",
            "chunking",
            "embeddings",
            "vectorStorage",
        ]
        file_id = body["file"]["file_id"]

        _drain(client, api_harness)

        status = client.get(f"{_AGENT_URL}/files/{file_id}/status").json()
        assert status["status"] == "completed"
        assert all(s["status"] == "completed" for s in status["stages"])
        assert status["stages"][1]["counters"]["chunk_count"] > 1

        agent = client.get(f"{_AGENT_URL}/status").json()
        assert agent["status"] == "trained"
        assert agent["completed_count"] == 1

        listing = client.get(f"{_AGENT_URL}/files").json()
        assert [f["file_id"] for f in listing] == [file_id]

    def test_unsupported_type_is_422(self, client: TestClient) -> None:
        _register(client)

        response = _upload(client, "not really an image", filename="logo.png", content_type="image/png")

        assert response.status_code == 422
        assert response.json()["error"] == "IngestionValidationError"

    def test_oversized_upload_is_422(self, client: TestClient, settings: Settings) -> None:
        _register(client)
        settings.max_upload_bytes = 16

        response = _upload(client, "x" * 64)

        assert response.status_code == 422
        assert "limit" in response.json()["detail"]

    def test_reprocess(self, client: TestClient, api_harness: KBHarness, sample_text: str) -> None:
        _register(client)
        file_id = _upload(client, sample_text).json()["file"]["file_id"]
        _drain(client, api_harness)

        response = client.post(f"{_AGENT_URL}/files/{file_id}/reprocess")
        assert response.status_code == 202
        assert response.json()["file_id"] == file_id

        status = client.get(f"{_AGENT_URL}/files/{file_id}/status").json()
        assert status["generation"] == 1
        assert status["status"] == "queued"


# ======================================================================
# Deletion
# ======================================================================


class TestDeletionEndpoints:
    def test_delete_and_poll(self, client: TestClient, api_harness: KBHarness, sample_text: str) -> None:
        _register(client)
        file_id = _upload(client, sample_text).json()["file"]["file_id"]
        _drain(client, api_harness)

        response = client.delete(f"{_AGENT_URL}/files/{file_id}")
        assert response.status_code == 202
        job = response.json()
        assert job["job_id"] == f"file-deletion-{file_id}"
        assert job["status"] == "queued"

        _drain(client, api_harness)

        done = client.get(f"/api/v1/tenants/tenant-a/deletions/{job['job_id']}").json()
        assert done["status"] == "completed"
        assert done["targets"][0]["outcomes"] == {
            "object_storage": "deleted",
            "vector_store": "deleted",
            "metadata_store": "deleted",
        }
        status = client.get(f"{_AGENT_URL}/files/{file_id}/status").json()
        assert status["status"] == "cancelled"
        assert status["deleted_at"] is not None

    def test_failed_deletion_can_be_retried(
        self, client: TestClient, api_harness: KBHarness, sample_text: str
    ) -> None:
        _register(client)
        file_id = _upload(client, sample_text).json()["file"]["file_id"]
        _drain(client, api_harness)

        api_harness.vector_store.fail_deletes = True
        job_id = client.delete(f"{_AGENT_URL}/files/{file_id}").json()["job_id"]
        _drain(client, api_harness)

        failed = client.get(f"/api/v1/tenants/tenant-a/deletions/{job_id}").json()
        assert failed["status"] == "failed"
        assert failed["targets"][0]["outcomes"]["vector_store"] == "failed"
        assert "vector_store" in failed["targets"][0]["errors"]

        api_harness.vector_store.fail_deletes = False
        retried = client.post(f"/api/v1/tenants/tenant-a/deletions/{job_id}/retry")
        assert retried.status_code == 202
        _drain(client, api_harness)

        done = client.get(f"/api/v1/tenants/tenant-a/deletions/{job_id}").json()
        assert done["status"] == "completed"

    def test_cancel_queued_deletion(
        self, client: TestClient, api_harness: KBHarness, sample_text: str
    ) -> None:
        _register(client)
        file_id = _upload(client, sample_text).json()["file"]["file_id"]
        _drain(client, api_harness)
        job_id = client.delete(f"{_AGENT_URL}/files/{file_id}").json()["job_id"]

        response = client.post(f"/api/v1/tenants/tenant-a/deletions/{job_id}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        _drain(client, api_harness)
        after = client.get(f"/api/v1/tenants/tenant-a/deletions/{job_id}").json()
        assert after["status"] == "cancelled"
        assert api_harness.vector_store.file_records("tenant-a", file_id) != []

    def test_cancel_finished_deletion_is_409(
        self, client: TestClient, api_harness: KBHarness, sample_text: str
    ) -> None:
        _register(client)
        file_id = _upload(client, sample_text).json()["file"]["file_id"]
        _drain(client, api_harness)
        job_id = client.delete(f"{_AGENT_URL}/files/{file_id}").json()["job_id"]
        _drain(client, api_harness)

        response = client.post(f"/api/v1/tenants/tenant-a/deletions/{job_id}/cancel")

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransitionError"

    def test_batch_delete(self, client: TestClient, api_harness: KBHarness, sample_text: str) -> None:
        _register(client)
        file_id = _upload(client, sample_text).json()["file"]["file_id"]

        response = client.post(
            f"{_AGENT_URL}/files/batch-delete", json={"file_ids": [file_id, "ghost"]}
        )

        assert response.status_code == 202
        body = response.json()
        assert body["requested"] == 2
        assert body["accepted"] == 1
        assert body["rejected"] == 1
        by_id = {item["file_id"]: item for item in body["items"]}
        assert by_id[file_id]["success"] is True
        assert by_id["ghost"]["success"] is False

    def test_batch_delete_requires_ids(self, client: TestClient) -> None:
        _register(client)
        response = client.post(f"{_AGENT_URL}/files/batch-delete", json={"file_ids": []})
        assert response.status_code == 422

    def test_other_tenant_gets_403(self, client: TestClient, api_harness: KBHarness, sample_text: str) -> None:
        _register(client)
        file_id = _upload(client, sample_text).json()["file"]["file_id"]
        job_id = client.delete(f"{_AGENT_URL}/files/{file_id}").json()["job_id"]

        response = client.get(f"/api/v1/tenants/tenant-b/deletions/{job_id}")

        assert response.status_code == 403
        assert response.json()["error"] == "TenantAccessError"


# ======================================================================
# Retrieval
# ======================================================================


class TestRetrieveEndpoint:
    def test_grounded_context(self, client: TestClient, api_harness: KBHarness, sample_text: str) -> None:
        _register(client)
        file_id = _upload(client, sample_text).json()["file"]["file_id"]
        _drain(client, api_harness)
        passage = api_harness.vector_store.file_records("tenant-a", file_id)[0].document

        response = client.post(f"{_AGENT_URL}/retrieve", json={"query": passage})

        assert response.status_code == 200
        body = response.json()
        assert body["grounded"] is True
        assert passage in body["context"]
        assert body["sources"][0]["file_id"] == file_id
        assert body["model"] == "mock-embedding-v1"

    def test_ungrounded_reason(self, client: TestClient) -> None:
        _register(client)

        body = client.post(f"{_AGENT_URL}/retrieve", json={"query": "refund policy"}).json()

        assert body["grounded"] is False
        assert body["reason"] == "no_completed_files"
        assert body["context"] == ""

    def test_invalid_limit_is_422(self, client: TestClient) -> None:
        _register(client)
        response = client.post(f"{_AGENT_URL}/retrieve", json={"query": "x", "limit": 0})
        assert response.status_code == 422


# ======================================================================
# Error mapping
# ======================================================================


class TestStatusCodeMapping:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (NotFoundError(message="x"), 404),
            (TenantAccessError(message="x"), 403),
            (IngestionValidationError(message="x"), 422),
            (InvalidTransitionError(message="x"), 409),
            (FileCancelledError(message="x"), 409),
            (EmbeddingModelMismatchError(message="x"), 409),
            (RateLimitError(message="x"), 503),
            (ProviderUnavailableError(message="x"), 503),
        ],
    )
    def test_status_codes(self, error: Exception, expected: int) -> None:
        assert status_code_for(error) == expected
