"""Custom exception hierarchy for agentkb.

All application exceptions inherit from :class:`AgentKBError`, which
carries an optional ``provider_name`` so error handlers can identify which
external service (e.g. "openai", "chromadb", "sqlite") caused the failure.

The hierarchy is organized by how the pipeline reacts to the error:

    AgentKBError  (base -- catch-all for any agentkb error)
    +-- TransientError               (retried with backoff)
    |   +-- RateLimitError           (provider rate-limit exceeded)
    |   +-- ProviderUnavailableError (external service down / unreachable)
    |   +-- StageTimeoutError        (stage-local deadline expired)
    +-- IngestionValidationError     (bad input -- fail the stage, no retry)
    +-- ConsistencyError             (vector write ok, metadata write failed)
    +-- FileCancelledError           (file deleted while a stage was running)
    +-- InvalidTransitionError       (stage state machine rejected a write)
    +-- NotFoundError                (unknown file / agent / job)
    +-- TenantAccessError            (tenant or agent identifiers do not match)
    +-- RAGError                     (embedding or vector-store failure)
    |   +-- EmbeddingModelMismatchError (query model differs from the index)
    +-- PipelineError                (orchestration failures)
    +-- DeletionError                (a deletion backend failed)
    +-- ConfigurationError           (startup / missing config)

The split lets callers handle errors at exactly the right level -- the
orchestrator retries anything that is a :class:`TransientError`, fails a
stage outright on :class:`IngestionValidationError`, and drops the job
silently on :class:`FileCancelledError`.
"""


class AgentKBError(Exception):
    """Base exception for all agentkb errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external service triggered the
    error.  The ``__str__`` method prefixes the provider name in brackets
    for structured log output, e.g. ``[openai] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Transient errors -- retried with exponential backoff
# ---------------------------------------------------------------------------


class TransientError(AgentKBError):
    """Raised for failures that are expected to succeed on a later attempt."""

    def __init__(
        self,
        message: str = "Transient failure",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class RateLimitError(TransientError):
    """Raised when an API rate limit is exceeded.

    The embedding coordinator retries only the batch that hit the limit.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ProviderUnavailableError(TransientError):
    """Raised when an external service or provider is unreachable."""

    def __init__(
        self,
        message: str = "External service is unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class StageTimeoutError(TransientError):
    """Raised when a stage-local deadline (e.g. one embedding batch) expires."""

    def __init__(
        self,
        message: str = "Operation timed out",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Input / consistency errors
# ---------------------------------------------------------------------------


class IngestionValidationError(AgentKBError):
    """Raised for input that can never be processed (unsupported MIME, empty text)."""

    def __init__(
        self,
        message: str = "Invalid ingestion input",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConsistencyError(AgentKBError):
    """Raised when the vector store and the metadata store disagree.

    The fix is always to re-run the metadata write against the
    deterministic vector ids; embeddings are never regenerated for it.
    """

    def __init__(
        self,
        message: str = "Vector store and metadata store are out of sync",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class FileCancelledError(AgentKBError):
    """Raised when a file was deleted while one of its stages was running."""

    def __init__(
        self,
        message: str = "File was deleted during processing",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class InvalidTransitionError(AgentKBError):
    """Raised when a stage write would violate the stage ordering rules."""

    def __init__(
        self,
        message: str = "Invalid stage transition",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Lookup / access errors
# ---------------------------------------------------------------------------


class NotFoundError(AgentKBError):
    """Raised when a file, agent or job does not exist."""

    def __init__(
        self,
        message: str = "Resource not found",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class TenantAccessError(AgentKBError):
    """Raised when the supplied tenant does not own the agent or file."""

    def __init__(
        self,
        message: str = "Resource does not belong to this tenant",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# RAG / orchestration errors
# ---------------------------------------------------------------------------


class RAGError(AgentKBError):
    """Raised when an embedding or vector-store operation fails."""

    def __init__(
        self,
        message: str = "RAG operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class EmbeddingModelMismatchError(RAGError):
    """Raised when a query would be embedded with a different model than the index."""

    def __init__(
        self,
        message: str = "Embedding model does not match the indexed collection",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class PipelineError(AgentKBError):
    """Raised when pipeline orchestration fails (missing payload, bad job, etc.)."""

    def __init__(
        self,
        message: str = "Pipeline orchestration failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class DeletionError(AgentKBError):
    """Raised when one or more deletion backends failed for a job."""

    def __init__(
        self,
        message: str = "File deletion failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(AgentKBError):
    """Raised when configuration is invalid or missing at startup."""

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
