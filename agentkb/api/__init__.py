"""agentkb API layer: routes, schemas, and middleware."""

from agentkb.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from agentkb.api.routes import router
from agentkb.api.schemas import (
    AgentStatusResponse,
    BatchDeleteRequest,
    BatchDeleteResponse,
    DeletionJobResponse,
    ErrorResponse,
    FileStatusResponse,
    FileUploadResponse,
    HealthResponse,
    RegisterAgentRequest,
    RetrieveRequest,
    RetrieveResponse,
)

__all__ = [
    "ErrorHandlingMiddleware",
    "RequestLoggingMiddleware",
    "configure_cors",
    "router",
    "AgentStatusResponse",
    "BatchDeleteRequest",
    "BatchDeleteResponse",
    "DeletionJobResponse",
    "ErrorResponse",
    "FileStatusResponse",
    "FileUploadResponse",
    "HealthResponse",
    "RegisterAgentRequest",
    "RetrieveRequest",
    "RetrieveResponse",
]
