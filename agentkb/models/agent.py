"""Agent (knowledge base) model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from agentkb.models.documents import utc_now


class AgentStatus(str, Enum):  # noqa: UP042
    """Derived readiness of an agent's knowledge base."""

    DRAFT = "draft"
    TRAINING = "training"
    TRAINED = "trained"
    ERROR = "error"


class Agent(BaseModel):
    """A tenant-scoped container of files.

    ``status`` and the counters are written only by the status aggregator.
    """

    model_config = ConfigDict(frozen=True)

    agent_id: str
    tenant_id: str
    name: str = ""
    status: AgentStatus = AgentStatus.DRAFT
    file_count: int = Field(default=0, ge=0)
    completed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    status_changed_at: datetime | None = None
