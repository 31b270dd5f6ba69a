"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ─────────────────────────────────────────────────
#
# Settings are read from two sources (in priority order):
#
#   1. **Environment variables** -- e.g. OPENAI_API_KEY=sk-abc123
#   2. **.env file** -- key=value lines in the project root .env file
#
# Field ``embedding_batch_size`` maps to env var ``EMBEDDING_BATCH_SIZE``.
# Defaults below apply when neither source sets a value.
#
# Stage tuning knobs come in families keyed by stage name
# (extraction / chunking / embeddings / vector_storage / deletion):
#   <stage>_concurrency    -- workers pulling from that stage's queue
#   <stage>_max_attempts   -- attempts before the stage is failed for good
#   <stage>_backoff_seconds -- base of the exponential retry delay
#   <stage>_timeout_seconds -- deadline for one attempt of an ingestion
#                              stage (0 disables it)
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """agentkb application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === Embedding provider ===
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_batch_size: int = 100
    embedding_max_retries: int = 5
    embedding_retry_base_seconds: float = 1.0
    embedding_batch_timeout_seconds: float = 60.0
    embedding_cache_size: int = 10000
    embedding_cache_ttl_seconds: int = 3600

    # === Storage locations ===
    data_dir: str = "./data"
    object_storage_dir: str = "./data/objects"
    metadata_db_path: str = "./data/agentkb.db"
    queue_db_path: str = "./data/queue.db"
    chromadb_persist_dir: str = "./data/chromadb"
    vector_upsert_batch_size: int = 100

    # === Chunking ===
    chunk_size: int = 3000
    chunk_overlap: int = 50
    token_chunk_size: int = 500
    token_chunk_overlap: int = 100
    tokenizer_model: str = "bert-base-uncased"
    max_upload_bytes: int = 50 * 1024 * 1024

    # === Stage workers ===
    extraction_concurrency: int = 4
    chunking_concurrency: int = 4
    embeddings_concurrency: int = 2
    vector_storage_concurrency: int = 3
    deletion_concurrency: int = 2

    extraction_max_attempts: int = 5
    chunking_max_attempts: int = 3
    embeddings_max_attempts: int = 5
    vector_storage_max_attempts: int = 5
    deletion_max_attempts: int = 3

    extraction_backoff_seconds: float = 5.0
    chunking_backoff_seconds: float = 2.0
    embeddings_backoff_seconds: float = 10.0
    vector_storage_backoff_seconds: float = 5.0
    deletion_backoff_seconds: float = 2.0

    extraction_timeout_seconds: float = 300.0
    chunking_timeout_seconds: float = 120.0
    embeddings_timeout_seconds: float = 1800.0
    vector_storage_timeout_seconds: float = 600.0

    queue_poll_interval_seconds: float = 1.0
    stalled_job_timeout_seconds: int = 600
    run_workers_in_process: bool = True

    # === Retrieval ===
    retrieval_limit: int = 5
    retrieval_threshold: float = 0.6
    retrieval_max_chars: int = 4000
    retrieval_max_tokens: int = 1000
    retrieval_preview_chars: int = 200

    # === Deletion ===
    deletion_retention_hours: int = 72

    # === App Config ===
    config_path: str = "config/config.yaml"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"

    def stage_concurrency(self, stage: str) -> int:
        """Return the worker count for *stage* (e.g. ``"embeddings"``)."""
        return int(getattr(self, f"{stage}_concurrency"))

    def stage_max_attempts(self, stage: str) -> int:
        """Return the attempt cap for *stage*."""
        return int(getattr(self, f"{stage}_max_attempts"))

    def stage_backoff_seconds(self, stage: str) -> float:
        """Return the base backoff delay for *stage*."""
        return float(getattr(self, f"{stage}_backoff_seconds"))

    def stage_timeout_seconds(self, stage: str) -> float:
        """Return the per-attempt deadline for *stage*; 0 or less means none."""
        return float(getattr(self, f"{stage}_timeout_seconds", 0.0))
