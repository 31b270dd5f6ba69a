"""YAML configuration loader with environment variable overrides.

Configuration is loaded in layers (later layers override earlier):

  1. config/config.yaml  -- static defaults checked into the repo
  2. .env file           -- local developer overrides (not committed)
  3. Environment vars    -- set by the deployment

The YAML file is optional.  The result is a nested dict used by tooling
(``python -m agentkb status --config``) and handy for dumping the
effective configuration at start-up.
"""

from pathlib import Path

import yaml

from agentkb.config.settings import Settings

_STAGES = ("extraction", "chunking", "embeddings", "vector_storage", "deletion")


def load_config(path: str = "config/config.yaml", settings: Settings | None = None) -> dict:
    """Load YAML config and merge with environment-based Settings.

    Args:
        path: Path to the YAML configuration file.
        settings: Settings instance to read overrides from; a fresh one is
            built from the environment when omitted.

    Returns:
        Fully resolved configuration dictionary.
    """
    config_path = Path(path)
    if config_path.exists():
        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}
    else:
        yaml_config = {}

    settings = settings or Settings()
    env_overrides = {
        "app": {
            "host": settings.app_host,
            "port": settings.app_port,
            "env": settings.app_env,
        },
        "embedding": {
            "model": settings.openai_embedding_model,
            "batch_size": settings.embedding_batch_size,
            "max_retries": settings.embedding_max_retries,
            "configured": bool(settings.openai_api_key),
        },
        "chunking": {
            "size": settings.chunk_size,
            "overlap": settings.chunk_overlap,
            "token_size": settings.token_chunk_size,
            "token_overlap": settings.token_chunk_overlap,
        },
        "stages": {
            stage: {
                "concurrency": settings.stage_concurrency(stage),
                "max_attempts": settings.stage_max_attempts(stage),
                "backoff_seconds": settings.stage_backoff_seconds(stage),
            }
            for stage in _STAGES
        },
        "retrieval": {
            "limit": settings.retrieval_limit,
            "threshold": settings.retrieval_threshold,
            "max_chars": settings.retrieval_max_chars,
            "max_tokens": settings.retrieval_max_tokens,
        },
        "logging": {
            "level": settings.log_level,
        },
    }

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
