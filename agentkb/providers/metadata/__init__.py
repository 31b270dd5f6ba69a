"""Metadata store implementations."""

from agentkb.providers.metadata.sqlite_metadata_store import SQLiteMetadataStore

__all__ = ["SQLiteMetadataStore"]
