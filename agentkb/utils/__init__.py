"""Shared utilities: errors, logging, concurrency and token helpers."""
