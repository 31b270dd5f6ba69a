"""Concrete adapters for the interfaces in ``agentkb.interfaces``."""
