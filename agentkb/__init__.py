"""agentkb: document ingestion pipeline and retrieval context assembler
for multi-tenant conversational agent knowledge bases."""

__version__ = "0.1.0"
