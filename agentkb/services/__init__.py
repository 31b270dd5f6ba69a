"""Service layer: ingestion helpers, deletion, retrieval and the tenant facade."""
