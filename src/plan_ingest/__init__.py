"""Plan document ingestion and chunking service."""

__version__ = "0.1.0"
