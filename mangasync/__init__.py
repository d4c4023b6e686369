"""mangasync - Manga catalog ingestion and sync engine."""

__version__ = "0.1.0"
