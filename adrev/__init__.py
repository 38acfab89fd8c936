"""Ad Manager revenue report ingestion."""

__version__ = "0.1.0"
