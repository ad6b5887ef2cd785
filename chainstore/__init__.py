"""Options-chain ingestion, upsert and lifecycle management on PostgreSQL."""

__version__ = "0.1.0"
