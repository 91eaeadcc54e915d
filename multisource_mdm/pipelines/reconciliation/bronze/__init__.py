"""
Bronze Layer - Source Record Ingestion.

This layer reads raw rows from both source systems and standardizes them
into typed source records.
"""

from .ingest_source_records import (
    DataFrameSourceAdapter,
    FileSourceAdapter,
    SourceAdapter,
    SourceConfig,
    prepare_source_records,
)

__all__ = [
    "DataFrameSourceAdapter",
    "FileSourceAdapter",
    "SourceAdapter",
    "SourceConfig",
    "prepare_source_records",
]
