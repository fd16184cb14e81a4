"""
Data Ingestion Module
"""
from .raw_capture import RawRecord, ingest_raw

__all__ = [
    "RawRecord",
    "ingest_raw",
]
