"""
Database Module
"""
from .connection import Database
from .models import Base
from .upsert import prune_missing, upsert_many

__all__ = [
    "Database",
    "Base",
    "prune_missing",
    "upsert_many",
]
