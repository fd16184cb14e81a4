"""
Data Transformation Module
"""
from .channels import Vocabulary, resolve
from .cleaners import MalformedRecord
from .marts import MartCounts, build_marts
from .staging import StagingCounts, normalize_staging

__all__ = [
    "Vocabulary",
    "resolve",
    "MalformedRecord",
    "MartCounts",
    "build_marts",
    "StagingCounts",
    "normalize_staging",
]
