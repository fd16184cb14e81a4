"""
Data Quality Module
"""
from .validators import CheckResult, DataValidator, ValidationResult, validate_marts

__all__ = [
    "CheckResult",
    "DataValidator",
    "ValidationResult",
    "validate_marts",
]
