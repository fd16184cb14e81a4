"""
Growth Analytics Module
"""
from .cohorts import LtvWindow, RetentionWindow, build_cohorts, compute_cohorts

__all__ = [
    "LtvWindow",
    "RetentionWindow",
    "build_cohorts",
    "compute_cohorts",
]
