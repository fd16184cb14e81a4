"""
Pipeline Runner and Job Tracking
"""
from .jobs import InvalidJobTransition, JobNotFound, mark_retrying
from .runner import PipelineResult, run_pipeline

__all__ = [
    "InvalidJobTransition",
    "JobNotFound",
    "mark_retrying",
    "PipelineResult",
    "run_pipeline",
]
