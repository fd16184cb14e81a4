"""
Growth Marts Pipeline
Configuration Module
"""
from .settings import PipelineSettings, Settings, get_settings

__all__ = ["PipelineSettings", "Settings", "get_settings"]
