"""
Data Generation Module
"""
from .generators import (
    CustomerGenerator,
    DataGenerator,
    OrderGenerator,
    SpendGenerator,
    TrafficGenerator,
    load_records,
    summarize,
)

__all__ = [
    "DataGenerator",
    "CustomerGenerator",
    "OrderGenerator",
    "SpendGenerator",
    "TrafficGenerator",
    "load_records",
    "summarize",
]
