"""
Growth Marts Pipeline

Raw connector exports in, star-schema marts and monthly acquisition cohorts
out.
"""

__version__ = "1.0.0"
