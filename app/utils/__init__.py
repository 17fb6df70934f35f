"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import hash_value, parse_timestamp, utc_now

__all__ = ["hash_value", "parse_timestamp", "utc_now"]
