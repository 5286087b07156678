"""
MTF Sentinel Trader - Storage
"""

from .database import Database

__all__ = ["Database"]
