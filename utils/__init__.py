"""
Utility modules for MTF Sentinel Trader.
"""

from .retry import retry_async

__all__ = ["retry_async"]
