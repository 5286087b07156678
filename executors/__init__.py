"""
MTF Sentinel Trader - Executors
Broker access, sizing and risk checks, position lifecycle and exit monitoring.
"""

from .risk_engine import RiskEngine, size_position
from .lemon_broker import (
    LemonBrokerClient,
    BrokerError,
    BrokerTransientError,
    BrokerAuthError,
    BrokerRejection,
)
from .lifecycle import PositionLifecycleManager
from .exit_monitor import ExitMonitor, analyze_for_exit

__all__ = [
    "RiskEngine",
    "size_position",
    "LemonBrokerClient",
    "BrokerError",
    "BrokerTransientError",
    "BrokerAuthError",
    "BrokerRejection",
    "PositionLifecycleManager",
    "ExitMonitor",
    "analyze_for_exit",
]
