"""
Utility modules for stackforge.
"""

from .faults import FaultConfig, FaultInjector, FaultType
from .timers import Timer, TimingResult, time_operation

__all__ = [
    "FaultConfig",
    "FaultInjector",
    "FaultType",
    "Timer",
    "TimingResult",
    "time_operation",
]
