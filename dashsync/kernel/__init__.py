"""
dashsync Kernel

Time and scheduling primitives shared by every sync component.
"""

from dashsync.kernel.clock import AsyncioClock, Clock, TimerHandle, VirtualClock

__all__ = [
    "Clock",
    "TimerHandle",
    "AsyncioClock",
    "VirtualClock",
]
