"""
Pure domain helpers shared by every pipette package.

Nothing here touches the database or the input stream.
"""

from pipette_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
