"""
Position module: polling-based position and account tracking.
"""

from .position_tracker import PositionTracker

__all__ = ["PositionTracker"]
