"""
Execution module for order placement.

This module handles:
- Position sizing and exit price calculation
- Pre-trade validation and duplicate-signal protection
- The exchange boundary and its Binance implementation
- Signal-to-order orchestration with retry
"""

from .execution_engine import ExecutionEngine
from .order_validator import OrderValidator
from .position_sizer import PositionSizer

__all__ = [
    "ExecutionEngine",
    "OrderValidator",
    "PositionSizer",
]
