"""
Risk module: daily loss limit, drawdown limit and the trading gate.
"""

from .risk_manager import RiskManager

__all__ = ["RiskManager"]
