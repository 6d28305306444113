"""
Futures Signal Executor - Binance USDT-M futures execution with risk gating

This package turns directional trading signals into sized, validated market
orders with attached take-profit and stop-loss orders, while a risk manager
enforces daily loss and drawdown limits.

Modules:
    core: Event bus, processor lifecycle, models and configuration
    execution: Position sizing, validation, exchange client and execution engine
    risk: Daily loss / drawdown monitoring and emergency liquidation
    position: Position and account tracking
"""

__version__ = "0.1.0"
