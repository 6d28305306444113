"""
Pytest configuration and shared fixtures for futures executor tests.

This module provides:
- Model fixtures (signal, balance, trading rules)
- Configuration fixtures
- A mock exchange client built on AsyncMock
- A mock event bus that records published events
"""

from unittest.mock import AsyncMock, Mock

import pytest

from futures_executor.core.config import ExecutionConfig, PositionConfig, RiskConfig
from futures_executor.core.event_bus import EventBus, EventType
from futures_executor.core.models import (
    AccountBalance,
    OrderResult,
    Position,
    SymbolTradingRules,
    TradingSignal,
)


@pytest.fixture
def long_signal() -> TradingSignal:
    """A LONG signal on BTCUSDT."""
    return TradingSignal(
        direction="LONG",
        symbol="BTCUSDT",
        trigger_price=50000.0,
        reference_band_value=49500.0,
        midline=50500.0,
        bandwidth=0.045,
        candle_timestamp=1700000000000
    )


@pytest.fixture
def short_signal() -> TradingSignal:
    """A SHORT signal on BTCUSDT."""
    return TradingSignal(
        direction="SHORT",
        symbol="BTCUSDT",
        trigger_price=50000.0,
        reference_band_value=50500.0,
        midline=49500.0,
        bandwidth=0.045,
        candle_timestamp=1700000900000
    )


@pytest.fixture
def balance() -> AccountBalance:
    """1000 USDT available."""
    return AccountBalance(asset="USDT", available=1000.0, total=1000.0)


@pytest.fixture
def rules() -> SymbolTradingRules:
    """BTCUSDT-like trading rules."""
    return SymbolTradingRules(
        symbol="BTCUSDT",
        price_precision=2,
        quantity_precision=3,
        min_qty=0.001,
        max_qty=1000.0,
        step_size=0.001,
        min_notional=5.0
    )


@pytest.fixture
def execution_config() -> ExecutionConfig:
    return ExecutionConfig(
        symbol="BTCUSDT",
        leverage=10,
        position_size_percent=0.1,
        take_profit_percent=0.02,
        stop_loss_percent=0.01,
        max_position_size_usdt=5000.0,
        min_position_size_usdt=10.0,
        retry_attempts=3,
        retry_delay_ms=0
    )


@pytest.fixture
def risk_config() -> RiskConfig:
    return RiskConfig(
        symbol="BTCUSDT",
        daily_loss_limit_usdt=100.0,
        max_drawdown_percent=0.1,
        auto_close_on_breach=False,
        risk_check_interval_ms=60000
    )


@pytest.fixture
def position_config() -> PositionConfig:
    return PositionConfig(symbol="BTCUSDT", poll_interval_ms=60000)


@pytest.fixture
def mock_client(balance, rules) -> AsyncMock:
    """
    Exchange client mock with a healthy default state.

    Flat position, mark price 50000, entry fills at 50000, exit orders accepted.
    """
    client = AsyncMock()
    client.verify_connectivity.return_value = True
    client.set_leverage.return_value = True
    client.get_balance.return_value = balance
    client.get_position.return_value = Position.flat("BTCUSDT")
    client.get_symbol_rules.return_value = rules
    client.get_mark_price.return_value = 50000.0
    client.submit_market_order.return_value = OrderResult(
        success=True, order_id=1001, filled_qty=0.02, avg_price=50000.0
    )
    client.submit_take_profit_order.return_value = OrderResult(success=True, order_id=1002)
    client.submit_stop_loss_order.return_value = OrderResult(success=True, order_id=1003)
    client.cancel_all_orders.return_value = True
    return client


@pytest.fixture
def mock_bus() -> Mock:
    """
    EventBus stand-in whose publish() is an AsyncMock.

    Read payloads with the ``published`` fixture.
    """
    bus = Mock(spec=EventBus)
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def published():
    """Reader for payloads of every event of a type published on a mock bus."""
    def _published(bus: Mock, event_type: EventType) -> list:
        return [
            call.args[0].data
            for call in bus.publish.call_args_list
            if call.args[0].event_type == event_type
        ]
    return _published
