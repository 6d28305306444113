"""
Unit tests for ExecutionEngine.

Tests cover:
- initialize() connectivity, leverage and idempotence
- process_signal() happy path for LONG and SHORT
- Failure reporting (fetch, validation, entry order)
- Retry discipline for retryable vs. rejected entry orders
- Exit order failures and fill-price fallback
- TRADING_SIGNAL handling and the trading gate
- Executions that outlast the bus handler timeout, and cancellation
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from futures_executor.core.config import ExecutionConfig
from futures_executor.core.event_bus import Event, EventBus, EventType
from futures_executor.core.exceptions import ErrorKind, ExchangeError
from futures_executor.core.models import (
    AccountBalance,
    ExecutionOutcome,
    OrderResult,
    Position,
)
from futures_executor.execution.execution_engine import ExecutionEngine


@pytest.fixture
def engine(mock_bus, mock_client, execution_config) -> ExecutionEngine:
    return ExecutionEngine(mock_bus, mock_client, execution_config)


@pytest_asyncio.fixture
async def ready_engine(engine) -> ExecutionEngine:
    assert await engine.initialize() is True
    return engine


class TestInitialize:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_initialize_sets_leverage(self, engine, mock_client, mock_bus, published):
        assert await engine.initialize() is True

        mock_client.verify_connectivity.assert_awaited_once()
        mock_client.set_leverage.assert_awaited_once_with("BTCUSDT", 10)
        assert published(mock_bus, EventType.LEVERAGE_SET) == [
            {"symbol": "BTCUSDT", "leverage": 10}
        ]
        assert engine.status == {"ready": True, "enabled": True}

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, engine, mock_client):
        await engine.initialize()
        await engine.initialize()

        mock_client.set_leverage.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_initialize_disabled(self, mock_bus, mock_client, execution_config):
        config = execution_config.model_copy(update={"enabled": False})
        engine = ExecutionEngine(mock_bus, mock_client, config)

        assert await engine.initialize() is False
        mock_client.verify_connectivity.assert_not_awaited()
        assert engine.status == {"ready": False, "enabled": False}

    @pytest.mark.asyncio
    async def test_initialize_connectivity_failure(self, engine, mock_client, mock_bus, published):
        mock_client.verify_connectivity.return_value = False

        assert await engine.initialize() is False
        assert engine.is_ready is False
        mock_client.set_leverage.assert_not_awaited()
        errors = published(mock_bus, EventType.ERROR)
        assert len(errors) == 1
        assert errors[0]["context"] == "initialize"

    @pytest.mark.asyncio
    async def test_initialize_leverage_failure(self, engine, mock_client, mock_bus, published):
        mock_client.set_leverage.return_value = False

        assert await engine.initialize() is False
        assert engine.is_ready is False
        assert published(mock_bus, EventType.LEVERAGE_SET) == []

    @pytest.mark.asyncio
    async def test_not_ready_ignores_signals(self, engine, mock_client, mock_bus, long_signal):
        result = await engine.process_signal(long_signal)

        assert result is None
        mock_client.get_balance.assert_not_awaited()
        mock_bus.publish.assert_not_awaited()


class TestProcessSignal:
    """Tests for process_signal()."""

    @pytest.mark.asyncio
    async def test_long_signal_executes(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        outcome = await ready_engine.process_signal(long_signal)

        assert isinstance(outcome, ExecutionOutcome)
        entry = mock_client.submit_market_order.await_args.args[0]
        assert entry.side == "BUY"
        assert entry.quantity == pytest.approx(0.02)
        assert entry.reduce_only is False

        tp = mock_client.submit_take_profit_order.await_args.args[0]
        sl = mock_client.submit_stop_loss_order.await_args.args[0]
        assert tp.side == "SELL" and sl.side == "SELL"
        assert tp.stop_price == 51000.0
        assert sl.stop_price == 49500.0
        assert tp.close_entire_position is True

        executed = published(mock_bus, EventType.ORDER_EXECUTED)
        assert len(executed) == 1
        assert executed[0]["outcome"] is outcome
        assert outcome.is_protected is True
        assert published(mock_bus, EventType.ORDER_FAILED) == []

    @pytest.mark.asyncio
    async def test_short_signal_executes(self, ready_engine, mock_client, short_signal):
        outcome = await ready_engine.process_signal(short_signal)

        assert outcome is not None
        assert mock_client.submit_market_order.await_args.args[0].side == "SELL"
        tp = mock_client.submit_take_profit_order.await_args.args[0]
        sl = mock_client.submit_stop_loss_order.await_args.args[0]
        assert tp.side == "BUY" and sl.side == "BUY"
        assert tp.stop_price == 49000.0
        assert sl.stop_price == 50500.0

    @pytest.mark.asyncio
    async def test_exit_prices_use_fill_price(self, ready_engine, mock_client, long_signal):
        """TP/SL follow the actual fill, not the signal's trigger price."""
        mock_client.submit_market_order.return_value = OrderResult(
            success=True, order_id=7, filled_qty=0.02, avg_price=50123.40
        )

        outcome = await ready_engine.process_signal(long_signal)

        assert outcome.entry_price == 50123.40
        assert outcome.take_profit_price == 51125.87
        assert outcome.stop_loss_price == 49622.17

    @pytest.mark.asyncio
    async def test_missing_fill_price_falls_back_to_mark(
        self, ready_engine, mock_client, long_signal
    ):
        mock_client.submit_market_order.return_value = OrderResult(
            success=True, order_id=7, filled_qty=0.02, avg_price=0.0
        )
        mock_client.get_mark_price.return_value = 40000.0

        outcome = await ready_engine.process_signal(long_signal)

        assert outcome.entry_price == 40000.0
        assert outcome.take_profit_price == 40800.0

    @pytest.mark.asyncio
    async def test_records_execution_for_dedup(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        await ready_engine.process_signal(long_signal)
        second = await ready_engine.process_signal(long_signal)

        assert second is None
        assert mock_client.submit_market_order.await_count == 1
        failures = published(mock_bus, EventType.ORDER_FAILED)
        assert len(failures) == 1
        assert "Duplicate" in failures[0]["reason"]
        assert failures[0]["signal"] is long_signal

    @pytest.mark.asyncio
    async def test_reset_allows_same_signal_again(self, ready_engine, mock_client, long_signal):
        await ready_engine.process_signal(long_signal)
        ready_engine.reset()

        assert await ready_engine.process_signal(long_signal) is not None
        assert mock_client.submit_market_order.await_count == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_reports_once(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.get_mark_price.side_effect = ExchangeError(
            "Binance Error -1003: Too many requests", kind=ErrorKind.RETRYABLE, code=-1003
        )

        assert await ready_engine.process_signal(long_signal) is None

        mock_client.submit_market_order.assert_not_awaited()
        failures = published(mock_bus, EventType.ORDER_FAILED)
        assert len(failures) == 1
        assert "Too many requests" in failures[0]["reason"]
        assert published(mock_bus, EventType.ORDER_EXECUTED) == []

    @pytest.mark.asyncio
    async def test_sizing_rejection_submits_nothing(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.get_balance.return_value = AccountBalance(asset="USDT", available=5.0, total=5.0)

        assert await ready_engine.process_signal(long_signal) is None

        mock_client.submit_market_order.assert_not_awaited()
        failures = published(mock_bus, EventType.ORDER_FAILED)
        assert len(failures) == 1
        assert "below minimum" in failures[0]["reason"]

    @pytest.mark.asyncio
    async def test_conflicting_position_still_executes(
        self, ready_engine, mock_client, long_signal
    ):
        mock_client.get_position.return_value = Position(
            symbol="BTCUSDT", side="SHORT", size=0.1, entry_price=51000.0
        )

        assert await ready_engine.process_signal(long_signal) is not None
        mock_client.submit_market_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_entry_rejection_not_retried(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.submit_market_order.return_value = OrderResult.failed(
            "Binance Error -2019: Margin is insufficient.", ErrorKind.NON_RETRYABLE
        )

        assert await ready_engine.process_signal(long_signal) is None

        mock_client.submit_market_order.assert_awaited_once()
        mock_client.submit_take_profit_order.assert_not_awaited()
        failures = published(mock_bus, EventType.ORDER_FAILED)
        assert failures[0]["reason"] == "Binance Error -2019: Margin is insufficient."
        assert published(mock_bus, EventType.ORDER_EXECUTED) == []

    @pytest.mark.asyncio
    async def test_unknown_entry_failure_not_retried(self, ready_engine, mock_client, long_signal):
        mock_client.submit_market_order.return_value = OrderResult.failed("boom")

        await ready_engine.process_signal(long_signal)

        mock_client.submit_market_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retryable_entry_failure_retried_then_succeeds(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.submit_market_order.side_effect = [
            OrderResult.failed("Binance Error -1001: Disconnected", ErrorKind.RETRYABLE),
            OrderResult(success=True, order_id=9, filled_qty=0.02, avg_price=50000.0),
        ]

        outcome = await ready_engine.process_signal(long_signal)

        assert outcome is not None
        assert mock_client.submit_market_order.await_count == 2
        assert len(published(mock_bus, EventType.ORDER_EXECUTED)) == 1

    @pytest.mark.asyncio
    async def test_retry_exhausted(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.submit_market_order.return_value = OrderResult.failed(
            "Binance Error -1003: Too many requests", ErrorKind.RETRYABLE
        )

        assert await ready_engine.process_signal(long_signal) is None

        assert mock_client.submit_market_order.await_count == 3
        assert len(published(mock_bus, EventType.ORDER_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_retry_delay_grows_linearly(
        self, mock_bus, mock_client, execution_config, long_signal
    ):
        config = execution_config.model_copy(update={"retry_delay_ms": 200})
        engine = ExecutionEngine(mock_bus, mock_client, config)
        await engine.initialize()
        mock_client.submit_market_order.return_value = OrderResult.failed(
            "timeout", ErrorKind.RETRYABLE
        )

        with patch(
            "futures_executor.execution.execution_engine.asyncio.sleep",
            new_callable=AsyncMock
        ) as sleep:
            await engine.process_signal(long_signal)

        assert [call.args[0] for call in sleep.await_args_list] == [
            pytest.approx(0.2), pytest.approx(0.4)
        ]

    @pytest.mark.asyncio
    async def test_raised_transport_error_is_normalized(
        self, ready_engine, mock_client, long_signal
    ):
        mock_client.submit_market_order.side_effect = [
            ConnectionError("reset by peer"),
            OrderResult(success=True, order_id=9, filled_qty=0.02, avg_price=50000.0),
        ]

        assert await ready_engine.process_signal(long_signal) is not None
        assert mock_client.submit_market_order.await_count == 2

    @pytest.mark.asyncio
    async def test_one_exit_failure_reports_error(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.submit_stop_loss_order.return_value = OrderResult.failed(
            "Binance Error -2021: Order would immediately trigger.", ErrorKind.NON_RETRYABLE
        )

        outcome = await ready_engine.process_signal(long_signal)

        assert outcome is not None
        assert outcome.stop_loss_order.success is False
        assert outcome.is_protected is True
        contexts = [e["context"] for e in published(mock_bus, EventType.ERROR)]
        assert contexts == ["exit_order"]
        assert len(published(mock_bus, EventType.ORDER_EXECUTED)) == 1

    @pytest.mark.asyncio
    async def test_both_exit_failures_flag_unprotected_position(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.submit_take_profit_order.return_value = OrderResult.failed("tp down")
        mock_client.submit_stop_loss_order.side_effect = ConnectionError("sl down")

        outcome = await ready_engine.process_signal(long_signal)

        assert outcome is not None
        assert outcome.is_protected is False
        contexts = [e["context"] for e in published(mock_bus, EventType.ERROR)]
        assert contexts == ["exit_order", "exit_order", "unprotected_position"]
        # Entry is never rolled back
        assert mock_client.submit_market_order.await_count == 1
        assert len(published(mock_bus, EventType.ORDER_EXECUTED)) == 1
        assert published(mock_bus, EventType.ORDER_FAILED) == []


class TestSignalHandler:
    """Tests for the TRADING_SIGNAL handler and trading gate."""

    @pytest.mark.asyncio
    async def test_handler_registers_on_start(self, engine, mock_bus):
        await engine.start()

        mock_bus.subscribe.assert_called_once_with(
            EventType.TRADING_SIGNAL, engine._on_trading_signal
        )
        assert engine.is_ready is True

        await engine.stop()
        mock_bus.unsubscribe.assert_called_once_with(
            EventType.TRADING_SIGNAL, engine._on_trading_signal
        )

    @pytest.mark.asyncio
    async def test_gate_closed_skips_signal(
        self, mock_bus, mock_client, execution_config, long_signal
    ):
        engine = ExecutionEngine(mock_bus, mock_client, execution_config, trading_gate=lambda: False)
        await engine.initialize()

        await engine._on_trading_signal(
            Event(EventType.TRADING_SIGNAL, {"signal": long_signal}, "strategy")
        )

        mock_client.get_balance.assert_not_awaited()
        mock_client.submit_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gate_open_processes_signal(
        self, mock_bus, mock_client, execution_config, long_signal
    ):
        engine = ExecutionEngine(mock_bus, mock_client, execution_config, trading_gate=lambda: True)
        await engine.initialize()

        await engine._on_trading_signal(
            Event(EventType.TRADING_SIGNAL, {"signal": long_signal}, "strategy")
        )
        await engine.join()

        mock_client.submit_market_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_payload_ignored(self, ready_engine, mock_client):
        await ready_engine._on_trading_signal(
            Event(EventType.TRADING_SIGNAL, {"signal": {"direction": "LONG"}}, "strategy")
        )

        mock_client.get_balance.assert_not_awaited()


class TestConfigInteraction:
    """Disabled engine behaviour."""

    @pytest.mark.asyncio
    async def test_disabled_engine_never_trades(self, mock_bus, mock_client, long_signal):
        engine = ExecutionEngine(mock_bus, mock_client, ExecutionConfig(enabled=False))
        await engine.start()

        assert await engine.process_signal(long_signal) is None
        mock_client.submit_market_order.assert_not_awaited()


@pytest_asyncio.fixture
async def impatient_bus():
    """Real bus whose handler timeout is far shorter than an execution."""
    bus = EventBus(handler_timeout=0.05)
    await bus.start()
    yield bus
    await bus.stop()


def collect(bus: EventBus, event_type: EventType) -> list:
    received = []

    async def _collect(event: Event) -> None:
        received.append(event)

    bus.subscribe(event_type, _collect)
    return received


async def slow_exit_order(request):
    await asyncio.sleep(0.2)
    return OrderResult(success=True, order_id=1002)


class TestLongRunningExecution:
    """Signal processing is never cut short by the bus handler timeout."""

    @pytest.mark.asyncio
    async def test_retries_outlast_handler_timeout(
        self, impatient_bus, mock_client, execution_config, long_signal
    ):
        config = execution_config.model_copy(update={"retry_delay_ms": 100})
        mock_client.submit_market_order.return_value = OrderResult.failed(
            "Binance Error -1001: Disconnected", ErrorKind.RETRYABLE
        )
        failures = collect(impatient_bus, EventType.ORDER_FAILED)
        engine = ExecutionEngine(impatient_bus, mock_client, config)
        await engine.start()

        await impatient_bus.publish(
            Event(EventType.TRADING_SIGNAL, {"signal": long_signal}, "strategy")
        )
        await impatient_bus._queue.join()
        await engine.join()
        await impatient_bus._queue.join()

        assert mock_client.submit_market_order.await_count == 3
        assert len(failures) == 1
        assert "Disconnected" in failures[0].data["reason"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_slow_exit_order_still_reports_execution(
        self, impatient_bus, mock_client, execution_config, long_signal
    ):
        mock_client.submit_take_profit_order.side_effect = slow_exit_order
        executed = collect(impatient_bus, EventType.ORDER_EXECUTED)
        engine = ExecutionEngine(impatient_bus, mock_client, execution_config)
        await engine.start()

        await impatient_bus.publish(
            Event(EventType.TRADING_SIGNAL, {"signal": long_signal}, "strategy")
        )
        await impatient_bus._queue.join()
        await engine.join()
        await impatient_bus._queue.join()

        assert len(executed) == 1
        assert executed[0].data["outcome"].is_protected is True
        assert engine.validator.state == long_signal.dedup_key
        await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_signal(
        self, engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.submit_take_profit_order.side_effect = slow_exit_order
        await engine.start()

        await engine._on_trading_signal(
            Event(EventType.TRADING_SIGNAL, {"signal": long_signal}, "strategy")
        )
        await engine.stop()

        assert len(published(mock_bus, EventType.ORDER_EXECUTED)) == 1

    @pytest.mark.asyncio
    async def test_signals_are_executed_one_at_a_time(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        mock_client.submit_take_profit_order.side_effect = slow_exit_order

        await asyncio.gather(
            ready_engine.process_signal(long_signal),
            ready_engine.process_signal(long_signal),
        )

        mock_client.submit_market_order.assert_awaited_once()
        assert len(published(mock_bus, EventType.ORDER_EXECUTED)) == 1
        failures = published(mock_bus, EventType.ORDER_FAILED)
        assert len(failures) == 1
        assert "Duplicate" in failures[0]["reason"]


class TestCancellation:
    """A cancelled execution still reports exactly one ORDER_FAILED."""

    @pytest.mark.asyncio
    async def test_cancelled_before_fill(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        submitted = asyncio.Event()

        async def hang(request):
            submitted.set()
            await asyncio.Event().wait()

        mock_client.submit_market_order.side_effect = hang
        task = asyncio.create_task(ready_engine.process_signal(long_signal))
        await submitted.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        failures = published(mock_bus, EventType.ORDER_FAILED)
        assert [f["reason"] for f in failures] == ["Cancelled before entry fill"]
        assert ready_engine.validator.state == (None, None)

    @pytest.mark.asyncio
    async def test_cancelled_after_fill_keeps_duplicate_protection(
        self, ready_engine, mock_client, mock_bus, published, long_signal
    ):
        submitted = asyncio.Event()

        async def hang(request):
            submitted.set()
            await asyncio.Event().wait()

        mock_client.submit_stop_loss_order.side_effect = hang
        task = asyncio.create_task(ready_engine.process_signal(long_signal))
        await submitted.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        failures = published(mock_bus, EventType.ORDER_FAILED)
        assert len(failures) == 1
        assert failures[0]["reason"].startswith("Cancelled after entry fill")
        assert published(mock_bus, EventType.ORDER_EXECUTED) == []
        assert ready_engine.validator.state == long_signal.dedup_key
