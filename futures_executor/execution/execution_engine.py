"""
Execution Engine

This module implements the signal-to-order pipeline:
    Signal -> Market state -> Position sizing -> Validation
           -> Entry order (with retry) -> TP/SL orders -> Result

The engine subscribes to TRADING_SIGNAL events, consults the trading gate
(normally RiskManager.trading_allowed) and publishes exactly one
ORDER_EXECUTED or ORDER_FAILED per processed signal.

Known gaps:
- A failed take-profit/stop-loss submission never rolls back the entry
  order. Each failure is published as an ERROR event and a position left
  without any exit order additionally publishes ERROR with context
  "unprotected_position".
- The trading gate is read once, when the signal arrives. A risk breach
  detected while an order is in flight or queued behind another does not
  abort it.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from ..core.config import ExecutionConfig
from ..core.event_bus import Event, EventBus, EventType
from ..core.event_processor import EventProcessor
from ..core.exceptions import ErrorKind, ExchangeError
from ..core.models import (
    ExecutionOutcome,
    ExitOrderRequest,
    MarketOrderRequest,
    OrderResult,
    TradingSignal,
)
from .exchange import ExchangeClient, normalize_error
from .order_validator import OrderValidator
from .position_sizer import PositionSizer


class ExecutionEngine(EventProcessor):
    """
    Orchestrates order execution for incoming trading signals.

    Processing steps for one signal:
    1. Skip if the engine is not initialized or disabled
    2. Fetch balance, position, symbol rules and mark price concurrently
    3. Size the position and validate the order
    4. Submit the entry market order with bounded retry and record the
       fill for duplicate detection
    5. Submit take-profit and stop-loss orders concurrently, priced from
       the actual fill
    6. Publish ORDER_EXECUTED

    The TRADING_SIGNAL handler only checks the gate and hands the signal to
    a task owned by the engine, so the bus handler timeout never cuts an
    execution short. stop() waits for those tasks.

    Examples:
        >>> engine = ExecutionEngine(bus, client, config.execution,
        ...                          trading_gate=lambda: risk.trading_allowed)
        >>> await engine.start()   # initializes connectivity and leverage
        >>> outcome = await engine.process_signal(signal)
    """

    def __init__(
        self,
        event_bus: EventBus,
        client: ExchangeClient,
        config: ExecutionConfig,
        trading_gate: Optional[Callable[[], bool]] = None
    ):
        """
        Initialize the engine.

        Args:
            event_bus (EventBus): Event bus for pub/sub
            client (ExchangeClient): Exchange boundary
            config (ExecutionConfig): Sizing and retry settings
            trading_gate (Callable[[], bool], optional): Returns False while
                trading is blocked. Checked before each signal.
        """
        super().__init__(event_bus)
        self._client = client
        self._config = config
        self._trading_gate = trading_gate
        self._sizer = PositionSizer(config)
        self._validator = OrderValidator()
        self._is_ready = False
        self._signal_lock = asyncio.Lock()
        self._entry_filled = False

        logger.info(
            f"ExecutionEngine configured: enabled={config.enabled}, "
            f"symbol={config.symbol}, leverage={config.leverage}x, "
            f"size={config.position_size_percent:.1%}, "
            f"tp={config.take_profit_percent:.2%}, sl={config.stop_loss_percent:.2%}"
        )

    async def _on_start(self) -> None:
        """Initialize exchange settings before accepting signals."""
        await self.initialize()

    def _register_handlers(self) -> None:
        """Register handler for TRADING_SIGNAL events."""
        self.event_bus.subscribe(EventType.TRADING_SIGNAL, self._on_trading_signal)
        logger.debug("ExecutionEngine registered for TRADING_SIGNAL events")

    def _unregister_handlers(self) -> None:
        """Unregister handler from TRADING_SIGNAL events."""
        self.event_bus.unsubscribe(EventType.TRADING_SIGNAL, self._on_trading_signal)
        logger.debug("ExecutionEngine unregistered from TRADING_SIGNAL events")

    async def initialize(self) -> bool:
        """
        Verify exchange connectivity and set leverage for the configured symbol.

        Idempotent once successful. On failure the engine stays not ready and
        ignores every signal.

        Returns:
            bool: True if the engine is ready to execute signals
        """
        if not self._config.enabled:
            logger.warning("ExecutionEngine is disabled")
            return False

        if self._is_ready:
            return True

        symbol = self._config.symbol
        leverage = self._config.leverage

        try:
            if not await self._client.verify_connectivity():
                raise ExchangeError("Failed to connect to exchange API")

            if not await self._client.set_leverage(symbol, leverage):
                raise ExchangeError(f"Failed to set leverage {leverage}x for {symbol}")

            await self._publish(
                EventType.LEVERAGE_SET,
                {"symbol": symbol, "leverage": leverage}
            )

            self._is_ready = True
            logger.info("ExecutionEngine ready")
            return True

        except Exception as e:
            logger.error(f"ExecutionEngine initialization failed: {e}")
            await self._publish_error(e, "initialize")
            return False

    async def _on_trading_signal(self, event: Event) -> None:
        """
        Handle TRADING_SIGNAL event.

        Args:
            event (Event): Event carrying {"signal": TradingSignal}
        """
        signal = event.data.get("signal")
        if not isinstance(signal, TradingSignal):
            logger.warning(f"Invalid TRADING_SIGNAL payload from {event.source}: {signal!r}")
            return

        if self._trading_gate is not None and not self._trading_gate():
            logger.warning(
                f"Trading blocked, skipping {signal.direction} signal for "
                f"{signal.symbol} @ {signal.trigger_price}"
            )
            return

        self._spawn(self.process_signal(signal))

    async def process_signal(self, signal: TradingSignal) -> Optional[ExecutionOutcome]:
        """
        Execute a trading signal.

        Signals are executed one at a time. Never raises apart from
        cancellation; every failure, cancellation included, is reported as a
        single ORDER_FAILED event.

        Args:
            signal (TradingSignal): Signal to execute

        Returns:
            ExecutionOutcome: Result when the entry order was filled, else None
        """
        if not self._is_ready or not self._config.enabled:
            logger.debug("ExecutionEngine not ready, skipping signal")
            return None

        execution_id = f"{signal.symbol}-{signal.candle_timestamp}-{signal.direction}"

        async with self._signal_lock:
            logger.info(f"Processing signal {execution_id} @ {signal.trigger_price}")
            self._entry_filled = False
            try:
                return await self._execute(signal, execution_id)
            except asyncio.CancelledError:
                if self._entry_filled:
                    reason = "Cancelled after entry fill, exit orders may be missing"
                else:
                    reason = "Cancelled before entry fill"
                logger.error(f"[{execution_id}] {reason}")
                await self._publish_failure(signal, reason)
                raise

    async def _execute(
        self,
        signal: TradingSignal,
        execution_id: str
    ) -> Optional[ExecutionOutcome]:
        try:
            try:
                balance, position, rules, mark_price = await asyncio.gather(
                    self._client.get_balance("USDT"),
                    self._client.get_position(signal.symbol),
                    self._client.get_symbol_rules(signal.symbol),
                    self._client.get_mark_price(signal.symbol)
                )
            except Exception as e:
                error = normalize_error(e)
                logger.error(f"[{execution_id}] Failed to fetch market state: {error}")
                await self._publish_failure(signal, f"Failed to fetch market state: {error}")
                return None

            size = self._sizer.calculate_position_size(balance, mark_price, rules)
            validation = self._validator.validate(signal, position, size, rules)

            if not validation.valid:
                logger.warning(f"[{execution_id}] Order validation failed: {validation.errors}")
                await self._publish_failure(signal, ", ".join(validation.errors))
                return None

            for warning in validation.warnings:
                logger.warning(f"[{execution_id}] {warning}")

            is_long = signal.direction == "LONG"
            entry_request = MarketOrderRequest(
                symbol=signal.symbol,
                side="BUY" if is_long else "SELL",
                quantity=size.quantity
            )
            entry_order = await self._submit_with_retry(entry_request)

            if not entry_order.success:
                logger.error(f"[{execution_id}] Entry order failed: {entry_order.error}")
                await self._publish_failure(signal, entry_order.error or "Entry order failed")
                return None

        except Exception as e:
            logger.error(f"[{execution_id}] Execution error: {e}")
            await self._publish_failure(signal, str(e) or type(e).__name__)
            await self._publish_error(e, "process_signal")
            return None

        self._validator.record_execution(signal)
        self._entry_filled = True

        entry_price = entry_order.avg_price
        if not entry_price:
            logger.warning(
                f"[{execution_id}] No fill price reported, using mark price {mark_price}"
            )
            entry_price = mark_price

        tp_price = self._sizer.round_to_price_precision(
            self._sizer.take_profit_price(entry_price, signal.direction), rules
        )
        sl_price = self._sizer.round_to_price_precision(
            self._sizer.stop_loss_price(entry_price, signal.direction), rules
        )
        exit_side = "SELL" if is_long else "BUY"

        tp_order, sl_order = await asyncio.gather(
            self._submit_exit(
                self._client.submit_take_profit_order, signal.symbol, exit_side, tp_price
            ),
            self._submit_exit(
                self._client.submit_stop_loss_order, signal.symbol, exit_side, sl_price
            )
        )

        await self._report_exit_failures(signal, tp_order, sl_order)

        outcome = ExecutionOutcome(
            signal=signal,
            entry_order=entry_order,
            take_profit_order=tp_order,
            stop_loss_order=sl_order,
            quantity=size.quantity,
            entry_price=entry_price,
            take_profit_price=tp_price,
            stop_loss_price=sl_price
        )

        logger.info(
            f"[{execution_id}] Execution completed: order={entry_order.order_id}, "
            f"qty={size.quantity}, entry={entry_price}, tp={tp_price}, sl={sl_price}"
        )

        await self._publish(EventType.ORDER_EXECUTED, {"outcome": outcome})
        return outcome

    async def _submit_with_retry(self, request: MarketOrderRequest) -> OrderResult:
        """
        Submit a market order, retrying only retryable failures.

        Sleeps retry_delay_ms * attempt between attempts. Unknown failures
        are not retried since the first order may already have filled.
        """
        attempts = self._config.retry_attempts
        result = OrderResult.failed("Entry order not submitted")

        for attempt in range(1, attempts + 1):
            try:
                result = await self._client.submit_market_order(request)
            except Exception as e:
                error = normalize_error(e)
                result = OrderResult.failed(str(error), error.kind)

            if result.success:
                return result

            if result.error_kind != ErrorKind.RETRYABLE:
                logger.error(f"Entry order rejected, not retrying: {result.error}")
                return result

            logger.warning(f"Entry order failed, attempt {attempt}/{attempts}: {result.error}")

            if attempt < attempts:
                await asyncio.sleep(self._config.retry_delay_ms / 1000 * attempt)

        return result

    async def _submit_exit(
        self,
        submit: Callable[[ExitOrderRequest], Awaitable[OrderResult]],
        symbol: str,
        side: str,
        stop_price: float
    ) -> OrderResult:
        """Submit one exit order. Failures become a failed OrderResult."""
        try:
            request = ExitOrderRequest(symbol=symbol, side=side, stop_price=stop_price)
            return await submit(request)
        except Exception as e:
            error = normalize_error(e)
            return OrderResult.failed(str(error), error.kind)

    async def _report_exit_failures(
        self,
        signal: TradingSignal,
        tp_order: OrderResult,
        sl_order: OrderResult
    ) -> None:
        """Publish ERROR events for failed exit orders."""
        for label, order in (("Take profit", tp_order), ("Stop loss", sl_order)):
            if not order.success:
                await self._publish_error(
                    ExchangeError(
                        f"{label} order failed for {signal.symbol}: {order.error}",
                        kind=order.error_kind or ErrorKind.UNKNOWN
                    ),
                    "exit_order"
                )

        if not tp_order.success and not sl_order.success:
            logger.critical(
                f"{signal.direction} position on {signal.symbol} is open without "
                f"take-profit or stop-loss protection"
            )
            await self._publish_error(
                ExchangeError(
                    f"{signal.direction} position on {signal.symbol} has no exit orders"
                ),
                "unprotected_position"
            )

    async def _publish_failure(self, signal: TradingSignal, reason: str) -> None:
        """Publish ORDER_FAILED for a signal."""
        await self._publish(EventType.ORDER_FAILED, {"signal": signal, "reason": reason})

    def reset(self) -> None:
        """Clear duplicate-signal memory."""
        self._validator.reset()
        logger.info("ExecutionEngine state reset")

    @property
    def status(self) -> Dict[str, bool]:
        """{"ready": ..., "enabled": ...}"""
        return {"ready": self._is_ready, "enabled": self._config.enabled}

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    @property
    def validator(self) -> OrderValidator:
        return self._validator

    @property
    def sizer(self) -> PositionSizer:
        return self._sizer
