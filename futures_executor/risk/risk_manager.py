"""
Risk Manager

Monitors account risk on a periodic task and owns the trading gate:
- Daily loss limit: blocks trading until UTC midnight
- Maximum drawdown from peak balance: blocks trading until it recovers
- Optional emergency liquidation when a limit is crossed

Gate transitions are always published as TRADING_BLOCKED or
TRADING_RESUMED. A failed balance query never changes the gate.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, List, Optional

from loguru import logger

from ..core.config import RiskConfig
from ..core.event_bus import Event, EventBus, EventType
from ..core.event_processor import EventProcessor
from ..core.exceptions import ErrorKind, ExchangeError
from ..core.models import (
    DailyStats,
    MarketOrderRequest,
    RiskBreachEvent,
    RiskSnapshot,
    utc_now,
)
from ..execution.exchange import ExchangeClient, normalize_error


def utc_day_start(moment: datetime) -> datetime:
    """UTC midnight of the day containing ``moment``."""
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class RiskManager(EventProcessor):
    """
    Account-level risk authority.

    Two independent conditions feed one gate:
        trading_allowed = not daily_limit_breached and not drawdown_breached

    daily_pnl = current_balance - day_start_balance + realized_pnl, where
    realized_pnl only moves through record_trade() (or POSITION_CLOSED).

    Checks run every risk_check_interval_ms and out of cycle after each
    recorded trade; an asyncio.Lock keeps them from interleaving.

    Attributes:
        PNL_CHANGE_THRESHOLD_USDT (float): Minimum daily P&L move that
            counts as a status change
        DRAWDOWN_CHANGE_THRESHOLD (float): Minimum drawdown move (fraction)
            that counts as a status change

    Examples:
        >>> risk = RiskManager(bus, client, config.risk)
        >>> await risk.start()
        >>> risk.trading_allowed
        True
        >>> await risk.record_trade(-25.0)
        >>> await risk.stop()
    """

    PNL_CHANGE_THRESHOLD_USDT = 0.01
    DRAWDOWN_CHANGE_THRESHOLD = 0.001

    def __init__(
        self,
        event_bus: EventBus,
        client: ExchangeClient,
        config: RiskConfig,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the risk manager.

        Args:
            event_bus (EventBus): Event bus for pub/sub
            client (ExchangeClient): Exchange boundary
            config (RiskConfig): Limits and check interval
            clock (Callable[[], datetime]): Source of the current UTC time
        """
        super().__init__(event_bus)
        self._client = client
        self._config = config
        self._clock = clock

        self._daily_stats = self._new_day_stats(0.0)
        self._peak_balance = 0.0
        self._snapshot: Optional[RiskSnapshot] = None
        self._daily_limit_breached = False
        self._drawdown_breached = False
        self._trading_allowed = True

        self._check_lock = asyncio.Lock()
        self._monitor_task: Optional[asyncio.Task] = None

        logger.info(
            f"RiskManager configured: enabled={config.enabled}, "
            f"daily_loss_limit={config.daily_loss_limit_usdt} USDT, "
            f"max_drawdown={config.max_drawdown_percent:.1%}, "
            f"auto_close={config.auto_close_on_breach}"
        )

    async def _on_start(self) -> None:
        """Seed peak balance and daily stats, then start the monitor task."""
        if not self._config.enabled:
            logger.info("RiskManager is disabled")
            return

        try:
            balance = await self._client.get_balance("USDT")
        except Exception as e:
            error = normalize_error(e)
            logger.error(f"Failed to get initial balance: {error}")
            await self._publish_error(error, "initial_balance")
            return

        self._peak_balance = balance.total
        self._daily_stats = self._new_day_stats(balance.total)
        logger.info(f"RiskManager initial balance: {balance.total:.2f} USDT")

        await self._check_risk_limits()
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def _on_stop(self) -> None:
        """Cancel the monitor task."""
        if self._monitor_task is None:
            return

        self._monitor_task.cancel()
        try:
            await self._monitor_task
        except asyncio.CancelledError:
            pass
        self._monitor_task = None

    def _register_handlers(self) -> None:
        """Register handler for POSITION_CLOSED events."""
        self.event_bus.subscribe(EventType.POSITION_CLOSED, self._on_position_closed)
        logger.debug("RiskManager registered for POSITION_CLOSED events")

    def _unregister_handlers(self) -> None:
        """Unregister handler from POSITION_CLOSED events."""
        self.event_bus.unsubscribe(EventType.POSITION_CLOSED, self._on_position_closed)
        logger.debug("RiskManager unregistered from POSITION_CLOSED events")

    async def _on_position_closed(self, event: Event) -> None:
        """Record the realized P&L of a closed position in a managed task."""
        realized_pnl = event.data.get("realized_pnl")
        if isinstance(realized_pnl, bool) or not isinstance(realized_pnl, (int, float)):
            logger.warning(f"POSITION_CLOSED without numeric realized_pnl: {event.data}")
            return

        # May liquidate, so it runs outside the bus handler timeout
        self._spawn(self.record_trade(float(realized_pnl)))

    async def _monitor_loop(self) -> None:
        """Run a risk check every risk_check_interval_ms until cancelled."""
        interval = self._config.risk_check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self._check_risk_limits()
            except Exception as e:
                logger.error(f"Unexpected error in risk monitor: {e}")
                await self._publish_error(e, "risk_monitor")

    async def record_trade(self, realized_pnl: float) -> None:
        """
        Add a closed trade's realized P&L to today's stats and re-check limits.

        Args:
            realized_pnl (float): Realized profit (positive) or loss (negative)
        """
        last_balance = (
            self._snapshot.current_balance
            if self._snapshot is not None
            else self._daily_stats.start_balance
        )
        self._roll_day_if_needed(last_balance)

        self._daily_stats.realized_pnl += realized_pnl
        self._daily_stats.trade_count += 1

        logger.debug(
            f"Trade recorded: pnl={realized_pnl:+.2f}, "
            f"daily_realized={self._daily_stats.realized_pnl:+.2f}, "
            f"trades={self._daily_stats.trade_count}"
        )

        if self._config.enabled:
            await self._check_risk_limits()

    async def force_check(self) -> Optional[RiskSnapshot]:
        """
        Run a risk check immediately.

        Returns:
            RiskSnapshot: Latest snapshot, None if no check has succeeded yet
        """
        if self._config.enabled:
            await self._check_risk_limits()
        return self._snapshot

    def reset_peak_balance(self, new_peak: Optional[float] = None) -> None:
        """
        Manually reset the peak balance used for drawdown.

        Args:
            new_peak (float, optional): New peak. Defaults to the last
                observed balance.
        """
        if new_peak is not None:
            self._peak_balance = new_peak
        elif self._snapshot is not None:
            self._peak_balance = self._snapshot.current_balance
        logger.info(f"Peak balance reset to {self._peak_balance:.2f} USDT")

    async def _check_risk_limits(self) -> Optional[RiskSnapshot]:
        async with self._check_lock:
            was_allowed = self._trading_allowed

            try:
                balance = await self._client.get_balance("USDT")
            except Exception as e:
                error = normalize_error(e)
                logger.error(f"Risk check failed: {error}")
                await self._publish_error(error, "risk_check")
                return self._snapshot

            current_balance = balance.total
            self._roll_day_if_needed(current_balance)

            if current_balance > self._peak_balance:
                self._peak_balance = current_balance

            stats = self._daily_stats
            limit = self._config.daily_loss_limit_usdt
            daily_pnl = current_balance - stats.start_balance + stats.realized_pnl
            current_drawdown = (
                (self._peak_balance - current_balance) / self._peak_balance
                if self._peak_balance > 0
                else 0.0
            )

            previous_daily = self._daily_limit_breached
            previous_drawdown = self._drawdown_breached
            self._daily_limit_breached = daily_pnl < -limit
            self._drawdown_breached = current_drawdown > self._config.max_drawdown_percent
            self._trading_allowed = not self._daily_limit_breached and not self._drawdown_breached

            snapshot = RiskSnapshot(
                daily_pnl=daily_pnl,
                daily_loss_remaining=max(0.0, limit + daily_pnl),
                peak_balance=self._peak_balance,
                current_balance=current_balance,
                current_drawdown=current_drawdown,
                daily_limit_breached=self._daily_limit_breached,
                drawdown_breached=self._drawdown_breached,
                trading_allowed=self._trading_allowed,
                last_check_time=self._clock()
            )

            await self._handle_transitions(
                snapshot, previous_daily, previous_drawdown, was_allowed
            )

            changed = self._has_status_changed(snapshot)
            self._snapshot = snapshot
            if changed:
                await self._publish(EventType.RISK_STATUS_CHANGED, {"snapshot": snapshot})

            return snapshot

    async def _handle_transitions(
        self,
        snapshot: RiskSnapshot,
        previous_daily: bool,
        previous_drawdown: bool,
        was_allowed: bool
    ) -> None:
        """Publish breaches and gate changes, liquidate on a new breach."""
        auto_close = self._config.auto_close_on_breach
        breaches: List[RiskBreachEvent] = []

        if snapshot.daily_limit_breached and not previous_daily:
            logger.warning(
                f"Daily loss limit breached: pnl={snapshot.daily_pnl:.2f} USDT, "
                f"limit={self._config.daily_loss_limit_usdt} USDT"
            )
            breaches.append(RiskBreachEvent(
                kind="daily_loss",
                current_value=abs(snapshot.daily_pnl),
                threshold=self._config.daily_loss_limit_usdt,
                auto_close_triggered=auto_close,
                timestamp=snapshot.last_check_time
            ))

        if snapshot.drawdown_breached and not previous_drawdown:
            logger.warning(
                f"Maximum drawdown breached: {snapshot.current_drawdown:.2%} "
                f"(max {self._config.max_drawdown_percent:.2%})"
            )
            breaches.append(RiskBreachEvent(
                kind="max_drawdown",
                current_value=snapshot.current_drawdown * 100,
                threshold=self._config.max_drawdown_percent * 100,
                auto_close_triggered=auto_close,
                timestamp=snapshot.last_check_time
            ))

        for breach in breaches:
            await self._publish(EventType.RISK_BREACH, {"breach": breach})

        if was_allowed and not snapshot.trading_allowed:
            reason = self._block_reason(snapshot)
            logger.warning(f"Trading blocked: {reason}")
            await self._publish(EventType.TRADING_BLOCKED, {"reason": reason})
        elif not was_allowed and snapshot.trading_allowed:
            logger.info("Risk levels normalized, trading resumed")
            await self._publish(EventType.TRADING_RESUMED, {})

        if breaches and auto_close:
            await self._close_all_positions(", ".join(b.kind for b in breaches))

    @staticmethod
    def _block_reason(snapshot: RiskSnapshot) -> str:
        reasons = []
        if snapshot.daily_limit_breached:
            reasons.append("Daily loss limit exceeded")
        if snapshot.drawdown_breached:
            reasons.append("Maximum drawdown exceeded")
        return "; ".join(reasons)

    async def _close_all_positions(self, reason: str) -> None:
        """
        Emergency liquidation: cancel open orders, then flatten the position.

        Failures are published as ERROR events and never reopen the gate.
        """
        symbol = self._config.symbol
        logger.warning(f"Closing all positions on {symbol} due to risk breach: {reason}")

        if not await self._client.cancel_all_orders(symbol):
            await self._publish_error(
                ExchangeError(f"Failed to cancel open orders for {symbol}"),
                "emergency_liquidation"
            )

        try:
            position = await self._client.get_position(symbol)
            if not position.has_position:
                logger.info(f"No open position on {symbol} to close")
                return

            close_side = "SELL" if position.side == "LONG" else "BUY"
            result = await self._client.submit_market_order(MarketOrderRequest(
                symbol=symbol,
                side=close_side,
                quantity=position.size,
                reduce_only=True
            ))

            if not result.success:
                raise ExchangeError(
                    f"Failed to close {position.side} position of {position.size}: {result.error}",
                    kind=result.error_kind or ErrorKind.UNKNOWN
                )

            logger.info(
                f"Closed {position.side} position of {position.size} {symbol} "
                f"due to risk breach ({reason})"
            )

        except Exception as e:
            error = normalize_error(e)
            logger.error(f"Failed to close positions: {error}")
            await self._publish_error(error, "emergency_liquidation")

    def _roll_day_if_needed(self, current_balance: float) -> None:
        """
        Start new daily stats at UTC midnight and clear the daily flag.

        The published gate only changes in the next check.
        """
        today = utc_day_start(self._clock())
        if today <= self._daily_stats.day_start:
            return

        logger.info(
            f"Day rollover: previous realized pnl={self._daily_stats.realized_pnl:+.2f}, "
            f"trades={self._daily_stats.trade_count}, new baseline={current_balance:.2f}"
        )
        self._daily_stats = self._new_day_stats(current_balance)
        self._daily_limit_breached = False

    def _new_day_stats(self, start_balance: float) -> DailyStats:
        return DailyStats(
            start_balance=start_balance,
            day_start=utc_day_start(self._clock())
        )

    def _has_status_changed(self, snapshot: RiskSnapshot) -> bool:
        previous = self._snapshot
        if previous is None:
            return True

        return (
            previous.daily_limit_breached != snapshot.daily_limit_breached
            or previous.drawdown_breached != snapshot.drawdown_breached
            or previous.trading_allowed != snapshot.trading_allowed
            or abs(previous.daily_pnl - snapshot.daily_pnl) > self.PNL_CHANGE_THRESHOLD_USDT
            or abs(previous.current_drawdown - snapshot.current_drawdown)
            > self.DRAWDOWN_CHANGE_THRESHOLD
        )

    @property
    def trading_allowed(self) -> bool:
        """
        Gate read by the execution engine before each signal. No I/O.

        Updated only by a completed check, so every change is published.
        """
        return self._trading_allowed

    @property
    def snapshot(self) -> Optional[RiskSnapshot]:
        """Latest risk snapshot, None before the first successful check."""
        return self._snapshot

    @property
    def daily_stats(self) -> DailyStats:
        """Copy of today's statistics."""
        return self._daily_stats.model_copy()

    @property
    def peak_balance(self) -> float:
        return self._peak_balance

    @property
    def is_monitoring(self) -> bool:
        """True while the periodic check task is alive."""
        return self._monitor_task is not None and not self._monitor_task.done()
