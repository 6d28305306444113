"""
Position Tracker

Polls the exchange for the configured symbol's position, the USDT balance
and the mark price, and publishes POSITION_CHANGED / ACCOUNT_UPDATED
events when something meaningful moved.
"""

import asyncio
from typing import Optional, Tuple

from loguru import logger

from ..core.config import PositionConfig
from ..core.event_bus import EventBus, EventType
from ..core.event_processor import EventProcessor
from ..core.models import (
    AccountBalance,
    AccountSummary,
    Position,
    PositionChangeType,
    TrackedPosition,
)
from ..execution.exchange import ExchangeClient, normalize_error


class PositionTracker(EventProcessor):
    """
    Real-time position and account tracking.

    Attributes:
        MAINTENANCE_MARGIN_RATE (float): Rate used for the liquidation
            price estimate
        CHANGE_THRESHOLD_USDT (float): Minimum P&L or balance move that
            counts as a change

    Examples:
        >>> tracker = PositionTracker(bus, client, config.position)
        >>> await tracker.start()
        >>> await tracker.force_update()
        >>> tracker.position
        TrackedPosition(symbol='BTCUSDT', side='LONG', ...)
    """

    MAINTENANCE_MARGIN_RATE = 0.004
    CHANGE_THRESHOLD_USDT = 0.01

    def __init__(
        self,
        event_bus: EventBus,
        client: ExchangeClient,
        config: PositionConfig
    ):
        super().__init__(event_bus)
        self._client = client
        self._config = config
        self._position: Optional[TrackedPosition] = None
        self._account: Optional[AccountSummary] = None
        self._poll_task: Optional[asyncio.Task] = None

    async def _on_start(self) -> None:
        if not self._config.enabled:
            logger.info("PositionTracker is disabled")
            return

        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"PositionTracker polling {self._config.symbol} every "
            f"{self._config.poll_interval_ms}ms"
        )

    async def _on_stop(self) -> None:
        if self._poll_task is None:
            return

        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None

    def _register_handlers(self) -> None:
        """PositionTracker only publishes."""

    def _unregister_handlers(self) -> None:
        """PositionTracker only publishes."""

    async def _poll_loop(self) -> None:
        interval = self._config.poll_interval_ms / 1000
        while True:
            try:
                await self._fetch_and_update()
            except Exception as e:
                logger.error(f"Unexpected error in position poll: {e}")
                await self._publish_error(e, "position_poll")
            await asyncio.sleep(interval)

    async def force_update(self) -> None:
        """Run one polling cycle immediately."""
        await self._fetch_and_update()

    async def _fetch_and_update(self) -> None:
        symbol = self._config.symbol
        try:
            position, balance, mark_price = await asyncio.gather(
                self._client.get_position(symbol),
                self._client.get_balance("USDT"),
                self._client.get_mark_price(symbol)
            )
        except Exception as e:
            error = normalize_error(e)
            logger.error(f"PositionTracker fetch error: {error}")
            await self._publish_error(error, "position_poll")
            return

        current = self.build_tracked_position(position, mark_price) if position.has_position else None

        change_type, previous = self._detect_change(current)
        if change_type != "none":
            self._position = current
            logger.info(f"Position {change_type} on {symbol}: {current or previous}")
            await self._publish(
                EventType.POSITION_CHANGED,
                {"change_type": change_type, "previous": previous, "current": current}
            )

        account = self.build_account_summary(balance, current)
        if self._has_account_changed(account):
            self._account = account
            await self._publish(EventType.ACCOUNT_UPDATED, {"account": account})

    @classmethod
    def build_tracked_position(cls, position: Position, mark_price: float) -> TrackedPosition:
        """
        Enrich an open position with margin, ROE and an estimated liquidation price.

        Liquidation estimate:
            LONG:  entry * (1 - 1/leverage + mmr)
            SHORT: entry * (1 + 1/leverage - mmr)
        """
        leverage = position.leverage
        margin = position.size * mark_price / leverage
        roe = position.unrealized_pnl / margin * 100 if margin > 0 else 0.0

        if position.side == "LONG":
            liquidation_price = position.entry_price * (1 - 1 / leverage + cls.MAINTENANCE_MARGIN_RATE)
        else:
            liquidation_price = position.entry_price * (1 + 1 / leverage - cls.MAINTENANCE_MARGIN_RATE)

        return TrackedPosition(
            symbol=position.symbol,
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
            unrealized_pnl=position.unrealized_pnl,
            leverage=leverage,
            mark_price=mark_price,
            roe=roe,
            liquidation_price=liquidation_price,
            margin=margin
        )

    @staticmethod
    def build_account_summary(
        balance: AccountBalance,
        position: Optional[TrackedPosition]
    ) -> AccountSummary:
        total_margin = position.margin if position else 0.0
        return AccountSummary(
            total_balance=balance.total,
            available_balance=balance.available,
            total_unrealized_pnl=position.unrealized_pnl if position else 0.0,
            total_margin=total_margin,
            margin_ratio=total_margin / balance.total if balance.total > 0 else 0.0
        )

    def _detect_change(
        self,
        current: Optional[TrackedPosition]
    ) -> Tuple[PositionChangeType, Optional[TrackedPosition]]:
        previous = self._position

        if previous is None and current is None:
            return "none", None
        if previous is None:
            return "opened", None
        if current is None:
            return "closed", previous

        updated = (
            previous.size != current.size
            or previous.side != current.side
            or abs(previous.unrealized_pnl - current.unrealized_pnl) > self.CHANGE_THRESHOLD_USDT
        )
        return ("updated" if updated else "none"), previous

    def _has_account_changed(self, account: AccountSummary) -> bool:
        previous = self._account
        if previous is None:
            return True

        return (
            abs(previous.total_balance - account.total_balance) > self.CHANGE_THRESHOLD_USDT
            or abs(previous.total_unrealized_pnl - account.total_unrealized_pnl)
            > self.CHANGE_THRESHOLD_USDT
        )

    @property
    def position(self) -> Optional[TrackedPosition]:
        """Last published position, None when flat."""
        return self._position

    @property
    def account(self) -> Optional[AccountSummary]:
        """Last published account summary."""
        return self._account

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()
