"""
Typed publish-subscribe bus connecting the executor components.

Inputs (trading signals, closed-position reports) arrive as events and every
result the pipeline produces leaves as one: execution outcomes, risk
breaches, gate transitions, position and account updates. Member names and
payload keys are the contract with the collaborators outside this package
(signal source, notifier, dashboard).
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

Handler = Callable[["Event"], Any]

# Seconds stop() waits for queued events before cancelling the dispatcher
DRAIN_TIMEOUT = 5.0


class EventType(Enum):
    """
    Every kind of event the executor publishes or consumes.

    Values are lowercase names so they read well in logs. Members print as
    their bare name, e.g. str(EventType.ORDER_FAILED) == "ORDER_FAILED".
    """

    TRADING_SIGNAL = "trading_signal"
    """
    A confirmed directional signal from the strategy collaborator.

    Payload: {"signal": TradingSignal}
    """

    POSITION_CLOSED = "position_closed"
    """
    A position was closed and its realized P&L is known.

    Consumed by the risk manager to advance daily statistics.
    Payload: {"realized_pnl": float, ...}
    """

    ORDER_EXECUTED = "order_executed"
    """
    Entry order filled and exit orders submitted (best-effort).

    Payload: {"outcome": ExecutionOutcome}
    """

    ORDER_FAILED = "order_failed"
    """
    A signal could not be executed. Exactly one per failed signal.

    Payload: {"signal": TradingSignal, "reason": str}
    """

    LEVERAGE_SET = "leverage_set"
    """
    Leverage was configured on the exchange during initialization.

    Payload: {"symbol": str, "leverage": int}
    """

    RISK_BREACH = "risk_breach"
    """
    A risk limit (daily loss or max drawdown) was crossed.

    Payload: {"breach": RiskBreachEvent}
    """

    TRADING_BLOCKED = "trading_blocked"
    """
    The trading gate closed. Payload: {"reason": str}
    """

    TRADING_RESUMED = "trading_resumed"
    """
    The trading gate reopened. Payload: {}
    """

    RISK_STATUS_CHANGED = "risk_status_changed"
    """
    The risk snapshot changed meaningfully (flag flip or P&L/drawdown move).

    Payload: {"snapshot": RiskSnapshot}
    """

    POSITION_CHANGED = "position_changed"
    """
    The tracked position was opened, closed or updated.

    Payload: {"change_type": str, "previous": TrackedPosition | None,
              "current": TrackedPosition | None}
    """

    ACCOUNT_UPDATED = "account_updated"
    """
    Account balances moved. Payload: {"account": AccountSummary}
    """

    ERROR = "error"
    """
    A per-operation failure inside a component.

    Payload: error_type, error_message, component, context, timestamp.
    """

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<EventType.{self.name}: '{self.value}'>"


@dataclass
class Event:
    """
    A single message on the bus.

    Attributes:
        event_type (EventType): What happened
        data (Dict[str, Any]): Payload, keyed as documented on the member
        source (str): Name of the publishing component
        timestamp (datetime): Creation time in UTC, filled in when omitted
    """

    event_type: EventType
    data: Dict[str, Any]
    source: str
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.event_type, EventType):
            raise TypeError(
                f"event_type must be EventType enum, got {type(self.event_type).__name__}"
            )
        if not isinstance(self.data, dict):
            raise TypeError(f"data must be dict, got {type(self.data).__name__}")
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        return f"Event({self.event_type.name} from {self.source} at {self.timestamp})"


class EventBus:
    """
    Queue-backed publish-subscribe hub.

    publish() only enqueues; one dispatcher task delivers events in arrival
    order, calling each subscriber in subscription order. Coroutine handlers
    are awaited, plain callables run via asyncio.to_thread. A handler that
    raises or outlives ``handler_timeout`` is logged and skipped, and the
    remaining subscribers still receive the event.

    Examples:
        >>> bus = EventBus(handler_timeout=30.0)
        >>> await bus.start()
        >>> bus.subscribe(EventType.ORDER_FAILED, on_failed)
        >>> await bus.publish(Event(EventType.ORDER_FAILED, payload, "ExecutionEngine"))
        >>> await bus.stop()
    """

    def __init__(self, handler_timeout: float = 1.0):
        """
        Args:
            handler_timeout (float): Per-handler time limit in seconds. The
                application raises it well above the default because a
                signal with retries can take several seconds to execute.

        Raises:
            ValueError: If handler_timeout is zero or negative
        """
        if handler_timeout <= 0:
            raise ValueError(f"handler_timeout must be positive, got {handler_timeout}")

        self._handler_timeout = handler_timeout
        self._subscribers: Dict[EventType, List[Handler]] = {t: [] for t in EventType}
        # Bound to the running loop in start()
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def subscribe(self, event_type: EventType, callback: Handler) -> None:
        """
        Add a handler for one event type. Subscribing twice has no effect.

        Raises:
            TypeError: If event_type is not an EventType member
        """
        if not isinstance(event_type, EventType):
            raise TypeError(f"event_type must be EventType enum, got {type(event_type)}")

        handlers = self._subscribers[event_type]
        if callback not in handlers:
            handlers.append(callback)

    def unsubscribe(self, event_type: EventType, callback: Handler) -> None:
        """Remove a handler. Handlers that were never added are ignored."""
        handlers = self._subscribers[event_type]
        if callback in handlers:
            handlers.remove(callback)

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers[event_type])

    def clear_subscribers(self, event_type: Optional[EventType] = None) -> None:
        """Drop the handlers of one event type, or of every type when None."""
        targets = list(EventType) if event_type is None else [event_type]
        for target in targets:
            self._subscribers[target].clear()

    async def publish(self, event: Event) -> None:
        """
        Enqueue an event for delivery and return immediately.

        Raises:
            TypeError: If event is not an Event
            RuntimeError: If start() has not been called
        """
        if not isinstance(event, Event):
            raise TypeError(f"event must be Event instance, got {type(event)}")
        if self._queue is None:
            raise RuntimeError("Event bus not started. Call start() first.")

        self._queue.put_nowait(event)

    async def start(self) -> None:
        """Launch the dispatcher task. No-op when already running."""
        if self._running:
            return

        self._queue = asyncio.Queue()
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.debug("Event bus started")

    async def stop(self) -> None:
        """
        Deliver what is already queued, then stop the dispatcher.

        Waits at most DRAIN_TIMEOUT seconds for the queue to empty; events
        still queued after that are dropped with a warning.
        """
        if not self._running:
            return

        self._running = False
        try:
            await asyncio.wait_for(self._queue.join(), timeout=DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(
                f"Event bus stopped with {self._queue.qsize()} undelivered event(s)"
            )

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug("Event bus stopped")

    async def _run(self) -> None:
        # Polls with a short timeout so a stop request is noticed while idle
        while self._running or not self._queue.empty():
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue

            try:
                await self._dispatch(event)
            except Exception as e:
                logger.error(f"Dispatch of {event.event_type} failed: {e}")
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        # Snapshot so handlers may (un)subscribe while being called
        handlers = list(self._subscribers[event.event_type])
        logger.debug(f"{event.event_type} -> {len(handlers)} handler(s)")

        for callback in handlers:
            name = getattr(callback, "__name__", repr(callback))
            try:
                await asyncio.wait_for(
                    self._invoke(callback, event), timeout=self._handler_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"{name} took longer than {self._handler_timeout}s on {event.event_type}"
                )
            except Exception as e:
                logger.error(f"{name} raised while handling {event.event_type}: {e}")

    @staticmethod
    async def _invoke(callback: Handler, event: Event) -> Any:
        if inspect.iscoroutinefunction(callback):
            return await callback(event)
        return await asyncio.to_thread(callback, event)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_size(self) -> int:
        """Events waiting for delivery; 0 before start()."""
        return 0 if self._queue is None else self._queue.qsize()
