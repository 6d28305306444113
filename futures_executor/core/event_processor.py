"""
Component lifecycle on top of the event bus.

- EventProcessor: base class for the executor's bus-connected components
- EventOrchestrator: brings components up in dependency order and takes
  them down in reverse

ExecutionEngine, RiskManager and PositionTracker are processors. Each one
runs its startup hook (initial balance, leverage, polling task) before it
subscribes to anything, so no event reaches a half-initialized component.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Coroutine, List, Set

from loguru import logger

from .event_bus import Event, EventBus, EventType


class EventProcessor(ABC):
    """
    Base class for components that consume and publish bus events.

    Lifecycle:
    1. __init__ receives the shared EventBus
    2. start(): _on_start() hook, then _register_handlers()
    3. handlers run on the bus's dispatch task; long work goes to _spawn()
    4. stop(): _unregister_handlers(), join(), then _on_stop() hook

    Subclasses implement the two handler methods; the hooks are optional.

    Attributes:
        event_bus (EventBus): Shared bus for subscriptions and publishing
        name (str): Component name used as event source and in logs
    """

    def __init__(self, event_bus: EventBus):
        """
        Args:
            event_bus (EventBus): Shared event bus
        """
        self.event_bus = event_bus
        self.name = type(self).__name__
        self._is_started = False
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        """
        Run the startup hook and subscribe handlers. No-op when running.

        Raises:
            Exception: Whatever the startup hook raised; the component
                stays stopped and unsubscribed
        """
        if self._is_started:
            logger.debug(f"{self.name} is already running")
            return

        logger.info(f"{self.name} starting")
        try:
            await self._on_start()
            self._register_handlers()
        except Exception as e:
            logger.error(f"{self.name} failed to start: {e}")
            raise

        self._is_started = True
        logger.info(f"{self.name} running")

    async def stop(self) -> None:
        """
        Unsubscribe handlers and run the shutdown hook. No-op when stopped.

        Cleanup errors are logged; the component always ends up stopped.
        """
        if not self._is_started:
            logger.debug(f"{self.name} is not running")
            return

        logger.info(f"{self.name} stopping")
        try:
            self._unregister_handlers()
            await self.join()
            await self._on_stop()
        except Exception as e:
            logger.error(f"{self.name} cleanup failed: {e}")
        finally:
            self._is_started = False
        logger.info(f"{self.name} stopped")

    @abstractmethod
    def _register_handlers(self) -> None:
        """Subscribe to the event types this component consumes."""

    @abstractmethod
    def _unregister_handlers(self) -> None:
        """Remove exactly the subscriptions made in _register_handlers()."""

    async def _on_start(self) -> None:
        """Startup hook, runs before any subscription."""

    async def _on_stop(self) -> None:
        """Shutdown hook, runs after every subscription is removed."""

    def _spawn(self, work: Coroutine) -> asyncio.Task:
        """
        Run work as a task owned by this component instead of inside the
        bus handler.

        Handlers are bounded by the bus's handler timeout, and a timeout
        cancels the handler. Order placement and liquidation must not be
        interrupted halfway, so handlers only hand them off here. stop()
        waits for every spawned task.
        """
        task = asyncio.create_task(work)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        """Wait until all work started with _spawn() has finished."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _publish(self, event_type: EventType, data: dict) -> None:
        """
        Publish an event with this component as its source.

        A publishing failure is logged, never raised, so a lost notification
        cannot abort the order or risk check that produced it.

        Args:
            event_type (EventType): Event to publish
            data (dict): Payload, keys as documented on the EventType member
        """
        try:
            await self.event_bus.publish(Event(event_type, data, self.name))
        except Exception as e:
            logger.error(f"{self.name} could not publish {event_type}: {e}")
            return
        logger.debug(f"{self.name} published {event_type}")

    async def _publish_error(self, error: Exception, context: str) -> None:
        """
        Publish an ERROR event for a failed operation.

        Args:
            error (Exception): The failure
            context (str): Operation name, e.g. "risk_check" or "exit_order"
        """
        await self._publish(EventType.ERROR, {
            "error_type": type(error).__name__,
            "error_message": str(error),
            "component": self.name,
            "context": context,
            "timestamp": datetime.now(timezone.utc),
        })

    @property
    def is_running(self) -> bool:
        return self._is_started


class EventOrchestrator:
    """
    Starts components in registration order and stops them in reverse.

    One component failing to start does not keep the others down; only a
    total failure is raised.

    Examples:
        >>> orchestrator = EventOrchestrator(bus)
        >>> orchestrator.register(risk_manager)       # gate first
        >>> orchestrator.register(execution_engine)
        >>> await orchestrator.start_all()
        >>> await orchestrator.stop_all()
    """

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._processors: List[EventProcessor] = []

    def register(self, processor: EventProcessor) -> None:
        """
        Add a component. Registration order is startup order.

        Args:
            processor (EventProcessor): Component to manage
        """
        self._processors.append(processor)
        logger.debug(f"Registered {processor.name} as processor #{len(self._processors)}")

    async def start_all(self) -> List[str]:
        """
        Start every component in registration order.

        Returns:
            List[str]: Names of the components that failed to start

        Raises:
            RuntimeError: If every registered component failed
        """
        failed = []
        for processor in self._processors:
            try:
                await processor.start()
            except Exception:
                failed.append(processor.name)

        if self._processors and len(failed) == len(self._processors):
            raise RuntimeError("All processors failed to start")

        if failed:
            logger.warning(f"Running without {', '.join(failed)}")
        else:
            logger.info(f"{len(self._processors)} processor(s) running")
        return failed

    async def stop_all(self) -> None:
        """Stop every component, last registered first."""
        for processor in reversed(self._processors):
            try:
                await processor.stop()
            except Exception as e:
                logger.error(f"Stopping {processor.name} raised: {e}")
        logger.info("All processors stopped")

    @property
    def processor_count(self) -> int:
        return len(self._processors)

    @property
    def running_count(self) -> int:
        return sum(1 for p in self._processors if p.is_running)
