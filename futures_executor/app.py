"""
Application entry point.

Wires configuration, logging, the Binance client and the three processors
(risk manager, execution engine, position tracker) onto one event bus and
runs until SIGINT/SIGTERM.

Usage:
    futures-executor --config config.yaml
    python -m futures_executor --config config.yaml --log-level DEBUG
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional, Union

from loguru import logger

from .core.config import AppConfig, ConfigError, CredentialError, load_config, load_credentials
from .core.event_bus import Event, EventBus, EventType
from .core.event_processor import EventOrchestrator
from .core.models import utc_now
from .execution.binance_client import BinanceFuturesClient
from .execution.exchange import ExchangeClient, ExchangeError
from .execution.execution_engine import ExecutionEngine
from .position.position_tracker import PositionTracker
from .risk.risk_manager import RiskManager


LOG_ROTATION = "5 MB"
LOG_RETENTION = 5

# Events surfaced in the log for operators
WARNING_EVENTS = (
    EventType.ORDER_FAILED,
    EventType.RISK_BREACH,
    EventType.TRADING_BLOCKED,
    EventType.ERROR,
)
INFO_EVENTS = (
    EventType.ORDER_EXECUTED,
    EventType.LEVERAGE_SET,
    EventType.TRADING_RESUMED,
)


def setup_logging(level: str = "INFO", log_dir: Union[str, Path] = "logs") -> None:
    """
    Replace loguru's default sink with console and rotating file sinks.

    Sinks:
        stderr at ``level``
        <log_dir>/trader.log at ``level`` (5 MB rotation, 5 files kept)
        <log_dir>/error.log for ERROR and above (same rotation)
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level=level)
    logger.add(
        log_path / "trader.log",
        level=level,
        rotation=LOG_ROTATION,
        retention=LOG_RETENTION
    )
    logger.add(
        log_path / "error.log",
        level="ERROR",
        rotation=LOG_ROTATION,
        retention=LOG_RETENTION
    )


class TradingApp:
    """
    Owns the event bus and the processors for one trading session.

    Processors start in dependency order (risk manager first so the gate is
    seeded before any signal is accepted) and stop in reverse.

    Examples:
        >>> app = TradingApp(config, client)
        >>> await app.start()
        >>> await app.event_bus.publish(Event(EventType.TRADING_SIGNAL, {"signal": s}, "strategy"))
        >>> await app.stop()
    """

    def __init__(
        self,
        config: AppConfig,
        client: ExchangeClient,
        event_bus: Optional[EventBus] = None,
        clock: Callable = utc_now
    ):
        self.config = config
        self.client = client
        self.event_bus = event_bus or EventBus(handler_timeout=config.event_handler_timeout)

        self.risk_manager = RiskManager(self.event_bus, client, config.risk, clock=clock)
        self.execution_engine = ExecutionEngine(
            self.event_bus,
            client,
            config.execution,
            trading_gate=lambda: self.risk_manager.trading_allowed
        )
        self.position_tracker = PositionTracker(self.event_bus, client, config.position)

        self.orchestrator = EventOrchestrator(self.event_bus)
        self.orchestrator.register(self.risk_manager)
        self.orchestrator.register(self.execution_engine)
        self.orchestrator.register(self.position_tracker)

    async def start(self) -> None:
        """Start the event bus, subscribe the event log and start processors."""
        await self.event_bus.start()
        for event_type in WARNING_EVENTS + INFO_EVENTS:
            self.event_bus.subscribe(event_type, self._log_event)
        await self.orchestrator.start_all()
        logger.info(
            f"Futures executor running on {self.config.symbol} "
            f"({'testnet' if self.config.use_testnet else 'mainnet'})"
        )

    async def stop(self) -> None:
        """Stop processors in reverse order, then drain and stop the bus."""
        await self.orchestrator.stop_all()
        for event_type in WARNING_EVENTS + INFO_EVENTS:
            self.event_bus.unsubscribe(event_type, self._log_event)
        await self.event_bus.stop()
        logger.info("Futures executor stopped")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run until ``stop_event`` is set."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    async def _log_event(self, event: Event) -> None:
        summary = ", ".join(f"{key}={value}" for key, value in event.data.items())
        if event.event_type in WARNING_EVENTS:
            logger.warning(f"[{event.source}] {event.event_type.name}: {summary}")
        else:
            logger.info(f"[{event.source}] {event.event_type.name}: {summary}")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still ends asyncio.run()
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")


async def run_app(config: AppConfig) -> None:
    """Create the exchange client, run the app and always close the client."""
    api_key, api_secret = load_credentials(config.use_testnet)
    client = await BinanceFuturesClient.create(api_key, api_secret, testnet=config.use_testnet)

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        await TradingApp(config, client).run(stop_event)
    finally:
        await client.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="futures-executor",
        description="Execute trading signals on Binance USDT-M futures with risk gating"
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config.yaml (default: %(default)s)"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the log level from config.yaml"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point. Returns the process exit code."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(args.log_level or config.log_level, config.log_dir)

    try:
        asyncio.run(run_app(config))
    except (ConfigError, CredentialError) as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except ExchangeError as e:
        logger.error(f"Exchange error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")

    return 0
