"""
Exchange boundary.

The execution engine, risk manager and position tracker only see the
exchange through the ExchangeClient protocol below. Query methods raise
ExchangeError; order methods never raise and report failures through
OrderResult.error / OrderResult.error_kind instead.
"""

import asyncio
from typing import List, Protocol, runtime_checkable

from binance.exceptions import BinanceAPIException

from ..core.exceptions import ErrorKind, ExchangeError
from ..core.models import (
    AccountBalance,
    ExitOrderRequest,
    MarketOrderRequest,
    OrderResult,
    Position,
    SymbolTradingRules,
)

__all__ = [
    "ErrorKind",
    "ExchangeError",
    "ExchangeClient",
    "RETRYABLE_CODES",
    "normalize_error",
]


# -1001 DISCONNECTED, -1003 TOO_MANY_REQUESTS, -1007 TIMEOUT, -1015 TOO_MANY_ORDERS
RETRYABLE_CODES: List[int] = [-1001, -1003, -1007, -1015]


def normalize_error(error: BaseException) -> ExchangeError:
    """
    Convert any exception raised at the exchange boundary into an ExchangeError.

    Classification:
    - BinanceAPIException with a code in RETRYABLE_CODES -> RETRYABLE
    - any other BinanceAPIException -> NON_RETRYABLE
    - asyncio.TimeoutError / ConnectionError -> RETRYABLE
    - ExchangeError is returned unchanged
    - everything else -> UNKNOWN

    Args:
        error (BaseException): Exception raised by the transport

    Returns:
        ExchangeError: Tagged error carrying a readable message

    Examples:
        >>> normalize_error(asyncio.TimeoutError()).kind
        <ErrorKind.RETRYABLE: 'retryable'>
        >>> normalize_error(ValueError("boom")).kind
        <ErrorKind.UNKNOWN: 'unknown'>
    """
    if isinstance(error, ExchangeError):
        return error

    if isinstance(error, BinanceAPIException):
        kind = (
            ErrorKind.RETRYABLE
            if error.code in RETRYABLE_CODES
            else ErrorKind.NON_RETRYABLE
        )
        return ExchangeError(
            f"Binance Error {error.code}: {error.message}",
            kind=kind,
            code=error.code
        )

    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        message = str(error) or type(error).__name__
        return ExchangeError(message, kind=ErrorKind.RETRYABLE)

    return ExchangeError(str(error) or type(error).__name__, kind=ErrorKind.UNKNOWN)


@runtime_checkable
class ExchangeClient(Protocol):
    """
    Capabilities the pipeline needs from a futures exchange.

    A single instance is shared by every component and must tolerate
    concurrently outstanding calls.
    """

    async def get_balance(self, asset: str = "USDT") -> AccountBalance:
        """Balance for an asset. Raises ExchangeError if the asset is unknown."""
        ...

    async def get_position(self, symbol: str) -> Position:
        """Current position. A flat position is returned, never an error."""
        ...

    async def get_symbol_rules(self, symbol: str) -> SymbolTradingRules:
        """Trading rules for a symbol. May be served from a cache."""
        ...

    async def get_mark_price(self, symbol: str) -> float:
        ...

    async def submit_market_order(self, request: MarketOrderRequest) -> OrderResult:
        ...

    async def submit_take_profit_order(self, request: ExitOrderRequest) -> OrderResult:
        ...

    async def submit_stop_loss_order(self, request: ExitOrderRequest) -> OrderResult:
        ...

    async def cancel_all_orders(self, symbol: str) -> bool:
        ...

    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        """True on success, including when leverage already has this value."""
        ...

    async def verify_connectivity(self) -> bool:
        ...
