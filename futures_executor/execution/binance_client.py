"""
Binance USDT-M Futures client.

Implements the ExchangeClient protocol on top of python-binance's
AsyncClient. Responsibilities:
    - Parsing REST payloads into the executor's models
    - Normalizing every failure into ExchangeError (queries) or a failed
      OrderResult (orders)
    - Caching symbol trading rules for the lifetime of the process
    - Formatting quantities and prices as exact decimal strings
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from binance import AsyncClient
from loguru import logger

from ..core.config import mask_secret
from ..core.exceptions import ErrorKind, ExchangeError
from ..core.models import (
    AccountBalance,
    ExitOrderRequest,
    MarketOrderRequest,
    OrderResult,
    Position,
    SymbolTradingRules,
)
from .exchange import normalize_error


DEFAULT_STEP_SIZE = 0.001
DEFAULT_MIN_NOTIONAL = 5.0
DEFAULT_MAX_QTY = 1_000_000.0

LEVERAGE_UNCHANGED_MESSAGE = "No need to change leverage"


def format_decimal(value: float) -> str:
    """
    Render a float as a plain decimal string without exponent or trailing zeros.

    Examples:
        >>> format_decimal(0.020)
        '0.02'
        >>> format_decimal(1e-05)
        '0.00001'
        >>> format_decimal(50000.0)
        '50000'
    """
    return format(Decimal(str(value)).normalize(), "f")


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


class BinanceFuturesClient:
    """
    ExchangeClient backed by a python-binance AsyncClient.

    The AsyncClient handle is shared by every caller and supports
    concurrently outstanding requests.

    Attributes:
        client (AsyncClient): Underlying python-binance client
        is_testnet (bool): Whether the client talks to the futures testnet

    Examples:
        >>> client = await BinanceFuturesClient.create(key, secret, testnet=True)
        >>> balance = await client.get_balance("USDT")
        >>> await client.close()
    """

    def __init__(self, client: AsyncClient, is_testnet: bool = True):
        self.client = client
        self.is_testnet = is_testnet
        self._rules_cache: Dict[str, SymbolTradingRules] = {}

    @classmethod
    async def create(
        cls,
        api_key: str,
        api_secret: str,
        testnet: bool = True
    ) -> "BinanceFuturesClient":
        """
        Open an AsyncClient session and wrap it.

        Raises:
            ExchangeError: If the session cannot be created
        """
        try:
            client = await AsyncClient.create(
                api_key=api_key,
                api_secret=api_secret,
                testnet=testnet
            )
        except Exception as e:
            raise normalize_error(e) from e

        env_name = "testnet" if testnet else "mainnet"
        logger.info(
            f"Binance futures client connected to {env_name} "
            f"(key {mask_secret(api_key)})"
        )
        return cls(client, is_testnet=testnet)

    async def close(self) -> None:
        """Close the underlying HTTP session. Safe to call more than once."""
        if self.client is None:
            return
        await self.client.close_connection()
        self.client = None
        logger.info("Binance futures client closed")

    async def verify_connectivity(self) -> bool:
        """Check that the API key can read the futures account."""
        try:
            await self.client.futures_account()
            logger.info("Binance API connection verified")
            return True
        except Exception as e:
            logger.error(f"Binance API connection failed: {normalize_error(e)}")
            return False

    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        """
        Set leverage for a symbol.

        The exchange answers with an error when leverage already has the
        requested value; that case counts as success.
        """
        try:
            await self.client.futures_change_leverage(symbol=symbol, leverage=leverage)
            logger.info(f"Leverage set to {leverage}x for {symbol}")
            return True
        except Exception as e:
            error = normalize_error(e)
            if LEVERAGE_UNCHANGED_MESSAGE in str(error):
                logger.debug(f"Leverage already {leverage}x for {symbol}")
                return True
            logger.error(f"Failed to set leverage {leverage}x for {symbol}: {error}")
            return False

    async def get_balance(self, asset: str = "USDT") -> AccountBalance:
        """
        Balance of one asset in the futures wallet.

        Raises:
            ExchangeError: If the request fails or the asset is not listed
        """
        try:
            balances = await self.client.futures_account_balance()
        except Exception as e:
            error = normalize_error(e)
            logger.error(f"Failed to get {asset} balance: {error}")
            raise error from e

        for entry in balances:
            if entry.get("asset") == asset:
                return AccountBalance(
                    asset=asset,
                    available=_to_float(entry.get("availableBalance")),
                    total=_to_float(entry.get("balance"))
                )

        raise ExchangeError(
            f"Balance not found for asset: {asset}",
            kind=ErrorKind.NON_RETRYABLE
        )

    async def get_position(self, symbol: str) -> Position:
        """
        Current one-way position for a symbol. Flat when none is listed.

        Raises:
            ExchangeError: If the request fails, or NON_RETRYABLE if the
                account reports hedge-mode (LONG/SHORT) entries
        """
        try:
            positions = await self.client.futures_position_information(symbol=symbol)
        except Exception as e:
            error = normalize_error(e)
            logger.error(f"Failed to get position for {symbol}: {error}")
            raise error from e

        entries = [p for p in positions if p.get("symbol") == symbol]
        if not entries:
            return Position.flat(symbol)

        # One-way mode reports a single BOTH entry; hedge mode splits LONG/SHORT
        entry = next((p for p in entries if p.get("positionSide", "BOTH") == "BOTH"), None)
        if entry is None:
            raise ExchangeError(
                f"{symbol} is in hedge mode; only one-way position mode is supported",
                kind=ErrorKind.NON_RETRYABLE
            )

        amount = _to_float(entry.get("positionAmt"))
        if amount > 0:
            side = "LONG"
        elif amount < 0:
            side = "SHORT"
        else:
            side = "NONE"

        return Position(
            symbol=symbol,
            side=side,
            size=abs(amount),
            entry_price=_to_float(entry.get("entryPrice")),
            unrealized_pnl=_to_float(entry.get("unRealizedProfit")),
            leverage=int(_to_float(entry.get("leverage"), default=1.0)) or 1
        )

    async def get_symbol_rules(self, symbol: str) -> SymbolTradingRules:
        """
        Trading rules for a symbol, cached after the first lookup.

        Missing filters fall back to step size 0.001 and minimum notional 5.

        Raises:
            ExchangeError: If the request fails or the symbol is unknown
        """
        cached = self._rules_cache.get(symbol)
        if cached is not None:
            return cached

        try:
            exchange_info = await self.client.futures_exchange_info()
        except Exception as e:
            error = normalize_error(e)
            logger.error(f"Failed to get symbol rules for {symbol}: {error}")
            raise error from e

        symbol_data = next(
            (s for s in exchange_info.get("symbols", []) if s.get("symbol") == symbol),
            None
        )
        if symbol_data is None:
            raise ExchangeError(
                f"Symbol not found: {symbol}",
                kind=ErrorKind.NON_RETRYABLE
            )

        filters = {f.get("filterType"): f for f in symbol_data.get("filters", [])}
        lot_size = filters.get("LOT_SIZE", {})
        min_notional = filters.get("MIN_NOTIONAL", {})

        rules = SymbolTradingRules(
            symbol=symbol,
            price_precision=int(symbol_data.get("pricePrecision", 2)),
            quantity_precision=int(symbol_data.get("quantityPrecision", 3)),
            min_qty=_to_float(lot_size.get("minQty")),
            max_qty=_to_float(lot_size.get("maxQty"), default=DEFAULT_MAX_QTY),
            step_size=_to_float(lot_size.get("stepSize"), default=DEFAULT_STEP_SIZE),
            min_notional=_to_float(min_notional.get("notional"), default=DEFAULT_MIN_NOTIONAL)
        )

        self._rules_cache[symbol] = rules
        logger.debug(f"Cached trading rules for {symbol}: {rules}")
        return rules

    async def get_mark_price(self, symbol: str) -> float:
        """
        Current mark price.

        Raises:
            ExchangeError: If the request fails or no price is returned
        """
        try:
            data = await self.client.futures_mark_price(symbol=symbol)
        except Exception as e:
            error = normalize_error(e)
            logger.error(f"Failed to get mark price for {symbol}: {error}")
            raise error from e

        if isinstance(data, list):
            data = next((d for d in data if d.get("symbol") == symbol), None)

        if not data or "markPrice" not in data:
            raise ExchangeError(
                f"Mark price not found for symbol: {symbol}",
                kind=ErrorKind.UNKNOWN
            )

        return float(data["markPrice"])

    async def submit_market_order(self, request: MarketOrderRequest) -> OrderResult:
        """Submit a MARKET order and report the fill."""
        params: Dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side,
            "type": "MARKET",
            "quantity": format_decimal(request.quantity),
            "newOrderRespType": "RESULT",
        }
        if request.reduce_only:
            params["reduceOnly"] = "true"

        logger.info(
            f"Submitting market order: {request.side} {params['quantity']} {request.symbol}"
            + (" (reduce-only)" if request.reduce_only else "")
        )

        try:
            response = await self.client.futures_create_order(**params)
        except Exception as e:
            error = normalize_error(e)
            logger.error(
                f"Market order failed: {request.side} {params['quantity']} "
                f"{request.symbol}: {error}"
            )
            return OrderResult.failed(str(error), error.kind)

        result = OrderResult(
            success=True,
            order_id=self._order_id(response),
            filled_qty=_to_float(response.get("executedQty")),
            avg_price=_to_float(response.get("avgPrice"))
        )
        logger.info(
            f"Market order executed: id={result.order_id}, "
            f"qty={result.filled_qty}, avg_price={result.avg_price}"
        )
        return result

    async def submit_take_profit_order(self, request: ExitOrderRequest) -> OrderResult:
        """Submit a TAKE_PROFIT_MARKET order."""
        return await self._submit_exit_order(request, "TAKE_PROFIT_MARKET", "Take profit")

    async def submit_stop_loss_order(self, request: ExitOrderRequest) -> OrderResult:
        """Submit a STOP_MARKET order."""
        return await self._submit_exit_order(request, "STOP_MARKET", "Stop loss")

    async def cancel_all_orders(self, symbol: str) -> bool:
        """Cancel every open order for a symbol."""
        try:
            await self.client.futures_cancel_all_open_orders(symbol=symbol)
            logger.info(f"All open orders cancelled for {symbol}")
            return True
        except Exception as e:
            logger.error(f"Failed to cancel orders for {symbol}: {normalize_error(e)}")
            return False

    async def _submit_exit_order(
        self,
        request: ExitOrderRequest,
        order_type: str,
        label: str
    ) -> OrderResult:
        stop_price = format_decimal(request.stop_price)
        params: Dict[str, Any] = {
            "symbol": request.symbol,
            "side": request.side,
            "type": order_type,
            "stopPrice": stop_price,
            "closePosition": "true" if request.close_entire_position else "false",
        }

        logger.info(f"Submitting {label.lower()} order: {request.side} {request.symbol} @ {stop_price}")

        try:
            response = await self.client.futures_create_order(**params)
        except Exception as e:
            error = normalize_error(e)
            logger.error(f"{label} order failed for {request.symbol} @ {stop_price}: {error}")
            return OrderResult.failed(str(error), error.kind)

        return OrderResult(success=True, order_id=self._order_id(response))

    @staticmethod
    def _order_id(response: Dict[str, Any]) -> Optional[int]:
        order_id = response.get("orderId")
        return int(order_id) if order_id is not None else None
