"""
Position Sizer

Turns an account balance, a mark price and the exchange's trading rules
into an order quantity the exchange will accept.

Formula:
1. risk_amount = available_balance * position_size_percent
2. notional = min(risk_amount * leverage, max_position_size_usdt)
3. quantity = notional / mark_price
4. quantity floored to a multiple of step_size, then truncated to
   quantity_precision decimals

Quantity adjustments use Decimal arithmetic so that flooring to the step
size never rounds up because of binary float error.
"""

from decimal import Decimal, ROUND_DOWN, ROUND_FLOOR, ROUND_HALF_UP

from loguru import logger

from ..core.config import ExecutionConfig
from ..core.models import AccountBalance, SignalDirection, SizeResult, SymbolTradingRules


def _to_decimal(value: float) -> Decimal:
    """Decimal from the shortest repr of a float (0.1 -> Decimal('0.1'))."""
    return Decimal(str(value))


def _quantum(precision: int) -> Decimal:
    """Smallest increment for a number of decimal places (2 -> 0.01)."""
    return Decimal(1).scaleb(-precision)


class PositionSizer:
    """
    Calculates position size and exit prices from execution settings.

    All methods are pure: the same inputs always give the same outputs and
    nothing is mutated.

    Examples:
        >>> sizer = PositionSizer(ExecutionConfig(leverage=10, position_size_percent=0.1))
        >>> result = sizer.calculate_position_size(balance, 50000.0, rules)
        >>> result.quantity
        0.02
    """

    def __init__(self, config: ExecutionConfig):
        self._config = config

    @property
    def config(self) -> ExecutionConfig:
        """Execution settings used for sizing."""
        return self._config

    def calculate_position_size(
        self,
        balance: AccountBalance,
        mark_price: float,
        rules: SymbolTradingRules
    ) -> SizeResult:
        """
        Calculate the order quantity for a new position.

        Args:
            balance (AccountBalance): Current balance of the margin asset
            mark_price (float): Current mark price of the symbol
            rules (SymbolTradingRules): Exchange trading rules for the symbol

        Returns:
            SizeResult: Valid result with the adjusted quantity, or an
                invalid result carrying a readable reason
        """
        if mark_price <= 0:
            return SizeResult.invalid(f"Invalid mark price: {mark_price}")

        risk_amount = balance.available * self._config.position_size_percent
        leveraged_amount = risk_amount * self._config.leverage
        notional = min(leveraged_amount, self._config.max_position_size_usdt)

        if notional < self._config.min_position_size_usdt:
            return SizeResult.invalid(
                f"Notional value {notional:.2f} USDT is below minimum "
                f"{self._config.min_position_size_usdt} USDT"
            )

        raw_quantity = notional / mark_price
        quantity = self.adjust_quantity(raw_quantity, rules)

        if quantity < rules.min_qty:
            return SizeResult.invalid(
                f"Quantity {quantity} is below symbol minimum {rules.min_qty}"
            )

        if quantity > rules.max_qty:
            return SizeResult.invalid(
                f"Quantity {quantity} exceeds symbol maximum {rules.max_qty}"
            )

        actual_notional = float(_to_decimal(quantity) * _to_decimal(mark_price))
        if actual_notional < rules.min_notional:
            return SizeResult.invalid(
                f"Notional {actual_notional:.2f} USDT is below symbol minimum "
                f"{rules.min_notional} USDT"
            )

        logger.debug(
            f"Sized {rules.symbol}: risk={risk_amount:.2f} USDT, "
            f"notional={actual_notional:.2f} USDT, quantity={quantity}"
        )

        return SizeResult(
            valid=True,
            quantity=quantity,
            notional_value=actual_notional,
            risk_amount=risk_amount
        )

    def adjust_quantity(self, quantity: float, rules: SymbolTradingRules) -> float:
        """
        Floor a raw quantity to the step size, then truncate to the precision.

        Never rounds up, so the resulting exposure never exceeds the request.
        """
        step = _to_decimal(rules.step_size)
        steps = (_to_decimal(quantity) / step).to_integral_value(rounding=ROUND_FLOOR)
        adjusted = (steps * step).quantize(
            _quantum(rules.quantity_precision), rounding=ROUND_DOWN
        )
        return float(adjusted)

    def take_profit_price(self, entry_price: float, direction: SignalDirection) -> float:
        """Take-profit trigger: above entry for LONG, below for SHORT."""
        if direction == "LONG":
            return entry_price * (1 + self._config.take_profit_percent)
        return entry_price * (1 - self._config.take_profit_percent)

    def stop_loss_price(self, entry_price: float, direction: SignalDirection) -> float:
        """Stop-loss trigger: below entry for LONG, above for SHORT."""
        if direction == "LONG":
            return entry_price * (1 - self._config.stop_loss_percent)
        return entry_price * (1 + self._config.stop_loss_percent)

    @staticmethod
    def round_to_price_precision(price: float, rules: SymbolTradingRules) -> float:
        """Round half-up to the symbol's price precision."""
        rounded = _to_decimal(price).quantize(
            _quantum(rules.price_precision), rounding=ROUND_HALF_UP
        )
        return float(rounded)
