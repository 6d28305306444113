"""
Order Validator

Pre-execution checks that stop invalid or repeated orders before they
reach the exchange.
"""

from typing import List, Optional, Tuple

from ..core.models import (
    Position,
    SignalDirection,
    SizeResult,
    SymbolTradingRules,
    TradingSignal,
    ValidationOutcome,
)


class OrderValidator:
    """
    Validates a sized order against the last recorded execution and the
    symbol's trading rules.

    The only state is the (candle_timestamp, direction) of the last
    execution passed to record_execution(). validate() never mutates it.

    Examples:
        >>> validator = OrderValidator()
        >>> validator.validate(signal, Position.flat("BTCUSDT"), size, rules).valid
        True
        >>> validator.record_execution(signal)
        >>> validator.validate(signal, Position.flat("BTCUSDT"), size, rules).errors
        ['Duplicate signal detected for same candle']
    """

    def __init__(self):
        self._last_timestamp: Optional[int] = None
        self._last_direction: Optional[SignalDirection] = None

    def validate(
        self,
        signal: TradingSignal,
        current_position: Position,
        size_result: SizeResult,
        rules: SymbolTradingRules
    ) -> ValidationOutcome:
        """
        Run every check and collect all errors and warnings.

        Args:
            signal (TradingSignal): Signal being executed
            current_position (Position): Position before the entry order
            size_result (SizeResult): Output of the position sizer
            rules (SymbolTradingRules): Trading rules for the signal's symbol

        Returns:
            ValidationOutcome: valid is True only when no errors were found
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self._is_duplicate(signal):
            errors.append("Duplicate signal detected for same candle")

        if not size_result.valid:
            errors.append(f"Invalid position size: {size_result.reason}")

        if self._is_conflicting(signal, current_position):
            # Entry is still allowed to net or flip the position
            warnings.append(
                f"Existing {current_position.side} position detected "
                f"(size: {current_position.size})"
            )

        # Re-check against rules that may be fresher than the sizing input
        if size_result.valid and size_result.notional_value < rules.min_notional:
            errors.append(
                f"Notional {size_result.notional_value:.2f} below minimum "
                f"{rules.min_notional}"
            )

        if size_result.valid and size_result.quantity < rules.min_qty:
            errors.append(
                f"Quantity {size_result.quantity} below minimum {rules.min_qty}"
            )

        return ValidationOutcome(valid=not errors, errors=errors, warnings=warnings)

    def record_execution(self, signal: TradingSignal) -> None:
        """Remember a signal whose entry order was accepted by the exchange."""
        self._last_timestamp, self._last_direction = signal.dedup_key

    def reset(self) -> None:
        """Forget the last recorded execution."""
        self._last_timestamp = None
        self._last_direction = None

    @property
    def state(self) -> Tuple[Optional[int], Optional[SignalDirection]]:
        """(last_timestamp, last_direction) of the recorded execution."""
        return self._last_timestamp, self._last_direction

    def _is_duplicate(self, signal: TradingSignal) -> bool:
        return signal.dedup_key == self.state

    @staticmethod
    def _is_conflicting(signal: TradingSignal, position: Position) -> bool:
        """LONG signal against a SHORT position or vice versa."""
        if not position.has_position:
            return False
        return position.side != signal.direction
