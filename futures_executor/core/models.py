"""
Trading models with validation.

This module defines the data exchanged between the execution pipeline,
the risk manager and the exchange boundary:
- TradingSignal: confirmed directional signal (input)
- AccountBalance, Position, SymbolTradingRules: exchange snapshots
- SizeResult, ValidationOutcome: pre-trade decisions
- MarketOrderRequest, ExitOrderRequest, OrderResult, ExecutionOutcome: orders
- DailyStats, RiskSnapshot, RiskBreachEvent: risk state
- TrackedPosition, AccountSummary: position tracking

Snapshots and results are frozen; DailyStats is the only mutable model and
is owned by the risk manager.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .exceptions import ErrorKind


SignalDirection = Literal["LONG", "SHORT"]
PositionSide = Literal["LONG", "SHORT", "NONE"]
OrderSide = Literal["BUY", "SELL"]
BreachKind = Literal["daily_loss", "max_drawdown"]
PositionChangeType = Literal["opened", "closed", "updated", "none"]


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class TradingSignal(BaseModel):
    """
    Immutable directional signal emitted once per confirmed candle.

    Attributes:
        direction: 'LONG' or 'SHORT'
        symbol: Trading pair (e.g., 'BTCUSDT')
        trigger_price: Close price that triggered the signal
        reference_band_value: Band touched (lower band for LONG, upper for SHORT)
        midline: Middle band value
        bandwidth: Relative band width at signal time
        candle_timestamp: Candle close time in epoch milliseconds

    Examples:
        >>> signal = TradingSignal(
        ...     direction="LONG",
        ...     symbol="BTCUSDT",
        ...     trigger_price=50000.0,
        ...     reference_band_value=49000.0,
        ...     midline=50500.0,
        ...     bandwidth=0.04,
        ...     candle_timestamp=1700000000000
        ... )
        >>> signal.dedup_key
        (1700000000000, 'LONG')
    """

    model_config = {"frozen": True}

    direction: SignalDirection = Field(description="Trade direction")
    symbol: str = Field(
        min_length=1,
        pattern=r"^[A-Z0-9]+$",
        description="Trading pair symbol"
    )
    trigger_price: float = Field(gt=0, description="Price that triggered the signal")
    reference_band_value: float = Field(ge=0, description="Band value at signal time")
    midline: float = Field(ge=0, description="Middle band value")
    bandwidth: float = Field(ge=0, description="Band width ratio")
    candle_timestamp: int = Field(ge=0, description="Candle close time (epoch ms)")

    @property
    def dedup_key(self) -> tuple:
        """One decision per (candle, direction)."""
        return (self.candle_timestamp, self.direction)


class AccountBalance(BaseModel):
    """
    Balance snapshot for one asset. Never cached across calls.

    ``available`` goes negative in cross margin when unrealized losses exceed
    the free margin; ``total`` is the wallet balance.
    """

    model_config = {"frozen": True}

    asset: str
    available: float
    total: float = Field(ge=0)


class Position(BaseModel):
    """
    Position snapshot for a symbol.

    A flat position may arrive either as side 'NONE' or as size 0; both
    forms are normalized to side='NONE', size=0 so callers only need
    ``has_position``.

    Examples:
        >>> Position(symbol="BTCUSDT", side="LONG", size=0).side
        'NONE'
        >>> Position(symbol="BTCUSDT", side="NONE", size=0.5).size
        0.0
    """

    model_config = {"frozen": True}

    symbol: str
    side: PositionSide = "NONE"
    size: float = Field(default=0.0, ge=0)
    entry_price: float = Field(default=0.0, ge=0)
    unrealized_pnl: float = 0.0
    leverage: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def normalize_flat_position(self) -> "Position":
        """Treat side NONE and size 0 as the same state."""
        if self.side == "NONE" or self.size == 0:
            object.__setattr__(self, "side", "NONE")
            object.__setattr__(self, "size", 0.0)
        return self

    @property
    def has_position(self) -> bool:
        """True when a non-zero position is open."""
        return self.side != "NONE"

    @classmethod
    def flat(cls, symbol: str) -> "Position":
        """Flat position for a symbol with no open exposure."""
        return cls(symbol=symbol)


class SymbolTradingRules(BaseModel):
    """Exchange trading rules for a symbol. Cacheable for process lifetime."""

    model_config = {"frozen": True}

    symbol: str
    price_precision: int = Field(ge=0)
    quantity_precision: int = Field(ge=0)
    min_qty: float = Field(ge=0)
    max_qty: float = Field(gt=0)
    step_size: float = Field(gt=0)
    min_notional: float = Field(ge=0)

    @model_validator(mode="after")
    def validate_quantity_range(self) -> "SymbolTradingRules":
        """Ensure min_qty does not exceed max_qty."""
        if self.min_qty > self.max_qty:
            raise ValueError(
                f"Invalid rules for {self.symbol}: min_qty ({self.min_qty}) "
                f"exceeds max_qty ({self.max_qty})"
            )
        return self


class SizeResult(BaseModel):
    """
    Outcome of position sizing.

    Invalid results never carry a usable quantity.
    """

    model_config = {"frozen": True}

    valid: bool
    quantity: float = 0.0
    notional_value: float = 0.0
    risk_amount: float = 0.0
    reason: Optional[str] = None

    @classmethod
    def invalid(cls, reason: str) -> "SizeResult":
        """Rejected sizing result with zeroed amounts."""
        return cls(valid=False, reason=reason)


class ValidationOutcome(BaseModel):
    """Pre-trade validation decision. Warnings never block execution."""

    model_config = {"frozen": True}

    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class MarketOrderRequest(BaseModel):
    """Market order to open (or, with reduce_only, close) exposure."""

    model_config = {"frozen": True}

    symbol: str
    side: OrderSide
    quantity: float = Field(gt=0)
    reduce_only: bool = False


class ExitOrderRequest(BaseModel):
    """Conditional take-profit / stop-loss order."""

    model_config = {"frozen": True}

    symbol: str
    side: OrderSide
    stop_price: float = Field(gt=0)
    close_entire_position: bool = True


class OrderResult(BaseModel):
    """
    Normalized result of an order submission.

    Failed results carry the error message and its classification so the
    retry logic can tell transient failures from exchange rejections.
    """

    model_config = {"frozen": True}

    success: bool
    order_id: Optional[int] = None
    filled_qty: Optional[float] = None
    avg_price: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def failed(cls, error: str, kind: ErrorKind = ErrorKind.UNKNOWN) -> "OrderResult":
        """Failed order result."""
        return cls(success=False, error=error, error_kind=kind)


class ExecutionOutcome(BaseModel):
    """
    Complete result of one executed signal.

    Exit orders are best-effort: a successful entry may come with failed
    take-profit or stop-loss results.
    """

    model_config = {"frozen": True}

    signal: TradingSignal
    entry_order: OrderResult
    take_profit_order: Optional[OrderResult] = None
    stop_loss_order: Optional[OrderResult] = None
    quantity: float
    entry_price: float
    take_profit_price: float
    stop_loss_price: float
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def is_protected(self) -> bool:
        """True when at least one exit order was accepted."""
        return any(
            order is not None and order.success
            for order in (self.take_profit_order, self.stop_loss_order)
        )


class DailyStats(BaseModel):
    """
    Mutable per-day statistics owned by the risk manager.

    Reset at UTC midnight with the then-current balance as the new baseline.
    """

    start_balance: float = 0.0
    day_start: datetime
    realized_pnl: float = 0.0
    trade_count: int = Field(default=0, ge=0)


class RiskSnapshot(BaseModel):
    """Risk status, recomputed wholesale on every check."""

    model_config = {"frozen": True}

    daily_pnl: float
    daily_loss_remaining: float
    peak_balance: float
    current_balance: float
    current_drawdown: float
    daily_limit_breached: bool
    drawdown_breached: bool
    trading_allowed: bool
    last_check_time: datetime


class RiskBreachEvent(BaseModel):
    """
    A crossed risk limit.

    current_value/threshold are USDT for 'daily_loss' and percent for
    'max_drawdown'.
    """

    model_config = {"frozen": True}

    kind: BreachKind
    current_value: float
    threshold: float
    auto_close_triggered: bool
    timestamp: datetime = Field(default_factory=utc_now)


class TrackedPosition(BaseModel):
    """Open position enriched with mark-price derived fields."""

    model_config = {"frozen": True}

    symbol: str
    side: SignalDirection
    size: float = Field(gt=0)
    entry_price: float
    unrealized_pnl: float
    leverage: int = Field(ge=1)
    mark_price: float
    roe: float
    liquidation_price: float
    margin: float
    last_update: datetime = Field(default_factory=utc_now)


class AccountSummary(BaseModel):
    """Account-level view published by the position tracker."""

    model_config = {"frozen": True}

    total_balance: float
    available_balance: float
    total_unrealized_pnl: float
    total_margin: float
    margin_ratio: float
    last_update: datetime = Field(default_factory=utc_now)
