"""
Exchange error taxonomy.

Every failure coming out of the exchange boundary is normalized into a
single ExchangeError tagged with an ErrorKind before it reaches the
execution engine, so retry decisions never depend on transport-specific
exception shapes.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """
    Classification of an exchange failure.

    RETRYABLE: transient (disconnect, rate limit, timeout)
    NON_RETRYABLE: the exchange rejected the request (insufficient
        margin, invalid symbol, bad precision)
    UNKNOWN: anything that could not be classified
    """

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    UNKNOWN = "unknown"


class ExchangeError(Exception):
    """
    Raised by exchange query operations after error normalization.

    Attributes:
        kind (ErrorKind): Retry classification
        code (int, optional): Exchange error code when one was returned
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        code: Optional[int] = None
    ):
        super().__init__(message)
        self.kind = kind
        self.code = code

    @property
    def is_retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE

    def __repr__(self) -> str:
        return f"ExchangeError({str(self)!r}, kind={self.kind.value}, code={self.code})"
