"""
TWAMM Exceptions

Error taxonomy for the long-term order engine.

Every ``OrderError`` is recoverable at the call boundary: the failing operation
leaves pool and order state exactly as it found them.  ``InvariantViolation`` is
different, it means the accounting itself is broken and must never be handled.
"""


class TwammException(Exception):
    """Base exception for the engine."""
    pass


class OrderError(TwammException):
    """A lifecycle operation was rejected; state is unchanged."""
    pass


# -- Authorization ----------------------------------------------------------

class Unauthorized(OrderError):
    """Caller is neither owner nor delegate, or a delegate tried to redirect funds."""
    pass


# -- Order state ------------------------------------------------------------

class OrderStateError(OrderError):
    """Operation is invalid for the order's current lifecycle state."""
    pass


class NotFound(OrderStateError):
    """Order was never created or has been destroyed."""
    pass


class OrderExpired(OrderStateError):
    pass


class OrderNotStarted(OrderStateError):
    pass


class AlreadyPaused(OrderStateError):
    pass


class NotPaused(OrderStateError):
    pass


class StaleBlock(OrderStateError):
    """Operation issued for a block older than the last settled block."""
    pass


# -- Pool gating ------------------------------------------------------------

class PoolPaused(OrderError):
    """Order mutation attempted while the pool is globally paused."""
    pass


# -- Arithmetic -------------------------------------------------------------

class InvalidAmount(OrderError):
    """Non-divisible deposit, zero amount, insufficient funds or overflow."""
    pass


# -- Settlement -------------------------------------------------------------

class OracleError(TwammException):
    """Raised by a pricing oracle for an invalid reserve state."""
    pass


class SettlementFailed(OrderError):
    """The pricing oracle rejected a segment; nothing was settled."""
    pass


# -- Fatal ------------------------------------------------------------------

class InvariantViolation(TwammException):
    """Aggregate accounting would become inconsistent. Indicates a bug."""
    pass


class ConfigurationError(TwammException):
    """Configuration error."""
    pass
