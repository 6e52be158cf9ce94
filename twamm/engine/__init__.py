"""
TWAMM Long-Term Order Engine

Executes long-term orders for a two-asset pool by selling each order's
deposit at a constant per-block rate.

Components:
  - Block Interval Clock (order boundaries snapped to fixed intervals)
  - Order Ledger (per-order records)
  - Order Pool Aggregator (per-direction rates, proceeds, reward factors)
  - Virtual Order Execution (lazy, segmented settlement)
  - Order Lifecycle Controller (place, pause, resume, extend, cancel, withdraw)
  - Pricing Oracle (constant-product reference implementation)
  - Vault interface
"""

from .clock import (
    BlockIntervalClock,
    floor_to_interval,
    next_boundary,
)
from .ledger import (
    Direction,
    Order,
    OrderLedger,
)
from .aggregator import (
    BoundaryCrossing,
    OrderPoolAggregate,
    OrderPoolAggregator,
)
from .oracle import (
    ConstantProductOracle,
    PricingOracle,
    TradeResult,
)
from .execution import (
    SettlementResult,
    VirtualOrderEngine,
)
from .lifecycle import (
    OrderLifecycleController,
    Role,
    resolve_payout,
    resolve_role,
)
from .vault import (
    TwammVault,
)

__all__ = [
    # Clock
    "BlockIntervalClock", "floor_to_interval", "next_boundary",
    # Ledger
    "Direction", "Order", "OrderLedger",
    # Aggregator
    "BoundaryCrossing", "OrderPoolAggregate", "OrderPoolAggregator",
    # Oracle
    "ConstantProductOracle", "PricingOracle", "TradeResult",
    # Execution
    "SettlementResult", "VirtualOrderEngine",
    # Lifecycle
    "OrderLifecycleController", "Role", "resolve_payout", "resolve_role",
    # Vault
    "TwammVault",
]
