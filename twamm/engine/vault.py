"""
TWAMM Vault Interface

Entry point for the custody layer.  The vault holds token balances and calls
into the engine whenever a user deposits, pauses, resumes, extends, cancels
or withdraws; the amounts returned are what it must transfer out.

Responsibilities:
  - Owns the clock, ledger, aggregator, execution engine and controller
  - Settles virtual orders as the chain advances (begin_block)
  - Exports the persisted engine state
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..config import EngineConfig, load_config
from ..logger import configure_logging, get_logger
from .aggregator import OrderPoolAggregator
from .clock import BlockIntervalClock
from .execution import SettlementResult, VirtualOrderEngine
from .ledger import Direction, Order, OrderLedger
from .lifecycle import OrderLifecycleController
from .oracle import PricingOracle

logger = get_logger(__name__)


class TwammVault:
    """
    Custody-facing facade over one pool's long-term order engine.

    Usage:

        vault = TwammVault.get_instance()
        vault.begin_block(block_height)
        order_id = vault.on_deposit(Direction.ZERO_TO_ONE, amount, intervals, owner)
        refund, proceeds = vault.on_cancel(order_id, owner)
    """

    instance: Optional[TwammVault] = None

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        oracle: Optional[PricingOracle] = None,
        reserve0: int = 0,
        reserve1: int = 0,
        start_block: int = 0,
    ) -> None:
        self.config = config or EngineConfig()
        self.config.validate()

        # --- Engine components ---
        self.clock = BlockIntervalClock(self.config.pool.resolved_block_interval)
        self.ledger = OrderLedger()
        self.aggregator = OrderPoolAggregator()
        self.engine = VirtualOrderEngine(
            self.aggregator,
            oracle=oracle,
            reserve0=reserve0,
            reserve1=reserve1,
            start_block=start_block,
        )
        self.controller = OrderLifecycleController(
            self.ledger,
            self.aggregator,
            self.engine,
            self.clock,
            max_order_intervals=self.config.pool.resolved_max_order_intervals,
        )

        # Block the custody hooks run at when none is given
        self._current_block: int = start_block

    @classmethod
    def get_instance(cls, config: Optional[EngineConfig] = None) -> TwammVault:
        """Get or create the singleton instance, applying its logging settings."""
        if cls.instance is None:
            config = config or load_config()
            configure_logging(
                log_level=config.logging.level,
                log_file=Path(config.logging.log_file) if config.logging.log_file else None,
                file_output=config.logging.file_output,
            )
            cls.instance = cls(config)
            logger.info(
                "TWAMM vault initialized (block interval %d)",
                cls.instance.clock.block_interval,
            )
        return cls.instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton (for testing)."""
        cls.instance = None

    def _block(self, block: Optional[int]) -> int:
        return self._current_block if block is None else block

    # =====================================================================
    #  Custody hooks
    # =====================================================================

    def on_deposit(
        self,
        direction: Direction,
        total_amount: int,
        intervals: int,
        owner: str,
        delegate: str = "",
        block: Optional[int] = None,
    ) -> int:
        return self.controller.place(
            direction, total_amount, intervals, owner, delegate, self._block(block)
        )

    def on_pause(self, order_id: int, caller: str, block: Optional[int] = None) -> None:
        self.controller.pause(order_id, caller, self._block(block))

    def on_resume(self, order_id: int, caller: str, block: Optional[int] = None) -> None:
        self.controller.resume(order_id, caller, self._block(block))

    def on_extend(
        self, order_id: int, caller: str, extra_amount: int, block: Optional[int] = None
    ) -> int:
        return self.controller.extend(order_id, caller, extra_amount, self._block(block))

    def on_cancel(
        self,
        order_id: int,
        caller: str,
        dest: Optional[str] = None,
        block: Optional[int] = None,
    ) -> Tuple[int, int]:
        return self.controller.cancel(order_id, caller, dest, self._block(block))

    def on_withdraw(
        self,
        order_id: int,
        caller: str,
        dest: Optional[str] = None,
        block: Optional[int] = None,
    ) -> int:
        return self.controller.withdraw(order_id, caller, dest, self._block(block))

    def on_provide_liquidity(
        self, amount0: int, amount1: int, block: Optional[int] = None
    ) -> Tuple[int, int]:
        return self.controller.provide_liquidity(amount0, amount1, self._block(block))

    def set_pool_paused(self, paused: bool, block: Optional[int] = None) -> None:
        self.controller.set_pool_paused(paused, self._block(block))

    # =====================================================================
    #  Queries
    # =====================================================================

    def get_order(self, order_id: int) -> Order:
        return self.controller.get_order(order_id)

    def get_order_amounts(self, direction: Direction) -> int:
        return self.controller.get_order_amounts(direction)

    def get_proceed_amounts(self, direction: Direction) -> int:
        return self.controller.get_proceed_amounts(direction)

    def get_reserves(self) -> Tuple[int, int]:
        return self.controller.get_reserves()

    def get_last_virtual_order_block(self) -> int:
        return self.controller.get_last_virtual_order_block()

    @property
    def pool_paused(self) -> bool:
        return self.controller.pool_paused

    def check_invariants(self) -> Dict[str, Any]:
        return self.controller.check_invariants()

    # =====================================================================
    #  Block lifecycle
    # =====================================================================

    def begin_block(self, block_height: int) -> SettlementResult:
        """
        Advance to *block_height*: settle virtual orders up to it.

        Settlement is skipped while the pool is paused.  Custody hooks called
        without an explicit block run at this height afterwards.
        """
        with self.engine.lock:
            self.controller.check_block(block_height)
            self._current_block = block_height
            if self.controller.pool_paused:
                lvob = self.engine.last_virtual_order_block
                return SettlementResult(from_block=lvob, to_block=lvob)
            return self.engine.settle(block_height)

    # =====================================================================
    #  Persisted state
    # =====================================================================

    def export_state(self) -> Dict[str, Any]:
        """
        Plain-data view of everything the engine persists.

        Per-order settlement baselines are included so two engines that
        export equal state settle identically from here on.
        """
        with self.engine.lock:
            reserve0, reserve1 = self.engine.reserves
            orders = []
            for order in self.ledger:
                record = order.to_dict()
                record["last_settled_block"] = order.last_settled_block
                record["reward_factor_baseline"] = order.reward_factor_baseline
                orders.append(record)
            return {
                "last_virtual_order_block": self.engine.last_virtual_order_block,
                "reserves": [reserve0, reserve1],
                "pool_paused": self.controller.pool_paused,
                "next_order_id": self.ledger.next_order_id,
                "pools": {d.label: self.aggregator[d].to_dict() for d in Direction},
                "boundaries": self.aggregator.boundaries,
                "orders": orders,
            }

    # =====================================================================
    #  Stats
    # =====================================================================

    def get_stats(self) -> Dict[str, Any]:
        reserve0, reserve1 = self.engine.reserves
        return {
            "block": self._current_block,
            "last_virtual_order_block": self.engine.last_virtual_order_block,
            "pool_paused": self.controller.pool_paused,
            "orders": len(self.ledger),
            "next_order_id": self.ledger.next_order_id,
            "reserve0": reserve0,
            "reserve1": reserve1,
            "total_settlements": self.engine.total_settlements,
            "total_segments": self.engine.total_segments,
            "pools": {d.label: self.aggregator[d].to_dict() for d in Direction},
            "boundaries": len(self.aggregator.boundaries),
            "reward_factor_snapshots": sum(
                len(self.aggregator[d].reward_factor_snapshots) for d in Direction
            ),
        }
