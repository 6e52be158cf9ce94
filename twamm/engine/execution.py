"""
Virtual Order Execution (VOE)

Lazily folds the long-term order flow of both directions into the pool
reserves.  ``settle(block)`` walks forward from the last virtual order block
(LVOB) in segments whose ends are the boundary blocks where either
direction's sales rate changes.  Each segment is priced with one oracle call,
so the cost of a settlement grows with the number of boundaries crossed, not
with the number of elapsed blocks or live orders.

All work is staged in local variables and committed in one step at the end:
if the oracle rejects any segment nothing changes and LVOB stays put.

Individual orders are brought up to date separately with ``settle_order``,
which reads the reward factor accumulators instead of replaying segments.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..constants import MAX_U112, REWARD_FACTOR_SCALE
from ..exceptions import InvalidAmount, InvariantViolation, OracleError, SettlementFailed
from ..logger import get_logger
from .aggregator import BoundaryCrossing, OrderPoolAggregator, reward_factor_after
from .ledger import Direction, Order
from .oracle import ConstantProductOracle, PricingOracle

logger = get_logger(__name__)


@dataclass
class SettlementResult:
    """What a single ``settle`` call did."""
    from_block: int
    to_block: int
    segments: int = 0
    boundaries_crossed: List[int] = field(default_factory=list)
    sold: Dict[Direction, int] = field(default_factory=lambda: {d: 0 for d in Direction})
    proceeds: Dict[Direction, int] = field(default_factory=lambda: {d: 0 for d in Direction})

    @property
    def advanced(self) -> bool:
        return self.to_block > self.from_block


class VirtualOrderEngine:
    """
    Owns LVOB and the pool reserves and runs settlement.

    ``lock`` is the pool-wide settlement lock.  Every caller that settles and
    then mutates order or aggregate state must hold it across both steps.
    """

    def __init__(
        self,
        aggregator: OrderPoolAggregator,
        oracle: Optional[PricingOracle] = None,
        reserve0: int = 0,
        reserve1: int = 0,
        start_block: int = 0,
    ) -> None:
        self.aggregator = aggregator
        self.oracle: PricingOracle = oracle or ConstantProductOracle()
        self.reserve0 = reserve0
        self.reserve1 = reserve1
        self.last_virtual_order_block = start_block
        self.lock = threading.RLock()

        # Counters
        self.total_settlements = 0
        self.total_segments = 0

    @property
    def reserves(self) -> Tuple[int, int]:
        return self.reserve0, self.reserve1

    # =====================================================================
    #  Pool-level settlement
    # =====================================================================

    def settle(self, current_block: int) -> SettlementResult:
        """
        Execute virtual orders from LVOB up to *current_block*.

        A block at or before LVOB is a no-op.

        Raises:
            SettlementFailed: the oracle rejected a segment (state unchanged)
        """
        with self.lock:
            lvob = self.last_virtual_order_block
            result = SettlementResult(from_block=lvob, to_block=max(lvob, current_block))
            if current_block <= lvob:
                return result

            rates = {d: self.aggregator[d].active_sales_rate for d in Direction}
            reward_factors = {d: self.aggregator[d].reward_factor for d in Direction}
            reserve0, reserve1 = self.reserve0, self.reserve1
            crossings: List[BoundaryCrossing] = []

            segment_start = lvob
            try:
                for boundary in self.aggregator.boundaries_between(lvob, current_block):
                    reserve0, reserve1 = self._execute_segment(
                        segment_start, boundary, rates, reward_factors,
                        reserve0, reserve1, result,
                    )
                    for d in Direction:
                        rates[d] += self.aggregator.rate_delta_at(d, boundary)
                        if rates[d] < 0:
                            raise InvariantViolation(
                                f"Active sales rate {d.label} negative after block {boundary}"
                            )
                    crossings.append(BoundaryCrossing(
                        block=boundary,
                        reward_factors=(
                            reward_factors[Direction.ZERO_TO_ONE],
                            reward_factors[Direction.ONE_TO_ZERO],
                        ),
                    ))
                    result.boundaries_crossed.append(boundary)
                    segment_start = boundary

                if segment_start < current_block:
                    reserve0, reserve1 = self._execute_segment(
                        segment_start, current_block, rates, reward_factors,
                        reserve0, reserve1, result,
                    )

                self.aggregator.apply_settlement(
                    rates, reward_factors, crossings, result.proceeds, result.sold
                )
            except (OracleError, InvalidAmount) as e:
                logger.warning(
                    "Settlement block %d -> block %d failed: %s",
                    lvob, current_block, e,
                )
                raise SettlementFailed(
                    f"Settlement from block {lvob} to {current_block} failed: {e}"
                ) from e

            self.reserve0, self.reserve1 = reserve0, reserve1
            self.last_virtual_order_block = current_block
            self.total_settlements += 1
            self.total_segments += result.segments
            return result

    def _execute_segment(
        self,
        seg_start: int,
        seg_end: int,
        rates: Dict[Direction, int],
        reward_factors: Dict[Direction, int],
        reserve0: int,
        reserve1: int,
        result: SettlementResult,
    ) -> Tuple[int, int]:
        """Price one constant-rate segment ``[seg_start, seg_end)``."""
        length = seg_end - seg_start
        amount_in = {d: rates[d] * length for d in Direction}
        if not any(amount_in.values()):
            return reserve0, reserve1

        trade = self.oracle.trade(
            amount_in[Direction.ZERO_TO_ONE],
            amount_in[Direction.ONE_TO_ZERO],
            reserve0,
            reserve1,
        )
        if trade.reserve0 < 0 or trade.reserve1 < 0:
            raise OracleError(f"Oracle returned negative reserves: {trade}")
        if trade.reserve0 > MAX_U112 or trade.reserve1 > MAX_U112:
            raise OracleError(f"Oracle returned reserves above the balance limit: {trade}")

        amount_out = {
            Direction.ZERO_TO_ONE: trade.amount_out1,
            Direction.ONE_TO_ZERO: trade.amount_out0,
        }
        for d in Direction:
            if rates[d] == 0:
                continue
            reward_factors[d] = reward_factor_after(reward_factors[d], amount_out[d], rates[d])
            result.sold[d] += amount_in[d]
            result.proceeds[d] += amount_out[d]

        result.segments += 1
        logger.debug(
            "Segment block %d -> block %d: in=(%d, %d) out=(%d, %d)",
            seg_start, seg_end,
            amount_in[Direction.ZERO_TO_ONE], amount_in[Direction.ONE_TO_ZERO],
            trade.amount_out0, trade.amount_out1,
        )
        return trade.reserve0, trade.reserve1

    # =====================================================================
    #  Per-order settlement
    # =====================================================================

    def settle_order(self, order: Order) -> Tuple[int, int]:
        """
        Bring *order* up to LVOB: deduct what it sold and credit what it earned.

        Only the order record changes; the aggregate already accounted for the
        flow during ``settle``.  A paused order sold nothing since its last
        settlement, so it is only re-baselined.

        Returns:
            (sold, earned) since the order's previous settlement
        """
        lvob = self.last_virtual_order_block
        pool = self.aggregator[order.direction]
        sold = earned = 0

        if not order.paused:
            seg_start = max(order.last_settled_block, order.order_start)
            seg_end = min(lvob, order.order_expiry)
            if seg_end > seg_start:
                if seg_start == order.last_settled_block:
                    rf_start = order.reward_factor_baseline
                else:
                    rf_start = self.aggregator.reward_factor_at(order.direction, order.order_start)
                if seg_end == lvob:
                    rf_end = pool.reward_factor
                else:
                    rf_end = self.aggregator.reward_factor_at(order.direction, order.order_expiry)

                sold = order.sales_rate * (seg_end - seg_start)
                earned = order.sales_rate * (rf_end - rf_start) // REWARD_FACTOR_SCALE
                if sold > order.deposit:
                    raise InvariantViolation(
                        f"Order {order.id} sold {sold} with only {order.deposit} deposited"
                    )
                order.deposit -= sold
                order.proceeds += earned

        order.last_settled_block = lvob
        order.reward_factor_baseline = pool.reward_factor
        return sold, earned

    # =====================================================================
    #  Reserves
    # =====================================================================

    def add_reserves(self, amount0: int, amount1: int) -> None:
        if amount0 < 0 or amount1 < 0:
            raise InvalidAmount("Liquidity amounts must not be negative")
        if self.reserve0 + amount0 > MAX_U112 or self.reserve1 + amount1 > MAX_U112:
            raise InvalidAmount("Reserves would exceed the balance limit")
        self.reserve0 += amount0
        self.reserve1 += amount1

    def take_snapshot(self) -> Dict[str, int]:
        return {
            "reserve0": self.reserve0,
            "reserve1": self.reserve1,
            "last_virtual_order_block": self.last_virtual_order_block,
            "total_settlements": self.total_settlements,
            "total_segments": self.total_segments,
        }

    def restore_snapshot(self, snapshot: Dict[str, int]) -> None:
        self.reserve0 = snapshot["reserve0"]
        self.reserve1 = snapshot["reserve1"]
        self.last_virtual_order_block = snapshot["last_virtual_order_block"]
        self.total_settlements = snapshot["total_settlements"]
        self.total_segments = snapshot["total_segments"]
