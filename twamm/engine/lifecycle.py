"""
Order Lifecycle Controller

Every state-changing operation follows the same shape:

    1. reject stale blocks, look the order up, resolve the caller's role
    2. apply pool-pause gating and the order-state checks
    3. settle the pool to ``now`` and bring the order up to date
    4. mutate the ledger and the aggregate

Steps 3 and 4 run under the pool-wide settlement lock.  A snapshot taken on
entry is restored if anything raises, so a failed operation never leaves a
partial update behind.

Order states:

    PENDING  --(start boundary)-->  ACTIVE  --pause-->  PAUSED
       |                              |  <--resume--      |
       |                              v                   v
       +--------cancel-------->  DESTROYED  <--cancel/withdraw-- EXPIRED
"""

from __future__ import annotations

import contextlib
from collections import Counter
from enum import IntEnum
from typing import Any, Dict, Iterator, Optional, Tuple

from ..exceptions import (
    AlreadyPaused,
    InvalidAmount,
    InvariantViolation,
    NotPaused,
    OrderExpired,
    OrderNotStarted,
    PoolPaused,
    StaleBlock,
    Unauthorized,
)
from ..logger import get_logger
from .aggregator import OrderPoolAggregator
from .clock import BlockIntervalClock
from .execution import VirtualOrderEngine
from .ledger import Direction, Order, OrderLedger

logger = get_logger(__name__)


class Role(IntEnum):
    OWNER = 0
    DELEGATE = 1


def resolve_role(order: Order, caller: str) -> Role:
    """
    Resolve *caller*'s authority over *order*.

    Raises:
        Unauthorized: caller is neither the owner nor the order's delegate
    """
    if caller and caller == order.owner:
        return Role.OWNER
    if caller and order.delegate and caller == order.delegate:
        return Role.DELEGATE
    raise Unauthorized(f"{caller!r} may not operate on order {order.id}")


def resolve_payout(order: Order, role: Role, dest: Optional[str]) -> str:
    """Destination for refunds and proceeds; a delegate may only pay the owner."""
    dest = dest or order.owner
    if role is Role.DELEGATE and dest != order.owner:
        raise Unauthorized(
            f"Delegate of order {order.id} may only pay out to the owner"
        )
    return dest


class OrderLifecycleController:
    """Place, pause, resume, extend, cancel and withdraw long-term orders."""

    def __init__(
        self,
        ledger: OrderLedger,
        aggregator: OrderPoolAggregator,
        engine: VirtualOrderEngine,
        clock: BlockIntervalClock,
        max_order_intervals: int,
    ) -> None:
        self.ledger = ledger
        self.aggregator = aggregator
        self.engine = engine
        self.clock = clock
        self.max_order_intervals = max_order_intervals
        self._pool_paused = False

    @property
    def pool_paused(self) -> bool:
        return self._pool_paused

    # =====================================================================
    #  Internal helpers
    # =====================================================================

    @contextlib.contextmanager
    def _atomic(self, order_id: Optional[int] = None) -> Iterator[None]:
        """Hold the settlement lock and roll back everything on failure."""
        with self.engine.lock:
            if order_id is None:
                order_id = self.ledger.next_order_id
            snapshot = {
                "ledger": self.ledger.take_snapshot(order_id),
                "aggregator": self.aggregator.take_snapshot(),
                "engine": self.engine.take_snapshot(),
                "pool_paused": self._pool_paused,
            }
            try:
                yield
            except Exception:
                self.ledger.restore_snapshot(snapshot["ledger"])
                self.aggregator.restore_snapshot(snapshot["aggregator"])
                self.engine.restore_snapshot(snapshot["engine"])
                self._pool_paused = snapshot["pool_paused"]
                raise
            else:
                self.aggregator.release_snapshot(snapshot["aggregator"])

    def check_block(self, now: int) -> None:
        lvob = self.engine.last_virtual_order_block
        if now < lvob:
            raise StaleBlock(f"Block {now} is before the last settled block {lvob}")

    def _check_pool_active(self) -> None:
        if self._pool_paused:
            raise PoolPaused("Pool is paused")

    def _sync(self, order_id: int) -> Order:
        return self.ledger.mutate(order_id, self.engine.settle_order)

    def _check_length(self, order_start: int, order_expiry: int) -> None:
        intervals = self.clock.intervals_between(order_start, order_expiry)
        if intervals > self.max_order_intervals:
            raise InvalidAmount(
                f"Order length {intervals} exceeds the maximum of "
                f"{self.max_order_intervals} intervals"
            )

    # =====================================================================
    #  Operations
    # =====================================================================

    def place(
        self,
        direction: Direction,
        total_amount: int,
        num_intervals: int,
        owner: str,
        delegate: str = "",
        now: int = 0,
    ) -> int:
        """
        Open a long-term order selling *total_amount* over *num_intervals*.

        The order starts selling at the next interval boundary after *now*.

        Returns:
            The new order id
        """
        with self._atomic():
            self.check_block(now)
            if not owner:
                raise Unauthorized("Order must have an owner address")
            self._check_pool_active()
            if num_intervals > self.max_order_intervals:
                raise InvalidAmount(
                    f"Order length {num_intervals} exceeds the maximum of "
                    f"{self.max_order_intervals} intervals"
                )

            self.engine.settle(now)
            order_start = self.clock.next_boundary(now)
            order_id = self.ledger.create(
                owner=owner,
                delegate=delegate,
                direction=direction,
                total_amount=total_amount,
                num_intervals=num_intervals,
                order_start=order_start,
                block_interval=self.clock.block_interval,
                placed_block=self.engine.last_virtual_order_block,
            )
            order = self._sync(order_id)
            self.aggregator.add_deposit(order.direction, order.deposit)
            self.aggregator.schedule_start(
                order.direction, order.sales_rate, order.order_start, order.order_expiry
            )
            self.aggregator.retain_boundaries(
                order.direction, order.order_start, order.order_expiry
            )

        logger.info(
            "Placed order #%d %s: %d over block %d -> block %d (rate %d)",
            order_id, order.direction.label, total_amount,
            order.order_start, order.order_expiry, order.sales_rate,
        )
        return order_id

    def pause(self, order_id: int, caller: str, now: int) -> None:
        with self._atomic(order_id):
            self.check_block(now)
            order = self.ledger.get(order_id)
            resolve_role(order, caller)
            self._check_pool_active()
            if order.paused:
                raise AlreadyPaused(f"Order {order_id} is already paused")
            if now < order.order_start:
                raise OrderNotStarted(
                    f"Order {order_id} starts at block {order.order_start}"
                )
            if now >= order.order_expiry:
                raise OrderExpired(f"Order {order_id} expired at block {order.order_expiry}")

            self.engine.settle(now)
            order = self._sync(order_id)
            self.aggregator.remove_active(order.direction, order.sales_rate, order.order_expiry)
            order.paused = True

        logger.debug("Order #%d PAUSED at block %d", order_id, now)

    def resume(self, order_id: int, caller: str, now: int) -> None:
        with self._atomic(order_id):
            self.check_block(now)
            order = self.ledger.get(order_id)
            resolve_role(order, caller)
            self._check_pool_active()
            if not order.paused:
                raise NotPaused(f"Order {order_id} is not paused")
            if now >= order.order_expiry:
                raise OrderExpired(
                    f"Order {order_id} expired at block {order.order_expiry} while paused"
                )

            self.engine.settle(now)
            order = self._sync(order_id)
            self.aggregator.add_active(order.direction, order.sales_rate, order.order_expiry)
            order.paused = False

        logger.debug("Order #%d resumed at block %d", order_id, now)

    def extend(self, order_id: int, caller: str, extra_amount: int, now: int) -> int:
        """
        Lengthen an order by as many whole intervals as the funds allow.

        Funds are *extra_amount* plus any deposit the order does not need to
        reach its current expiry (left behind by a pause).  A remainder that
        does not fill an interval stays in the deposit.

        Returns:
            The new expiry block
        """
        with self._atomic(order_id):
            self.check_block(now)
            order = self.ledger.get(order_id)
            resolve_role(order, caller)
            self._check_pool_active()
            if extra_amount < 0:
                raise InvalidAmount("Extension amount must not be negative")
            if now >= order.order_expiry:
                raise OrderExpired(f"Order {order_id} expired at block {order.order_expiry}")

            self.engine.settle(now)
            order = self._sync(order_id)

            selling_from = max(self.engine.last_virtual_order_block, order.order_start)
            committed = order.sales_rate * (order.order_expiry - selling_from)
            undeployed = order.deposit - committed
            if undeployed < 0:
                raise InvariantViolation(
                    f"Order {order_id} deposit {order.deposit} is short of its "
                    f"committed {committed}"
                )

            interval_cost = order.sales_rate * self.clock.block_interval
            intervals = (extra_amount + undeployed) // interval_cost
            if intervals == 0:
                raise InvalidAmount(
                    f"Insufficient funds to extend order {order_id}: "
                    f"{extra_amount + undeployed} available, {interval_cost} per interval"
                )

            new_expiry = order.order_expiry + self.clock.blocks_for(intervals)
            self._check_length(order.order_start, new_expiry)

            if extra_amount:
                self.aggregator.add_deposit(order.direction, extra_amount)
                order.deposit += extra_amount
            if not order.paused:
                self.aggregator.move_expiry(
                    order.direction, order.sales_rate, order.order_expiry, new_expiry
                )
            self.aggregator.retain_boundaries(order.direction, new_expiry)
            self.aggregator.release_boundaries(order.direction, order.order_expiry)
            order.order_expiry = new_expiry

        logger.debug(
            "Order #%d extended by %d intervals to block %d", order_id, intervals, new_expiry
        )
        return new_expiry

    def cancel(
        self, order_id: int, caller: str, dest: Optional[str] = None, now: int = 0
    ) -> Tuple[int, int]:
        """
        Close an order: refund the unsold deposit and pay out all proceeds.

        While the pool is paused no settlement happens and the order is
        closed as of the block the pool was paused.

        Returns:
            (refund, proceeds), both payable to the resolved destination
        """
        with self._atomic(order_id):
            self.check_block(now)
            order = self.ledger.get(order_id)
            role = resolve_role(order, caller)
            dest = resolve_payout(order, role, dest)

            if not self._pool_paused:
                self.engine.settle(now)
            order = self._sync(order_id)
            lvob = self.engine.last_virtual_order_block

            expired = order.is_expired(lvob)
            if expired and order.deposit == 0:
                raise OrderExpired(
                    f"Order {order_id} has expired with nothing to refund; withdraw instead"
                )

            if not order.paused and not expired:
                if order.has_started(lvob):
                    self.aggregator.remove_active(
                        order.direction, order.sales_rate, order.order_expiry
                    )
                else:
                    self.aggregator.unschedule_start(
                        order.direction, order.sales_rate, order.order_start, order.order_expiry
                    )

            refund, proceeds = order.deposit, order.proceeds
            self.aggregator.remove_deposit(order.direction, refund)
            self.aggregator.debit_proceeds(order.direction, proceeds)
            self.aggregator.release_boundaries(
                order.direction, order.order_start, order.order_expiry
            )
            self.ledger.destroy(order_id)

        logger.info(
            "Cancelled order #%d at block %d: refund=%d proceeds=%d to %s",
            order_id, lvob, refund, proceeds, dest,
        )
        return refund, proceeds

    def withdraw(
        self, order_id: int, caller: str, dest: Optional[str] = None, now: int = 0
    ) -> int:
        """
        Pay out accumulated proceeds.

        An expired order whose deposit is fully sold is destroyed afterwards.
        """
        with self._atomic(order_id):
            self.check_block(now)
            order = self.ledger.get(order_id)
            role = resolve_role(order, caller)
            dest = resolve_payout(order, role, dest)

            if not self._pool_paused:
                self.engine.settle(now)
            order = self._sync(order_id)

            proceeds = order.proceeds
            self.aggregator.debit_proceeds(order.direction, proceeds)
            order.proceeds = 0

            finished = order.is_expired(self.engine.last_virtual_order_block) and order.deposit == 0
            if finished:
                self.aggregator.release_boundaries(
                    order.direction, order.order_start, order.order_expiry
                )
                self.ledger.destroy(order_id)

        logger.debug(
            "Withdrew %d from order #%d to %s%s",
            proceeds, order_id, dest, " (order closed)" if finished else "",
        )
        return proceeds

    # =====================================================================
    #  Pool-level operations
    # =====================================================================

    def set_pool_paused(self, paused: bool, now: int) -> None:
        """
        Freeze or unfreeze virtual order execution.

        Pausing settles up to *now* first; while paused LVOB does not move.
        Unpausing only lifts the gate, the next settlement catches up from LVOB.
        """
        with self._atomic():
            self.check_block(now)
            if paused == self._pool_paused:
                return
            if paused:
                self.engine.settle(now)
            self._pool_paused = paused

        if paused:
            logger.warning("Pool PAUSED at block %d", self.engine.last_virtual_order_block)
        else:
            logger.info(
                "Pool unpaused at block %d, settlement resumes from block %d",
                now, self.engine.last_virtual_order_block,
            )

    def provide_liquidity(self, amount0: int, amount1: int, now: int) -> Tuple[int, int]:
        """Add to the pool reserves after settling to *now*.  Returns the new reserves."""
        with self._atomic():
            self.check_block(now)
            self._check_pool_active()
            self.engine.settle(now)
            self.engine.add_reserves(amount0, amount1)
        return self.engine.reserves

    # =====================================================================
    #  Queries
    # =====================================================================

    def get_order(self, order_id: int) -> Order:
        """Copy of the order brought up to LVOB; the stored record is untouched."""
        with self.engine.lock:
            order = self.ledger.get(order_id).copy()
            self.engine.settle_order(order)
            return order

    def get_order_amounts(self, direction: Direction) -> int:
        return self.aggregator[direction].active_sales_rate

    def get_proceed_amounts(self, direction: Direction) -> int:
        return self.aggregator[direction].unclaimed_proceeds

    def get_reserves(self) -> Tuple[int, int]:
        return self.engine.reserves

    def get_last_virtual_order_block(self) -> int:
        return self.engine.last_virtual_order_block

    # =====================================================================
    #  Audit
    # =====================================================================

    def check_invariants(self) -> Dict[str, Any]:
        """
        Recompute the aggregates from the ledger and compare.

        Raises:
            InvariantViolation: on the first mismatch
        """
        with self.engine.lock:
            lvob = self.engine.last_virtual_order_block
            report: Dict[str, Any] = {"block": lvob, "orders": len(self.ledger)}

            for d in Direction:
                pool = self.aggregator[d]
                orders = [self.get_order(o.id) for o in self.ledger.orders_for(d)]

                active = sum(o.sales_rate for o in orders if o.is_selling(lvob))
                if active != pool.active_sales_rate:
                    raise InvariantViolation(
                        f"Active sales rate {d.label} is {pool.active_sales_rate}, "
                        f"orders sum to {active}"
                    )

                deposits = sum(o.deposit for o in orders)
                if deposits != pool.order_deposits:
                    raise InvariantViolation(
                        f"Order deposits {d.label} are {pool.order_deposits}, "
                        f"orders hold {deposits}"
                    )

                proceeds = sum(o.proceeds for o in orders)
                outstanding = pool.total_proceeds_generated - pool.total_proceeds_withdrawn
                if outstanding != pool.unclaimed_proceeds or proceeds > outstanding:
                    raise InvariantViolation(
                        f"Proceeds {d.label}: orders hold {proceeds}, unclaimed "
                        f"{pool.unclaimed_proceeds}, outstanding {outstanding}"
                    )

                for o in orders:
                    if o.sales_rate == 0 and not o.paused and not o.is_expired(lvob):
                        raise InvariantViolation(f"Order {o.id} is live with a zero sales rate")
                    if not (self.clock.is_aligned(o.order_start)
                            and self.clock.is_aligned(o.order_expiry)):
                        raise InvariantViolation(
                            f"Order {o.id} runs {o.order_start} -> {o.order_expiry}, "
                            f"off the {self.clock.block_interval}-block grid"
                        )

                refs = Counter()
                for o in orders:
                    refs[o.order_start] += 1
                    refs[o.order_expiry] += 1
                if dict(refs) != pool.boundary_refs:
                    raise InvariantViolation(
                        f"Boundary references {d.label} are {pool.boundary_refs}, "
                        f"orders reference {dict(refs)}"
                    )
                stale = set(pool.reward_factor_snapshots) - set(refs)
                if stale:
                    raise InvariantViolation(
                        f"Reward factors {d.label} kept for unreferenced blocks {sorted(stale)}"
                    )

                report[d.label] = {
                    "active_sales_rate": active,
                    "order_deposits": deposits,
                    "order_proceeds": proceeds,
                    "dust": pool.unclaimed_proceeds - proceeds,
                }
            return report
