"""
Order Ledger

Per-order records for long-term orders, keyed by a monotonically assigned id.

An order sells ``sales_rate`` units of its sell token every block between
``order_start`` and ``order_expiry`` (both interval boundaries) while it is
not paused.  ``deposit`` is the unsold remainder still held in escrow and
``proceeds`` the bought amount not yet withdrawn.  Both are brought up to
date lazily by the execution engine (see ``VirtualOrderEngine.settle_order``)
using the per-order baseline stored in ``last_settled_block`` and
``reward_factor_baseline``.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Dict, Iterator, List

from ..exceptions import InvalidAmount, NotFound, Unauthorized


class Direction(IntEnum):
    """Which token an order sells.  Values are persisted."""
    ZERO_TO_ONE = 0   # sell token0, buy token1
    ONE_TO_ZERO = 1   # sell token1, buy token0

    @property
    def opposite(self) -> Direction:
        return Direction(1 - int(self))

    @property
    def label(self) -> str:
        return "0->1" if self is Direction.ZERO_TO_ONE else "1->0"


@dataclass
class Order:
    """A single long-term order."""
    id: int
    owner: str
    delegate: str
    direction: Direction
    sales_rate: int             # sell-token units per block
    deposit: int                # unsold sell-token in escrow
    order_start: int            # first selling block (interval boundary)
    order_expiry: int           # first block no longer selling (interval boundary)
    proceeds: int = 0           # buy-token owed, not yet withdrawn
    paused: bool = False
    last_settled_block: int = 0
    reward_factor_baseline: int = 0

    def has_started(self, block: int) -> bool:
        return block >= self.order_start

    def is_expired(self, block: int) -> bool:
        return block >= self.order_expiry

    def is_selling(self, block: int) -> bool:
        """True when the order contributes to the active sales rate at *block*."""
        return not self.paused and self.order_start <= block < self.order_expiry

    def copy(self) -> Order:
        return dataclasses.replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "delegate": self.delegate,
            "direction": int(self.direction),
            "sales_rate": self.sales_rate,
            "deposit": self.deposit,
            "proceeds": self.proceeds,
            "order_start": self.order_start,
            "order_expiry": self.order_expiry,
            "paused": self.paused,
        }


class OrderLedger:
    """
    Storage for live orders.

    Destroyed ids are never reused; looking one up raises ``NotFound``.
    """

    def __init__(self) -> None:
        self._orders: Dict[int, Order] = {}
        self._next_id: int = 0

    # -- Properties ---------------------------------------------------------

    @property
    def next_order_id(self) -> int:
        return self._next_id

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: int) -> bool:
        return order_id in self._orders

    def __iter__(self) -> Iterator[Order]:
        for order_id in sorted(self._orders):
            yield self._orders[order_id]

    # -- CRUD ---------------------------------------------------------------

    def create(
        self,
        owner: str,
        delegate: str,
        direction: Direction,
        total_amount: int,
        num_intervals: int,
        order_start: int,
        block_interval: int,
        placed_block: int = 0,
    ) -> int:
        """
        Record a new order selling *total_amount* over *num_intervals* intervals.

        Returns:
            The new order id

        Raises:
            Unauthorized: on an empty owner
            InvalidAmount: on a zero amount, zero intervals, an unknown direction, or an
                amount that does not divide evenly into the order's block count
        """
        if not owner:
            raise Unauthorized("Order must have an owner address")
        try:
            direction = Direction(direction)
        except ValueError:
            raise InvalidAmount(f"Unknown order direction: {direction}") from None
        if total_amount <= 0:
            raise InvalidAmount("Order amount must be positive")
        if num_intervals <= 0:
            raise InvalidAmount("Order must run for at least one interval")

        num_blocks = num_intervals * block_interval
        if total_amount % num_blocks != 0:
            raise InvalidAmount(
                f"Order amount {total_amount} is not divisible by its {num_blocks} blocks"
            )

        order_id = self._next_id
        self._next_id += 1
        self._orders[order_id] = Order(
            id=order_id,
            owner=owner,
            delegate=delegate or "",
            direction=direction,
            sales_rate=total_amount // num_blocks,
            deposit=total_amount,
            order_start=order_start,
            order_expiry=order_start + num_blocks,
            last_settled_block=placed_block,
        )
        return order_id

    def get(self, order_id: int) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def mutate(self, order_id: int, fn: Callable[[Order], Any]) -> Order:
        """Apply a state transition *fn* to the stored order and return it."""
        order = self.get(order_id)
        fn(order)
        return order

    def destroy(self, order_id: int) -> Order:
        order = self.get(order_id)
        del self._orders[order_id]
        return order

    def orders_for(self, direction: Direction) -> List[Order]:
        return [o for o in self if o.direction == direction]

    # -- Snapshot / restore -------------------------------------------------

    def take_snapshot(self, order_id: int) -> Dict[str, Any]:
        """
        Capture *order_id* and the id counter for rollback.

        That is all a single lifecycle operation can change.
        """
        order = self._orders.get(order_id)
        return {
            "next_id": self._next_id,
            "order_id": order_id,
            "order": order.copy() if order is not None else None,
        }

    def restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        # Orders created after the snapshot are dropped
        for order_id in [i for i in self._orders if i >= snapshot["next_id"]]:
            del self._orders[order_id]
        self._next_id = snapshot["next_id"]
        if snapshot["order"] is not None:
            self._orders[snapshot["order_id"]] = snapshot["order"]
