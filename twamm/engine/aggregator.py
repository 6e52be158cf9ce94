"""
Order Pool Aggregator

Per-direction aggregate state shared by every order selling the same token:

  - active sales rate (sum over selling orders)
  - sparse block -> rate maps for orders starting and expiring at a boundary
  - unclaimed proceeds and the escrowed order deposits
  - the cumulative reward factor (proceeds per unit of sales rate, Q96)

The sorted list of boundary blocks lets settlement walk from one rate change
to the next without touching individual orders.  Any update that would take
a rate, bucket or balance below zero is an accounting bug and raises
``InvariantViolation``; nothing is ever clamped.

Reward factor snapshots are kept only for blocks that a live order still
starts or expires at, so the aggregate grows with the open orders and not
with the history of the pool.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

from ..constants import MAX_U112, MAX_U256, REWARD_FACTOR_SCALE
from ..exceptions import InvalidAmount, InvariantViolation
from .ledger import Direction

_SCALAR_FIELDS = (
    "active_sales_rate",
    "unclaimed_proceeds",
    "order_deposits",
    "reward_factor",
    "total_sold",
    "total_proceeds_generated",
    "total_proceeds_withdrawn",
)


@dataclass
class OrderPoolAggregate:
    """Aggregate accounting for one direction."""
    direction: Direction
    active_sales_rate: int = 0
    starting_sales_rate: Dict[int, int] = field(default_factory=dict)
    expiring_sales_rate: Dict[int, int] = field(default_factory=dict)
    unclaimed_proceeds: int = 0
    order_deposits: int = 0
    reward_factor: int = 0
    # reward factor observed when settlement crossed a referenced boundary
    reward_factor_snapshots: Dict[int, int] = field(default_factory=dict)
    # live orders starting or expiring at each block
    boundary_refs: Dict[int, int] = field(default_factory=dict)

    # Audit totals
    total_sold: int = 0
    total_proceeds_generated: int = 0
    total_proceeds_withdrawn: int = 0

    def scalars(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in _SCALAR_FIELDS}

    def restore_scalars(self, values: Mapping[str, int]) -> None:
        for name, value in values.items():
            setattr(self, name, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": int(self.direction),
            "active_sales_rate": self.active_sales_rate,
            "unclaimed_proceeds": self.unclaimed_proceeds,
            "order_deposits": self.order_deposits,
            "reward_factor": self.reward_factor,
            "total_sold": self.total_sold,
            "total_proceeds_generated": self.total_proceeds_generated,
            "total_proceeds_withdrawn": self.total_proceeds_withdrawn,
        }


@dataclass
class BoundaryCrossing:
    """Rate changes applied when settlement reaches a boundary block."""
    block: int
    reward_factors: Tuple[int, int]


class OrderPoolAggregator:
    """Both directions' aggregates plus the boundary schedule."""

    def __init__(self) -> None:
        self._pools: Dict[Direction, OrderPoolAggregate] = {
            d: OrderPoolAggregate(direction=d) for d in Direction
        }
        # Sorted, unique, all after LVOB.  A block stays here until settlement
        # crosses it, even if its buckets net to zero.
        self._boundaries: List[int] = []

        # Undo log for the open checkpoints (see take_snapshot)
        self._journal: List[Callable[[], None]] = []
        self._checkpoints = 0

    def __getitem__(self, direction: Direction) -> OrderPoolAggregate:
        return self._pools[Direction(direction)]

    @property
    def boundaries(self) -> List[int]:
        return list(self._boundaries)

    # -- Journaled writes -----------------------------------------------------

    def _record(self, undo: Callable[[], None]) -> None:
        if self._checkpoints:
            self._journal.append(undo)

    def _set(self, mapping: Dict[int, int], key: int, value: int) -> None:
        if key in mapping:
            old = mapping[key]
            self._record(lambda: mapping.__setitem__(key, old))
        else:
            self._record(lambda: mapping.pop(key, None))
        mapping[key] = value

    def _pop(self, mapping: Dict[int, int], key: int) -> None:
        if key in mapping:
            old = mapping.pop(key)
            self._record(lambda: mapping.__setitem__(key, old))

    def _mark_boundary(self, block: int) -> None:
        i = bisect.bisect_left(self._boundaries, block)
        if i == len(self._boundaries) or self._boundaries[i] != block:
            self._boundaries.insert(i, block)
            self._record(lambda: self._boundaries.remove(block))

    def _drop_crossed(self, blocks: List[int]) -> None:
        """Remove *blocks*, the leading boundaries, from the schedule."""
        del self._boundaries[:len(blocks)]

        def undo() -> None:
            self._boundaries[0:0] = blocks

        self._record(undo)

    def _bucket_add(self, bucket: Dict[int, int], block: int, amount: int) -> None:
        self._set(bucket, block, bucket.get(block, 0) + amount)

    def _bucket_sub(self, bucket: Dict[int, int], block: int, amount: int, what: str) -> None:
        current = bucket.get(block, 0)
        if amount > current:
            raise InvariantViolation(
                f"{what} bucket at block {block} would underflow: {current} - {amount}"
            )
        self._set(bucket, block, current - amount)

    # -- Sales rate bookkeeping ---------------------------------------------

    def add_active(self, direction: Direction, rate: int, expiry_block: int) -> None:
        """Register a selling order: raise the active rate and its expiry bucket."""
        pool = self[direction]
        if pool.active_sales_rate + rate > MAX_U112:
            raise InvalidAmount("Active sales rate exceeds the balance limit")
        pool.active_sales_rate += rate
        self._bucket_add(pool.expiring_sales_rate, expiry_block, rate)
        self._mark_boundary(expiry_block)

    def remove_active(self, direction: Direction, rate: int, expiry_block: int) -> None:
        pool = self[direction]
        if rate > pool.active_sales_rate:
            raise InvariantViolation(
                f"Active sales rate {pool.direction.label} would underflow: "
                f"{pool.active_sales_rate} - {rate}"
            )
        self._bucket_sub(pool.expiring_sales_rate, expiry_block, rate, "Expiring")
        pool.active_sales_rate -= rate

    def schedule_start(
        self, direction: Direction, rate: int, start_block: int, expiry_block: int
    ) -> None:
        """Register an order that begins selling at a future boundary."""
        pool = self[direction]
        self._bucket_add(pool.starting_sales_rate, start_block, rate)
        self._bucket_add(pool.expiring_sales_rate, expiry_block, rate)
        self._mark_boundary(start_block)
        self._mark_boundary(expiry_block)

    def unschedule_start(
        self, direction: Direction, rate: int, start_block: int, expiry_block: int
    ) -> None:
        pool = self[direction]
        self._bucket_sub(pool.starting_sales_rate, start_block, rate, "Starting")
        self._bucket_sub(pool.expiring_sales_rate, expiry_block, rate, "Expiring")

    def move_expiry(
        self, direction: Direction, rate: int, old_expiry: int, new_expiry: int
    ) -> None:
        if new_expiry < old_expiry:
            raise InvariantViolation(
                f"Order expiry cannot move backwards ({old_expiry} -> {new_expiry})"
            )
        pool = self[direction]
        self._bucket_sub(pool.expiring_sales_rate, old_expiry, rate, "Expiring")
        self._bucket_add(pool.expiring_sales_rate, new_expiry, rate)
        self._mark_boundary(new_expiry)

    # -- Boundary references --------------------------------------------------

    def retain_boundaries(self, direction: Direction, *blocks: int) -> None:
        """Keep the reward factor at *blocks* for an order that starts or expires there."""
        refs = self[direction].boundary_refs
        for block in blocks:
            self._set(refs, block, refs.get(block, 0) + 1)

    def release_boundaries(self, direction: Direction, *blocks: int) -> None:
        """Drop an order's claim on *blocks*; unreferenced snapshots are discarded."""
        pool = self[direction]
        for block in blocks:
            count = pool.boundary_refs.get(block, 0)
            if count == 0:
                raise InvariantViolation(
                    f"No live order of {pool.direction.label} references block {block}"
                )
            if count > 1:
                self._set(pool.boundary_refs, block, count - 1)
                continue
            self._pop(pool.boundary_refs, block)
            self._pop(pool.reward_factor_snapshots, block)

    # -- Balances ------------------------------------------------------------

    def add_deposit(self, direction: Direction, amount: int) -> None:
        pool = self[direction]
        if pool.order_deposits + amount > MAX_U112:
            raise InvalidAmount(
                f"Deposits for {pool.direction.label} would exceed the balance limit"
            )
        pool.order_deposits += amount

    def remove_deposit(self, direction: Direction, amount: int) -> None:
        pool = self[direction]
        if amount > pool.order_deposits:
            raise InvariantViolation(
                f"Order deposits {pool.direction.label} would underflow: "
                f"{pool.order_deposits} - {amount}"
            )
        pool.order_deposits -= amount

    def credit_proceeds(self, direction: Direction, amount: int) -> None:
        pool = self[direction]
        if pool.unclaimed_proceeds + amount > MAX_U112:
            raise InvalidAmount(
                f"Unclaimed proceeds for {pool.direction.label} would exceed the balance limit"
            )
        pool.unclaimed_proceeds += amount
        pool.total_proceeds_generated += amount

    def debit_proceeds(self, direction: Direction, amount: int) -> None:
        pool = self[direction]
        if amount > pool.unclaimed_proceeds:
            raise InvariantViolation(
                f"Unclaimed proceeds {pool.direction.label} would underflow: "
                f"{pool.unclaimed_proceeds} - {amount}"
            )
        pool.unclaimed_proceeds -= amount
        pool.total_proceeds_withdrawn += amount

    def advance_reward_factor(self, direction: Direction, amount: int, rate_base: int) -> int:
        """
        Grow the reward factor by ``amount / rate_base`` (Q96, rounded down).

        A zero ``rate_base`` leaves the factor untouched.  Returns the new factor.
        """
        pool = self[direction]
        pool.reward_factor = reward_factor_after(pool.reward_factor, amount, rate_base)
        return pool.reward_factor

    # -- Settlement support ---------------------------------------------------

    def reward_factor_at(self, direction: Direction, block: int) -> int:
        """Reward factor recorded when settlement crossed boundary *block*."""
        try:
            return self[direction].reward_factor_snapshots[block]
        except KeyError:
            raise InvariantViolation(
                f"No reward factor recorded for {Direction(direction).label} at block {block}"
            ) from None

    def boundaries_between(self, after_block: int, up_to_block: int) -> List[int]:
        """Boundaries ``b`` with ``after_block < b <= up_to_block``, ascending."""
        lo = bisect.bisect_right(self._boundaries, after_block)
        hi = bisect.bisect_right(self._boundaries, up_to_block)
        return self._boundaries[lo:hi]

    def rate_delta_at(self, direction: Direction, block: int) -> int:
        """Net change of the active rate when settlement reaches *block*."""
        pool = self[direction]
        return pool.starting_sales_rate.get(block, 0) - pool.expiring_sales_rate.get(block, 0)

    def apply_settlement(
        self,
        active_rates: Mapping[Direction, int],
        reward_factors: Mapping[Direction, int],
        crossings: Iterable[BoundaryCrossing],
        proceeds: Mapping[Direction, int],
        sold: Mapping[Direction, int],
    ) -> None:
        """
        Commit the outcome of a settlement walk staged by the execution engine.

        Balance checks run before anything is written, so a rejected commit
        leaves the aggregate untouched.
        """
        for d in Direction:
            pool = self._pools[d]
            if sold[d] > pool.order_deposits:
                raise InvariantViolation(
                    f"Settlement sold {sold[d]} {d.label} but only "
                    f"{pool.order_deposits} is escrowed"
                )
            if pool.unclaimed_proceeds + proceeds[d] > MAX_U112:
                raise InvalidAmount(
                    f"Unclaimed proceeds for {d.label} would exceed the balance limit"
                )

        crossings = list(crossings)
        crossed = [crossing.block for crossing in crossings]
        if self._boundaries[:len(crossed)] != crossed:
            raise InvariantViolation(
                f"Crossed boundaries {crossed} are not the next scheduled ones"
            )

        for crossing in crossings:
            for d in Direction:
                pool = self._pools[d]
                self._pop(pool.starting_sales_rate, crossing.block)
                self._pop(pool.expiring_sales_rate, crossing.block)
                if pool.boundary_refs.get(crossing.block):
                    self._set(
                        pool.reward_factor_snapshots, crossing.block,
                        crossing.reward_factors[d],
                    )

        if crossed:
            self._drop_crossed(crossed)

        for d in Direction:
            pool = self._pools[d]
            pool.active_sales_rate = active_rates[d]
            pool.reward_factor = reward_factors[d]
            self.remove_deposit(d, sold[d])
            pool.total_sold += sold[d]
            self.credit_proceeds(d, proceeds[d])

    # -- Snapshot / restore ---------------------------------------------------

    def take_snapshot(self) -> Dict[str, Any]:
        """
        Open a checkpoint for rollback.

        Only the scalar fields of both pools are copied.  Writes to the block
        maps and the boundary list are journaled until the checkpoint is
        restored or released, so a rollback costs as much as the operation did.
        """
        self._checkpoints += 1
        return {
            "scalars": {d: pool.scalars() for d, pool in self._pools.items()},
            "journal_mark": len(self._journal),
        }

    def restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        while len(self._journal) > snapshot["journal_mark"]:
            self._journal.pop()()
        for d, values in snapshot["scalars"].items():
            self._pools[d].restore_scalars(values)
        self._close_checkpoint()

    def release_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """Keep the changes made since *snapshot*."""
        self._close_checkpoint()

    def _close_checkpoint(self) -> None:
        if self._checkpoints == 0:
            raise InvariantViolation("No open aggregator checkpoint")
        self._checkpoints -= 1
        if self._checkpoints == 0:
            self._journal.clear()


def reward_factor_after(reward_factor: int, amount: int, rate_base: int) -> int:
    """Reward factor after crediting *amount* to *rate_base* units of sales rate."""
    if rate_base == 0:
        return reward_factor
    advanced = reward_factor + amount * REWARD_FACTOR_SCALE // rate_base
    if advanced > MAX_U256:
        raise InvalidAmount("Reward factor accumulator overflow")
    return advanced
