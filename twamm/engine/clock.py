"""
Block Interval Clock

Quantizes block numbers into fixed-width order block intervals (OBI).
Order starts and expiries always land on interval boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..exceptions import ConfigurationError


def floor_to_interval(block: int, block_interval: int) -> int:
    return block - (block % block_interval)


def next_boundary(block: int, block_interval: int) -> int:
    """First interval boundary strictly after *block*."""
    return floor_to_interval(block, block_interval) + block_interval


@dataclass(frozen=True)
class BlockIntervalClock:
    block_interval: int

    def __post_init__(self) -> None:
        if self.block_interval <= 0:
            raise ConfigurationError("block_interval must be positive")

    def floor_to_interval(self, block: int) -> int:
        return floor_to_interval(block, self.block_interval)

    def next_boundary(self, block: int) -> int:
        return next_boundary(block, self.block_interval)

    def is_aligned(self, block: int) -> bool:
        return block % self.block_interval == 0

    def blocks_for(self, intervals: int) -> int:
        return intervals * self.block_interval

    def intervals_between(self, start: int, end: int) -> int:
        """Whole intervals in ``[start, end)``; both ends are boundaries."""
        return (end - start) // self.block_interval
