"""
Pricing Oracle

The execution engine prices each settlement segment through a single call:

    trade(amount_in0, amount_in1, reserve0, reserve1)
        -> (amount_out0, amount_out1, new_reserve0, new_reserve1)

``amount_in0`` is the token0 sold by ZERO_TO_ONE orders and ``amount_out1``
the token1 they receive; ``amount_in1`` / ``amount_out0`` are the same for
ONE_TO_ZERO.  Implementations must be pure and deterministic and raise
``OracleError`` for states they cannot price.

``ConstantProductOracle`` is the reference x*y=k implementation used by
default.  Opposing flows are matched against each other at the spot price
first and only the residual touches the curve.
"""

from __future__ import annotations

from typing import NamedTuple, Protocol

from ..exceptions import OracleError


class TradeResult(NamedTuple):
    amount_out0: int
    amount_out1: int
    reserve0: int
    reserve1: int


class PricingOracle(Protocol):
    def trade(
        self, amount_in0: int, amount_in1: int, reserve0: int, reserve1: int
    ) -> TradeResult:
        ...


class ConstantProductOracle:
    """
    Two-sided constant-product pricing, integer only, rounding in the pool's favour.

    When both directions sell in the same segment, the smaller side (by value
    at the current spot price) is filled entirely by the larger side.  The
    larger side's remainder is swapped against the reserves:

        out = reserve_out * residual_in // (reserve_in + residual_in)
    """

    def trade(
        self, amount_in0: int, amount_in1: int, reserve0: int, reserve1: int
    ) -> TradeResult:
        if amount_in0 < 0 or amount_in1 < 0:
            raise OracleError(f"Negative trade input: ({amount_in0}, {amount_in1})")
        if reserve0 < 0 or reserve1 < 0:
            raise OracleError(f"Negative reserves: ({reserve0}, {reserve1})")
        if amount_in0 == 0 and amount_in1 == 0:
            return TradeResult(0, 0, reserve0, reserve1)
        if reserve0 == 0 or reserve1 == 0:
            raise OracleError(
                f"Cannot trade ({amount_in0}, {amount_in1}) against empty reserves "
                f"({reserve0}, {reserve1})"
            )

        if amount_in0 * reserve1 >= amount_in1 * reserve0:
            # token0 sellers dominate: token1 sellers are matched in full
            matched0 = amount_in1 * reserve0 // reserve1
            residual0 = amount_in0 - matched0
            curve_out1 = reserve1 * residual0 // (reserve0 + residual0)
            result = TradeResult(
                amount_out0=matched0,
                amount_out1=amount_in1 + curve_out1,
                reserve0=reserve0 + residual0,
                reserve1=reserve1 - curve_out1,
            )
        else:
            matched1 = amount_in0 * reserve1 // reserve0
            residual1 = amount_in1 - matched1
            curve_out0 = reserve0 * residual1 // (reserve1 + residual1)
            result = TradeResult(
                amount_out0=amount_in0 + curve_out0,
                amount_out1=matched1,
                reserve0=reserve0 - curve_out0,
                reserve1=reserve1 + residual1,
            )

        if result.reserve0 <= 0 or result.reserve1 <= 0:
            raise OracleError(f"Trade would drain reserves: {result}")
        return result
