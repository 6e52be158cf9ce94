"""Shared fixtures for the TWAMM engine tests."""

import pytest

from twamm.config import EngineConfig, PoolSectionConfig
from twamm.engine import TradeResult, TwammVault
from twamm.exceptions import OracleError

OWNER = "0xowner" + "a" * 34
DELEGATE = "0xdelegate" + "d" * 31
STRANGER = "0xstranger" + "s" * 31

BLOCK_INTERVAL = 10
MAX_INTERVALS = 100
DEEP_RESERVE = 10 ** 27


class ParityOracle:
    """Swaps 1:1 with no price impact so proceeds can be asserted exactly."""

    def __init__(self):
        self.fail = False
        self.calls = 0

    def trade(self, amount_in0, amount_in1, reserve0, reserve1):
        if self.fail:
            raise OracleError("oracle offline")
        self.calls += 1
        return TradeResult(
            amount_out0=amount_in1,
            amount_out1=amount_in0,
            reserve0=reserve0 + amount_in0 - amount_in1,
            reserve1=reserve1 + amount_in1 - amount_in0,
        )


def small_pool_config() -> EngineConfig:
    return EngineConfig(
        pool=PoolSectionConfig(block_interval=BLOCK_INTERVAL, max_order_intervals=MAX_INTERVALS)
    )


@pytest.fixture(autouse=True)
def reset_vault():
    """Reset the singleton before every test."""
    TwammVault.reset_instance()
    yield
    TwammVault.reset_instance()


@pytest.fixture
def parity_oracle() -> ParityOracle:
    return ParityOracle()


@pytest.fixture
def vault(parity_oracle) -> TwammVault:
    """Vault on a 10-block interval with a 1:1 oracle and deep reserves."""
    return TwammVault(
        small_pool_config(),
        oracle=parity_oracle,
        reserve0=DEEP_RESERVE,
        reserve1=DEEP_RESERVE,
    )


@pytest.fixture
def cp_vault() -> TwammVault:
    """Vault on a 10-block interval priced by the constant-product oracle."""
    return TwammVault(
        small_pool_config(),
        reserve0=DEEP_RESERVE,
        reserve1=DEEP_RESERVE,
    )
