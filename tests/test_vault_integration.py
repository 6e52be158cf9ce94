"""
Integration tests for the vault interface

Covers:
  - custody hooks running at the current block
  - begin_block settlement, stale blocks and pool pause
  - exported state: layout and determinism
  - singleton, configuration, stats and the invariant report
"""

import pytest

from twamm.config import EngineConfig, PoolSectionConfig
from twamm.engine import Direction, TwammVault
from twamm.exceptions import ConfigurationError, StaleBlock, Unauthorized

from conftest import (
    DEEP_RESERVE,
    DELEGATE,
    OWNER,
    STRANGER,
    ParityOracle,
    small_pool_config,
)

Z = Direction.ZERO_TO_ONE
O = Direction.ONE_TO_ZERO


def fresh_vault():
    return TwammVault(
        small_pool_config(),
        oracle=ParityOracle(),
        reserve0=DEEP_RESERVE,
        reserve1=DEEP_RESERVE,
    )


# ============================================================================
#  CUSTODY HOOKS
# ============================================================================

class TestCustodyHooks:

    def test_hooks_use_current_block(self, vault):
        vault.begin_block(5)
        order_id = vault.on_deposit(Z, 300, 3, OWNER, DELEGATE)
        order = vault.get_order(order_id)
        assert (order.order_start, order.order_expiry, order.sales_rate) == (10, 40, 10)

        vault.begin_block(20)
        vault.on_pause(order_id, DELEGATE)
        assert vault.get_order(order_id).deposit == 200

        vault.begin_block(25)
        vault.on_resume(order_id, OWNER)

        vault.begin_block(30)
        assert vault.on_extend(order_id, OWNER, 100) == 50

        vault.begin_block(35)
        assert vault.on_withdraw(order_id, DELEGATE) == 200

        vault.begin_block(45)
        assert vault.on_cancel(order_id, DELEGATE, OWNER) == (100, 100)
        assert order_id not in vault.ledger

    def test_explicit_block_wins(self, vault):
        vault.begin_block(5)
        order_id = vault.on_deposit(Z, 300, 3, OWNER, block=12)
        assert vault.get_order(order_id).order_start == 20

    def test_delegate_redirect_rejected(self, vault):
        vault.begin_block(5)
        order_id = vault.on_deposit(Z, 300, 3, OWNER, DELEGATE)
        with pytest.raises(Unauthorized, match="only pay out to the owner"):
            vault.on_cancel(order_id, DELEGATE, STRANGER)
        assert order_id in vault.ledger

    def test_provide_liquidity(self, vault):
        assert vault.on_provide_liquidity(5, 7) == (DEEP_RESERVE + 5, DEEP_RESERVE + 7)
        assert vault.get_reserves() == (DEEP_RESERVE + 5, DEEP_RESERVE + 7)


# ============================================================================
#  BLOCK ADVANCE
# ============================================================================

class TestBeginBlock:

    def test_settles_to_height(self, vault):
        vault.on_deposit(O, 300, 3, OWNER, block=5)
        result = vault.begin_block(25)
        assert result.to_block == 25
        assert result.boundaries_crossed == [10]
        assert vault.get_last_virtual_order_block() == 25
        assert vault.get_proceed_amounts(O) == 150

    def test_stale_block_is_rejected(self, vault):
        vault.begin_block(50)
        state = vault.export_state()
        with pytest.raises(StaleBlock, match="Block 40"):
            vault.begin_block(40)
        assert vault.export_state() == state
        assert vault.get_stats()["block"] == 50

    def test_begin_block_while_paused(self, vault):
        vault.on_deposit(Z, 300, 3, OWNER, block=5)
        vault.set_pool_paused(True, block=15)
        result = vault.begin_block(30)
        assert not result.advanced
        assert vault.get_last_virtual_order_block() == 15
        assert vault.get_order(0).deposit == 250


# ============================================================================
#  EXPORTED STATE
# ============================================================================

class TestExportState:

    def test_layout(self, vault):
        order_id = vault.on_deposit(Z, 300, 3, OWNER, DELEGATE, block=5)
        vault.begin_block(20)
        state = vault.export_state()

        assert state["last_virtual_order_block"] == 20
        assert state["reserves"] == [DEEP_RESERVE + 100, DEEP_RESERVE - 100]
        assert state["pool_paused"] is False
        assert state["next_order_id"] == 1
        assert state["boundaries"] == [40]
        assert state["pools"]["0->1"]["active_sales_rate"] == 10
        assert state["pools"]["0->1"]["unclaimed_proceeds"] == 100

        # Stored record, not yet brought up to LVOB
        assert state["orders"] == [{
            "id": order_id,
            "owner": OWNER,
            "delegate": DELEGATE,
            "direction": 0,
            "sales_rate": 10,
            "deposit": 300,
            "proceeds": 0,
            "order_start": 10,
            "order_expiry": 40,
            "paused": False,
            "last_settled_block": 5,
            "reward_factor_baseline": 0,
        }]

    def test_orders_follow_settlement(self, vault):
        order_id = vault.on_deposit(Z, 300, 3, OWNER, block=5)
        vault.on_pause(order_id, OWNER, block=20)
        (record,) = vault.export_state()["orders"]
        assert record["deposit"] == 200
        assert record["proceeds"] == 100
        assert record["paused"] is True
        assert record["last_settled_block"] == 20

    def test_deterministic(self):
        a, b = fresh_vault(), fresh_vault()
        for v in (a, b):
            v.on_deposit(Z, 300, 3, OWNER, DELEGATE, block=5)
            v.on_pause(0, OWNER, block=20)
        assert a.export_state() == b.export_state()

        b.on_resume(0, OWNER, block=25)
        assert a.export_state() != b.export_state()

    def test_pool_pause_is_exported(self, vault):
        vault.set_pool_paused(True, block=0)
        assert vault.export_state()["pool_paused"] is True


# ============================================================================
#  VAULT
# ============================================================================

class TestVault:

    def test_singleton(self):
        vault = TwammVault.get_instance(small_pool_config())
        assert TwammVault.get_instance() is vault
        assert vault.clock.block_interval == 10
        TwammVault.reset_instance()
        assert TwammVault.instance is None

    def test_default_pool_type(self):
        vault = TwammVault()
        assert vault.clock.block_interval == 75
        assert vault.controller.max_order_intervals == 175320

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown pool_type"):
            TwammVault(EngineConfig(pool=PoolSectionConfig(pool_type="EXOTIC")))

    def test_stats(self, vault):
        vault.on_deposit(O, 300, 3, OWNER, block=5)
        vault.begin_block(25)
        stats = vault.get_stats()
        assert stats["block"] == 25
        assert stats["orders"] == 1
        assert stats["next_order_id"] == 1
        assert stats["last_virtual_order_block"] == 25
        assert stats["pool_paused"] is False
        assert stats["pools"]["1->0"]["active_sales_rate"] == 10
        assert stats["pools"]["1->0"]["total_sold"] == 150
        assert stats["pools"]["0->1"]["order_deposits"] == 0
        assert stats["boundaries"] == 1
        assert stats["reward_factor_snapshots"] == 1

    def test_check_invariants_report(self, vault):
        vault.on_deposit(Z, 300, 3, OWNER, block=5)
        vault.begin_block(25)
        report = vault.check_invariants()
        assert report["block"] == 25
        assert report["orders"] == 1
        assert report["0->1"] == {
            "active_sales_rate": 10,
            "order_deposits": 150,
            "order_proceeds": 150,
            "dust": 0,
        }
