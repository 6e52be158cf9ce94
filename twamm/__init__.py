"""
TWAMM Package

Long-term (time-weighted) order execution for a two-asset AMM pool.

    from twamm.engine import TwammVault, Direction
    from twamm.config import load_config
    from twamm.exceptions import OrderExpired
"""

__version__ = "0.1.0"
