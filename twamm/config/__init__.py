"""
TWAMM Engine Configuration

Loads twamm.toml; environment variables override TOML values.
"""

from .loader import (
    EngineConfig,
    PoolSectionConfig,
    LoggingSectionConfig,
    PoolType,
    load_config,
)

__all__ = [
    "EngineConfig",
    "PoolSectionConfig",
    "LoggingSectionConfig",
    "PoolType",
    "load_config",
]
