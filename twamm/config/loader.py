"""
TWAMM TOML Configuration Loader

Loads every section of twamm.toml with environment variable overrides
(dataclass + from_dict + from_file).

Environment variable mapping:
    [pool] pool_type           → TWAMM_POOL_TYPE
    [pool] block_interval      → TWAMM_BLOCK_INTERVAL
    [pool] max_order_intervals → TWAMM_MAX_ORDER_INTERVALS
    [logging] level            → TWAMM_LOG_LEVEL
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from enum import IntEnum
from typing import Any, Dict, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from .. import constants
from ..constants import (
    LIQUID_MAX_INTERVALS,
    LIQUID_OBI,
    STABLE_MAX_INTERVALS,
    STABLE_OBI,
    VOLATILE_MAX_INTERVALS,
    VOLATILE_OBI,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

class PoolType(IntEnum):
    """Pool kinds; each fixes a block interval and a maximum order length."""
    STABLE = 0
    LIQUID = 1
    VOLATILE = 2

    @property
    def block_interval(self) -> int:
        return _POOL_INTERVALS[self][0]

    @property
    def max_intervals(self) -> int:
        return _POOL_INTERVALS[self][1]


_POOL_INTERVALS = {
    PoolType.STABLE: (STABLE_OBI, STABLE_MAX_INTERVALS),
    PoolType.LIQUID: (LIQUID_OBI, LIQUID_MAX_INTERVALS),
    PoolType.VOLATILE: (VOLATILE_OBI, VOLATILE_MAX_INTERVALS),
}


def default_pool_type() -> str:
    """TWAMM_POOL_TYPE from .env, or STABLE."""
    return str(constants.TWAMM_POOL_TYPE).upper()


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------


@dataclass
class PoolSectionConfig:
    """[pool] section.

    ``block_interval`` and ``max_order_intervals`` default to the values of
    ``pool_type`` when left unset.  ``pool_type`` itself falls back to the
    .env value.
    """
    pool_type: str = field(default_factory=default_pool_type)
    block_interval: Optional[int] = None
    max_order_intervals: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolSectionConfig":
        return cls(
            pool_type=str(data.get("pool_type") or default_pool_type()).upper(),
            block_interval=data.get("block_interval"),
            max_order_intervals=data.get("max_order_intervals"),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("TWAMM_POOL_TYPE"):
            self.pool_type = v.upper()
        if v := os.environ.get("TWAMM_BLOCK_INTERVAL"):
            self.block_interval = int(v)
        if v := os.environ.get("TWAMM_MAX_ORDER_INTERVALS"):
            self.max_order_intervals = int(v)

    @property
    def resolved_block_interval(self) -> int:
        if self.block_interval is not None:
            return int(self.block_interval)
        return PoolType[self.pool_type].block_interval

    @property
    def resolved_max_order_intervals(self) -> int:
        if self.max_order_intervals is not None:
            return int(self.max_order_intervals)
        return PoolType[self.pool_type].max_intervals


@dataclass
class LoggingSectionConfig:
    """[logging] section."""
    level: str = "INFO"
    file_output: bool = False
    log_file: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingSectionConfig":
        return cls(
            level=str(data.get("level", "INFO")).upper(),
            file_output=bool(data.get("file_output", False)),
            log_file=data.get("log_file", ""),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("TWAMM_LOG_LEVEL"):
            self.level = v.upper()


# -----------------------------------------------------------------------

@dataclass
class EngineConfig:
    """
    Unified engine configuration.

    Loads every section of twamm.toml and applies environment variable
    overrides.  This is the single source of truth at runtime.
    """
    pool: PoolSectionConfig = field(default_factory=PoolSectionConfig)
    logging: LoggingSectionConfig = field(default_factory=LoggingSectionConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create EngineConfig from a parsed TOML dict."""
        return cls(
            pool=PoolSectionConfig.from_dict(data.get("pool", {})),
            logging=LoggingSectionConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "EngineConfig":
        """
        Load configuration from a TOML file.

        A missing file is not an error: defaults are used, with env overrides.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.pool.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        if self.pool.pool_type not in PoolType.__members__:
            raise ConfigurationError(f"Unknown pool_type: {self.pool.pool_type}")
        if self.pool.resolved_block_interval < 1:
            raise ConfigurationError("block_interval must be >= 1")
        if self.pool.resolved_max_order_intervals < 1:
            raise ConfigurationError("max_order_intervals must be >= 1")
        if self.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log level: {self.logging.level}")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics)."""
        return {
            "pool": {
                "pool_type": self.pool.pool_type,
                "block_interval": self.pool.resolved_block_interval,
                "max_order_intervals": self.pool.resolved_max_order_intervals,
            },
            "logging": {
                "level": self.logging.level,
                "file_output": self.logging.file_output,
                "log_file": self.logging.log_file,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration.

    Resolution order:
        1. Explicit *path* argument
        2. TWAMM_CONFIG env var
        3. TWAMM_CONFIG from .env
        4. ./twamm.toml in current directory
        5. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("TWAMM_CONFIG") or str(constants.TWAMM_CONFIG)

    cfg = EngineConfig.from_file(path)
    cfg.validate()
    return cfg
