"""
TWAMM Engine Constants

This module consolidates the protocol constants and environment configuration
used throughout the engine. Constants are grouped by category.
"""
import ast

from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

ENGINE_DEFAULTS = {
    'TWAMM_POOL_TYPE':                 'STABLE',
    'TWAMM_CONFIG':                    'twamm.toml',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5


# WARNING: THE ARITHMETIC CONSTANTS BELOW DEFINE THE FIXED-POINT FORMAT OF PERSISTED
# STATE. CHANGING THEM INVALIDATES EVERY STORED REWARD FACTOR.

# ==================================================================================
# FIXED-POINT ARITHMETIC
# ==================================================================================
REWARD_FACTOR_SCALE = 2 ** 96   # proceeds-per-unit-sales-rate accumulator scale
MAX_U112 = 2 ** 112 - 1         # upper bound for balances, rates and reserves
MAX_U256 = 2 ** 256 - 1         # upper bound for reward factor accumulators


# ==================================================================================
# BLOCK INTERVALS (OBI) PER POOL TYPE
# ==================================================================================
STABLE_OBI = 75
LIQUID_OBI = 300
VOLATILE_OBI = 1200

# Maximum order length, in intervals (roughly 2 years / 6 months / 2 months at 12s blocks)
STABLE_MAX_INTERVALS = 175320
LIQUID_MAX_INTERVALS = 43830
VOLATILE_MAX_INTERVALS = 10957


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    def __hash__(self):
        return hash(bool(self))


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = ENGINE_DEFAULTS | LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Anything else is returned untouched.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
