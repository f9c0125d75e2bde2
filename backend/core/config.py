"""
Engine configuration.

Tunable constants live here so the empirically chosen thresholds (single-point
domain expansion, symlog tick regions, bin counts) are adjustable without
touching the algorithms. Each value can be overridden from the environment.
"""

from __future__ import annotations

import os
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip() or default


def _env_int(key: str, default: int) -> int:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Query backend
# ---------------------------------------------------------------------------

DUCKDB_PATH = _env("DUCKDB_PATH", ":memory:") or ":memory:"
QUERY_TIMEOUT_SECONDS = _env_float("QUERY_TIMEOUT_SECONDS", 30.0)
DEFAULT_TABLE = _env("DEFAULT_TABLE", "dataset") or "dataset"

# ---------------------------------------------------------------------------
# Statistics & binning
# ---------------------------------------------------------------------------

STATS_TOP_K = _env_int("STATS_TOP_K", 1000)
POSITION_BIN_COUNT = _env_int("POSITION_BIN_COUNT", 20)
OTHER_BIN_COUNT = _env_int("OTHER_BIN_COUNT", 5)
NOMINAL_BIN_COUNT = _env_int("NOMINAL_BIN_COUNT", 15)
BIN_INDEX_EPSILON = _env_float("BIN_INDEX_EPSILON", 1e-9)
ECDF_QUANTILE_COUNT = _env_int("ECDF_QUANTILE_COUNT", 200)

NA_LABEL = "n/a"
NULL_LABEL = "(null)"

# ---------------------------------------------------------------------------
# Scales
# ---------------------------------------------------------------------------

NO_DATA_DOMAIN: Tuple[float, float] = (0.0, 1.0)
# Domain used when the only observed value is exactly zero.
SINGLE_POINT_ZERO_DOMAIN: Tuple[float, float] = (0.0, 1.0)
DEFAULT_SYMLOG_CONSTANT = _env_float("DEFAULT_SYMLOG_CONSTANT", 1.0)
SYMLOG_LINEAR_FACTOR = _env_float("SYMLOG_LINEAR_FACTOR", 5.0)
SYMLOG_START_FACTOR = _env_float("SYMLOG_START_FACTOR", 2.0)
SYMLOG_NARROW_RATIO = _env_float("SYMLOG_NARROW_RATIO", 0.5)
DEFAULT_TICK_COUNT = _env_int("DEFAULT_TICK_COUNT", 5)

SPECIAL_BAND_SIZE = 20.0
SPECIAL_BAND_GAP = 8.0
BAND_PADDING = 0.1
DEFAULT_SIZE_RANGE: Tuple[float, float] = (0.0, 1000.0)

# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------

APP_STATE_VERSION = _env("APP_STATE_VERSION", "0.1.0") or "0.1.0"
