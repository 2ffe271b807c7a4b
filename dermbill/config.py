"""Configuration flags for DermBill backend features."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Final


def _get_bool(env_var: str, default: bool) -> bool:
	value = os.getenv(env_var)
	if value is None:
		return default
	return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_float(env_var: str, default: float) -> float:
	value = os.getenv(env_var)
	if value is None or not value.strip():
		return default
	try:
		return float(value)
	except ValueError as exc:
		raise ValueError(f"{env_var} must be numeric, got {value!r}") from exc


DATA_ROOT: Final[Path] = Path(os.getenv("DERMBILL_DATA_ROOT", "data"))

SELF_PAY_DISCOUNT_PERCENT: Final[float] = _get_float("SELF_PAY_DISCOUNT_PERCENT", 15.0)
# IRS minimum individual deductible for an HSA-qualified plan (2024)
HDHP_DEDUCTIBLE_THRESHOLD: Final[float] = _get_float("HDHP_DEDUCTIBLE_THRESHOLD", 1600.0)

USE_GEMINI: Final[bool] = _get_bool("USE_GEMINI", False)
GEMINI_MODEL: Final[str] = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO").upper()
