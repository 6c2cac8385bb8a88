from __future__ import annotations

from typing import Dict, Final

LEVEL_FREE: Final[int] = 0
LEVEL_BASIC: Final[int] = 1
LEVEL_PRO: Final[int] = 2

PLAN_LEVELS: Final[tuple[int, ...]] = (LEVEL_FREE, LEVEL_BASIC, LEVEL_PRO)

# Monthly price in the smallest currency unit (IDR has no minor unit).
_MONTHLY_PRICES: Final[Dict[int, int]] = {
    LEVEL_FREE: 0,
    LEVEL_BASIC: 299_000,
    LEVEL_PRO: 799_000,
}

PLAN_LABELS: Final[Dict[int, str]] = {
    LEVEL_FREE: "free",
    LEVEL_BASIC: "basic",
    LEVEL_PRO: "pro",
}


def plan_price(level: int) -> int:
    """Monthly price for a plan level; unknown levels cost nothing."""
    return _MONTHLY_PRICES.get(int(level), 0)


def plan_label(level: int) -> str:
    return PLAN_LABELS.get(int(level), "unknown")


def is_known_level(level: int) -> bool:
    return int(level) in _MONTHLY_PRICES
