from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Final, Optional

from .catalog import plan_price
from .exceptions import SubscriptionStateError
from .models import ChangeType
from .periods import as_utc_aware, days_left_ceil

MINIMUM_UPGRADE_CHARGE: Final[int] = 1_000
DAYS_PER_BILLING_MONTH: Final[int] = 30


@dataclass(frozen=True)
class Charge:
    gross_amount: int
    duration_months: int


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def prorated_upgrade_amount(current_level: int, target_level: int, expiration: datetime, now: datetime) -> int:
    """
    Incremental value of an upgrade for the time left on the current term.

    monthsEquivalent = ceil(remaining days) / 30, kept fractional; the result
    is rounded to a whole unit and never below MINIMUM_UPGRADE_CHARGE. A
    non-positive price difference yields 0 instead of raising.
    """

    diff_monthly = plan_price(target_level) - plan_price(current_level)
    if diff_monthly <= 0:
        return 0
    if as_utc_aware(expiration) <= as_utc_aware(now):
        return plan_price(target_level)
    remaining_days = days_left_ceil(expiration, now)
    months_equivalent = Decimal(remaining_days) / Decimal(DAYS_PER_BILLING_MONTH)
    amount = _round_half_up(Decimal(diff_monthly) * months_equivalent)
    return max(MINIMUM_UPGRADE_CHARGE, amount)


def compute_charge(
    change_type: ChangeType,
    *,
    current_level: int,
    target_level: int,
    duration_months: Optional[int],
    expiration: Optional[datetime],
    now: datetime,
) -> Charge:
    """Amount to charge and the duration to record for a classified change."""

    months = int(duration_months or 1)
    if change_type is ChangeType.DOWNGRADE:
        return Charge(gross_amount=0, duration_months=0)
    if change_type in (ChangeType.NEW, ChangeType.EXTEND):
        return Charge(gross_amount=plan_price(target_level) * months, duration_months=months)
    if change_type is ChangeType.UPGRADE_RENEW:
        return Charge(gross_amount=plan_price(target_level), duration_months=1)
    if change_type is ChangeType.UPGRADE:
        if expiration is None:
            raise SubscriptionStateError("upgrade requires an active expiration")
        amount = prorated_upgrade_amount(current_level, target_level, expiration, now)
        # Requested duration is only used if the term lapses before confirmation.
        return Charge(gross_amount=amount, duration_months=months)
    raise SubscriptionStateError(f"unhandled change type: {change_type!r}")
