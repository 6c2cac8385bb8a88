from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Final, Optional

from .catalog import LEVEL_FREE, is_known_level
from .exceptions import SubscriptionValidationError, TransitionRejected
from .models import ChangeType
from .periods import as_utc_aware, days_left_ceil

DEFAULT_RENEWAL_WINDOW_DAYS: Final[int] = 5


@dataclass(frozen=True)
class DowngradeEligibility:
    can_downgrade: bool
    message: str
    days_left: Optional[int] = None


def _is_active(current_level: int, expiration: Optional[datetime], now: datetime) -> bool:
    return expiration is not None and as_utc_aware(expiration) > now and current_level > LEVEL_FREE


def classify_transition(
    current_level: int,
    target_level: int,
    expiration: Optional[datetime],
    now: datetime,
    *,
    renewal_window_days: int = DEFAULT_RENEWAL_WINDOW_DAYS,
) -> ChangeType:
    """
    Decide what kind of plan change a request is.

    Rules are evaluated top-down; the first match wins:

    - lower target: DOWNGRADE, only with an expiration and at most
      `renewal_window_days` left on it
    - same target: EXTEND (NEW when the tenant is on the free level)
    - higher target on an active term: UPGRADE_RENEW inside the renewal
      window, UPGRADE otherwise
    - higher target without an active term: NEW
    """

    if not is_known_level(target_level):
        raise SubscriptionValidationError(f"unknown plan level: {target_level}")
    current = int(current_level)
    target = int(target_level)
    now = as_utc_aware(now)
    days_left = days_left_ceil(expiration, now) if expiration is not None else None

    if target < current:
        if days_left is None:
            raise TransitionRejected("no active subscription to downgrade")
        if days_left > renewal_window_days:
            raise TransitionRejected(
                f"downgrade only allowed when <={renewal_window_days} days remain (days left: {days_left})"
            )
        return ChangeType.DOWNGRADE

    if target == current:
        return ChangeType.NEW if current == LEVEL_FREE else ChangeType.EXTEND

    if not _is_active(current, expiration, now):
        return ChangeType.NEW
    if days_left is not None and days_left <= renewal_window_days:
        return ChangeType.UPGRADE_RENEW
    return ChangeType.UPGRADE


def check_downgrade(
    current_level: int,
    expiration: Optional[datetime],
    now: datetime,
    *,
    renewal_window_days: int = DEFAULT_RENEWAL_WINDOW_DAYS,
) -> DowngradeEligibility:
    now = as_utc_aware(now)
    if expiration is None or not _is_active(int(current_level), expiration, now):
        return DowngradeEligibility(can_downgrade=False, message="no active subscription to downgrade")
    days_left = days_left_ceil(expiration, now)
    if days_left > renewal_window_days:
        return DowngradeEligibility(
            can_downgrade=False,
            message=(
                f"downgrade only allowed when <={renewal_window_days} days remain "
                f"(days left: {days_left})"
            ),
            days_left=days_left,
        )
    return DowngradeEligibility(
        can_downgrade=True,
        message="downgrade is available now",
        days_left=days_left,
    )
