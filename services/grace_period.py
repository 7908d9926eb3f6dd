"""Grace-period policy.

A tenant's grace configuration is either automatic (use the plan's default
number of days) or manual (an administrator-chosen number of days).  The two
are modelled as separate types so a configuration can never be both.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional, Union

from utils import ensure_utc, utc_now


@dataclass(frozen=True)
class AutoGracePeriod:
    mode = "auto"


@dataclass(frozen=True)
class ManualGracePeriod:
    days: Optional[int] = None
    mode = "manual"


GracePeriod = Union[AutoGracePeriod, ManualGracePeriod]


def grace_from_mode(mode: str, manual_days: Optional[int] = None) -> GracePeriod:
    """Build a grace configuration from its API representation."""
    if mode == "manual":
        return ManualGracePeriod(days=manual_days)
    if mode == "auto":
        return AutoGracePeriod()
    raise ValueError(f"Unknown grace period mode: {mode!r}")


def grace_days(grace: GracePeriod, plan_grace_days: Optional[int]) -> int:
    """Return the effective grace duration in days (0 = no grace)."""
    if isinstance(grace, ManualGracePeriod):
        return max(grace.days or 0, 0)
    return max(plan_grace_days or 0, 0)


def grace_window(
    grace: GracePeriod,
    plan_grace_days: Optional[int],
    expiry: Optional[datetime.datetime],
) -> Optional[datetime.datetime]:
    """Return the end of the grace window opened by *expiry*, or ``None``."""
    days = grace_days(grace, plan_grace_days)
    if expiry is None or days <= 0:
        return None
    return ensure_utc(expiry) + datetime.timedelta(days=days)


def is_grace_eligible(
    grace: GracePeriod,
    plan_grace_days: Optional[int],
    expiry: Optional[datetime.datetime],
    now: Optional[datetime.datetime] = None,
) -> bool:
    window_end = grace_window(grace, plan_grace_days, expiry)
    if window_end is None:
        return False
    return ensure_utc(now or utc_now()) < window_end


def grace_to_dict(grace: GracePeriod) -> dict:
    return {
        "gracePeriodMode": grace.mode,
        "manualGracePeriod": grace.days if isinstance(grace, ManualGracePeriod) else None,
    }
