"""Business-hours evaluation."""

from datetime import datetime
from zoneinfo import ZoneInfo

from wacore.clock import as_utc

from wa_integration.policy.config import BusinessHours


def is_within_business_hours(hours: BusinessHours, now: datetime) -> bool:
    """
    Check whether `now` falls inside the window of its local weekday.

    Evaluated at minute resolution in the policy timezone; both the start and
    the end minute are inside the window. A weekday without a window is closed.
    """
    local = as_utc(now).astimezone(ZoneInfo(hours.timezone))
    window = hours.window_for(local.weekday())
    if window is None:
        return False
    return window.contains(local.hour * 60 + local.minute)
