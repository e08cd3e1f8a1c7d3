"""
Waitlist polling config. .env is the source of truth; these defaults apply only when
the env var is unset. All values read at import time.

Polling tiers (closer slot => shorter interval):
  - urgent: slot starts within WAITLIST_URGENT_WINDOW_HOURS   -> WAITLIST_URGENT_INTERVAL_MINUTES
  - near:   slot starts within WAITLIST_NEAR_WINDOW_HOURS     -> WAITLIST_NEAR_INTERVAL_MINUTES
  - far:    anything later                                    -> WAITLIST_FAR_INTERVAL_MINUTES

Env vars: WAITLIST_URGENT_WINDOW_HOURS, WAITLIST_URGENT_INTERVAL_MINUTES,
WAITLIST_NEAR_WINDOW_HOURS, WAITLIST_NEAR_INTERVAL_MINUTES, WAITLIST_FAR_INTERVAL_MINUTES,
WAITLIST_GLOBAL_CHECK_MINUTES, WAITLIST_RETENTION_DAYS (1-90), WAITLIST_DISPLAY_TIMEZONE.

Misordered values are clamped on load so windows and intervals stay monotonic.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load backend/.env so scripts/tests/workers that import this module see the same values as main.py
_backend_dir = Path(__file__).resolve().parent.parent.parent
load_dotenv(_backend_dir / ".env", override=False)

_log = logging.getLogger(__name__)


def _int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    raw = os.environ.get(key)
    if raw is None:
        v = default
    else:
        try:
            v = int(raw.strip())
        except ValueError:
            _log.warning("%s=%r is not an integer; using %s", key, raw, default)
            v = default
    if min_val is not None and v < min_val:
        v = min_val
    if max_val is not None and v > max_val:
        v = max_val
    return v


@dataclass(frozen=True)
class IntervalTiers:
    """Check-interval policy. Windows in hours, intervals in minutes."""

    urgent_window_hours: int = 6
    urgent_interval_minutes: int = 3
    near_window_hours: int = 24
    near_interval_minutes: int = 10
    far_interval_minutes: int = 30

    def normalized(self) -> "IntervalTiers":
        """Clamp so urgent window <= near window and urgent <= near <= far intervals."""
        near_window = max(self.near_window_hours, self.urgent_window_hours)
        near_interval = max(self.near_interval_minutes, self.urgent_interval_minutes)
        far_interval = max(self.far_interval_minutes, near_interval)
        return IntervalTiers(
            urgent_window_hours=self.urgent_window_hours,
            urgent_interval_minutes=self.urgent_interval_minutes,
            near_window_hours=near_window,
            near_interval_minutes=near_interval,
            far_interval_minutes=far_interval,
        )


def _load_tiers() -> IntervalTiers:
    raw = IntervalTiers(
        urgent_window_hours=_int("WAITLIST_URGENT_WINDOW_HOURS", 6, min_val=1, max_val=72),
        urgent_interval_minutes=_int("WAITLIST_URGENT_INTERVAL_MINUTES", 3, min_val=1, max_val=60),
        near_window_hours=_int("WAITLIST_NEAR_WINDOW_HOURS", 24, min_val=1, max_val=168),
        near_interval_minutes=_int("WAITLIST_NEAR_INTERVAL_MINUTES", 10, min_val=1, max_val=120),
        far_interval_minutes=_int("WAITLIST_FAR_INTERVAL_MINUTES", 30, min_val=1, max_val=240),
    )
    tiers = raw.normalized()
    if tiers != raw:
        _log.warning("Waitlist interval tiers were misordered; clamped to %s", tiers)
    return tiers


# -----------------------------------------------------------------------------
# Scheduler tiers and sweep cadence (set in .env; defaults below only when unset)
# -----------------------------------------------------------------------------
WAITLIST_INTERVAL_TIERS = _load_tiers()
WAITLIST_GLOBAL_CHECK_MINUTES = _int("WAITLIST_GLOBAL_CHECK_MINUTES", 15, min_val=1, max_val=240)
WAITLIST_RETENTION_DAYS = _int("WAITLIST_RETENTION_DAYS", 7, min_val=1, max_val=90)
# Timezone used when formatting slot times in SMS/email
WAITLIST_DISPLAY_TIMEZONE = os.environ.get("WAITLIST_DISPLAY_TIMEZONE", "UTC").strip() or "UTC"
