"""
Centralized constants for the waitlist scheduler and token store.

Change job IDs, TTLs or retention here instead of scattering literals across services and routes.
Polling tiers come from waitlist_config (env-driven).
"""
from datetime import timedelta

from app.core.waitlist_config import WAITLIST_GLOBAL_CHECK_MINUTES, WAITLIST_RETENTION_DAYS

# Scheduler job IDs (must match ids used by WaitlistScheduler)
WAITLIST_GLOBAL_CHECK_JOB_ID = "waitlist_global_check"
WAITLIST_SLOT_JOB_PREFIX = "waitlist_slot_"

GLOBAL_CHECK_INTERVAL_MINUTES = WAITLIST_GLOBAL_CHECK_MINUTES

# Slot lookup: an existing slot within +/- this window is reused for a new join
SLOT_MATCH_WINDOW = timedelta(minutes=30)
# Slot end when the caller does not give one
DEFAULT_SLOT_DURATION = timedelta(hours=1)

# Token lifetimes
REGISTRATION_TOKEN_TTL = timedelta(hours=2)
CONFIRMATION_TOKEN_TTL = timedelta(minutes=30)
# Time a notified customer has to confirm
RESPONSE_WINDOW = timedelta(minutes=30)

# Slots (and their entries/tokens) are deleted this long after slot start
SLOT_RETENTION = timedelta(days=WAITLIST_RETENTION_DAYS)

# Attempts at assigning a priority when two joins race on the same slot
PRIORITY_ASSIGN_ATTEMPTS = 3

# Status values
SLOT_PENDING = "pending"
SLOT_MONITORING = "monitoring"
SLOT_AVAILABLE = "available"
SLOT_EXPIRED = "expired"
ACTIVE_SLOT_STATUSES = (SLOT_PENDING, SLOT_MONITORING)

ENTRY_PENDING = "pending"
ENTRY_NOTIFIED = "notified"
ENTRY_CONFIRMED = "confirmed"
ENTRY_EXPIRED = "expired"
ENTRY_CANCELLED = "cancelled"

TOKEN_REGISTRATION = "registration"
TOKEN_CONFIRMATION = "confirmation"
TOKEN_PURPOSES = (TOKEN_REGISTRATION, TOKEN_CONFIRMATION)

DEFAULT_SOURCE = "voice_agent"
DEFAULT_LABEL = "Our venue"
