"""
Waitlist: customers queue on a fully-booked slot; the scheduler watches the slot and offers it
to the first in line when it frees up.

- slots: monitored time windows (+/-30 min match), status, adaptive check interval.
- entries: per-slot queue ordered by priority; join, registration, claim, cancel, stats.
- tokens: single-use, expiring links ({FRONTEND_URL}/waitlist/{token}); only hashes stored.
"""
from app.services.waitlist import entries, slots, tokens
from app.services.waitlist.entries import JoinResult
from app.services.waitlist.slots import compute_check_interval
from app.services.waitlist.tokens import TokenContext, build_waitlist_url

__all__ = [
    "JoinResult",
    "TokenContext",
    "build_waitlist_url",
    "compute_check_interval",
    "entries",
    "slots",
    "tokens",
]
