"""
Single source of truth for database tables that exist after migrations (001-002).

Use these names when writing raw SQL (e.g. TRUNCATE). Order is child-first so DELETE/TRUNCATE
respects foreign keys.
"""
# All tables that exist in the DB. Must match models and migrations.
ALL_TABLE_NAMES = (
    "waitlist_tokens",
    "waitlist_entries",
    "waitlist_slots",
    "waitlist_calendar_configs",
)

# Tables cleared when resetting waitlist state (calendar connections are kept).
WAITLIST_TABLE_NAMES = (
    "waitlist_tokens",
    "waitlist_entries",
    "waitlist_slots",
)
