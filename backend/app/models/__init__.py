from app.models.waitlist_calendar_config import WaitlistCalendarConfig
from app.models.waitlist_entry import WaitlistEntry
from app.models.waitlist_slot import WaitlistSlot
from app.models.waitlist_token import WaitlistToken

__all__ = [
    "WaitlistCalendarConfig",
    "WaitlistEntry",
    "WaitlistSlot",
    "WaitlistToken",
]
