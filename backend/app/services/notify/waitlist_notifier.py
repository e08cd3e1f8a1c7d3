"""
Waitlist messages: SMS first (Twilio), email as a second channel when the entry has one.

A send counts as delivered if any channel went through; NotifierError only when every
configured channel failed (or none is configured).
"""
import logging
from zoneinfo import ZoneInfo

from app.core.clock import as_utc
from app.core.constants import DEFAULT_LABEL, RESPONSE_WINDOW
from app.core.errors import NotifierError
from app.core.waitlist_config import WAITLIST_DISPLAY_TIMEZONE
from app.models.waitlist_entry import WaitlistEntry
from app.models.waitlist_slot import WaitlistSlot
from app.services.notify.email_notify import is_email_configured, send_email
from app.services.notify.sms import TwilioSmsClient

logger = logging.getLogger(__name__)


def format_slot_time(value) -> str:
    """e.g. 'Fri 14 Mar, 20:00' in WAITLIST_DISPLAY_TIMEZONE."""
    local = as_utc(value).astimezone(ZoneInfo(WAITLIST_DISPLAY_TIMEZONE))
    return local.strftime("%a %d %b, %H:%M")


def join_message(entry: WaitlistEntry, link: str) -> str:
    label = (entry.slot.label if entry.slot is not None else None) or DEFAULT_LABEL
    return (
        f"{label}\n\n"
        f"Your requested time ({format_slot_time(entry.requested_time)}) is fully booked.\n\n"
        f"Join the waitlist:\n{link}"
    )


def availability_message(entry: WaitlistEntry, slot: WaitlistSlot, link: str) -> str:
    label = slot.label or DEFAULT_LABEL
    minutes = int(RESPONSE_WINDOW.total_seconds() // 60)
    return (
        f"Good news {entry.first_name}! A spot just opened at {label} "
        f"({format_slot_time(slot.slot_start)}, party of {entry.party_size}).\n\n"
        f"Confirm within {minutes} minutes:\n{link}"
    )


class WaitlistNotifier:
    """Notifier implementation used in production (see app.services.notify.get_notifier)."""

    def __init__(self, sms: TwilioSmsClient | None = None, *, email_enabled: bool | None = None) -> None:
        self._sms = sms if sms is not None else TwilioSmsClient()
        self._email_enabled = is_email_configured() if email_enabled is None else email_enabled

    def _deliver(self, entry: WaitlistEntry, subject: str, body: str) -> str | None:
        errors: list[str] = []
        message_id = None
        delivered = False
        if self._sms.is_configured():
            try:
                message_id = self._sms.send_sms(entry.phone, body)
                delivered = True
            except NotifierError as e:
                logger.warning("Waitlist entry %s: SMS failed: %s", entry.id, e)
                errors.append(str(e))
        if self._email_enabled and entry.email:
            if send_email(entry.email, subject, body):
                delivered = True
            else:
                errors.append(f"email to {entry.email} failed")
        if not delivered:
            raise NotifierError("; ".join(errors) or "No notification channel configured (Twilio or SMTP).")
        return message_id

    def send_join_message(self, entry: WaitlistEntry, link: str) -> str | None:
        return self._deliver(entry, "You're on the waitlist", join_message(entry, link))

    def send_availability_message(self, entry: WaitlistEntry, slot: WaitlistSlot, link: str) -> str | None:
        return self._deliver(entry, "A spot just opened", availability_message(entry, slot, link))
