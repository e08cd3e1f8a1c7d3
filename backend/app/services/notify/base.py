"""Protocol for waitlist notifiers. The scheduler and entry queue only depend on this."""
from typing import Protocol

from app.models.waitlist_entry import WaitlistEntry
from app.models.waitlist_slot import WaitlistSlot


class Notifier(Protocol):
    """Fire-and-forget from the caller's side: raise NotifierError on failure, return the outbound message id."""

    def send_join_message(self, entry: WaitlistEntry, link: str) -> str | None:
        """'Your slot is full, join the waitlist' with the registration link."""
        ...

    def send_availability_message(self, entry: WaitlistEntry, slot: WaitlistSlot, link: str) -> str | None:
        """'A spot opened, confirm now' with the confirmation link."""
        ...
