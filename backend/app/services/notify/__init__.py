"""
Outbound waitlist notifications. Callers depend on the Notifier protocol; get_notifier()
returns the SMS + email implementation configured from .env.
"""
from app.services.notify.base import Notifier
from app.services.notify.waitlist_notifier import WaitlistNotifier


def get_notifier() -> Notifier:
    return WaitlistNotifier()


__all__ = ["Notifier", "WaitlistNotifier", "get_notifier"]
