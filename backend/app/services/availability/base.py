"""Protocol for availability probes (Google Calendar today). The scheduler only depends on this."""
from datetime import datetime
from typing import Protocol

from app.services.availability.types import AvailabilityResult


class AvailabilityProbe(Protocol):
    """Answers 'is this window free for this owner?'. Idempotent and side-effect free towards the calendar."""

    def check_availability(
        self,
        owner_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> AvailabilityResult:
        """Raise ProbeError when the answer is unknown (network, auth); never guess 'available'."""
        ...
