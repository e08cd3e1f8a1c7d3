"""Normalized probe result. Same shape whatever calendar backs the owner."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.core.clock import utc_now


@dataclass
class AvailabilityResult:
    is_available: bool
    conflicts: list[dict[str, Any]] = field(default_factory=list)  # provider events overlapping the window
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_available": self.is_available,
            "conflicts": self.conflicts,
            "checked_at": self.checked_at.isoformat(),
        }
