from app.services.availability.base import AvailabilityProbe
from app.services.availability.registry import get_calendar_config, resolve_probe
from app.services.availability.types import AvailabilityResult

__all__ = ["AvailabilityProbe", "AvailabilityResult", "get_calendar_config", "resolve_probe"]
