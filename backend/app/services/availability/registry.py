"""
Resolve the availability probe for an owner. One factory per calendar provider;
owners without a ready config get None and are not polled.
"""
import logging
from typing import Callable

from sqlalchemy.orm import Session

from app.models.waitlist_calendar_config import WaitlistCalendarConfig
from app.services.availability.base import AvailabilityProbe
from app.services.availability.google_calendar import GoogleCalendarProbe

logger = logging.getLogger(__name__)

ProbeFactory = Callable[[Session, WaitlistCalendarConfig], AvailabilityProbe]

_factories: dict[str, ProbeFactory] = {}


def register(provider: str, factory: ProbeFactory) -> None:
    _factories[provider] = factory


def get_calendar_config(db: Session, owner_id: str) -> WaitlistCalendarConfig | None:
    return db.query(WaitlistCalendarConfig).filter(WaitlistCalendarConfig.owner_id == owner_id).first()


def resolve_probe(db: Session, owner_id: str) -> AvailabilityProbe | None:
    config = get_calendar_config(db, owner_id)
    if config is None or not config.is_ready():
        return None
    factory = _factories.get(config.provider)
    if factory is None:
        logger.warning("No availability probe for provider %r (owner %s)", config.provider, owner_id)
        return None
    return factory(db, config)


register("google_calendar", GoogleCalendarProbe)
