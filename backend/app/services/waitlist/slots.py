"""
Slot registry: monitored time windows, their status, and the adaptive check interval.

Status transitions that decide whether anyone gets notified (mark_available, expire) are
compare-and-set UPDATEs filtered on the current status, so a timer fire racing a manual change
or a second fire sees rowcount 0 and backs off.
"""
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utc_now
from app.core.constants import (
    ACTIVE_SLOT_STATUSES,
    DEFAULT_SLOT_DURATION,
    ENTRY_EXPIRED,
    ENTRY_NOTIFIED,
    ENTRY_PENDING,
    SLOT_AVAILABLE,
    SLOT_EXPIRED,
    SLOT_MATCH_WINDOW,
    SLOT_MONITORING,
    SLOT_PENDING,
)
from app.core.waitlist_config import WAITLIST_INTERVAL_TIERS, IntervalTiers
from app.models.waitlist_entry import WaitlistEntry
from app.models.waitlist_slot import WaitlistSlot
from app.models.waitlist_token import WaitlistToken

logger = logging.getLogger(__name__)


def compute_check_interval(
    slot_start: datetime,
    now: datetime | None = None,
    tiers: IntervalTiers = WAITLIST_INTERVAL_TIERS,
) -> int:
    """Minutes until the next availability check. Closer slots poll more often; never increases as now advances."""
    now = now or utc_now()
    hours_until_slot = (as_utc(slot_start) - now).total_seconds() / 3600
    if hours_until_slot <= tiers.urgent_window_hours:
        return tiers.urgent_interval_minutes
    if hours_until_slot <= tiers.near_window_hours:
        return tiers.near_interval_minutes
    return tiers.far_interval_minutes


def slot_window(slot: WaitlistSlot) -> tuple[datetime, datetime]:
    """(start, end) in UTC; end defaults to start + 1h."""
    start = as_utc(slot.slot_start)
    end = as_utc(slot.slot_end) if slot.slot_end else start + DEFAULT_SLOT_DURATION
    return start, end


def get_slot(db: Session, slot_id: int) -> WaitlistSlot | None:
    return db.query(WaitlistSlot).filter(WaitlistSlot.id == slot_id).first()


def list_active_slots(db: Session) -> list[WaitlistSlot]:
    """Slots the scheduler is responsible for (pending or monitoring)."""
    return (
        db.query(WaitlistSlot)
        .filter(WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES))
        .order_by(WaitlistSlot.slot_start.asc())
        .all()
    )


def list_slots_by_owner(db: Session, owner_id: str) -> list[WaitlistSlot]:
    return (
        db.query(WaitlistSlot)
        .filter(WaitlistSlot.owner_id == owner_id)
        .order_by(WaitlistSlot.created_at.desc(), WaitlistSlot.id.desc())
        .all()
    )


def find_or_create(
    db: Session,
    owner_id: str,
    requested_start: datetime,
    label: str | None = None,
    *,
    slot_end: datetime | None = None,
    now: datetime | None = None,
) -> WaitlistSlot:
    """Reuse a non-terminal slot of this owner starting within +/-30 min, else create one pending."""
    now = now or utc_now()
    requested_start = as_utc(requested_start)
    existing = (
        db.query(WaitlistSlot)
        .filter(
            WaitlistSlot.owner_id == owner_id,
            WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES),
            WaitlistSlot.slot_start >= requested_start - SLOT_MATCH_WINDOW,
            WaitlistSlot.slot_start <= requested_start + SLOT_MATCH_WINDOW,
        )
        .order_by(WaitlistSlot.slot_start.asc(), WaitlistSlot.id.asc())
        .first()
    )
    if existing is not None:
        return existing
    slot = WaitlistSlot(
        owner_id=owner_id,
        slot_start=requested_start,
        slot_end=as_utc(slot_end) if slot_end else None,
        status=SLOT_PENDING,
        label=(label or "").strip() or None,
        check_interval_minutes=compute_check_interval(requested_start, now),
    )
    db.add(slot)
    db.commit()
    db.refresh(slot)
    logger.info("Waitlist slot %s created for owner %s at %s", slot.id, owner_id, requested_start.isoformat())
    return slot


def activate_monitoring(db: Session, slot_id: int, *, now: datetime | None = None) -> bool:
    """pending -> monitoring with next_check_at = now + interval. False if the slot was not pending."""
    now = now or utc_now()
    slot = get_slot(db, slot_id)
    if slot is None:
        return False
    interval = compute_check_interval(slot.slot_start, now)
    updated = (
        db.query(WaitlistSlot)
        .filter(WaitlistSlot.id == slot_id, WaitlistSlot.status == SLOT_PENDING)
        .update(
            {
                WaitlistSlot.status: SLOT_MONITORING,
                WaitlistSlot.check_interval_minutes: interval,
                WaitlistSlot.next_check_at: now + timedelta(minutes=interval),
                WaitlistSlot.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def mark_available(db: Session, slot_id: int, *, now: datetime | None = None) -> bool:
    """Compare-and-set pending/monitoring -> available. Exactly one caller per availability event gets True."""
    now = now or utc_now()
    updated = (
        db.query(WaitlistSlot)
        .filter(WaitlistSlot.id == slot_id, WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES))
        .update(
            {
                WaitlistSlot.status: SLOT_AVAILABLE,
                WaitlistSlot.next_check_at: None,
                WaitlistSlot.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def _expire_entries_for_slots(db: Session, slot_ids: list[int], now: datetime) -> int:
    """Pending entries, and notified entries whose response window closed, become expired."""
    if not slot_ids:
        return 0
    return (
        db.query(WaitlistEntry)
        .filter(
            WaitlistEntry.slot_id.in_(slot_ids),
            or_(
                WaitlistEntry.status == ENTRY_PENDING,
                and_(
                    WaitlistEntry.status == ENTRY_NOTIFIED,
                    WaitlistEntry.response_deadline.isnot(None),
                    WaitlistEntry.response_deadline < now,
                ),
            ),
        )
        .update(
            {WaitlistEntry.status: ENTRY_EXPIRED, WaitlistEntry.updated_at: now},
            synchronize_session=False,
        )
    )


def expire(db: Session, slot_id: int, *, now: datetime | None = None) -> bool:
    """Compare-and-set pending/monitoring -> expired, cascading to its waiting entries."""
    now = now or utc_now()
    updated = (
        db.query(WaitlistSlot)
        .filter(WaitlistSlot.id == slot_id, WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES))
        .update(
            {
                WaitlistSlot.status: SLOT_EXPIRED,
                WaitlistSlot.next_check_at: None,
                WaitlistSlot.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    entries_expired = _expire_entries_for_slots(db, [slot_id], now) if updated else 0
    db.commit()
    if updated:
        logger.info("Waitlist slot %s expired (%s entries expired)", slot_id, entries_expired)
    return updated == 1


def revert_to_pending(db: Session, slot_id: int, *, now: datetime | None = None) -> bool:
    """Nobody is waiting: back to pending with no scheduled check."""
    now = now or utc_now()
    updated = (
        db.query(WaitlistSlot)
        .filter(WaitlistSlot.id == slot_id, WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES))
        .update(
            {
                WaitlistSlot.status: SLOT_PENDING,
                WaitlistSlot.next_check_at: None,
                WaitlistSlot.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def record_check(db: Session, slot_id: int, *, now: datetime | None = None) -> None:
    now = now or utc_now()
    db.query(WaitlistSlot).filter(WaitlistSlot.id == slot_id).update(
        {WaitlistSlot.last_check_at: now, WaitlistSlot.updated_at: now},
        synchronize_session=False,
    )
    db.commit()


def schedule_next_check(
    db: Session,
    slot_id: int,
    interval_minutes: int,
    next_check_at: datetime,
    *,
    now: datetime | None = None,
) -> bool:
    """Persist the armed timer. An armed slot with waiters is monitoring; terminal slots are left alone."""
    now = now or utc_now()
    updated = (
        db.query(WaitlistSlot)
        .filter(WaitlistSlot.id == slot_id, WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES))
        .update(
            {
                WaitlistSlot.status: SLOT_MONITORING,
                WaitlistSlot.check_interval_minutes: interval_minutes,
                WaitlistSlot.next_check_at: next_check_at,
                WaitlistSlot.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def expire_past_slots(db: Session, *, now: datetime | None = None) -> list[int]:
    """Expire every pending/monitoring slot whose start has passed. Returns their ids."""
    now = now or utc_now()
    ids = [
        row.id
        for row in db.query(WaitlistSlot.id)
        .filter(WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES), WaitlistSlot.slot_start < now)
        .all()
    ]
    expired = [slot_id for slot_id in ids if expire(db, slot_id, now=now)]
    return expired


def sweep_expired(
    db: Session,
    retention: timedelta,
    *,
    now: datetime | None = None,
) -> list[int]:
    """
    Delete slots that started more than `retention` ago, with their entries and tokens.
    Entries still waiting are expired first so the cascade never deletes a live claim silently.
    Returns deleted slot ids.
    """
    now = now or utc_now()
    cutoff = now - retention
    slot_ids = [row.id for row in db.query(WaitlistSlot.id).filter(WaitlistSlot.slot_start < cutoff).all()]
    if not slot_ids:
        return []
    _expire_entries_for_slots(db, slot_ids, now)
    entry_ids = [row.id for row in db.query(WaitlistEntry.id).filter(WaitlistEntry.slot_id.in_(slot_ids)).all()]
    if entry_ids:
        db.query(WaitlistToken).filter(WaitlistToken.entry_id.in_(entry_ids)).delete(synchronize_session=False)
        db.query(WaitlistEntry).filter(WaitlistEntry.id.in_(entry_ids)).delete(synchronize_session=False)
    db.query(WaitlistSlot).filter(WaitlistSlot.id.in_(slot_ids)).delete(synchronize_session=False)
    db.commit()
    logger.info("Waitlist: purged %s slots older than %s", len(slot_ids), cutoff.isoformat())
    return slot_ids


def slot_to_dict(slot: WaitlistSlot) -> dict[str, Any]:
    start, end = slot_window(slot)
    return {
        "id": slot.id,
        "owner_id": slot.owner_id,
        "slot_start": start.isoformat(),
        "slot_end": end.isoformat(),
        "status": slot.status,
        "label": slot.label,
        "check_interval_minutes": slot.check_interval_minutes,
        "last_check_at": as_utc(slot.last_check_at).isoformat() if slot.last_check_at else None,
        "next_check_at": as_utc(slot.next_check_at).isoformat() if slot.next_check_at else None,
        "created_at": as_utc(slot.created_at).isoformat() if slot.created_at else None,
    }
