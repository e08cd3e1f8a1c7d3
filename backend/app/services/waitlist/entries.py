"""
Entry queue: customers waiting on a slot, in join order.

priority is the queue position inside a slot (1, 2, 3, ...). It is assigned as max(priority) + 1
under a (slot_id, priority) unique constraint, so positions never repeat even after earlier
entries were notified or cancelled. The lowest-priority pending entry is the next claimant.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import as_utc, utc_now
from app.core.constants import (
    ACTIVE_SLOT_STATUSES,
    DEFAULT_SOURCE,
    ENTRY_CANCELLED,
    ENTRY_CONFIRMED,
    ENTRY_EXPIRED,
    ENTRY_NOTIFIED,
    ENTRY_PENDING,
    PRIORITY_ASSIGN_ATTEMPTS,
    REGISTRATION_TOKEN_TTL,
    SLOT_PENDING,
    TOKEN_CONFIRMATION,
    TOKEN_REGISTRATION,
)
from app.core.errors import NotFound, NotifierError, ValidationError, WaitlistError
from app.models.waitlist_entry import WaitlistEntry
from app.models.waitlist_slot import WaitlistSlot
from app.models.waitlist_token import WaitlistToken
from app.services.notify.base import Notifier
from app.services.waitlist import slots as slot_registry
from app.services.waitlist import tokens as token_store

logger = logging.getLogger(__name__)

_E164 = re.compile(r"^\+\d{10,15}$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class JoinResult:
    entry: WaitlistEntry
    slot: WaitlistSlot
    token: str
    waitlist_url: str


def normalize_phone(phone: str | None, country_code: str | None = None) -> str:
    """
    E.164 or ValidationError. Accepts '+33612345678', '0612345678' (national, 10 digits, uses
    DEFAULT_PHONE_COUNTRY_CODE) and '33612345678' (country code without +).
    """
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if not cleaned:
        raise ValidationError("Phone number is required.")
    if not cleaned.startswith("+"):
        country_code = (country_code or settings.default_phone_country_code).lstrip("+")
        if cleaned.startswith("0") and len(cleaned) == 10:
            cleaned = f"+{country_code}{cleaned[1:]}"
        elif len(cleaned) >= 11:
            cleaned = "+" + cleaned
    if not _E164.match(cleaned):
        raise ValidationError(f"Invalid phone number: {phone!r}")
    return cleaned


def _clean_email(email: str | None) -> str | None:
    email = (email or "").strip()
    if not email:
        return None
    if not _EMAIL.match(email):
        raise ValidationError(f"Invalid email: {email!r}")
    return email


def _iso_list(values: list[datetime] | None) -> list[str]:
    return [as_utc(v).isoformat() for v in (values or [])]


def get_entry(db: Session, entry_id: int) -> WaitlistEntry:
    row = db.query(WaitlistEntry).filter(WaitlistEntry.id == entry_id).first()
    if row is None:
        raise NotFound(f"Waitlist entry {entry_id} not found.")
    return row


def _next_priority(db: Session, slot_id: int) -> int:
    current = db.query(func.max(WaitlistEntry.priority)).filter(WaitlistEntry.slot_id == slot_id).scalar()
    return (current or 0) + 1


def _insert_entry(db: Session, slot: WaitlistSlot, **fields: Any) -> WaitlistEntry:
    """Insert at the back of the queue; retries when a concurrent join took the same position."""
    for attempt in range(1, PRIORITY_ASSIGN_ATTEMPTS + 1):
        entry = WaitlistEntry(
            slot_id=slot.id,
            owner_id=slot.owner_id,
            status=ENTRY_PENDING,
            priority=_next_priority(db, slot.id),
            **fields,
        )
        db.add(entry)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Waitlist slot %s: priority collision on attempt %s, retrying", slot.id, attempt)
            continue
        db.refresh(entry)
        return entry
    raise WaitlistError(f"Could not assign a queue position on slot {slot.id}.")


def join(
    db: Session,
    owner_id: str,
    requested_time: datetime,
    phone: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    email: str | None = None,
    alternatives: list[datetime] | None = None,
    party_size: int = 1,
    source: str | None = None,
    label: str | None = None,
    slot_end: datetime | None = None,
    notifier: Notifier | None = None,
    now: datetime | None = None,
) -> JoinResult:
    """
    Put a customer on the waitlist for owner's slot at requested_time.

    Finds or creates the slot (+/-30 min match), queues the entry, issues a 2-hour registration
    token, switches the slot to monitoring if it was idle, and sends the join message. A failed
    send is logged; the entry and token are kept.
    """
    owner_id = (owner_id or "").strip()
    if not owner_id:
        raise ValidationError("owner_id is required.")
    if party_size < 1:
        raise ValidationError("party_size must be at least 1.")
    phone = normalize_phone(phone)
    email = _clean_email(email)
    now = now or utc_now()

    slot = slot_registry.find_or_create(db, owner_id, requested_time, label, slot_end=slot_end, now=now)
    entry = _insert_entry(
        db,
        slot,
        first_name=(first_name or "").strip() or "Client",
        last_name=(last_name or "").strip(),
        phone=phone,
        email=email,
        requested_time=as_utc(requested_time),
        alternative_times=_iso_list(alternatives),
        party_size=party_size,
        source=(source or "").strip() or DEFAULT_SOURCE,
    )
    raw_token, _ = token_store.issue(db, entry.id, TOKEN_REGISTRATION, REGISTRATION_TOKEN_TTL, now=now)
    waitlist_url = token_store.build_waitlist_url(raw_token)

    if slot.status == SLOT_PENDING:
        slot_registry.activate_monitoring(db, slot.id, now=now)

    if notifier is not None:
        try:
            message_id = notifier.send_join_message(entry, waitlist_url)
        except NotifierError as e:
            logger.warning("Waitlist entry %s: join message failed: %s", entry.id, e)
        except Exception:
            logger.exception("Waitlist entry %s: join message failed", entry.id)
        else:
            if message_id:
                entry.message_id = message_id
                db.commit()

    db.refresh(slot)
    db.refresh(entry)
    logger.info("Waitlist entry %s created for slot %s (priority %s)", entry.id, slot.id, entry.priority)
    return JoinResult(entry=entry, slot=slot, token=raw_token, waitlist_url=waitlist_url)


def count_pending(db: Session, slot_id: int) -> int:
    return (
        db.query(WaitlistEntry)
        .filter(WaitlistEntry.slot_id == slot_id, WaitlistEntry.status == ENTRY_PENDING)
        .count()
    )


def next_claimant(db: Session, slot_id: int) -> WaitlistEntry | None:
    """Lowest-priority pending entry for the slot (earliest join still waiting)."""
    return (
        db.query(WaitlistEntry)
        .filter(WaitlistEntry.slot_id == slot_id, WaitlistEntry.status == ENTRY_PENDING)
        .order_by(WaitlistEntry.priority.asc())
        .first()
    )


def mark_notified(
    db: Session,
    entry_id: int,
    response_deadline: datetime,
    *,
    now: datetime | None = None,
) -> bool:
    """Compare-and-set pending -> notified. False if someone else already moved the entry."""
    now = now or utc_now()
    updated = (
        db.query(WaitlistEntry)
        .filter(WaitlistEntry.id == entry_id, WaitlistEntry.status == ENTRY_PENDING)
        .update(
            {
                WaitlistEntry.status: ENTRY_NOTIFIED,
                WaitlistEntry.notified_at: now,
                WaitlistEntry.response_deadline: response_deadline,
                WaitlistEntry.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def set_message_id(db: Session, entry_id: int, message_id: str) -> None:
    db.query(WaitlistEntry).filter(WaitlistEntry.id == entry_id).update(
        {WaitlistEntry.message_id: message_id}, synchronize_session=False
    )
    db.commit()


def confirm_registration(
    db: Session,
    raw_token: str,
    *,
    first_name: str,
    last_name: str,
    phone: str,
    email: str | None = None,
    selected_slots: list[datetime] | None = None,
    now: datetime | None = None,
) -> WaitlistEntry:
    """Customer completed the join form: update contact/preferences and burn the registration token."""
    phone = normalize_phone(phone)
    email = _clean_email(email)
    now = now or utc_now()
    ctx = token_store.resolve(db, raw_token, purpose=TOKEN_REGISTRATION, now=now)
    token_store.consume(db, ctx.token.id, now=now, commit=False)
    entry = ctx.entry
    entry.first_name = (first_name or "").strip() or entry.first_name
    entry.last_name = (last_name or "").strip()
    entry.phone = phone
    entry.email = email
    entry.alternative_times = _iso_list(selected_slots)
    entry.updated_at = now
    db.commit()
    db.refresh(entry)
    logger.info("Waitlist registration confirmed for entry %s", entry.id)
    return entry


def confirm_claim(db: Session, raw_token: str, *, now: datetime | None = None) -> WaitlistEntry:
    """Notified customer takes the freed slot: notified -> confirmed before the response deadline."""
    now = now or utc_now()
    ctx = token_store.resolve(db, raw_token, purpose=TOKEN_CONFIRMATION, now=now)
    entry = ctx.entry
    if entry.status != ENTRY_NOTIFIED:
        raise ValidationError(f"This offer is no longer open (entry is {entry.status}).")
    deadline = as_utc(entry.response_deadline)
    if deadline is not None and deadline <= now:
        mark_expired(db, entry.id, now=now)
        raise ValidationError("The response window for this offer has closed.")
    token_store.consume(db, ctx.token.id, now=now, commit=False)
    updated = (
        db.query(WaitlistEntry)
        .filter(WaitlistEntry.id == entry.id, WaitlistEntry.status == ENTRY_NOTIFIED)
        .update(
            {WaitlistEntry.status: ENTRY_CONFIRMED, WaitlistEntry.updated_at: now},
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        raise ValidationError("This offer is no longer open.")
    db.commit()
    db.refresh(entry)
    logger.info("Waitlist entry %s confirmed the freed slot %s", entry.id, entry.slot_id)
    return entry


def cancel(db: Session, entry_id: int, *, now: datetime | None = None) -> WaitlistEntry:
    """Customer/operator cancellation. Idempotent; expired entries stay expired."""
    now = now or utc_now()
    entry = get_entry(db, entry_id)
    if entry.status in (ENTRY_CANCELLED, ENTRY_EXPIRED):
        return entry
    entry.status = ENTRY_CANCELLED
    entry.updated_at = now
    db.commit()
    db.refresh(entry)
    logger.info("Waitlist entry %s cancelled", entry_id)
    return entry


def mark_expired(db: Session, entry_id: int, *, now: datetime | None = None) -> WaitlistEntry:
    """pending/notified -> expired. Idempotent; confirmed and cancelled entries are left as they are."""
    now = now or utc_now()
    entry = get_entry(db, entry_id)
    if entry.status in (ENTRY_PENDING, ENTRY_NOTIFIED):
        entry.status = ENTRY_EXPIRED
        entry.updated_at = now
        db.commit()
        db.refresh(entry)
    return entry


def delete_entry(db: Session, entry_id: int) -> None:
    get_entry(db, entry_id)
    db.query(WaitlistToken).filter(WaitlistToken.entry_id == entry_id).delete(synchronize_session=False)
    db.query(WaitlistEntry).filter(WaitlistEntry.id == entry_id).delete(synchronize_session=False)
    db.commit()


def expire_stale_notifications(db: Session, *, now: datetime | None = None) -> int:
    """Notified entries whose response window closed without a confirmation become expired."""
    now = now or utc_now()
    updated = (
        db.query(WaitlistEntry)
        .filter(
            WaitlistEntry.status == ENTRY_NOTIFIED,
            WaitlistEntry.response_deadline.isnot(None),
            WaitlistEntry.response_deadline < now,
        )
        .update(
            {WaitlistEntry.status: ENTRY_EXPIRED, WaitlistEntry.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    if updated:
        logger.info("Waitlist: %s notified entries passed their response deadline", updated)
    return updated


def list_by_slot(db: Session, slot_id: int) -> list[WaitlistEntry]:
    return (
        db.query(WaitlistEntry)
        .filter(WaitlistEntry.slot_id == slot_id)
        .order_by(WaitlistEntry.priority.asc())
        .all()
    )


def list_by_owner(db: Session, owner_id: str) -> list[WaitlistEntry]:
    return (
        db.query(WaitlistEntry)
        .filter(WaitlistEntry.owner_id == owner_id)
        .order_by(WaitlistEntry.created_at.desc(), WaitlistEntry.id.desc())
        .all()
    )


def get_stats(db: Session, owner_id: str) -> dict[str, Any]:
    """Dashboard counters for one owner. conversion_rate is a percentage rounded to one decimal."""
    counts = dict(
        db.query(WaitlistEntry.status, func.count(WaitlistEntry.id))
        .filter(WaitlistEntry.owner_id == owner_id)
        .group_by(WaitlistEntry.status)
        .all()
    )
    total = sum(counts.values())
    confirmed = counts.get(ENTRY_CONFIRMED, 0)
    active_slots = (
        db.query(WaitlistSlot)
        .filter(WaitlistSlot.owner_id == owner_id, WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES))
        .count()
    )
    return {
        "total_entries": total,
        "pending_entries": counts.get(ENTRY_PENDING, 0),
        "confirmed_entries": confirmed,
        "active_slots": active_slots,
        "conversion_rate": round(confirmed / total * 100, 1) if total else 0.0,
    }


def entry_to_dict(entry: WaitlistEntry, *, include_slot: bool = False) -> dict[str, Any]:
    out = {
        "id": entry.id,
        "slot_id": entry.slot_id,
        "owner_id": entry.owner_id,
        "first_name": entry.first_name,
        "last_name": entry.last_name,
        "phone": entry.phone,
        "email": entry.email,
        "requested_time": as_utc(entry.requested_time).isoformat() if entry.requested_time else None,
        "alternative_times": list(entry.alternative_times or []),
        "party_size": entry.party_size,
        "status": entry.status,
        "priority": entry.priority,
        "source": entry.source,
        "notified_at": as_utc(entry.notified_at).isoformat() if entry.notified_at else None,
        "response_deadline": as_utc(entry.response_deadline).isoformat() if entry.response_deadline else None,
        "created_at": as_utc(entry.created_at).isoformat() if entry.created_at else None,
    }
    if include_slot and entry.slot is not None:
        out["slot"] = slot_registry.slot_to_dict(entry.slot)
    return out
