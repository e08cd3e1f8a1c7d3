"""
Waitlist API.

Public (token in the URL): read the entry behind a link, complete registration, claim a freed slot.
Voice agent / automation (X-API-Key = WAITLIST_API_KEY): put a caller on the waitlist.
Owner dashboard (X-Owner-Id header or ?owner_id=): slots, entries, stats, cancel, delete.
Cron (X-API-Key = WAITLIST_CRON_API_KEY): run the global check when timers are external.
"""
import logging
import secrets
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import as_utc
from app.core.errors import WaitlistError, waitlist_error_to_http
from app.db.session import get_db
from app.scheduler.waitlist_scheduler import WaitlistScheduler
from app.services.notify import Notifier, get_notifier
from app.services.waitlist import entries, slots, tokens

router = APIRouter()
logger = logging.getLogger(__name__)


def _owner_id(
    x_owner_id: str | None = Header(None, alias="X-Owner-Id"),
    owner_id: str | None = Query(None),
) -> str:
    value = (x_owner_id or owner_id or "").strip()
    if not value:
        raise HTTPException(status_code=401, detail="Owner id required (X-Owner-Id header or owner_id query)")
    return value


def _check_key(provided: str | None, expected: str) -> None:
    if not expected:
        raise HTTPException(status_code=503, detail="API key not configured on this server")
    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")) -> None:
    _check_key(x_api_key, settings.waitlist_api_key)


def require_cron_key(x_api_key: str | None = Header(None, alias="X-API-Key")) -> None:
    _check_key(x_api_key, settings.waitlist_cron_api_key)


def get_waitlist_scheduler(request: Request) -> WaitlistScheduler | None:
    return getattr(request.app.state, "waitlist_scheduler", None)


def get_waitlist_notifier(request: Request) -> Notifier:
    return getattr(request.app.state, "waitlist_notifier", None) or get_notifier()


# --- Public (token) ---


@router.get("/token/{token}")
def get_entry_by_token(token: str, db: Session = Depends(get_db)) -> dict[str, Any]:
    """Data for the public waitlist page. Minimal: no owner internals, no other customers."""
    try:
        ctx = tokens.resolve(db, token)
    except WaitlistError as e:
        raise waitlist_error_to_http(e)
    entry, slot = ctx.entry, ctx.slot
    start, end = slots.slot_window(slot)
    return {
        "success": True,
        "data": {
            "purpose": ctx.token.purpose,
            "status": entry.status,
            "first_name": entry.first_name,
            "last_name": entry.last_name,
            "phone": entry.phone,
            "email": entry.email,
            "requested_time": as_utc(entry.requested_time).isoformat() if entry.requested_time else None,
            "alternative_times": list(entry.alternative_times or []),
            "party_size": entry.party_size,
            "label": slot.label,
            "slot_start": start.isoformat(),
            "slot_end": end.isoformat(),
            "response_deadline": as_utc(entry.response_deadline).isoformat() if entry.response_deadline else None,
        },
    }


class ConfirmRegistrationRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=120)
    last_name: str = Field("", max_length=120)
    phone: str = Field(..., min_length=4, max_length=32)
    email: str | None = Field(None, max_length=255)
    selected_slots: list[datetime] = Field(default_factory=list, max_length=10)


@router.post("/confirm/{token}")
def confirm_registration(
    token: str,
    body: ConfirmRegistrationRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    try:
        entry = entries.confirm_registration(
            db,
            token,
            first_name=body.first_name,
            last_name=body.last_name,
            phone=body.phone,
            email=body.email,
            selected_slots=body.selected_slots,
        )
    except WaitlistError as e:
        raise waitlist_error_to_http(e)
    return {"success": True, "message": "Registration confirmed", "entry_id": entry.id}


@router.post("/claim/{token}")
def claim_slot(token: str, db: Session = Depends(get_db)) -> dict[str, Any]:
    """Notified customer accepts the freed slot."""
    try:
        entry = entries.confirm_claim(db, token)
    except WaitlistError as e:
        raise waitlist_error_to_http(e)
    return {"success": True, "message": "Slot confirmed", "entry_id": entry.id, "status": entry.status}


# --- Voice agent / automation ---


class TriggerRequest(BaseModel):
    owner_id: str | None = Field(None, description="Falls back to X-Owner-Id")
    requested_time: datetime
    slot_end: datetime | None = None
    phone: str = Field(..., min_length=4, max_length=32)
    first_name: str | None = Field(None, max_length=120)
    last_name: str | None = Field(None, max_length=120)
    email: str | None = Field(None, max_length=255)
    party_size: int = Field(1, ge=1, le=50)
    alternative_times: list[datetime] = Field(default_factory=list, max_length=10)
    source: str | None = Field(None, max_length=50)
    label: str | None = Field(None, max_length=255)


@router.post("/trigger", dependencies=[Depends(require_api_key)])
def trigger_waitlist(
    body: TriggerRequest,
    db: Session = Depends(get_db),
    x_owner_id: str | None = Header(None, alias="X-Owner-Id"),
    scheduler: WaitlistScheduler | None = Depends(get_waitlist_scheduler),
    notifier: Notifier = Depends(get_waitlist_notifier),
) -> dict[str, Any]:
    """Caller could not be booked: queue them and start watching the slot."""
    owner_id = (body.owner_id or x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=400, detail="owner_id is required")
    try:
        result = entries.join(
            db,
            owner_id,
            body.requested_time,
            body.phone,
            first_name=body.first_name,
            last_name=body.last_name,
            email=body.email,
            alternatives=body.alternative_times,
            party_size=body.party_size,
            source=body.source,
            label=body.label,
            slot_end=body.slot_end,
            notifier=notifier,
        )
    except WaitlistError as e:
        raise waitlist_error_to_http(e)
    if scheduler is not None:
        scheduler.schedule_slot_check(result.slot.id)
    return {
        "success": True,
        "entry_id": result.entry.id,
        "slot_id": result.slot.id,
        "priority": result.entry.priority,
        "waitlist_url": result.waitlist_url,
    }


# --- Owner dashboard ---


@router.get("/slots")
def list_slots(db: Session = Depends(get_db), owner_id: str = Depends(_owner_id)) -> dict[str, Any]:
    rows = slots.list_slots_by_owner(db, owner_id)
    return {"success": True, "data": [slots.slot_to_dict(s) for s in rows]}


@router.get("/slots/{slot_id}/entries")
def list_slot_entries(
    slot_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(_owner_id),
) -> dict[str, Any]:
    slot = slots.get_slot(db, slot_id)
    if slot is None or slot.owner_id != owner_id:
        raise HTTPException(status_code=404, detail="Slot not found")
    return {"success": True, "data": [entries.entry_to_dict(e) for e in entries.list_by_slot(db, slot_id)]}


@router.get("/entries")
def list_entries(db: Session = Depends(get_db), owner_id: str = Depends(_owner_id)) -> dict[str, Any]:
    rows = entries.list_by_owner(db, owner_id)
    return {"success": True, "data": [entries.entry_to_dict(e, include_slot=True) for e in rows]}


@router.get("/stats")
def get_stats(db: Session = Depends(get_db), owner_id: str = Depends(_owner_id)) -> dict[str, Any]:
    stats = entries.get_stats(db, owner_id)
    return {
        "success": True,
        "data": {
            "totalEntries": stats["total_entries"],
            "pendingEntries": stats["pending_entries"],
            "confirmedEntries": stats["confirmed_entries"],
            "activeSlots": stats["active_slots"],
            "conversionRate": stats["conversion_rate"],
        },
    }


def _owned_entry(db: Session, entry_id: int, owner_id: str):
    try:
        entry = entries.get_entry(db, entry_id)
    except WaitlistError as e:
        raise waitlist_error_to_http(e)
    if entry.owner_id != owner_id:
        raise HTTPException(status_code=404, detail="Entry not found")
    return entry


@router.post("/entries/{entry_id}/cancel")
def cancel_entry(
    entry_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(_owner_id),
) -> dict[str, Any]:
    _owned_entry(db, entry_id, owner_id)
    entry = entries.cancel(db, entry_id)
    return {"success": True, "data": entries.entry_to_dict(entry)}


@router.delete("/entries/{entry_id}")
def delete_entry(
    entry_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(_owner_id),
) -> dict[str, Any]:
    _owned_entry(db, entry_id, owner_id)
    entries.delete_entry(db, entry_id)
    return {"success": True}


# --- Cron / health ---


@router.post("/cron/check", dependencies=[Depends(require_cron_key)])
def cron_check(scheduler: WaitlistScheduler | None = Depends(get_waitlist_scheduler)) -> dict[str, Any]:
    """External trigger for the global check (WAITLIST_INTERNAL_SCHEDULER=false deployments)."""
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Waitlist scheduler not available")
    result = scheduler.run_global_check()
    return {"success": True, "data": result.to_dict()}


@router.get("/health")
def waitlist_health(scheduler: WaitlistScheduler | None = Depends(get_waitlist_scheduler)) -> dict[str, Any]:
    return {
        "status": "ok",
        "scheduler": {
            "internal": bool(scheduler and scheduler.internal),
            "initialized": bool(scheduler and scheduler.initialized),
            "active_timers": scheduler.active_timer_count() if scheduler else 0,
        },
    }
