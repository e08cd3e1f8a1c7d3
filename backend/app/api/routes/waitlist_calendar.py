"""
Owner calendar connection for the waitlist availability probe.

Flow: /oauth/google/start -> Google consent -> /oauth/google/callback (tokens stored encrypted)
-> /calendars -> /select -> /toggle. Monitoring only runs for owners whose config is ready
(enabled, connected, calendar picked).
"""
import json
import logging
import time
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.api.routes.waitlist import _owner_id, get_waitlist_scheduler
from app.config import settings
from app.core.clock import as_utc, utc_now
from app.core.constants import ACTIVE_SLOT_STATUSES
from app.core.crypto import decrypt_secret, encrypt_secret
from app.core.errors import ProbeError, WaitlistError, waitlist_error_to_http
from app.db.session import get_db
from app.models.waitlist_calendar_config import WaitlistCalendarConfig
from app.scheduler.waitlist_scheduler import WaitlistScheduler
from app.services.availability.google_calendar import (
    GoogleCalendarClient,
    GoogleCalendarProbe,
    build_oauth_url,
    exchange_code,
)
from app.services.availability.registry import get_calendar_config
from app.services.waitlist import entries, slots

router = APIRouter()
logger = logging.getLogger(__name__)

# OAuth state is a Fernet token; Google must call back within this window
OAUTH_STATE_TTL_SECONDS = 600


def _redirect_uri(request: Request) -> str:
    return settings.google_redirect_uri or str(request.url_for("google_oauth_callback"))


def _dashboard_redirect(**params: str) -> RedirectResponse:
    query = "&".join(f"{k}={v}" for k, v in params.items())
    return RedirectResponse(f"{settings.frontend_url}/waitlist?{query}", status_code=302)


def _config_to_dict(config: WaitlistCalendarConfig | None) -> dict[str, Any]:
    if config is None:
        return {"config": None, "is_connected": False, "is_ready": False}
    return {
        "config": {
            "provider": config.provider,
            "calendar_id": config.calendar_id,
            "calendar_name": config.calendar_name,
            "is_enabled": bool(config.is_enabled),
            "last_sync_at": as_utc(config.last_sync_at).isoformat() if config.last_sync_at else None,
            "last_error": config.last_error,
        },
        "is_connected": config.is_connected(),
        "is_ready": config.is_ready(),
    }


def _require_config(db: Session, owner_id: str) -> WaitlistCalendarConfig:
    config = get_calendar_config(db, owner_id)
    if config is None or not config.is_connected():
        raise HTTPException(status_code=400, detail="Google Calendar is not connected")
    return config


def _sync_owner_timers(db: Session, owner_id: str, scheduler: WaitlistScheduler | None) -> None:
    """After a config change: arm slots that can now be probed, drop timers that cannot."""
    if scheduler is None:
        return
    config = get_calendar_config(db, owner_id)
    ready = config is not None and config.is_ready()
    for slot in slots.list_slots_by_owner(db, owner_id):
        if not ready:
            scheduler.clear_slot_timer(slot.id)
        elif slot.status in ACTIVE_SLOT_STATUSES and entries.count_pending(db, slot.id):
            scheduler.ensure_scheduled(slot.id)


@router.get("/config")
def get_config(db: Session = Depends(get_db), owner_id: str = Depends(_owner_id)) -> dict[str, Any]:
    return {"success": True, **_config_to_dict(get_calendar_config(db, owner_id))}


@router.get("/oauth/google/start")
def oauth_start(request: Request, owner_id: str = Depends(_owner_id)) -> dict[str, Any]:
    if not settings.google_client_id:
        raise HTTPException(status_code=503, detail="Google OAuth is not configured")
    state = encrypt_secret(json.dumps({"owner_id": owner_id, "ts": int(time.time())}))
    return {"success": True, "oauth_url": build_oauth_url(_redirect_uri(request), state)}


@router.get("/oauth/google/callback", name="google_oauth_callback")
def oauth_callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    db: Session = Depends(get_db),
    scheduler: WaitlistScheduler | None = Depends(get_waitlist_scheduler),
) -> RedirectResponse:
    if error:
        logger.warning("Google OAuth denied: %s", error)
        return _dashboard_redirect(calendar_error="oauth_denied")
    if not code or not state:
        return _dashboard_redirect(calendar_error="missing_params")
    raw_state = decrypt_secret(state, ttl=OAUTH_STATE_TTL_SECONDS)
    try:
        owner_id = (json.loads(raw_state or "") or {}).get("owner_id")
    except ValueError:
        owner_id = None
    if not owner_id:
        return _dashboard_redirect(calendar_error="invalid_state")

    try:
        token_body = exchange_code(code, _redirect_uri(request))
    except ProbeError as e:
        logger.warning("Google OAuth code exchange failed for owner %s: %s", owner_id, e)
        return _dashboard_redirect(calendar_error="token_exchange_failed")

    config = get_calendar_config(db, owner_id)
    if config is None:
        config = WaitlistCalendarConfig(owner_id=owner_id, provider="google_calendar", is_enabled=False)
        db.add(config)
    config.access_token = encrypt_secret(token_body["access_token"])
    # Google omits refresh_token on re-consent for some accounts; keep the previous one
    if token_body.get("refresh_token"):
        config.refresh_token = encrypt_secret(token_body["refresh_token"])
    config.token_expires_at = utc_now() + timedelta(seconds=int(token_body.get("expires_in") or 3600))
    config.last_error = None
    db.commit()
    logger.info("Google Calendar connected for owner %s", owner_id)
    _sync_owner_timers(db, owner_id, scheduler)
    return _dashboard_redirect(calendar_connected="true")


@router.get("/calendars")
def list_calendars(db: Session = Depends(get_db), owner_id: str = Depends(_owner_id)) -> dict[str, Any]:
    config = _require_config(db, owner_id)
    try:
        access_token = GoogleCalendarProbe(db, config).access_token()
        calendars = GoogleCalendarClient(access_token).list_calendars()
    except WaitlistError as e:
        raise waitlist_error_to_http(e)
    return {"success": True, "calendars": calendars}


class SelectCalendarRequest(BaseModel):
    calendar_id: str = Field(..., min_length=1, max_length=255)
    calendar_name: str | None = Field(None, max_length=255)


@router.post("/select")
def select_calendar(
    body: SelectCalendarRequest,
    db: Session = Depends(get_db),
    owner_id: str = Depends(_owner_id),
    scheduler: WaitlistScheduler | None = Depends(get_waitlist_scheduler),
) -> dict[str, Any]:
    config = _require_config(db, owner_id)
    config.calendar_id = body.calendar_id
    config.calendar_name = body.calendar_name
    config.is_enabled = True
    db.commit()
    _sync_owner_timers(db, owner_id, scheduler)
    return {"success": True, **_config_to_dict(config)}


class ToggleRequest(BaseModel):
    is_enabled: bool


@router.post("/toggle")
def toggle_calendar(
    body: ToggleRequest,
    db: Session = Depends(get_db),
    owner_id: str = Depends(_owner_id),
    scheduler: WaitlistScheduler | None = Depends(get_waitlist_scheduler),
) -> dict[str, Any]:
    config = get_calendar_config(db, owner_id)
    if config is None:
        raise HTTPException(status_code=404, detail="No calendar configuration")
    config.is_enabled = body.is_enabled
    db.commit()
    _sync_owner_timers(db, owner_id, scheduler)
    return {"success": True, **_config_to_dict(config)}


@router.post("/disconnect")
def disconnect_calendar(
    db: Session = Depends(get_db),
    owner_id: str = Depends(_owner_id),
    scheduler: WaitlistScheduler | None = Depends(get_waitlist_scheduler),
) -> dict[str, Any]:
    config = get_calendar_config(db, owner_id)
    if config is not None:
        config.access_token = None
        config.refresh_token = None
        config.token_expires_at = None
        config.calendar_id = None
        config.calendar_name = None
        config.is_enabled = False
        db.commit()
    _sync_owner_timers(db, owner_id, scheduler)
    return {"success": True}


@router.get("/check/{slot_id}")
def check_slot_now(
    slot_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(_owner_id),
) -> dict[str, Any]:
    """Ask the calendar about one slot without changing any waitlist state."""
    slot = slots.get_slot(db, slot_id)
    if slot is None or slot.owner_id != owner_id:
        raise HTTPException(status_code=404, detail="Slot not found")
    config = _require_config(db, owner_id)
    if not config.calendar_id:
        raise HTTPException(status_code=400, detail="No calendar selected")
    start, end = slots.slot_window(slot)
    try:
        result = GoogleCalendarProbe(db, config).check_availability(owner_id, start, end)
    except WaitlistError as e:
        raise waitlist_error_to_http(e)
    return {"success": True, "slot_id": slot_id, **result.to_dict()}
