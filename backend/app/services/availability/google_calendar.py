"""
Google Calendar availability probe.

OAuth helpers (consent URL, code exchange, refresh) plus a thin Calendar v3 client over httpx.
A window is free when no non-cancelled event overlaps it. Any failure to get an answer raises
ProbeError; the scheduler treats that as "not available" and keeps polling.
"""
import logging
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import as_utc, utc_now
from app.core.crypto import decrypt_secret, encrypt_secret
from app.core.errors import ProbeError
from app.models.waitlist_calendar_config import WaitlistCalendarConfig
from app.services.availability.types import AvailabilityResult

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events.readonly",
)
# Refresh a little before Google says the token dies
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_TIMEOUT = 15.0


def build_oauth_url(redirect_uri: str, state: str) -> str:
    """Consent URL; offline access + forced prompt so Google always returns a refresh token."""
    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(CALENDAR_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def _token_request(data: dict[str, str], transport: httpx.BaseTransport | None = None) -> dict[str, Any]:
    if not settings.google_client_id or not settings.google_client_secret:
        raise ProbeError("GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET are not configured")
    payload = {
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
        **data,
    }
    try:
        with httpx.Client(timeout=DEFAULT_TIMEOUT, transport=transport) as client:
            r = client.post(GOOGLE_TOKEN_URL, data=payload)
    except httpx.HTTPError as e:
        raise ProbeError(f"Google token endpoint unreachable: {e}") from e
    if r.status_code != 200:
        logger.warning("Google token request failed: %s %s", r.status_code, r.text[:300])
        raise ProbeError(f"Google token request failed ({r.status_code})")
    body = r.json()
    if not body.get("access_token"):
        raise ProbeError("Google token response has no access_token")
    return body


def exchange_code(code: str, redirect_uri: str, *, transport: httpx.BaseTransport | None = None) -> dict[str, Any]:
    """Authorization code -> {access_token, refresh_token, expires_in, ...}."""
    return _token_request(
        {"code": code, "redirect_uri": redirect_uri, "grant_type": "authorization_code"},
        transport=transport,
    )


def refresh_access_token(refresh_token: str, *, transport: httpx.BaseTransport | None = None) -> dict[str, Any]:
    return _token_request(
        {"refresh_token": refresh_token, "grant_type": "refresh_token"},
        transport=transport,
    )


def _rfc3339(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


class GoogleCalendarClient:
    """Read-only Calendar v3 calls with one access token."""

    def __init__(
        self,
        access_token: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self._access_token = access_token
        self._timeout = timeout
        self._transport = transport

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                r = client.get(f"{GOOGLE_CALENDAR_API}{path}", params=params, headers=headers)
        except httpx.HTTPError as e:
            raise ProbeError(f"Google Calendar unreachable: {e}") from e
        if r.status_code == 401:
            raise ProbeError("Google Calendar token expired or revoked")
        if r.status_code != 200:
            logger.warning("Google Calendar GET %s failed: %s %s", path, r.status_code, r.text[:300])
            raise ProbeError(f"Google Calendar request failed ({r.status_code})")
        return r.json()

    def list_calendars(self) -> list[dict[str, Any]]:
        data = self._get("/users/me/calendarList")
        return [
            {
                "id": item.get("id"),
                "name": item.get("summary"),
                "primary": bool(item.get("primary")),
                "access_role": item.get("accessRole"),
            }
            for item in data.get("items") or []
        ]

    def get_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        """Expanded single events overlapping [time_min, time_max)."""
        data = self._get(
            f"/calendars/{quote(calendar_id, safe='')}/events",
            params={
                "timeMin": _rfc3339(time_min),
                "timeMax": _rfc3339(time_max),
                "singleEvents": "true",
                "orderBy": "startTime",
            },
        )
        return list(data.get("items") or [])

    def check_slot_availability(self, calendar_id: str, start: datetime, end: datetime) -> AvailabilityResult:
        events = self.get_events(calendar_id, start, end)
        conflicts = [
            {
                "id": ev.get("id"),
                "summary": ev.get("summary"),
                "start": (ev.get("start") or {}).get("dateTime") or (ev.get("start") or {}).get("date"),
                "end": (ev.get("end") or {}).get("dateTime") or (ev.get("end") or {}).get("date"),
            }
            for ev in events
            if ev.get("status") != "cancelled"
        ]
        return AvailabilityResult(is_available=not conflicts, conflicts=conflicts)


class GoogleCalendarProbe:
    """AvailabilityProbe for one owner's connected calendar. Refreshes and re-encrypts the access token as needed."""

    def __init__(
        self,
        db: Session,
        config: WaitlistCalendarConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ):
        self.db = db
        self.config = config
        self._transport = transport

    def access_token(self) -> str:
        config = self.config
        expires_at = as_utc(config.token_expires_at) if config.token_expires_at else None
        if expires_at is not None and expires_at > utc_now() + TOKEN_REFRESH_MARGIN:
            token = decrypt_secret(config.access_token)
            if token:
                return token
        refresh_token = decrypt_secret(config.refresh_token)
        if not refresh_token:
            raise ProbeError("Calendar is not connected (no refresh token)")
        body = refresh_access_token(refresh_token, transport=self._transport)
        config.access_token = encrypt_secret(body["access_token"])
        config.token_expires_at = utc_now() + timedelta(seconds=int(body.get("expires_in") or 3600))
        self.db.commit()
        logger.info("Google Calendar token refreshed for owner %s", config.owner_id)
        return body["access_token"]

    def check_availability(
        self,
        owner_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> AvailabilityResult:
        config = self.config
        if owner_id != config.owner_id:
            raise ProbeError(f"Calendar config belongs to {config.owner_id}, not {owner_id}")
        try:
            client = GoogleCalendarClient(self.access_token(), transport=self._transport)
            result = client.check_slot_availability(config.calendar_id, window_start, window_end)
        except ProbeError as e:
            config.last_error = str(e)[:500]
            self.db.commit()
            raise
        config.last_sync_at = result.checked_at
        config.last_error = None
        self.db.commit()
        return result
