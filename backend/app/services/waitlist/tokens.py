"""
Token store: single-use, expiring links that let a customer act on one entry without logging in.

Only the sha256 of a token is persisted; the raw value is handed out once by issue() and
embedded in {FRONTEND_URL}/waitlist/{token}.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import as_utc, utc_now
from app.core.constants import TOKEN_PURPOSES
from app.core.errors import InvalidToken, ValidationError
from app.models.waitlist_entry import WaitlistEntry
from app.models.waitlist_slot import WaitlistSlot
from app.models.waitlist_token import WaitlistToken

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "wl_"


@dataclass
class TokenContext:
    token: WaitlistToken
    entry: WaitlistEntry
    slot: WaitlistSlot

    @property
    def owner_id(self) -> str:
        return self.slot.owner_id


def generate_token() -> str:
    """URL-safe, 256 bits of entropy."""
    return TOKEN_PREFIX + secrets.token_urlsafe(32)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


def build_waitlist_url(raw_token: str) -> str:
    return f"{settings.frontend_url}/waitlist/{raw_token}"


def issue(
    db: Session,
    entry_id: int,
    purpose: str,
    ttl: timedelta,
    *,
    now: datetime | None = None,
) -> tuple[str, str]:
    """Create a token for this entry. Returns (raw_token, token_hash); the raw value is not stored."""
    if purpose not in TOKEN_PURPOSES:
        raise ValidationError(f"Unknown token purpose: {purpose}")
    now = now or utc_now()
    raw = generate_token()
    token_hash = hash_token(raw)
    db.add(
        WaitlistToken(
            entry_id=entry_id,
            token_hash=token_hash,
            purpose=purpose,
            expires_at=now + ttl,
        )
    )
    db.commit()
    return raw, token_hash


def resolve(
    db: Session,
    raw_token: str,
    *,
    purpose: str | None = None,
    now: datetime | None = None,
) -> TokenContext:
    """Look up an unconsumed, unexpired token and its entry/slot. Raises InvalidToken otherwise."""
    raw_token = (raw_token or "").strip()
    if not raw_token:
        raise InvalidToken("Token is required")
    now = now or utc_now()
    row = db.query(WaitlistToken).filter(WaitlistToken.token_hash == hash_token(raw_token)).first()
    if row is None:
        raise InvalidToken("Unknown token")
    if row.consumed_at is not None:
        raise InvalidToken("Token already used")
    if as_utc(row.expires_at) <= now:
        raise InvalidToken("Token expired")
    if purpose is not None and row.purpose != purpose:
        raise InvalidToken(f"Token is not a {purpose} token")
    entry = row.entry
    slot = entry.slot if entry is not None else None
    if entry is None or slot is None:
        raise InvalidToken("Token no longer points to a waitlist entry")
    return TokenContext(token=row, entry=entry, slot=slot)


def consume(db: Session, token_id: int, *, now: datetime | None = None, commit: bool = True) -> None:
    """Mark used. Compare-and-set on consumed_at IS NULL so two concurrent uses cannot both succeed."""
    now = now or utc_now()
    updated = (
        db.query(WaitlistToken)
        .filter(WaitlistToken.id == token_id, WaitlistToken.consumed_at.is_(None))
        .update({WaitlistToken.consumed_at: now}, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise InvalidToken("Token already used")
    if commit:
        db.commit()


def sweep_expired(db: Session, *, now: datetime | None = None) -> int:
    """Delete tokens past expiry, consumed or not. Returns count deleted."""
    now = now or utc_now()
    deleted = (
        db.query(WaitlistToken)
        .filter(WaitlistToken.expires_at < now)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("Waitlist tokens: purged %s expired", deleted)
    return deleted
