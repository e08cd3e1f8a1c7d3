"""Per-owner calendar connection used by the availability probe. Tokens are Fernet-encrypted."""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.db.base import Base


class WaitlistCalendarConfig(Base):
    __tablename__ = "waitlist_calendar_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(64), nullable=False, unique=True, index=True)
    provider = Column(String(32), nullable=False, server_default="google_calendar")
    calendar_id = Column(String(255), nullable=True)
    calendar_name = Column(String(255), nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def is_connected(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    def is_ready(self) -> bool:
        """Enabled, connected, and a calendar picked: only then does the owner get a probe."""
        return bool(self.is_enabled and self.is_connected() and self.calendar_id)
