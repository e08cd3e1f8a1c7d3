"""One customer's claim on a slot. priority = queue position (lowest pending priority is the next claimant)."""
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slot_id = Column(Integer, ForeignKey("waitlist_slots.id", ondelete="CASCADE"), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)  # denormalized from slot for owner-scoped reads
    first_name = Column(String(128), nullable=False, default="Client")
    last_name = Column(String(128), nullable=False, default="")
    phone = Column(String(32), nullable=False)  # E.164
    email = Column(String(255), nullable=True)
    requested_time = Column(DateTime(timezone=True), nullable=False)
    alternative_times = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=list)  # ISO strings
    party_size = Column(Integer, nullable=False, default=1)
    status = Column(String(16), nullable=False, default="pending", index=True)  # pending | notified | confirmed | expired | cancelled
    priority = Column(Integer, nullable=False)
    source = Column(String(32), nullable=False, default="voice_agent")
    notified_at = Column(DateTime(timezone=True), nullable=True)
    response_deadline = Column(DateTime(timezone=True), nullable=True)
    message_id = Column(String(64), nullable=True)  # last outbound SMS sid
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    slot = relationship("WaitlistSlot", back_populates="entries")
    tokens = relationship("WaitlistToken", back_populates="entry", passive_deletes=True)

    __table_args__ = (UniqueConstraint("slot_id", "priority", name="uq_waitlist_entry_slot_priority"),)
